"""
Tests for URL normalization, classification and domain helpers.
"""

import pytest

from product_crawler.classifier import (
    UrlClass,
    classify,
    get_normalized_domain,
    get_starting_points,
    is_same_domain,
    normalize,
)
from product_crawler.site_profiles import SiteProfile, get_profile, supported_domains

SAMPLE_URLS = [
    "https://Shop.Test/p/123456/?utm_source=mail&size=m#reviews",
    "https://shop.test//category//shoes/",
    "https://shop.test/?ref=home",
    "https://shop.test/search?q=red+shoes&gclid=abc",
    "http://WWW.shop.test/a/b/c/",
    "https://shop.test",
    "not a url",
    "",
]


# ====================================================================
# 1. Normalization
# ====================================================================

class TestNormalize:

    @pytest.mark.parametrize("url", SAMPLE_URLS)
    def test_idempotent(self, url):
        assert normalize(normalize(url)) == normalize(url)

    def test_tracking_params_and_fragment_removed(self):
        assert normalize("https://shop.test/p/1?utm_source=x&size=m&fbclid=1#top") == \
            "https://shop.test/p/1?size=m"

    def test_untouched_query_kept_verbatim(self):
        """A query without tracking params is not re-encoded."""
        assert normalize("https://shop.test/list?q=red+shoes&page=2") == \
            "https://shop.test/list?q=red+shoes&page=2"

    def test_host_and_scheme_lowercased(self):
        assert normalize("HTTPS://Shop.TEST/Path") == "https://shop.test/Path"

    def test_slashes_collapsed_and_trailing_stripped(self):
        assert normalize("https://shop.test//a//b/") == "https://shop.test/a/b"
        assert normalize("https://shop.test/") == "https://shop.test"

    def test_unparseable_returned_unchanged(self):
        assert normalize("http://[::1") == "http://[::1"


# ====================================================================
# 2. Classification
# ====================================================================

class TestClassify:

    @pytest.mark.parametrize("url", [
        "https://shop.test/p/123456",
        "https://shop.test/products/red-dress",
        "https://shop.test/item/abc",
        "https://tatacliq.com/red-kurta/p-mp000000012345",
        "https://shop.test/dresses/floral-maxi/1234567",
    ])
    def test_generic_products(self, url):
        assert classify(url) is UrlClass.PRODUCT

    @pytest.mark.parametrize("url", [
        "https://shop.test/collections/summer",
        "https://shop.test/category/shoes",
        "https://shop.test/women",
        "https://shop.test/kids/",
        "https://shop.test/c/10056",
    ])
    def test_generic_categories(self, url):
        assert classify(url, SiteProfile(name='t')) is UrlClass.CATEGORY

    @pytest.mark.parametrize("url", [
        "https://shop.test/cart",
        "https://shop.test/account/orders",
        "https://shop.test/images/logo.png",
        "https://shop.test/theme.css?v=3",
        "https://shop.test/api/v1/products",
        "mailto:help@shop.test",
        "javascript:void(0)",
    ])
    def test_excluded(self, url):
        assert classify(url) is UrlClass.EXCLUDED

    def test_word_boundary_on_exclusions(self):
        """/cartoon-prints is not /cart."""
        assert classify("https://shop.test/cartoon-prints") is UrlClass.GENERIC

    def test_numeric_id_on_listing_path_is_not_product(self):
        assert classify("https://shop.test/category/123456") is not UrlClass.PRODUCT

    def test_generic_page(self):
        assert classify("https://shop.test/about-us") is UrlClass.GENERIC

    def test_malformed_url_is_excluded(self):
        assert classify("http://[::1") is UrlClass.EXCLUDED

    def test_profile_rules_win(self):
        profile = SiteProfile(name='t', product_patterns=[r'/dp/[A-Z0-9]{10}$'],
                              category_patterns=[r'/browse/'])
        assert classify("https://shop.test/dp/B0ABCDEFGH", profile) is UrlClass.PRODUCT
        assert classify("https://shop.test/browse/shoes", profile) is UrlClass.CATEGORY

    def test_profile_product_id_digits(self):
        profile = SiteProfile(name='t', product_id_digits=6)
        assert classify("https://shop.test/shirts/765432", profile) is UrlClass.PRODUCT

    @pytest.mark.parametrize("domain, url", [
        ("shop.test", "https://shop.test/collections/summer/products/linen-tee"),
        ("shop.test", "https://shop.test/women/p/123456"),
        ("shop.test", "https://shop.test/men/product/shirt"),
        ("westside.com", "https://www.westside.com/collections/new/products/linen-tee"),
        ("virgio.com", "https://www.virgio.com/women/product/wrap-dress"),
        ("tatacliq.com", "https://www.tatacliq.com/men/p-mp000000012345"),
    ])
    def test_products_under_listing_paths(self, domain, url):
        """Category-looking prefixes never hide a product URL."""
        assert classify(url, get_profile(domain)) is UrlClass.PRODUCT

    @pytest.mark.parametrize("url", [
        "https://shop.test/collections/summer",
        "https://shop.test/women",
        "https://shop.test/category/123456",
    ])
    def test_default_profile_categories(self, url):
        assert classify(url, get_profile("shop.test")) is UrlClass.CATEGORY

    def test_nykaa_profile_patterns(self):
        profile = get_profile("www.nykaafashion.com")
        assert classify("https://www.nykaafashion.com/floral-kurta/p/1234567", profile) is UrlClass.PRODUCT
        assert classify("https://www.nykaafashion.com/women/c/6557", profile) is UrlClass.CATEGORY


# ====================================================================
# 3. Domain helpers
# ====================================================================

class TestDomains:

    def test_same_host_and_www(self):
        assert is_same_domain("https://www.shop.test/p/1", "https://shop.test")
        assert is_same_domain("https://shop.test/p/1", "https://www.shop.test/")

    def test_subdomain_allowed(self):
        assert is_same_domain("https://m.shop.test/p/1", "https://shop.test")

    def test_other_domain_rejected(self):
        assert not is_same_domain("https://shop.test.evil.com/", "https://shop.test")
        assert not is_same_domain("https://notshop.test/", "https://shop.test")

    def test_relative_url_rejected(self):
        assert not is_same_domain("/p/1", "https://shop.test")

    def test_profile_excluded_hosts(self):
        profile = get_profile("tatacliq.com")
        assert not is_same_domain("https://luxury.tatacliq.com/x", "https://tatacliq.com", profile)
        assert is_same_domain("https://www.tatacliq.com/x", "https://tatacliq.com", profile)

    @pytest.mark.parametrize("value, expected", [
        ("https://www.Shop.test/path", "shop.test"),
        ("shop.test", "shop.test"),
        ("www.shop.test/", "shop.test"),
        ("http://luxury.tatacliq.com", "luxury.tatacliq.com"),
        ("", ""),
    ])
    def test_normalized_domain(self, value, expected):
        assert get_normalized_domain(value) == expected

    def test_starting_points_add_scheme_and_www(self):
        assert get_starting_points("westside.com") == ["https://www.westside.com/"]
        assert get_starting_points("https://shop.test") == ["https://www.shop.test/"]

    def test_starting_points_keep_known_prefixes(self):
        assert get_starting_points("luxury.tatacliq.com") == ["https://luxury.tatacliq.com/"]
        assert get_starting_points("www.virgio.com") == ["https://www.virgio.com/"]


class TestProfiles:

    def test_builtin_catalogue(self):
        assert set(supported_domains()) == {
            "westside.com", "virgio.com", "nykaafashion.com", "tatacliq.com",
        }

    def test_unknown_domain_gets_default_profile(self):
        profile = get_profile("https://www.shop.test/")
        assert profile.name == "default"
        assert profile.domain == "shop.test"
        assert profile.seeds() == ["https://www.shop.test/"]

    def test_profile_copies_are_independent(self):
        a = get_profile("westside.com")
        b = get_profile("westside.com")
        a.link_selectors.append(".extra")
        assert ".extra" not in b.link_selectors

    def test_invalid_pattern_skipped(self):
        profile = SiteProfile(name='t', product_patterns=[r'/ok/', r'/bad(/'])
        assert len(profile.product_regexes) == 1
