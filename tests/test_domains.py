import pytest

from betblocker.domains import normalize_domain


class TestNormalizeDomain:
    def test_plain_domain_unchanged(self):
        assert normalize_domain("betsite.com") == "betsite.com"

    def test_lowercases(self):
        assert normalize_domain("BetSite.COM") == "betsite.com"

    def test_strips_scheme(self):
        assert normalize_domain("https://betsite.com") == "betsite.com"
        assert normalize_domain("http://betsite.com") == "betsite.com"

    def test_strips_path_query_fragment(self):
        assert normalize_domain("BetSite.com/path?x=1") == "betsite.com"
        assert normalize_domain("betsite.com?ref=abc") == "betsite.com"
        assert normalize_domain("betsite.com#promo") == "betsite.com"

    def test_full_url(self):
        assert normalize_domain("  HTTPS://www.Casino.example/slots/?a=1#top ") == "casino.example"

    def test_strips_www(self):
        assert normalize_domain("www.betsite.com") == "betsite.com"

    def test_keeps_other_subdomains(self):
        assert normalize_domain("sports.betsite.com") == "sports.betsite.com"

    def test_empty_and_non_string(self):
        assert normalize_domain("") == ""
        assert normalize_domain(None) == ""
        assert normalize_domain(42) == ""
        assert normalize_domain(["betsite.com"]) == ""

    def test_only_path_yields_empty(self):
        assert normalize_domain("/just/a/path") == ""

    @pytest.mark.parametrize("raw", [
        "betsite.com",
        "https://www.betsite.com/a/b?c=d#e",
        "www.www.betsite.com",
        "ftp://x.y/z",
        "www. spaced.com",
        "HTTP://A.B.C?q",
        "  ",
    ])
    def test_idempotent_and_clean(self, raw):
        once = normalize_domain(raw)
        assert normalize_domain(once) == once
        assert "://" not in once
        for ch in "/?#":
            assert ch not in once
        assert not once.startswith("www.")
