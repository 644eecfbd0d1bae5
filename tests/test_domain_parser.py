"""Tests for email address -> domain parsing."""

import pytest

from sift.domain_parser import (
    extract_domain,
    is_valid_address,
    parse_email_domain,
    primary_domain_of,
)


class TestParseEmailDomain:
    def test_plain_domain(self):
        parsed = parse_email_domain("user@spam.com")
        assert parsed.full_domain == "spam.com"
        assert parsed.primary_domain == "spam.com"
        assert parsed.has_subdomain is False

    def test_subdomain(self):
        parsed = parse_email_domain("noreply@custcomm.icicibank.com")
        assert parsed.full_domain == "custcomm.icicibank.com"
        assert parsed.primary_domain == "icicibank.com"
        assert parsed.has_subdomain is True

    def test_compound_tld_without_subdomain(self):
        parsed = parse_email_domain("alerts@hdfcbank.co.in")
        assert parsed.primary_domain == "hdfcbank.co.in"
        assert parsed.has_subdomain is False

    def test_compound_tld_with_subdomain(self):
        parsed = parse_email_domain("news@mail.bbc.co.uk")
        assert parsed.full_domain == "mail.bbc.co.uk"
        assert parsed.primary_domain == "bbc.co.uk"
        assert parsed.has_subdomain is True

    def test_deep_subdomain(self):
        parsed = parse_email_domain("x@a.b.c.example.com")
        assert parsed.full_domain == "a.b.c.example.com"
        assert parsed.primary_domain == "example.com"

    def test_lowercases(self):
        parsed = parse_email_domain("Someone@News.Example.COM")
        assert parsed.full_domain == "news.example.com"
        assert parsed.primary_domain == "example.com"

    def test_uses_last_at_sign(self):
        assert parse_email_domain('"odd@local"@example.org').full_domain == "example.org"

    @pytest.mark.parametrize("email", ["", "no-at-sign", "user@"])
    def test_malformed_yields_empty(self, email):
        parsed = parse_email_domain(email)
        assert parsed.full_domain == ""
        assert parsed.primary_domain == ""
        assert parsed.has_subdomain is False


class TestHelpers:
    def test_extract_domain(self):
        assert extract_domain("a@B.com ") == "b.com"
        assert extract_domain("nothing") == ""

    def test_primary_domain_of_short_names(self):
        assert primary_domain_of("localhost") == "localhost"
        assert primary_domain_of("example.com") == "example.com"

    def test_primary_domain_of_compound(self):
        assert primary_domain_of("shop.example.com.au") == "example.com.au"

    @pytest.mark.parametrize(
        "email,valid",
        [
            ("user@example.com", True),
            ("user@mail.example.co.uk", True),
            ("user@localhost", False),
            ("@example.com", False),
            ("user@@example.com", False),
            ("us er@example.com", False),
            ("", False),
        ],
    )
    def test_is_valid_address(self, email, valid):
        assert is_valid_address(email) is valid
