"""Tests for login risk evaluation and client identification."""

from datetime import timedelta

import pytest

from blogauth.service.risk import (
    UNKNOWN_IP,
    client_ip,
    is_high_risk,
    mask_ip,
    parse_browser_info,
)


class TestIsHighRisk:
    def test_first_login_is_high_risk(self, clock):
        assert is_high_risk(None, None, "1.2.3.4", clock()) is True

    def test_same_ip_recent_login_is_low_risk(self, clock):
        last = clock() - timedelta(hours=1)
        assert is_high_risk("1.2.3.4", last, "1.2.3.4", clock()) is False

    def test_new_ip_is_high_risk(self, clock):
        last = clock() - timedelta(minutes=1)
        assert is_high_risk("1.2.3.4", last, "1.2.3.5", clock()) is True

    def test_missing_last_ip_is_high_risk(self, clock):
        last = clock() - timedelta(minutes=1)
        assert is_high_risk(None, last, "1.2.3.4", clock()) is True

    def test_stale_login_is_high_risk(self, clock):
        last = clock() - timedelta(days=31)
        assert is_high_risk("1.2.3.4", last, "1.2.3.4", clock()) is True

    def test_exactly_thirty_days_is_not_stale(self, clock):
        last = clock() - timedelta(days=30)
        assert is_high_risk("1.2.3.4", last, "1.2.3.4", clock()) is False

    def test_custom_max_age(self, clock):
        last = clock() - timedelta(days=2)
        assert is_high_risk("1.2.3.4", last, "1.2.3.4", clock(), timedelta(days=1)) is True


class TestClientIp:
    def test_precedence(self):
        headers = {
            "cf-connecting-ip": "9.9.9.9",
            "x-forwarded-for": "8.8.8.8, 10.0.0.1",
            "x-real-ip": "7.7.7.7",
        }
        assert client_ip(headers, "10.0.0.2") == "9.9.9.9"
        del headers["cf-connecting-ip"]
        assert client_ip(headers, "10.0.0.2") == "8.8.8.8"
        del headers["x-forwarded-for"]
        assert client_ip(headers, "10.0.0.2") == "7.7.7.7"
        del headers["x-real-ip"]
        assert client_ip(headers, "10.0.0.2") == "10.0.0.2"

    def test_malformed_header_is_skipped(self):
        headers = {"cf-connecting-ip": "not-an-ip", "x-real-ip": "7.7.7.7"}
        assert client_ip(headers, None) == "7.7.7.7"

    def test_proxy_headers_ignored_when_untrusted(self):
        headers = {"x-forwarded-for": "8.8.8.8"}
        assert client_ip(headers, "10.0.0.2", trust_proxy_headers=False) == "10.0.0.2"

    def test_ipv6_is_normalized(self):
        assert client_ip({"x-real-ip": "2001:DB8::1"}, None) == "2001:db8::1"

    def test_unknown_when_nothing_available(self):
        assert client_ip({}, None) == UNKNOWN_IP


class TestMaskIp:
    @pytest.mark.parametrize(
        "raw, masked",
        [
            ("203.0.113.7", "203.0.*.*"),
            ("2001:db8::1", "2001:db8:*:*"),
            (None, UNKNOWN_IP),
            (UNKNOWN_IP, UNKNOWN_IP),
        ],
    )
    def test_mask(self, raw, masked):
        assert mask_ip(raw) == masked


class TestBrowserInfo:
    @pytest.mark.parametrize(
        "user_agent, expected",
        [
            (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0 Safari/537.36",
                ("Chrome", "Windows"),
            ),
            (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0 Safari/537.36 Edg/120.0",
                ("Edge", "Windows"),
            ),
            (
                "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
                "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
                ("Safari", "iOS"),
            ),
            ("Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0", ("Firefox", "Linux")),
            (
                "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0 Mobile Safari/537.36",
                ("Chrome", "Android"),
            ),
            (None, ("Unknown", "Unknown")),
        ],
    )
    def test_parse(self, user_agent, expected):
        assert parse_browser_info(user_agent) == expected
