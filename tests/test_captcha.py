"""Tests for Turnstile CAPTCHA verification."""

import json

import httpx

from blogauth.service.captcha import TurnstileVerifier

VERIFY_URL = "https://captcha.test/siteverify"


def _verifier(handler):
    return TurnstileVerifier(
        "secret-key", verify_url=VERIFY_URL, transport=httpx.MockTransport(handler)
    )


class TestTurnstile:
    async def test_disabled_without_secret(self):
        verifier = TurnstileVerifier(None)
        assert verifier.enabled is False
        assert (await verifier.verify(None)).success is True

    async def test_missing_token(self):
        result = await _verifier(lambda request: httpx.Response(200, json={"success": True})).verify("")
        assert result.success is False
        assert result.error_codes == ["missing-input-response"]

    async def test_success_posts_secret_and_ip(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "hostname": "blog.example"})

        result = await _verifier(handler).verify("tok", remote_ip="1.2.3.4")
        assert result.success is True
        assert result.hostname == "blog.example"
        assert seen["url"] == VERIFY_URL
        assert seen["body"] == {"secret": "secret-key", "response": "tok", "remoteip": "1.2.3.4"}

    async def test_rejected_token(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error-codes": ["invalid-input-response"]})

        result = await _verifier(handler).verify("tok")
        assert result.success is False
        assert result.error_codes == ["invalid-input-response"]

    async def test_upstream_error_fails_closed(self):
        result = await _verifier(lambda request: httpx.Response(502)).verify("tok")
        assert result.success is False
        assert result.error_codes == ["verification-request-failed"]

    async def test_network_error_fails_closed(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await _verifier(handler).verify("tok")
        assert result.success is False
        assert result.error_codes == ["verification-request-failed"]
