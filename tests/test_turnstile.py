"""Tests for Turnstile verification against a mocked siteverify endpoint."""

from urllib.parse import parse_qs

import httpx

from wikiauth.service.turnstile import TurnstileVerifier

VERIFY_URL = "https://challenges.example/siteverify"


def _verifier(handler, secret="sekret"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TurnstileVerifier(secret, verify_url=VERIFY_URL, client=client)


class TestTurnstile:
    async def test_unconfigured_skips(self):
        verifier = TurnstileVerifier(None, verify_url=VERIFY_URL)
        assert (await verifier.verify(None)).success

    async def test_missing_token(self):
        def handler(request):
            raise AssertionError("no request expected")

        result = await _verifier(handler).verify(None)
        assert not result.success
        assert result.error == "Please complete the CAPTCHA verification"

    async def test_success_posts_form(self):
        seen = {}

        def handler(request):
            seen.update(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"success": True})

        verifier = _verifier(handler)
        assert (await verifier.verify("tok", "1.2.3.4")).success
        assert seen == {"secret": ["sekret"], "response": ["tok"], "remoteip": ["1.2.3.4"]}
        await verifier.close()

    async def test_error_code_mapped(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error-codes": ["timeout-or-duplicate"]})

        result = await _verifier(handler).verify("tok")
        assert result.error == "CAPTCHA expired. Please try again."

    async def test_unknown_error_code(self):
        def handler(request):
            return httpx.Response(200, json={"success": False})

        assert (await _verifier(handler).verify("tok")).error == "CAPTCHA verification failed"

    async def test_http_error(self):
        def handler(request):
            return httpx.Response(500)

        result = await _verifier(handler).verify("tok")
        assert not result.success
        assert result.error == "Turnstile verification failed"

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert (await _verifier(handler).verify("tok")).error == "Turnstile verification failed"

    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>")

        assert (await _verifier(handler).verify("tok")).error == "Turnstile verification failed"
