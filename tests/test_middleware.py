"""Request-time auth middleware: token, rate limits, session."""

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from trialguard.service.middleware import AuthMiddleware, AuthRequest, MiddlewareResult
from trialguard.service.rate_limit import RateLimiter
from trialguard.service.sessions import SessionGuard
from trialguard.service.tokens import TokenIssuer, TokenValidator
from trialguard.storage.models import AccountType, RateLimitRecord


@pytest.fixture
def middleware(memory_store, settings):
    return AuthMiddleware(
        TokenValidator(memory_store, None, settings),
        RateLimiter(memory_store, None, settings),
        SessionGuard(memory_store, settings),
        settings,
    )


@pytest.fixture
def issued(memory_store, settings, make_account):
    account = make_account("doc@example.org", AccountType.PHYSICIAN)
    return TokenIssuer(memory_store, settings).issue(account)


def _request(token=None, path="/v1/patients", source_ip="10.0.0.1"):
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return AuthRequest(headers=headers, source_ip=source_ip, path=path)


def _seed(memory_store, limit_type, identifier, count):
    created = datetime.now(timezone.utc) - timedelta(seconds=5)
    for _ in range(count):
        memory_store.rate_limit_log.append(RateLimitRecord(limit_type, identifier, created))


class TestAuthRequest:
    def test_from_http_api_event(self):
        event = {
            "headers": {"authorization": "Bearer t"},
            "queryStringParameters": None,
            "requestContext": {"http": {"sourceIp": "1.2.3.4", "path": "/v1/auth/me"}},
        }
        request = AuthRequest.from_event(event)
        assert request.source_ip == "1.2.3.4"
        assert request.path == "/v1/auth/me"
        assert request.query_params == {}

    def test_from_rest_api_event(self):
        event = {
            "headers": {},
            "path": "/v1/mfa/setup",
            "requestContext": {"identity": {"sourceIp": "5.6.7.8"}},
        }
        request = AuthRequest.from_event(event)
        assert request.source_ip == "5.6.7.8"
        assert request.path == "/v1/mfa/setup"

    def test_from_starlette(self):
        fake = SimpleNamespace(
            headers={"authorization": "Bearer t"},
            query_params={"a": "b"},
            client=SimpleNamespace(host="9.9.9.9"),
            url=SimpleNamespace(path="/v1/auth/me"),
        )
        request = AuthRequest.from_starlette(fake)
        assert request.source_ip == "9.9.9.9"
        assert request.query_params == {"a": "b"}


class TestAuthMiddleware:
    async def test_success(self, middleware, issued):
        result = await middleware.authenticate(_request(issued.token))

        assert result.is_valid is True
        assert result.user.email == "doc@example.org"
        assert result.session.token_id == issued.token_id
        assert result.rate_limit == {"user": 100, "ip": 500}

    async def test_missing_token_is_401(self, middleware):
        result = await middleware.authenticate(_request())

        assert result.is_valid is False
        assert result.status_code == 401
        assert result.body == {"error": "Authorization token required"}
        assert result.headers == {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        }

    async def test_user_limit_is_429(self, middleware, memory_store, issued):
        _seed(memory_store, "user", "doc@example.org", 100)

        result = await middleware.authenticate(_request(issued.token))

        assert result.status_code == 429
        assert result.body == {"error": "User rate limit exceeded"}
        assert result.headers["Retry-After"] == "3600"

    async def test_ip_limit_is_429(self, middleware, memory_store, issued):
        _seed(memory_store, "ip", "10.0.0.1", 500)

        result = await middleware.authenticate(_request(issued.token))

        assert result.status_code == 429
        assert result.body == {"error": "IP rate limit exceeded"}

    async def test_auth_limit_only_on_auth_paths(self, middleware, memory_store, issued):
        _seed(memory_store, "auth", "doc@example.org:10.0.0.1", 20)

        ok = await middleware.authenticate(_request(issued.token, path="/v1/patients"))
        assert ok.is_valid is True

        limited = await middleware.authenticate(_request(issued.token, path="/v1/mfa/verify"))
        assert limited.status_code == 429
        assert limited.body == {"error": "Authentication rate limit exceeded"}

    async def test_rate_limit_stage_fails_open(self, middleware, issued):
        with patch.object(
            middleware, "_apply_rate_limits", AsyncMock(side_effect=RuntimeError("boom"))
        ):
            result = await middleware.authenticate(_request(issued.token))

        assert result.is_valid is True
        assert result.rate_limit is None

    async def test_session_expired_is_401(self, middleware, memory_store, issued):
        key = (issued.session.user_id, issued.token_id)
        memory_store.sessions[key].last_activity_at -= timedelta(seconds=3601)

        result = await middleware.authenticate(_request(issued.token))

        assert result.status_code == 401
        assert result.body == {"error": "Session expired due to inactivity"}

    async def test_unexpected_error_is_generic_401(self, middleware, issued):
        with patch.object(
            middleware.session_guard, "check", AsyncMock(side_effect=KeyError("boom"))
        ):
            result = await middleware.authenticate(_request(issued.token))

        assert result.status_code == 401
        assert result.body == {"error": "Authentication failed"}


class TestLambdaResponse:
    def test_rejection_body_is_json_string(self):
        response = MiddlewareResult.rejected(429, "IP rate limit exceeded").to_lambda_response()

        assert response["statusCode"] == 429
        assert json.loads(response["body"]) == {"error": "IP rate limit exceeded"}
        assert response["headers"]["Retry-After"] == "3600"

    async def test_success_shape(self, middleware, issued):
        result = await middleware.authenticate(_request(issued.token))
        response = result.to_lambda_response()

        assert response["isValid"] is True
        assert response["user"]["userType"] == "physician"
        assert response["session"]["tokenId"] == issued.token_id
        assert response["rateLimit"] == {"user": 100, "ip": 500}
