"""
Security tests for rate limiting on the sign-in endpoints.
Covers the sliding-window limiter and the per-path budgets applied by the
middleware to code issuance and verification.
"""
import pytest
import asyncio
from unittest.mock import Mock
from fastapi import FastAPI
from fastapi.testclient import TestClient

from services.rate_limiter import InMemoryRateLimiter, get_rate_limiter
from services.security import security_config
from middleware.security import RateLimitMiddleware, SEND_CODE_PATH, VERIFY_CODE_PATH

@pytest.fixture(autouse=True)
def fresh_limiter():
    get_rate_limiter().reset()
    yield
    get_rate_limiter().reset()

@pytest.mark.asyncio
class TestRateLimiting:
    """Test the sliding window limiter."""

    async def test_basic_rate_limiting(self):
        rate_limiter = InMemoryRateLimiter()
        client_key = "test_client_123"

        for i in range(5):
            result = await rate_limiter.check_rate_limit(
                client_key, window_seconds=60, max_requests=5
            )
            assert result.allowed is True
            assert result.remaining == 5 - i - 1

        result = await rate_limiter.check_rate_limit(client_key, window_seconds=60, max_requests=5)
        assert result.allowed is False
        assert result.remaining == 0
        assert 1 <= result.retry_after <= 60

    async def test_rate_limit_window_expiry(self):
        """Test that rate limits reset after window expiry."""
        rate_limiter = InMemoryRateLimiter()
        client_key = "test_window_expiry"

        for i in range(3):
            result = await rate_limiter.check_rate_limit(
                client_key, window_seconds=1, max_requests=3
            )
            assert result.allowed is True

        result = await rate_limiter.check_rate_limit(client_key, window_seconds=1, max_requests=3)
        assert result.allowed is False

        await asyncio.sleep(1.1)

        result = await rate_limiter.check_rate_limit(client_key, window_seconds=1, max_requests=3)
        assert result.allowed is True

    async def test_different_client_isolation(self):
        """Test that different clients have isolated rate limits."""
        rate_limiter = InMemoryRateLimiter()

        for i in range(5):
            result = await rate_limiter.check_rate_limit(
                "client_1", window_seconds=60, max_requests=5
            )
            assert result.allowed is True

        result = await rate_limiter.check_rate_limit("client_1", window_seconds=60, max_requests=5)
        assert result.allowed is False

        result = await rate_limiter.check_rate_limit("client_2", window_seconds=60, max_requests=5)
        assert result.allowed is True

    async def test_concurrent_request_handling(self):
        """Concurrent checks from one client never exceed the budget."""
        rate_limiter = InMemoryRateLimiter()

        results = await asyncio.gather(*(
            rate_limiter.check_rate_limit("burst_client", window_seconds=60, max_requests=10)
            for _ in range(20)
        ))

        assert sum(1 for result in results if result.allowed) == 10
        assert sum(1 for result in results if not result.allowed) == 10

    async def test_cleanup_forgets_idle_clients(self):
        rate_limiter = InMemoryRateLimiter()
        await rate_limiter.check_rate_limit("idle_client", window_seconds=60, max_requests=5)

        await rate_limiter.cleanup_expired(max_age_seconds=0)

        assert "idle_client" not in rate_limiter._requests

    async def test_reset_clears_all_clients(self):
        rate_limiter = InMemoryRateLimiter()
        for _ in range(2):
            await rate_limiter.check_rate_limit("client", window_seconds=60, max_requests=2)

        rate_limiter.reset()

        result = await rate_limiter.check_rate_limit("client", window_seconds=60, max_requests=2)
        assert result.allowed is True

class TestRateLimitMiddleware:
    """Test rate limiting middleware integration."""

    @pytest.mark.asyncio
    async def test_middleware_sets_headers(self):
        app = Mock()
        middleware = RateLimitMiddleware(app)

        request = Mock()
        request.url.path = "/api/users/me"
        request.method = "GET"
        request.headers = {}
        request.client.host = "127.0.0.1"

        async def call_next(request):
            response = Mock()
            response.headers = {}
            return response

        response = await middleware.dispatch(request, call_next)

        assert response.headers["X-RateLimit-Limit"] == str(security_config.rate_limit_requests_per_minute)
        assert "X-RateLimit-Remaining" in response.headers
        assert "X-RateLimit-Reset" in response.headers

    def test_code_endpoints_have_hourly_budgets(self):
        middleware = RateLimitMiddleware(Mock())

        assert middleware.endpoint_limits[SEND_CODE_PATH] == {
            "requests": security_config.otp_requests_per_hour, "window": 3600
        }
        assert middleware.endpoint_limits[VERIFY_CODE_PATH] == {
            "requests": security_config.otp_verifications_per_hour, "window": 3600
        }

    def test_send_code_blocked_after_budget(self, monkeypatch):
        monkeypatch.setattr(security_config, "otp_requests_per_hour", 2)

        app = FastAPI()
        app.add_middleware(RateLimitMiddleware)

        @app.post(SEND_CODE_PATH)
        def send_code():
            return {"success": True}

        client = TestClient(app)
        headers = {"X-Forwarded-For": "203.0.113.7"}

        assert client.post(SEND_CODE_PATH, headers=headers).status_code == 200
        assert client.post(SEND_CODE_PATH, headers=headers).status_code == 200

        response = client.post(SEND_CODE_PATH, headers=headers)
        assert response.status_code == 429
        assert response.json()["reason"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

        # Another client is unaffected
        other = client.post(SEND_CODE_PATH, headers={"X-Forwarded-For": "203.0.113.8"})
        assert other.status_code == 200
