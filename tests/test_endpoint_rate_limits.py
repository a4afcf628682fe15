"""Tests for API endpoint rate limiting.

Sign-up, sign-in and refresh are throttled per client address and route.
"""

import pytest
from fastapi.testclient import TestClient

from sessionauth import app as app_module
from sessionauth.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app_module.app)


@pytest.fixture
def tight_limit():
    """Shrink the budget so tests hit it quickly."""
    settings = get_runtime().settings
    settings.rate_limit_requests = 3
    return settings.rate_limit_requests


def _signin(client, headers=None):
    return client.post(
        "/auth/signin",
        json={"email": "nobody@example.com", "password": "whatever"},
        headers=headers or {},
    )


class TestRateLimitHeaders:
    def test_headers_present_on_success(self, client):
        response = client.post(
            "/auth/signup",
            json={"email": "rl@example.com", "name": "Rate Limit", "password": "TestPassword123!"},
        )
        assert response.status_code == 201
        assert response.headers["X-RateLimit-Limit"] == "20"
        assert response.headers["X-RateLimit-Remaining"] == "19"
        assert int(response.headers["X-RateLimit-Reset"]) >= 1

    def test_remaining_counts_down(self, client, tight_limit):
        remaining = []
        for i in range(tight_limit):
            response = client.post(
                "/auth/signup",
                json={"email": f"user{i}@example.com", "name": "Counter", "password": "TestPassword123!"},
            )
            assert response.status_code == 201
            remaining.append(response.headers["X-RateLimit-Remaining"])
        assert remaining == ["2", "1", "0"]


class TestRateLimitEnforcement:
    def test_signin_is_limited(self, client, tight_limit):
        for _ in range(tight_limit):
            assert _signin(client).status_code == 401
        response = _signin(client)

        assert response.status_code == 429
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_routes_have_separate_budgets(self, client, tight_limit):
        for _ in range(tight_limit + 1):
            _signin(client)
        assert _signin(client).status_code == 429
        assert client.post("/auth/refresh").status_code == 401

    def test_refresh_is_limited(self, client, tight_limit):
        for _ in range(tight_limit):
            assert client.post("/auth/refresh").status_code == 401
        assert client.post("/auth/refresh").status_code == 429

    def test_logout_is_not_limited(self, client, tight_limit):
        for _ in range(tight_limit + 2):
            assert client.post("/auth/logout").status_code == 200

    def test_forwarded_for_is_ignored_by_default(self, client, tight_limit):
        for i in range(tight_limit):
            _signin(client, {"X-Forwarded-For": f"203.0.113.{i}"})
        assert _signin(client, {"X-Forwarded-For": "203.0.113.99"}).status_code == 429

    def test_forwarded_for_splits_budgets_behind_trusted_proxy(self, client, tight_limit):
        get_runtime().settings.trust_proxy_headers = True
        for _ in range(tight_limit):
            _signin(client, {"X-Forwarded-For": "203.0.113.1, 10.0.0.1"})
        assert _signin(client, {"X-Forwarded-For": "203.0.113.1"}).status_code == 429
        assert _signin(client, {"X-Forwarded-For": "203.0.113.2"}).status_code == 401
