# =============================================================================
# API Tests — FastAPI Routes via TestClient
# =============================================================================
#
# Auth, rate limiting and the QueryService are swapped out with
# dependency_overrides, so no PostgreSQL or Redis is needed. The client
# is not used as a context manager, which skips the app lifespan.
# =============================================================================

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from finquery.api.deps import (
    get_current_user,
    get_query_service,
    load_test_rate_limit,
    monitoring_rate_limit,
    query_rate_limit,
)
from finquery.errors import AuthRequired, RateLimited
from finquery.main import app
from finquery.services.rate_limiter import RateLimitStatus
from tests.conftest import USER, make_service

FOOD_LAST_MONTH = "How much did I spend on food last month?"


@pytest.fixture
def api_service():
    return make_service()


@pytest.fixture
def client(api_service):
    app.dependency_overrides[get_current_user] = lambda: USER
    app.dependency_overrides[get_query_service] = lambda: api_service
    for dep in (query_rate_limit, monitoring_rate_limit, load_test_rate_limit):
        app.dependency_overrides[dep] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["service"] == "Spending Query Service"


class TestQueryEndpoint:
    def test_json_answer(self, client):
        resp = client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "You spent $23.75 on Food & Dining last month (3 purchases)."
        assert body["cached"] is False
        assert "executionTime" in body
        assert "error" not in body
        assert "complete" not in body
        assert body["data"][0]["name"] == "get_spending_by_category"

    def test_second_request_is_cached(self, client):
        client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        resp = client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        assert resp.json()["cached"] is True

    def test_request_id_echoed(self, client):
        resp = client.post(
            "/agent/query",
            json={"query": "hello"},
            headers={"X-Request-ID": "trace-123"},
        )
        assert resp.headers["X-Request-ID"] == "trace-123"

    def test_streaming_ndjson(self, client):
        resp = client.post(
            "/agent/query",
            json={"query": FOOD_LAST_MONTH, "streaming": True},
            headers={"X-Request-ID": "stream-1"},
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/x-ndjson")
        assert resp.headers["cache-control"] == "no-cache"

        events = [json.loads(line) for line in resp.text.splitlines() if line]
        assert events[0]["type"] == "start"
        assert events[-1]["type"] == "complete"
        assert all(e["requestId"] == "stream-1" for e in events)
        deltas = "".join(e["delta"] for e in events if e["type"] == "content_delta")
        assert deltas == events[-1]["response"]["message"]

    def test_filters_and_context_in_camel_case(self, client):
        resp = client.post("/agent/query", json={
            "query": "How much did I spend?",
            "filters": {"merchant": "Chipotle", "startDate": "2025-05-01", "endDate": "2025-05-31"},
        })
        assert resp.status_code == 200
        assert resp.json()["message"].startswith("You spent $12.25 at Chipotle")

    def test_clear_cache_action(self, client):
        client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        resp = client.post("/agent/query", json={"action": "clear-cache"})
        assert resp.status_code == 200
        assert resp.json() == {"cleared": 2}

    def test_delete_clears_cache(self, client):
        client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        resp = client.delete("/agent/query")
        assert resp.json() == {"cleared": 2}
        again = client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        assert again.json()["cached"] is False


class TestErrors:
    def test_empty_query_is_400(self, client):
        resp = client.post("/agent/query", json={"query": "   "})
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "invalid_request"
        assert body["data"] == []

    def test_overlong_query_is_400(self, client):
        resp = client.post("/agent/query", json={"query": "x" * 2001})
        assert resp.status_code == 400

    def test_auth_required(self, client):
        def no_session():
            raise AuthRequired("Unknown session token")

        app.dependency_overrides[get_current_user] = no_session
        resp = client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert resp.json()["error"] == "auth_required"
        # internal detail is not exposed
        assert "Unknown session token" not in resp.text

    def test_rate_limited(self, client):
        def exhausted():
            raise RateLimited(retry_after=30, limit=60, reset_at=1_750_000_030)

        app.dependency_overrides[query_rate_limit] = exhausted
        resp = client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "30"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert resp.json()["error"] == "rate_limited"

    def test_rate_limit_headers_on_success(self, client):
        app.dependency_overrides[query_rate_limit] = lambda: RateLimitStatus(
            limit=60, remaining=59, reset_at=1_750_000_060,
        )
        resp = client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        assert resp.headers["X-RateLimit-Limit"] == "60"
        assert resp.headers["X-RateLimit-Remaining"] == "59"


class TestMonitoringEndpoints:
    def test_performance_dashboard(self, client):
        client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        resp = client.get("/monitoring/performance", params={"timeRange": "24h"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["timeRange"] == "24h"
        assert body["realTime"]["requestCount"] == 1
        assert len(body["historical"]["responseTime"]) == 24
        assert "memoryMb" in body["resourceUsage"]

    def test_unknown_time_range_is_400(self, client):
        resp = client.get("/monitoring/performance", params={"timeRange": "2h"})
        assert resp.status_code == 400

    def test_load_test(self, client, api_service):
        resp = client.post("/monitoring/load-test", json={
            "testName": "smoke", "requests": 20, "concurrency": 4,
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["totalRequests"] == 20
        assert body["successfulRequests"] + body["failedRequests"] == 20
        assert body["failedRequests"] == 0
        assert body["p99ResponseTime"] >= body["p95ResponseTime"] >= 0
        assert len(api_service.monitor.samples(60)) == 20

    def test_load_test_validation(self, client):
        resp = client.post("/monitoring/load-test", json={
            "testName": "too-big", "requests": 5000, "concurrency": 4,
        })
        assert resp.status_code == 400

    def test_cache_stats(self, client):
        client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        client.post("/agent/query", json={"query": FOOD_LAST_MONTH})
        body = client.get("/monitoring/cache-stats").json()
        assert body["hits"] == 1
        assert body["size"] == 2
        assert body["ttlSeconds"] == 300
