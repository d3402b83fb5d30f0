"""E2E tests for Prometheus metrics collection.

Tests that metrics are recorded for:
- HTTP requests
- Error responses
- Job lifecycle and transfers
"""

import re
from typing import Callable, Dict, Optional

import pytest
from fastapi.testclient import TestClient


def get_metric_sum(
    content: str, metric_name: str, label_filter: Optional[Dict[str, str]] = None
) -> float:
    """Sum all samples of a metric, optionally filtering by labels."""
    total = 0.0
    pattern = rf"^{re.escape(metric_name)}(?:\{{([^}}]*)\}})?\s+([\d.]+(?:e[+-]?\d+)?)"

    for line in content.split("\n"):
        match = re.match(pattern, line)
        if not match:
            continue
        labels = dict(re.findall(r'(\w+)="([^"]*)"', match.group(1) or ""))
        if label_filter and not all(labels.get(k) == v for k, v in label_filter.items()):
            continue
        total += float(match.group(2))

    return total


@pytest.mark.e2e
class TestMetricsEndpoint:
    """E2E tests for /metrics endpoint."""

    def test_metrics_endpoint_accessible(self, e2e_client: TestClient) -> None:
        response = e2e_client.get("/metrics")

        assert response.status_code == 200
        assert response.headers.get("content-type", "").startswith("text/plain")
        assert "# HELP" in response.text
        assert "mediadrop_info" in response.text

    def test_request_increments_counter(self, e2e_client: TestClient) -> None:
        labels = {"method": "GET", "endpoint": "/liveness", "status": "200"}
        before = get_metric_sum(e2e_client.get("/metrics").text, "http_requests_total", labels)

        for _ in range(3):
            e2e_client.get("/liveness")

        after = get_metric_sum(e2e_client.get("/metrics").text, "http_requests_total", labels)
        assert after - before == 3

    def test_error_requests_are_tracked(self, e2e_client: TestClient) -> None:
        labels = {"error_code": "JOB_NOT_FOUND"}
        before = get_metric_sum(e2e_client.get("/metrics").text, "errors_total", labels)

        e2e_client.get("/api/status/00000000-0000-4000-8000-000000000000")

        after = get_metric_sum(e2e_client.get("/metrics").text, "errors_total", labels)
        assert after - before == 1


@pytest.mark.e2e
class TestJobMetrics:
    """E2E tests for job and transfer counters."""

    def test_completed_and_consumed_job_is_counted(
        self,
        e2e_client: TestClient,
        client_headers: Dict[str, str],
        video_url: str,
        wait_for_terminal: Callable,
    ) -> None:
        before = e2e_client.get("/metrics").text

        token = e2e_client.post(
            "/api/download", json={"url": video_url, "format": "webm"}, headers=client_headers
        ).json()["token"]
        wait_for_terminal(token, client_headers)
        assert e2e_client.get(f"/api/download/{token}").status_code == 200

        after = e2e_client.get("/metrics").text

        def delta(name: str, labels: Optional[Dict[str, str]] = None) -> float:
            return get_metric_sum(after, name, labels) - get_metric_sum(before, name, labels)

        assert delta("jobs_submitted_total", {"format": "webm"}) == 1
        assert delta("jobs_finished_total", {"state": "completed"}) == 1
        assert delta("jobs_evicted_total", {"reason": "consumed"}) == 1
        assert delta("transfers_total", {"outcome": "complete"}) == 1
        assert delta("transfer_bytes_total") == 4096

    def test_rate_limit_rejections_are_counted(
        self, e2e_client: TestClient, client_headers: Dict[str, str]
    ) -> None:
        before = get_metric_sum(e2e_client.get("/metrics").text, "rate_limit_exceeded_total")

        for _ in range(6):
            e2e_client.post(
                "/api/download", json={"url": "https://example.com/v"}, headers=client_headers
            )

        after = get_metric_sum(e2e_client.get("/metrics").text, "rate_limit_exceeded_total")
        assert after - before == 1
