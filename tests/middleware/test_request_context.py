"""Every response carries an X-Request-ID (generated or echoed)."""

from __future__ import annotations

import logging
import uuid

import pytest
from fastapi.testclient import TestClient


def test_request_id_generated_when_not_provided(client: TestClient) -> None:
    resp = client.get("/health")
    uuid.UUID(resp.headers["x-request-id"])


def test_request_id_echoed_when_provided(client: TestClient) -> None:
    resp = client.get("/health", headers={"X-Request-ID": "frontend-req-123"})
    assert resp.headers.get("x-request-id") == "frontend-req-123"


def test_oversized_request_id_is_replaced(client: TestClient) -> None:
    resp = client.get("/health", headers={"X-Request-ID": "x" * 500})
    rid = resp.headers["x-request-id"]
    assert rid != "x" * 500
    uuid.UUID(rid)


def test_request_id_present_on_error_responses(client: TestClient) -> None:
    resp = client.get("/v1/enrollments")  # no token -> 401
    assert resp.status_code == 401
    assert resp.headers.get("x-request-id") is not None


def test_summary_line_is_logged(
    client: TestClient, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.INFO, logger="marketplace.middleware.request_context"):
        client.get("/health", headers={"X-Request-ID": "trace-me"})

    records = [r for r in caplog.records if getattr(r, "request_id", None) == "trace-me"]
    assert records
    assert records[-1].status_code == 200  # type: ignore[attr-defined]
    assert records[-1].path == "/health"  # type: ignore[attr-defined]
