from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from marketplace.api import dependencies
from marketplace.main import app
from marketplace.models.course import Course
from marketplace.services import token_service
from marketplace.services.cache import cache_service
from marketplace.services.payment_gateway import InMemoryPaymentGateway

# Ensure repo root is on sys.path so `import marketplace` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_repos() -> None:
    """Clear the process-wide in-memory repos between tests."""
    dependencies.course_repo._by_id.clear()
    dependencies.enrollment_repo._by_id.clear()
    dependencies.user_projection_repo._enrolled.clear()


@pytest.fixture(autouse=True)
def reset_gateway() -> None:
    """Fresh fake checkout provider per test."""
    dependencies.payment_gateway = InMemoryPaymentGateway()


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    """Clear cache between tests."""
    if hasattr(cache_service, "_store"):
        cache_service._store.clear()  # type: ignore[union-attr]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def gateway() -> InMemoryPaymentGateway:
    gw = dependencies.payment_gateway
    assert isinstance(gw, InMemoryPaymentGateway)
    return gw


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


def auth_headers(username: str = "test-user") -> dict[str, str]:
    return {"Authorization": f"Bearer {mint_token(username)}"}


@pytest.fixture
def token() -> str:
    return mint_token()


def make_course(
    *,
    price: str = "50.00",
    lesson_count: int = 4,
    is_active: bool = True,
    title: str = "Intro to Async Python",
) -> Course:
    course = Course.new(
        title=title,
        price=Decimal(price),
        lesson_count=lesson_count,
        short_description="Event loops, tasks and cancellation",
        thumbnail="https://cdn.example.com/async.png",
    )
    if not is_active:
        course = replace(course, is_active=False)
    return course


def seed_course(**kwargs) -> Course:
    """Create a course and store it in the app's in-memory catalog."""
    course = make_course(**kwargs)
    asyncio.run(dependencies.course_repo.add(course))
    return course
