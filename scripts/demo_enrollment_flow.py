"""Demo: walk the free and checkout enrollment flows using FastAPI TestClient.

Runs fully in memory (no DATABASE_URL, REDIS_URL or STRIPE_SECRET_KEY), with
the fake checkout provider standing in for Stripe.

Run with:
    python scripts/demo_enrollment_flow.py
"""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal

from fastapi.testclient import TestClient

from marketplace.api import dependencies
from marketplace.main import app
from marketplace.models.course import Course
from marketplace.services import token_service
from marketplace.services.payment_gateway import InMemoryPaymentGateway

DEMO_USER = "demo-learner"


def _seed_course(title: str, price: str, lessons: int) -> Course:
    course = Course.new(
        title=title,
        price=Decimal(price),
        lesson_count=lessons,
        short_description=f"{title}, in {lessons} lessons",
        thumbnail=None,
    )
    asyncio.run(dependencies.course_repo.add(course))
    return course


def main() -> None:
    client = TestClient(app)
    gateway = dependencies.payment_gateway
    assert isinstance(gateway, InMemoryPaymentGateway), "unset STRIPE_SECRET_KEY first"

    token = token_service.create_access_token(sub=DEMO_USER)
    headers = {"Authorization": f"Bearer {token}"}

    # ── Seed data ───────────────────────────────────────────────────
    intro = _seed_course("Python Basics", "0.00", 4)
    paid = _seed_course("Async Python", "49.00", 8)

    # ── Step 1: free enrollment ─────────────────────────────────────
    r = client.post(
        "/v1/enrollments",
        json={"course_id": str(intro.id), "payment_method": "free"},
        headers=headers,
    )
    print(f"1. POST /v1/enrollments (free)     → {r.status_code}  {r.json()['status']}")

    # ── Step 2: same course again ───────────────────────────────────
    r = client.post(
        "/v1/enrollments",
        json={"course_id": str(intro.id), "payment_method": "free"},
        headers=headers,
    )
    print(f"2. POST /v1/enrollments (again)    → {r.status_code}  {r.json()['detail']['code']}")

    # ── Step 3: checkout enrollment ─────────────────────────────────
    r = client.post(
        "/v1/enrollments",
        json={"course_id": str(paid.id), "payment_method": "stripe"},
        headers=headers,
    )
    session_id = r.json()["session_id"]
    print(
        f"3. POST /v1/enrollments (stripe)   → {r.status_code}  "
        f"redirect={r.json()['redirect_url']}"
    )

    # ── Step 4: verify before paying ────────────────────────────────
    r = client.post("/v1/enrollments/verify", json={"session_id": session_id}, headers=headers)
    print(f"4. POST /v1/enrollments/verify     → {r.status_code}  {r.json()['detail']['code']}")

    # ── Step 5: provider confirms payment via webhook ───────────────
    gateway.mark_paid(session_id)
    event = {
        "id": "evt_demo",
        "type": "checkout.session.completed",
        "data": {"object": {"id": session_id, "object": "checkout.session"}},
    }
    r = client.post("/v1/webhooks/stripe", content=json.dumps(event).encode())
    print(f"5. POST /v1/webhooks/stripe        → {r.status_code}  {r.json()}")

    # ── Step 6: browser redirect lands after the webhook ────────────
    r = client.post("/v1/enrollments/verify", json={"session_id": session_id}, headers=headers)
    print(
        f"6. POST /v1/enrollments/verify     → {r.status_code}  "
        f"newly_completed={r.json()['newly_completed']}"
    )

    # ── Step 7: watch two lessons, one of them twice ────────────────
    for lesson in (0, 3, 3):
        r = client.post(
            f"/v1/enrollments/{paid.id}/progress",
            json={"lesson_index": lesson},
            headers=headers,
        )
    print(
        f"7. POST .../progress (0, 3, 3)     → {r.status_code}  "
        f"{r.json()['completion_percentage']}%"
    )

    # ── Step 8: my courses ──────────────────────────────────────────
    r = client.get("/v1/enrollments", headers=headers)
    titles = [item["course"]["title"] for item in r.json()]
    print(f"8. GET  /v1/enrollments            → {r.status_code}  {titles}")

    students = asyncio.run(dependencies.course_repo.get_by_id(paid.id)).students_enrolled
    print(f"\n'{paid.title}' students_enrolled={students}")
    print("All steps completed.")


if __name__ == "__main__":
    main()
