from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient


SUBSCRIPTION_BODY = {
    "ownerId": "client-1",
    "ownerEmail": "client@example.com",
    "planId": "plan_pro",
    "planName": "Pro",
    "amount": "29.99",
    "processor": "stripe",
    "paymentMethodId": "pm_card_visa",
}


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_subscription_billing_flow(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        created = await client.post("/api/v1/subscriptions", json={**SUBSCRIPTION_BODY, "trialDays": 7})
        assert created.status_code == 201, created.text
        subscription = created.json()
        assert subscription["status"] == "trialing"
        subscription_id = subscription["subscriptionId"]

        detail = (await client.get(f"/api/v1/subscriptions/{subscription_id}")).json()
        reference = detail["processorSubscriptionId"]
        assert detail["trialEnd"]

        event = {
            "processorSubscriptionId": reference,
            "invoiceId": "in_001",
            "amount": "29.99",
            "status": "paid",
            "paymentDate": "2024-03-08T12:00:00Z",
        }
        paid = await client.post("/api/v1/subscriptions/payments", json=event)
        replay = await client.post("/api/v1/subscriptions/payments", json=event)

        assert paid.status_code == 200, paid.text
        assert paid.json()["status"] == "payment_succeeded"
        assert paid.json()["pointsAwarded"] == 59
        assert replay.status_code == 200
        assert replay.json()["status"] == "already_processed"
        assert replay.json()["pointsAwarded"] == 0

        detail = (await client.get(f"/api/v1/subscriptions/{subscription_id}", params={"owner_id": "client-1"})).json()
        assert detail["status"] == "active"
        assert detail["currentPeriodEnd"].startswith("2024-04-08")
        assert detail["nextBillingDate"].startswith("2024-05-08")
        assert [invoice["invoiceId"] for invoice in detail["invoices"]] == ["in_001"]
        assert detail["invoices"][0]["status"] == "paid"


@pytest.mark.asyncio
async def test_failed_billing_event_marks_past_due(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        subscription_id = (await client.post("/api/v1/subscriptions", json=SUBSCRIPTION_BODY)).json()["subscriptionId"]
        reference = (await client.get(f"/api/v1/subscriptions/{subscription_id}")).json()["processorSubscriptionId"]

        failed = await client.post(
            "/api/v1/subscriptions/payments",
            json={
                "processorSubscriptionId": reference,
                "invoiceId": "in_002",
                "amount": "29.99",
                "status": "failed",
                "failureReason": "insufficient_funds",
            },
        )
        unknown = await client.post(
            "/api/v1/subscriptions/payments",
            json={"processorSubscriptionId": "sub_nope", "invoiceId": "in_1", "amount": "1", "status": "paid"},
        )
        detail = (await client.get(f"/api/v1/subscriptions/{subscription_id}")).json()

    assert failed.json()["status"] == "payment_failed"
    assert unknown.status_code == 404
    assert detail["status"] == "past_due"
    assert detail["invoices"][0]["failureReason"] == "insufficient_funds"


@pytest.mark.asyncio
async def test_create_subscription_errors(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        unsupported = await client.post("/api/v1/subscriptions", json={**SUBSCRIPTION_BODY, "processor": "bitcoin"})
        missing = await client.post(
            "/api/v1/subscriptions",
            json={key: value for key, value in SUBSCRIPTION_BODY.items() if key != "paymentMethodId"},
        )

    assert unsupported.status_code == 400
    assert unsupported.json()["detail"]["errorCode"] == "unsupported_processor"
    assert missing.status_code == 422


@pytest.mark.asyncio
async def test_list_owner_subscriptions(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        await client.post("/api/v1/subscriptions", json=SUBSCRIPTION_BODY)
        await client.post("/api/v1/subscriptions", json={**SUBSCRIPTION_BODY, "planId": "plan_team", "planName": "Team"})
        await client.post("/api/v1/subscriptions", json={**SUBSCRIPTION_BODY, "ownerId": "client-2"})

        mine = await client.get("/api/v1/subscriptions", params={"owner_id": "client-1"})
        nobody = await client.get("/api/v1/subscriptions", params={"owner_id": "client-404"})

    assert mine.status_code == 200
    assert sorted(item["planId"] for item in mine.json()) == ["plan_pro", "plan_team"]
    assert nobody.json() == []


@pytest.mark.asyncio
async def test_update_and_cancel_subscription(app_with_db, processors) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        subscription_id = (await client.post("/api/v1/subscriptions", json=SUBSCRIPTION_BODY)).json()["subscriptionId"]

        updated = await client.patch(
            f"/api/v1/subscriptions/{subscription_id}",
            json={"ownerId": "client-1", "amount": "39.99", "planName": "Pro Plus"},
        )
        wrong_owner = await client.post(
            f"/api/v1/subscriptions/{subscription_id}/cancel",
            json={"ownerId": "client-2", "immediate": True},
        )
        deferred = await client.post(
            f"/api/v1/subscriptions/{subscription_id}/cancel",
            json={"ownerId": "client-1", "reason": "Switching plans"},
        )
        immediate = await client.post(
            f"/api/v1/subscriptions/{subscription_id}/cancel",
            json={"ownerId": "client-1", "immediate": True},
        )
        hidden = await client.get(f"/api/v1/subscriptions/{subscription_id}", params={"owner_id": "client-2"})

    assert updated.status_code == 200, updated.text
    assert updated.json()["amount"] == 39.99
    assert wrong_owner.status_code == 404
    assert deferred.json()["cancelAtPeriodEnd"] is True
    assert deferred.json()["status"] == "active"
    assert immediate.json()["status"] == "canceled"
    assert immediate.json()["canceledAt"]
    assert hidden.status_code == 404
    assert processors["stripe"].operations() == [
        "create_subscription",
        "update_subscription",
        "cancel_subscription",
        "cancel_subscription",
    ]
