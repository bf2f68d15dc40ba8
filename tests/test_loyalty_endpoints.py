from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from expertpay_api.services.loyalty import LoyaltyLedger


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _seed(session_factory, owner_id: str, points: int) -> str:
    async with session_factory() as session:
        ledger = LoyaltyLedger(session)
        account = await ledger.get_or_create_account(owner_id, identifier=f"{owner_id}@example.com")
        referral_code = account.referral_code
        if points:
            await ledger.add_points(owner_id, points, "Seed")
        return referral_code


@pytest.mark.asyncio
async def test_reward_catalog_is_listed(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.get("/api/v1/loyalty/rewards")

    assert response.status_code == 200
    rewards = {reward["id"]: reward for reward in response.json()}
    assert rewards["DISCOUNT10"]["pointsCost"] == 400
    assert rewards["DISCOUNT10"]["value"] == 10.0
    assert len(rewards) == 5


@pytest.mark.asyncio
async def test_account_profile_is_created_on_first_read(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.get("/api/v1/loyalty/accounts/client-7")

    assert response.status_code == 200
    profile = response.json()
    assert profile["ownerId"] == "client-7"
    assert profile["pointsBalance"] == 0
    assert profile["tier"] == "bronze"
    assert profile["nextTier"] == "silver"
    assert profile["pointsToNextTier"] == 1000
    assert profile["referralCode"]
    assert profile["availableRewards"] == []


@pytest.mark.asyncio
async def test_redeem_reward_and_read_history(app_with_db) -> None:
    app, session_factory = app_with_db
    await _seed(session_factory, "client-1", 1200)

    async with _client(app) as client:
        redeemed = await client.post(
            "/api/v1/loyalty/accounts/client-1/redemptions",
            json={"rewardId": "PERCENT10"},
        )
        profile = (await client.get("/api/v1/loyalty/accounts/client-1")).json()

    assert redeemed.status_code == 201, redeemed.text
    body = redeemed.json()
    assert body["pointsRemaining"] == 700
    assert body["couponCode"].startswith("PERC-")
    assert body["reward"]["id"] == "PERCENT10"

    assert profile["pointsBalance"] == 700
    assert profile["lifetimePoints"] == 1200
    assert profile["tier"] == "bronze"
    assert [entry["delta"] for entry in profile["pointsHistory"]] == [1200, -500]
    assert profile["pointsHistory"][-1]["balanceAfter"] == 700
    assert profile["redeemHistory"][0]["couponCode"] == body["couponCode"]


@pytest.mark.asyncio
async def test_redemption_errors(app_with_db) -> None:
    app, session_factory = app_with_db
    await _seed(session_factory, "client-1", 100)

    async with _client(app) as client:
        too_expensive = await client.post(
            "/api/v1/loyalty/accounts/client-1/redemptions",
            json={"rewardId": "FREE_CONSULT"},
        )
        unknown = await client.post(
            "/api/v1/loyalty/accounts/client-1/redemptions",
            json={"rewardId": "GOLD_BAR"},
        )

    assert too_expensive.status_code == 409
    assert too_expensive.json()["detail"]["errorCode"] == "insufficient_points"
    assert unknown.status_code == 404
    assert unknown.json()["detail"]["errorCode"] == "reward_not_found"


@pytest.mark.asyncio
async def test_referral_endpoint_credits_once(app_with_db) -> None:
    app, session_factory = app_with_db
    code = await _seed(session_factory, "expert-1", 0)

    async with _client(app) as client:
        first = await client.post(
            "/api/v1/loyalty/referrals",
            json={"referralCode": code, "newOwnerId": "client-9", "reference": "signup"},
        )
        repeat = await client.post("/api/v1/loyalty/referrals", json={"referralCode": code, "newOwnerId": "client-9"})
        self_referral = await client.post(
            "/api/v1/loyalty/referrals",
            json={"referralCode": code, "newOwnerId": "expert-1"},
        )
        invalid = await client.post(
            "/api/v1/loyalty/referrals",
            json={"referralCode": "NOPE000000", "newOwnerId": "client-3"},
        )
        referrer = (await client.get("/api/v1/loyalty/accounts/expert-1")).json()

    assert first.status_code == 200, first.text
    assert first.json() == {
        "referrerId": "expert-1",
        "refereeId": "client-9",
        "referrerPoints": 150,
        "refereePoints": 100,
        "alreadyProcessed": False,
    }
    assert repeat.json()["alreadyProcessed"] is True
    assert self_referral.status_code == 400
    assert self_referral.json()["detail"]["errorCode"] == "self_referral"
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["errorCode"] == "invalid_referral_code"
    assert referrer["pointsBalance"] == 150
    assert referrer["referralCount"] == 1
