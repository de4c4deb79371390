"""Admin and scheduler endpoints: settlement, deposits, settings and reconciliation."""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from gavel.models import Auction, Bid
from gavel.timeutils import utcnow
from httpx import AsyncClient

CRON = {"x-cron-secret": "cron-test-secret"}


@pytest.fixture
async def ended_auction(db, make_auction, make_deposit, fake_stripe):
    now = utcnow()
    auction = await make_auction(start_at=now - timedelta(days=2), end_at=now - timedelta(minutes=1))
    winner = uuid.uuid4()
    await make_deposit(auction, winner, fake=fake_stripe)
    db.add(
        Bid(
            auction_id=auction.id,
            bidder_id=winner,
            amount_cad=Decimal("1100.00"),
            created_at=now - timedelta(minutes=30),
        )
    )
    await db.commit()
    return auction


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_settle_with_cron_secret(client: AsyncClient, db, ended_auction):
    response = await client.post("/admin/auctions/settle", headers=CRON)

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["successful"] == 1
    assert body["auctions"][0]["outcome"] == "sold"
    auction = await db.get(Auction, ended_auction.id, populate_existing=True)
    assert auction.processed_at is not None


@pytest.mark.asyncio
async def test_settle_single_auction_as_admin(client: AsyncClient, auth, ended_auction):
    response = await client.post(
        "/admin/auctions/settle",
        params={"auction_id": str(ended_auction.id)},
        headers=auth.admin(),
    )
    assert response.status_code == 200
    assert [a["auction_id"] for a in response.json()["auctions"]] == [str(ended_auction.id)]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "headers",
    [{}, {"x-cron-secret": "wrong"}],
)
async def test_settle_requires_credentials(client: AsyncClient, headers):
    response = await client.post("/admin/auctions/settle", headers=headers)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_bidder_token_is_not_admin(client: AsyncClient, auth):
    response = await client.post("/admin/auctions/settle", headers=auth.bidder(uuid.uuid4()))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_non_admin_role_is_forbidden(client: AsyncClient, auth):
    token = auth.token(uuid.uuid4(), type="admin", role="support")
    response = await client.get(
        "/admin/settings/auction", headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_settlement_status(client: AsyncClient, auth, ended_auction):
    await client.post("/admin/auctions/settle", headers=CRON)

    response = await client.get(
        f"/admin/auctions/{ended_auction.id}/settlement", headers=auth.admin()
    )

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] is True
    assert body["deposits"] == {"captured": 1}
    assert body["order"]["total_cad"] == "1100.00"
    assert body["order"]["remaining_balance_cad"] == "1000.00"


@pytest.mark.asyncio
async def test_list_and_act_on_deposits(client: AsyncClient, auth, make_auction, make_deposit, fake_stripe):
    auction = await make_auction()
    deposit = await make_deposit(auction, uuid.uuid4(), fake=fake_stripe)
    await make_deposit(auction, uuid.uuid4(), status="failed")

    listed = await client.get(
        "/admin/deposits",
        params={"auction_id": str(auction.id), "status": "authorized"},
        headers=auth.admin(),
    )
    assert [d["id"] for d in listed.json()] == [str(deposit.id)]

    held = await client.post(
        f"/admin/deposits/{deposit.id}/actions",
        json={"action": "hold", "note": "chargeback review"},
        headers=auth.admin(),
    )
    assert held.status_code == 200
    assert held.json()["deposit"]["admin_hold"] is True

    released = await client.post(
        f"/admin/deposits/{deposit.id}/actions",
        json={"action": "release"},
        headers=auth.admin(),
    )
    assert released.json()["deposit"]["status"] == "cancelled"

    again = await client.post(
        f"/admin/deposits/{deposit.id}/actions",
        json={"action": "forfeit"},
        headers=auth.admin(),
    )
    assert again.status_code == 409
    assert again.json()["code"] == "invalid_deposit_transition"


@pytest.mark.asyncio
async def test_unknown_deposit_action_is_rejected(client: AsyncClient, auth):
    response = await client.post(
        f"/admin/deposits/{uuid.uuid4()}/actions",
        json={"action": "void"},
        headers=auth.admin(),
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_settings_update_invalidates_display_cache(client: AsyncClient, auth, make_auction):
    now = utcnow()
    auction = await make_auction(start_at=now - timedelta(hours=1), end_at=now + timedelta(hours=1))
    before = await client.get(f"/v1/auctions/{auction.id}/state")
    assert before.json()["soft_close_seconds"] == 120

    updated = await client.put(
        "/admin/settings/auction",
        json={"soft_close_seconds": 60, "min_increment_value": "10"},
        headers=auth.admin(),
    )
    assert updated.status_code == 200
    assert updated.json()["settings"]["soft_close_seconds"] == 60

    current = await client.get("/admin/settings/auction", headers=auth.admin())
    assert current.json()["settings"]["soft_close_seconds"] == 60
    assert current.json()["defaults"]["soft_close_seconds"] == 120

    after = await client.get(f"/v1/auctions/{auction.id}/state")
    assert after.json()["soft_close_seconds"] == 60
    assert after.json()["min_next_bid"] == "1010.00"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("payload", "code"),
    [
        ({"soft_close_seconds": -1}, "invalid_setting"),
        ({"min_increment_strategy": "auction"}, "invalid_setting"),
        ({"deposit_percent": "1.5"}, "invalid_setting"),
        ({"bogus": 1}, "unknown_setting"),
    ],
)
async def test_settings_update_validation(client: AsyncClient, auth, payload, code):
    response = await client.put("/admin/settings/auction", json=payload, headers=auth.admin())
    assert response.status_code == 400
    assert response.json()["code"] == code


@pytest.mark.asyncio
async def test_reconcile_with_cron_secret(client: AsyncClient, auth, fake_stripe):
    response = await client.post("/admin/payments/reconcile", headers=CRON)
    assert response.status_code == 200
    assert response.json()["trigger"] == "cron"
    assert response.json()["status"] == "ok"

    metrics = await client.get("/admin/payments/reconciliation", headers=auth.admin())
    assert metrics.status_code == 200
    assert metrics.json()["recent_actions"][0]["action"] == "reconciliation.run"
