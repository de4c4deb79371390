"""Background maintenance loop scheduling."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from api.services.keyed_locks import KeyedLocks
from api.services.maintenance import run_maintenance_worker


@pytest.fixture
def jobs(monkeypatch):
    settle = AsyncMock()
    reconcile = AsyncMock()
    sessions: list[str] = []

    @asynccontextmanager
    async def fake_session():
        sessions.append("db")
        yield "db"

    monkeypatch.setattr("api.services.maintenance.process_ended_auctions", settle)
    monkeypatch.setattr("api.services.maintenance.run_payment_reconciliation", reconcile)
    monkeypatch.setattr("api.services.maintenance.get_session", fake_session)
    return settle, reconcile, sessions


async def _run_briefly(locks: KeyedLocks) -> None:
    stop = asyncio.Event()
    task = asyncio.create_task(run_maintenance_worker(stop, locks=locks, poll_interval_seconds=0.01))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
async def test_runs_settlement_and_reconciliation_on_their_intervals(jobs):
    settle, reconcile, sessions = jobs
    locks = KeyedLocks()

    await _run_briefly(locks)

    # Both intervals are far longer than the test, so each job runs once.
    assert settle.await_count == 1
    assert reconcile.await_count == 1
    assert settle.await_args.kwargs["locks"] is locks
    assert reconcile.await_args.kwargs["trigger"] == "scheduled"
    assert sessions == ["db", "db"]


@pytest.mark.asyncio
async def test_failed_job_does_not_stop_the_loop(jobs):
    settle, reconcile, _ = jobs
    settle.side_effect = RuntimeError("database unavailable")

    await _run_briefly(KeyedLocks())

    # Settlement is retried on every poll until it succeeds.
    assert settle.await_count > 1
    assert reconcile.await_count == 1
