"""
Tests for the background task processing and the transfer expiry reaper.
"""

import pytest

from tween.tep.app.tasks import ExpiryReaper, TaskProcessor
from tween.tep.ledger import LedgerError, Transfer
from tests.test_helpers import RecordingPublisher


class StubLedgerClient:
    def __init__(self, expired=None, error=None):
        self.expired = expired or []
        self.error = error
        self.sweeps = 0

    async def expire_sweep(self):
        self.sweeps += 1
        if self.error is not None:
            raise self.error
        return self.expired


@pytest.fixture
def publisher():
    return RecordingPublisher()


class TestTaskProcessor:
    """Metrics and error containment around one unit of background work."""

    async def test_success(self, metrics_client):
        processor = TaskProcessor(metrics_client, "worker-1", "expiry_reaper")

        async def work():
            return 3

        assert await processor.process_task(work) is True
        assert metrics_client.count("tep.task.expiry_reaper.count") == 1
        assert metrics_client.count("tep.task.expiry_reaper.exception") == 0
        assert metrics_client.timers[0][0] == "tep.task.expiry_reaper.time"

    async def test_failure_is_contained(self, metrics_client):
        processor = TaskProcessor(metrics_client, "worker-1", "expiry_reaper")

        async def work():
            raise RuntimeError("sweep crashed")

        assert await processor.process_task(work) is False
        assert metrics_client.tags("tep.task.expiry_reaper.exception") == [
            {"exception": "RuntimeError", "worker_id": "worker-1"}
        ]
        assert metrics_client.count("tep.task.expiry_reaper.count") == 1


class TestExpiryReaper:
    """Expired transfers are announced to the rooms they were made in."""

    async def test_announces_expired_room_transfers(self, publisher, metrics_client):
        ledger_client = StubLedgerClient(
            expired=[
                Transfer(
                    transfer_id="p2p_1",
                    status="rejected",
                    room_id="!room:example.org",
                    rejected_at="2026-10-19T12:05:00Z",
                ),
                Transfer(transfer_id="p2p_2", status="rejected"),
            ]
        )
        reaper = ExpiryReaper(ledger_client, publisher, metrics_client)

        assert await reaper.sweep() == 2

        assert len(publisher.events) == 1
        room_id, event_type, content = publisher.events[0]
        assert room_id == "!room:example.org"
        assert event_type == "m.tween.wallet.p2p.status"
        assert content["status"] == "expired"
        assert content["refund_initiated"] is True
        assert content["rejected_at"] == "2026-10-19T12:05:00Z"
        assert metrics_client.gauges["tep.task.expiry_reaper.expired"] == 2

    async def test_nothing_expired(self, publisher, metrics_client):
        reaper = ExpiryReaper(StubLedgerClient(), publisher, metrics_client)

        assert await reaper.sweep() == 0
        assert publisher.events == []

    async def test_unavailable_ledger_skips_the_sweep(self, publisher, metrics_client):
        ledger_client = StubLedgerClient(error=LedgerError.unavailable("HTTP 503"))
        reaper = ExpiryReaper(ledger_client, publisher, metrics_client)

        assert await reaper.sweep() == 0
        assert ledger_client.sweeps == 1
        assert publisher.events == []
