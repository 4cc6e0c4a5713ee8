import asyncio
import logging
from time import time
from typing import NoReturn

import sentry_sdk
from aiohttp import web

from tween.tep.app.config import (
    EventPublisherAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
    TransferLedgerAppKey,
)
from tween.tep.app.metrics import MetricsClient
from tween.tep.ledger import LedgerError, TransferLedgerClient
from tween.tep.rooms import P2P_STATUS_EVENT, EventPublisher, p2p_status_content

logger = logging.getLogger(__name__)


class TaskProcessor:
    """
    Generic task processor with timing, metrics, and error handling.
    """

    def __init__(self, metrics_client: MetricsClient, worker_id: str, task_type: str):
        self.metrics_client = metrics_client
        self.worker_id = worker_id
        self.task_type = task_type

    async def process_task(self, task_func, *args, **kwargs) -> bool:
        """
        Run one unit of work with timing and metrics.
        Returns True on success, False on failure.
        """
        start_time = time()

        try:
            await task_func(*args, **kwargs)
            return True
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error processing %s task", self.task_type)

            self.metrics_client.increment(
                f"tep.task.{self.task_type}.exception",
                1,
                tag_dict={"exception": type(e).__name__, "worker_id": self.worker_id},
            )
            return False
        finally:
            self.metrics_client.timer(
                f"tep.task.{self.task_type}.time",
                time() - start_time,
                tag_dict={"worker_id": self.worker_id},
            )
            self.metrics_client.increment(
                f"tep.task.{self.task_type}.count",
                1,
                tag_dict={"worker_id": self.worker_id},
            )


class ExpiryReaper:
    """
    Expires transfers past their confirmation deadline and tells their rooms.

    Safe to run on every replica at once: the ledger client's expiry markers make sure each
    transfer is rejected, and therefore announced, by exactly one sweep.
    """

    def __init__(
        self,
        ledger_client: TransferLedgerClient,
        event_publisher: EventPublisher,
        metrics_client: MetricsClient,
    ) -> None:
        self.ledger_client = ledger_client
        self.event_publisher = event_publisher
        self.metrics_client = metrics_client

    async def sweep(self) -> int:
        try:
            expired = await self.ledger_client.expire_sweep()
        except LedgerError as e:
            logger.warning("Expiry sweep skipped: %s", e)
            return 0

        for transfer in expired:
            if not transfer.room_id:
                continue
            await self.event_publisher.publish(
                transfer.room_id,
                P2P_STATUS_EVENT,
                p2p_status_content(
                    transfer.transfer_id,
                    "expired",
                    rejected_at=transfer.rejected_at,
                    refund_initiated=True,
                ),
            )

        if expired:
            logger.info("Expired %d transfers", len(expired))
        self.metrics_client.gauge("tep.task.expiry_reaper.expired", len(expired))
        return len(expired)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the health score by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)


async def expiry_reaper_task(app: web.Application) -> NoReturn:
    """
    Background process that rejects transfers nobody confirmed in time.
    """
    logger.info("Starting expiry reaper task")

    settings = app[SettingsAppKey]
    metrics_client = app[MetricsClientAppKey]
    health_gauge = app[HealthGaugeAppKey]

    reaper = ExpiryReaper(app[TransferLedgerAppKey], app[EventPublisherAppKey], metrics_client)
    task_processor = TaskProcessor(metrics_client, settings.worker_id, "expiry_reaper")

    while True:
        await asyncio.sleep(settings.expiry_reaper_interval)
        if not await task_processor.process_task(reaper.sweep):
            await health_gauge.record_error()
