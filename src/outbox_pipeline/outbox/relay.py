"""
Event relay worker for the transactional outbox.

The relay leases pending rows, publishes them to the partition chosen by the
partition router and marks them sent once the broker acknowledges. Delivery to
the broker is at-least-once: a crash between the ack and ``mark_sent`` leaves
the lease to expire, and the row is published again by whichever relay leases
it next.

Rows sharing a partition key are published one after another in creation
order. Different keys are published concurrently, up to
``RELAY_CONCURRENCY`` at a time.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from contextlib import suppress
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from outbox_pipeline.codec import EnvelopeCodec
from outbox_pipeline.deadletter import DeadLetterRecord
from outbox_pipeline.envelope import EventEnvelope
from outbox_pipeline.error_handling import (
    BrokerPublishError,
    MalformedEnvelopeError,
    PipelineError,
    RepartitionError,
    UnsupportedSchemaError,
    raise_kafka_ack_timeout,
    raise_kafka_publish_error,
)
from outbox_pipeline.logging_utils import create_service_logger

if TYPE_CHECKING:
    from outbox_pipeline.config import PipelineSettings
    from outbox_pipeline.metrics import PipelineMetrics
    from outbox_pipeline.outbox.models import OutboxRow
    from outbox_pipeline.outbox.protocols import OutboxStoreProtocol
    from outbox_pipeline.partitioning import PartitionRouter
    from outbox_pipeline.protocols import (
        AlertSinkProtocol,
        BrokerPublisherProtocol,
        DeadLetterSinkProtocol,
        RedisClientProtocol,
    )

logger = create_service_logger("outbox_pipeline.outbox.relay")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RowOutcome(str, Enum):
    SENT = "sent"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    # Not attempted; the lease is released at the end of the batch
    HELD = "held"
    # Lease expired and was taken over by another relay; nothing more is done with the key
    LOST = "lost"


class EventRelayWorker:
    """
    Worker that leases outbox rows and publishes them to Kafka.

    ``start``/``stop`` run the polling loop as a background task;
    ``process_batch`` runs a single lease-publish cycle and is what tests and
    one-shot tooling call directly.
    """

    def __init__(
        self,
        outbox_store: OutboxStoreProtocol,
        publisher: BrokerPublisherProtocol,
        router: PartitionRouter,
        settings: PipelineSettings,
        dead_letter_sink: DeadLetterSinkProtocol,
        alert_sink: AlertSinkProtocol,
        codec: EnvelopeCodec | None = None,
        redis_client: RedisClientProtocol | None = None,
        metrics: PipelineMetrics | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.outbox_store = outbox_store
        self.publisher = publisher
        self.router = router
        self.settings = settings
        self.dead_letter_sink = dead_letter_sink
        self.alert_sink = alert_sink
        self.codec = codec or EnvelopeCodec(
            supported_major=settings.SUPPORTED_SCHEMA_MAJOR,
            service_name=settings.SERVICE_NAME,
        )
        self.redis_client = redis_client
        self.metrics = metrics
        self._clock = clock

        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._verified_topics: set[str] = set()
        self._last_purge: float | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the relay loop as a background task."""
        if self.is_running:
            logger.warning("Event relay worker already running")
            return

        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="outbox-relay")
        logger.info("Event relay worker started")

    async def stop(self) -> None:
        """
        Stop fetching, let in-flight publishes finish and release unstarted rows.

        The loop gets ``SHUTDOWN_TIMEOUT_SECONDS`` to wind down before it is
        cancelled; cancellation still releases the current batch's leases.
        """
        if self._task is None:
            return

        self._stopping.set()
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(asyncio.shield(task), self.settings.SHUTDOWN_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning(
                "Event relay worker did not stop in time, cancelling",
                extra={"timeout_seconds": self.settings.SHUTDOWN_TIMEOUT_SECONDS},
            )
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        logger.info("Event relay worker stopped")

    async def _run(self) -> None:
        logger.info(
            "Event relay worker starting",
            extra={
                "poll_interval": self.settings.OUTBOX_POLL_INTERVAL_SECONDS,
                "batch_size": self.settings.OUTBOX_BATCH_SIZE,
                "concurrency": self.settings.RELAY_CONCURRENCY,
                "max_attempt_count": self.settings.MAX_ATTEMPT_COUNT,
            },
        )

        while not self._stopping.is_set():
            try:
                completed = await self.process_batch()
                await self._maybe_purge()
                if completed == 0:
                    await self._wait_for_work()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Error in event relay worker main loop",
                    extra={"error": str(e)},
                    exc_info=True,
                )
                await self._sleep_unless_stopping(
                    self.settings.OUTBOX_ERROR_RETRY_INTERVAL_SECONDS
                )

    async def process_batch(self) -> int:
        """
        Lease one batch and publish it.

        Returns:
            Number of rows whose state changed (sent, rescheduled or
            dead-lettered).
        """
        lease_duration = timedelta(seconds=self.settings.LEASE_DURATION_SECONDS)
        lease_deadline = self._clock() + lease_duration
        lease_token, rows = await self.outbox_store.fetch_pending(
            self.settings.OUTBOX_BATCH_SIZE, lease_duration
        )
        if self.metrics is not None:
            self.metrics.relay_batch_size.observe(len(rows))
        if not rows:
            return 0

        by_key: dict[str, list[OutboxRow]] = {}
        for row in rows:
            by_key.setdefault(row.partition_key, []).append(row)

        unfinished = {row.id for row in rows}
        lost: set[int] = set()
        semaphore = asyncio.Semaphore(self.settings.RELAY_CONCURRENCY)

        async def relay_key(key_rows: list[OutboxRow]) -> None:
            async with semaphore:
                await self._relay_key(lease_token, lease_deadline, key_rows, unfinished, lost)

        try:
            results = await asyncio.gather(
                *(relay_key(key_rows) for key_rows in by_key.values()),
                return_exceptions=True,
            )
        finally:
            if unfinished:
                await self._release(lease_token, unfinished)

        for key, result in zip(by_key, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Relay failed for partition key, remaining rows released",
                    extra={"partition_key": key, "error": str(result)},
                    exc_info=result,
                )

        completed = len(rows) - len(unfinished) - len(lost)
        logger.info(
            "Relay batch finished",
            extra={
                "leased": len(rows),
                "completed": completed,
                "lost": len(lost),
                "keys": len(by_key),
            },
        )
        return completed

    async def _relay_key(
        self,
        lease_token: str,
        lease_deadline: datetime,
        key_rows: list[OutboxRow],
        unfinished: set[int],
        lost: set[int],
    ) -> None:
        budget = timedelta(seconds=self.settings.row_publish_budget_seconds)
        for row in key_rows:
            if self._stopping.is_set():
                return
            if self._clock() + budget >= lease_deadline:
                logger.warning(
                    "Lease too close to expiry, leaving remaining rows for the next batch",
                    extra={"partition_key": row.partition_key, "lease_token": lease_token},
                )
                return
            outcome = await self._relay_row(lease_token, row)
            if outcome is RowOutcome.HELD:
                return
            if outcome is RowOutcome.LOST:
                unfinished.discard(row.id)
                lost.add(row.id)
                return
            unfinished.discard(row.id)
            if outcome is RowOutcome.RETRY_SCHEDULED:
                # Newer rows for this key wait behind the one being retried
                return

    async def _relay_row(self, lease_token: str, row: OutboxRow) -> RowOutcome:
        try:
            envelope = self.codec.decode(row.envelope)
        except (MalformedEnvelopeError, UnsupportedSchemaError) as e:
            return await self._dead_letter(lease_token, row, e, envelope=None)

        try:
            await self._ensure_partitions_verified(row.topic)
            partition = self.router.partition(envelope.partition_key)
            await self._publish(row, envelope, partition)
        except RepartitionError as e:
            await self.alert_sink.alert(
                "Outbox relay refusing to publish to repartitioned topic",
                stage="relay",
                topic=row.topic,
                error=e.to_dict(),
            )
            return RowOutcome.HELD
        except BrokerPublishError as e:
            return await self._handle_publish_failure(lease_token, row, envelope, e)

        if not await self.outbox_store.mark_sent([row.id], lease_token):
            return self._lease_lost(row, "mark_sent")
        logger.debug(
            "Published outbox event",
            extra={
                "event_id": row.event_id,
                "event_type": row.event_type,
                "topic": row.topic,
                "partition": partition,
            },
        )
        if self.metrics is not None:
            self.metrics.relay_published.labels(topic=row.topic).inc()
        return RowOutcome.SENT

    async def _ensure_partitions_verified(self, topic: str) -> None:
        if topic in self._verified_topics:
            return
        try:
            actual = await self.publisher.partition_count(topic)
        except PipelineError:
            raise
        except Exception as e:
            raise_kafka_publish_error(
                service=self.settings.SERVICE_NAME,
                operation="partition_count",
                topic=topic,
                message=f"Could not read partition metadata: {e.__class__.__name__}",
                error_details=str(e),
            )
        if actual is not None:
            self.router.verify_partition_count(topic, actual)
            self._verified_topics.add(topic)

    async def _publish(self, row: OutboxRow, envelope: EventEnvelope, partition: int) -> None:
        started = time.perf_counter()
        try:
            async with asyncio.timeout(self.settings.PUBLISH_TIMEOUT_SECONDS):
                await self.publisher.publish(
                    row.topic,
                    row.envelope.encode("utf-8"),
                    key=envelope.partition_key.encode("utf-8"),
                    partition=partition,
                    headers={"event_id": envelope.event_id, "event_type": envelope.event_type},
                )
        except TimeoutError:
            raise_kafka_ack_timeout(
                service=self.settings.SERVICE_NAME,
                operation="relay_publish",
                topic=row.topic,
                timeout_seconds=self.settings.PUBLISH_TIMEOUT_SECONDS,
                event_id=row.event_id,
            )
        except PipelineError:
            raise
        except Exception as e:
            raise_kafka_publish_error(
                service=self.settings.SERVICE_NAME,
                operation="relay_publish",
                topic=row.topic,
                message=f"Publish failed: {e.__class__.__name__}",
                event_id=row.event_id,
                error_details=str(e),
            )
        if self.metrics is not None:
            self.metrics.relay_publish_duration.labels(topic=row.topic).observe(
                time.perf_counter() - started
            )

    async def _handle_publish_failure(
        self,
        lease_token: str,
        row: OutboxRow,
        envelope: EventEnvelope,
        error: BrokerPublishError,
    ) -> RowOutcome:
        attempt_count = row.attempt_count + 1
        if self.metrics is not None:
            self.metrics.relay_publish_failures.labels(
                topic=row.topic, error_code=error.error_code
            ).inc()

        if attempt_count >= self.settings.MAX_ATTEMPT_COUNT:
            return await self._dead_letter(lease_token, row, error, envelope=envelope)

        delay = self.settings.backoff_seconds(attempt_count)
        updated = await self.outbox_store.mark_failed(
            [row.id],
            lease_token,
            str(error),
            self._clock() + timedelta(seconds=delay),
        )
        if not updated:
            return self._lease_lost(row, "mark_failed")
        logger.warning(
            "Outbox publish failed, retry scheduled",
            extra={
                "event_id": row.event_id,
                "topic": row.topic,
                "attempt_count": attempt_count,
                "retry_in_seconds": delay,
                "error": str(error),
            },
        )
        return RowOutcome.RETRY_SCHEDULED

    async def _dead_letter(
        self,
        lease_token: str,
        row: OutboxRow,
        error: PipelineError,
        envelope: EventEnvelope | None,
    ) -> RowOutcome:
        attempt_count = row.attempt_count + 1
        record = DeadLetterRecord.from_failure(
            stage="relay",
            topic=row.topic,
            envelope=envelope if envelope is not None else row.envelope,
            error=error,
            attempt_count=attempt_count,
            service=self.settings.SERVICE_NAME,
        )

        sink_error: str | None = None
        try:
            await self.dead_letter_sink.record(record)
        except Exception as e:
            # The FAILED row stays in the outbox as the durable copy.
            sink_error = str(e)
            logger.error(
                "Dead-letter sink write failed",
                extra={"event_id": row.event_id, "error": sink_error},
                exc_info=True,
            )

        if not await self.outbox_store.mark_dead_lettered([row.id], lease_token, str(error)):
            return self._lease_lost(row, "mark_dead_lettered")
        if self.metrics is not None:
            self.metrics.relay_dead_lettered.labels(topic=row.topic).inc()

        await self.alert_sink.alert(
            "Outbox event dead-lettered",
            stage="relay",
            event_id=row.event_id,
            event_type=row.event_type,
            topic=row.topic,
            attempt_count=attempt_count,
            error_code=error.error_code,
            failure_reason=str(error),
            sink_error=sink_error,
        )
        return RowOutcome.DEAD_LETTERED

    def _lease_lost(self, row: OutboxRow, operation: str) -> RowOutcome:
        logger.warning(
            "Outbox lease lost to another relay, stopping partition key",
            extra={
                "event_id": row.event_id,
                "partition_key": row.partition_key,
                "operation": operation,
            },
        )
        return RowOutcome.LOST

    async def _release(self, lease_token: str, row_ids: set[int]) -> None:
        try:
            released = await self.outbox_store.release(sorted(row_ids), lease_token)
        except PipelineError as e:
            # Leases expire on their own; the rows are retried after that.
            logger.error(
                "Failed to release outbox leases",
                extra={"lease_token": lease_token, "rows": len(row_ids), "error": str(e)},
            )
            return
        logger.debug("Released outbox leases", extra={"released": released})

    async def _maybe_purge(self) -> None:
        now = time.monotonic()
        if (
            self._last_purge is not None
            and now - self._last_purge < self.settings.OUTBOX_PURGE_INTERVAL_SECONDS
        ):
            return
        self._last_purge = now

        cutoff = self._clock() - timedelta(days=self.settings.OUTBOX_RETENTION_DAYS)
        await self.outbox_store.purge_sent(cutoff)
        if self.metrics is not None:
            self.metrics.outbox_pending.set(await self.outbox_store.count_pending())

    async def _wait_for_work(self) -> None:
        """Block until a wake notification, the poll interval, or stop."""
        timeout = self.settings.OUTBOX_POLL_INTERVAL_SECONDS
        if self.redis_client is None or not self.settings.ENABLE_WAKE_NOTIFICATIONS:
            await self._sleep_unless_stopping(timeout)
            return

        wake = asyncio.create_task(self.redis_client.blpop([self.settings.wake_key], timeout))
        stop = asyncio.create_task(self._stopping.wait())
        done, pending = await asyncio.wait(
            {wake, stop}, timeout=timeout + 1, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        if wake in done and wake.exception() is not None:
            logger.warning(
                "Relay wake-up wait failed, falling back to polling",
                extra={"error": str(wake.exception())},
            )
            await self._sleep_unless_stopping(timeout)

    async def _sleep_unless_stopping(self, seconds: float) -> None:
        with suppress(TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), seconds)
