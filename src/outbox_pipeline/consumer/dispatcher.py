"""
Per-partition consumer dispatcher.

One dispatcher owns one partition and handles one record at a time:

    decode -> claim in dedup store -> look up handler -> invoke (with retries)
    -> confirm claim -> commit offset

The offset is committed only once the record reaches a final outcome
(processed, duplicate or dead-lettered). Anything that leaves the outcome
undecided raises ``DeliveryFailedError`` and the caller must arrange for the
broker to redeliver the record.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from outbox_pipeline.codec import EnvelopeCodec
from outbox_pipeline.deadletter import DeadLetterRecord
from outbox_pipeline.dedup.models import DedupStatus
from outbox_pipeline.envelope import EventEnvelope
from outbox_pipeline.error_enums import ErrorCode
from outbox_pipeline.error_handling import (
    HandlerError,
    MalformedEnvelopeError,
    PipelineError,
    StoreError,
    UnsupportedSchemaError,
    create_error_detail,
    raise_delivery_failed,
)
from outbox_pipeline.logging_utils import create_service_logger, log_event_processing

if TYPE_CHECKING:
    from outbox_pipeline.config import PipelineSettings
    from outbox_pipeline.consumer.handlers import HandlerRegistry
    from outbox_pipeline.metrics import PipelineMetrics
    from outbox_pipeline.protocols import (
        AlertSinkProtocol,
        DeadLetterSinkProtocol,
        DedupStoreProtocol,
    )

logger = create_service_logger("outbox_pipeline.consumer.dispatcher")


class DispatcherState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMMITTING = "committing"
    DEAD_LETTERED = "dead_lettered"


class DeliveryOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class Delivery:
    """One record as delivered by the broker."""

    topic: str
    partition: int
    offset: int
    value: bytes
    key: bytes | None = None


Committer = Callable[[Delivery], Awaitable[None]]


class PartitionDispatcher:
    def __init__(
        self,
        *,
        consumer_group: str,
        registry: HandlerRegistry,
        dedup_store: DedupStoreProtocol,
        dead_letter_sink: DeadLetterSinkProtocol,
        alert_sink: AlertSinkProtocol,
        committer: Committer,
        settings: PipelineSettings,
        codec: EnvelopeCodec | None = None,
        metrics: PipelineMetrics | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.consumer_group = consumer_group
        self.registry = registry
        self.dedup_store = dedup_store
        self.dead_letter_sink = dead_letter_sink
        self.alert_sink = alert_sink
        self.committer = committer
        self.settings = settings
        self.codec = codec or EnvelopeCodec(
            supported_major=settings.SUPPORTED_SCHEMA_MAJOR,
            service_name=settings.SERVICE_NAME,
        )
        self.metrics = metrics
        self._sleep = sleep

        self._state = DispatcherState.IDLE
        self.history: deque[DispatcherState] = deque([DispatcherState.IDLE], maxlen=64)
        self._lock = asyncio.Lock()

    @property
    def state(self) -> DispatcherState:
        return self._state

    def _transition(self, state: DispatcherState) -> None:
        self._state = state
        self.history.append(state)

    async def dispatch(self, delivery: Delivery) -> DeliveryOutcome:
        """
        Process one record to a final outcome and commit its offset.

        Raises:
            DeliveryFailedError: the record must be redelivered; nothing was committed.
        """
        async with self._lock:
            try:
                return await self._dispatch(delivery)
            finally:
                self._transition(DispatcherState.IDLE)

    async def _dispatch(self, delivery: Delivery) -> DeliveryOutcome:
        self._transition(DispatcherState.FETCHING)
        self._transition(DispatcherState.PROCESSING)
        try:
            envelope = self.codec.decode(delivery.value)
        except (MalformedEnvelopeError, UnsupportedSchemaError) as e:
            self._transition(DispatcherState.DEAD_LETTERED)
            await self._dead_letter(delivery, None, e, attempt_count=1, reason="undecodable")
            await self._commit(delivery)
            return DeliveryOutcome.DEAD_LETTERED

        log_event_processing(
            logger,
            "Processing event",
            envelope,
            consumer_group=self.consumer_group,
            topic=delivery.topic,
            partition=delivery.partition,
            offset=delivery.offset,
        )

        if not await self._claim(delivery, envelope):
            if self.metrics is not None:
                self.metrics.consumer_duplicates.labels(consumer_group=self.consumer_group).inc()
            self._transition(DispatcherState.COMMITTING)
            await self._commit(delivery)
            return DeliveryOutcome.DUPLICATE

        try:
            handler = self.registry.get(envelope.event_type)
            if handler is None:
                error = HandlerError(
                    create_error_detail(
                        error_code=ErrorCode.HANDLER_NOT_FOUND,
                        message=f"No handler registered for event type '{envelope.event_type}'",
                        service=self.settings.SERVICE_NAME,
                        operation="dispatch",
                        details={"event_type": envelope.event_type},
                    )
                )
                self._transition(DispatcherState.DEAD_LETTERED)
                await self._dead_letter(
                    delivery, envelope, error, attempt_count=0, reason="no_handler"
                )
                await self._release_claim(envelope)
                await self._commit(delivery)
                return DeliveryOutcome.DEAD_LETTERED

            error, attempts = await self._invoke_with_retries(handler, envelope)
            if error is not None:
                self._transition(DispatcherState.DEAD_LETTERED)
                await self._dead_letter(
                    delivery,
                    envelope,
                    error,
                    attempt_count=attempts,
                    reason="retries_exhausted" if error.retriable else "non_retriable",
                )
                await self._release_claim(envelope)
                await self._commit(delivery)
                return DeliveryOutcome.DEAD_LETTERED
        except BaseException:
            # Undecided outcome: let the redelivery claim the event again
            await self._release_claim(envelope)
            raise

        await self._confirm_claim(envelope)
        self._transition(DispatcherState.COMMITTING)
        await self._commit(delivery)
        if self.metrics is not None:
            self.metrics.consumer_processed.labels(
                consumer_group=self.consumer_group, event_type=envelope.event_type
            ).inc()
        logger.info("Event processed", extra={"offset": delivery.offset})
        return DeliveryOutcome.PROCESSED

    async def _claim(self, delivery: Delivery, envelope: EventEnvelope) -> bool:
        """Return True when this worker owns the event, False for a completed duplicate."""
        try:
            if await self.dedup_store.try_claim(self.consumer_group, envelope.event_id):
                return True
            record = await self.dedup_store.get(self.consumer_group, envelope.event_id)
        except StoreError as e:
            raise_delivery_failed(
                service=self.settings.SERVICE_NAME,
                operation="dedup_claim",
                message="Dedup store unavailable, record will be redelivered",
                event_id=envelope.event_id,
                offset=delivery.offset,
                error=str(e),
            )

        if record is not None and record.status is DedupStatus.COMPLETED:
            logger.info(
                "Duplicate delivery skipped",
                extra={"event_id": envelope.event_id, "offset": delivery.offset},
            )
            return False

        # Another worker holds a live processing claim (e.g. the previous owner
        # of this partition before a rebalance). Skipping would lose the event
        # if that worker fails, so wait for the claim to resolve.
        raise_delivery_failed(
            service=self.settings.SERVICE_NAME,
            operation="dedup_claim",
            message="Event is being processed by another worker",
            event_id=envelope.event_id,
            offset=delivery.offset,
        )

    async def _invoke_with_retries(
        self,
        handler: Callable[[str, dict[str, Any]], Awaitable[Any]],
        envelope: EventEnvelope,
    ) -> tuple[PipelineError | None, int]:
        """
        Run the handler up to MAX_ATTEMPT_COUNT times.

        Returns the last error (None on success) and the number of attempts made.
        A non-retriable ``PipelineError`` ends the attempts immediately.
        """
        max_attempts = self.settings.MAX_ATTEMPT_COUNT
        last_error: PipelineError | None = None

        for attempt in range(1, max_attempts + 1):
            started = time.perf_counter()
            try:
                async with asyncio.timeout(self.settings.HANDLER_TIMEOUT_SECONDS):
                    await handler(envelope.event_type, envelope.data)
                return None, attempt
            except TimeoutError:
                last_error = self._handler_error(
                    envelope,
                    f"Handler timed out after {self.settings.HANDLER_TIMEOUT_SECONDS}s",
                    attempt,
                )
            except PipelineError as e:
                last_error = e
            except Exception as e:
                last_error = self._handler_error(
                    envelope, f"Handler raised {e.__class__.__name__}: {e}", attempt
                )
            finally:
                if self.metrics is not None:
                    self.metrics.handler_duration.labels(event_type=envelope.event_type).observe(
                        time.perf_counter() - started
                    )

            logger.warning(
                "Handler attempt failed",
                extra={
                    "event_id": envelope.event_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": str(last_error),
                },
            )
            if not last_error.retriable:
                return last_error, attempt
            if attempt < max_attempts:
                self._transition(DispatcherState.RETRYING)
                if self.metrics is not None:
                    self.metrics.consumer_retries.labels(
                        consumer_group=self.consumer_group, event_type=envelope.event_type
                    ).inc()
                await self._sleep(self.settings.backoff_seconds(attempt))
                self._transition(DispatcherState.PROCESSING)

        return last_error, max_attempts

    def _handler_error(self, envelope: EventEnvelope, message: str, attempt: int) -> HandlerError:
        return HandlerError(
            create_error_detail(
                error_code=ErrorCode.HANDLER_ERROR,
                message=message,
                service=self.settings.SERVICE_NAME,
                operation="handle_event",
                details={
                    "event_type": envelope.event_type,
                    "event_id": envelope.event_id,
                    "attempt": attempt,
                },
            )
        )

    async def _dead_letter(
        self,
        delivery: Delivery,
        envelope: EventEnvelope | None,
        error: PipelineError,
        *,
        attempt_count: int,
        reason: str,
    ) -> None:
        record = DeadLetterRecord.from_failure(
            stage="consumer",
            topic=delivery.topic,
            envelope=envelope if envelope is not None else delivery.value,
            error=error,
            attempt_count=attempt_count,
            service=self.settings.SERVICE_NAME,
            consumer_group=self.consumer_group,
            partition=delivery.partition,
            offset=delivery.offset,
        )
        try:
            await self.dead_letter_sink.record(record)
        except Exception as e:
            raise_delivery_failed(
                service=self.settings.SERVICE_NAME,
                operation="dead_letter",
                message="Dead-letter sink unavailable, record will be redelivered",
                event_id=record.event_id,
                offset=delivery.offset,
                error=str(e),
            )

        if self.metrics is not None:
            self.metrics.consumer_dead_lettered.labels(
                consumer_group=self.consumer_group, reason=reason
            ).inc()
        await self.alert_sink.alert(
            "Consumer dead-lettered event",
            stage="consumer",
            consumer_group=self.consumer_group,
            event_id=record.event_id,
            event_type=record.event_type,
            topic=delivery.topic,
            partition=delivery.partition,
            offset=delivery.offset,
            attempt_count=attempt_count,
            reason=reason,
            error_code=error.error_code,
        )

    async def _confirm_claim(self, envelope: EventEnvelope) -> None:
        try:
            await self.dedup_store.confirm(self.consumer_group, envelope.event_id)
        except StoreError as e:
            # The handler already succeeded; the processing claim still blocks
            # redeliveries until it expires.
            logger.error(
                "Could not confirm dedup claim",
                extra={"event_id": envelope.event_id, "error": str(e)},
            )

    async def _release_claim(self, envelope: EventEnvelope) -> None:
        try:
            await self.dedup_store.release(self.consumer_group, envelope.event_id)
        except StoreError as e:
            # The processing claim expires after CLAIM_TTL_SECONDS instead
            logger.error(
                "Could not release dedup claim",
                extra={"event_id": envelope.event_id, "error": str(e)},
            )

    async def _commit(self, delivery: Delivery) -> None:
        try:
            async with asyncio.timeout(self.settings.COMMIT_TIMEOUT_SECONDS):
                await self.committer(delivery)
        except TimeoutError:
            raise_delivery_failed(
                service=self.settings.SERVICE_NAME,
                operation="commit",
                message=f"Offset commit timed out after {self.settings.COMMIT_TIMEOUT_SECONDS}s",
                topic=delivery.topic,
                partition=delivery.partition,
                offset=delivery.offset,
            )
        except PipelineError:
            raise
        except Exception as e:
            raise_delivery_failed(
                service=self.settings.SERVICE_NAME,
                operation="commit",
                message=f"Offset commit failed: {e.__class__.__name__}",
                topic=delivery.topic,
                partition=delivery.partition,
                offset=delivery.offset,
                error=str(e),
            )
