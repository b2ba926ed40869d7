"""
Partition-aware Kafka consumer runner.

Records are fanned out to one worker task per assigned partition, each driving
its own ``PartitionDispatcher``. Partitions are processed concurrently, records
within a partition strictly in offset order. Offsets are committed manually,
one record at a time, by the dispatcher.

When a dispatch raises ``DeliveryFailedError`` the worker seeks the partition
back to the failed offset, pauses it for a backoff delay and resumes, so the
broker redelivers the same record.

A partition whose worker falls behind is paused once its queue holds
``CONSUMER_MAX_BUFFERED_RECORDS`` records and resumed when the queue has
drained to half of that.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener, TopicPartition

from outbox_pipeline.config import PipelineSettings
from outbox_pipeline.consumer.dispatcher import Committer, Delivery, PartitionDispatcher
from outbox_pipeline.error_handling import DeliveryFailedError
from outbox_pipeline.logging_utils import create_service_logger

logger = create_service_logger("outbox_pipeline.consumer.kafka_consumer")

DispatcherFactory = Callable[[TopicPartition, Committer], PartitionDispatcher]


class _PartitionWorker:
    def __init__(self, tp: TopicPartition, dispatcher: PartitionDispatcher) -> None:
        self.tp = tp
        self.dispatcher = dispatcher
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        # Lowest offset not yet dispatched; records below it are stale. Gaps above
        # it are normal on compacted or transactional topics.
        self.expected_offset: int | None = None
        self.backlog_paused = False
        self.consecutive_failures = 0
        self.stopping = False
        self.task: asyncio.Task[None] | None = None


class _RebalanceListener(ConsumerRebalanceListener):
    def __init__(self, runner: PartitionedKafkaConsumer) -> None:
        self._runner = runner

    async def on_partitions_revoked(self, revoked: Any) -> None:
        await self._runner._drop_partitions(set(revoked))

    async def on_partitions_assigned(self, assigned: Any) -> None:
        logger.info(
            "Partitions assigned",
            extra={"partitions": sorted(f"{tp.topic}:{tp.partition}" for tp in assigned)},
        )


class PartitionedKafkaConsumer:
    def __init__(
        self,
        *,
        topics: list[str],
        settings: PipelineSettings,
        dispatcher_factory: DispatcherFactory,
        consumer: Any | None = None,
    ) -> None:
        self.topics = topics
        self.settings = settings
        self.dispatcher_factory = dispatcher_factory
        self.consumer = consumer or AIOKafkaConsumer(
            bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
            group_id=settings.CONSUMER_GROUP,
            client_id=f"{settings.KAFKA_CLIENT_ID}-consumer",
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        self._workers: dict[TopicPartition, _PartitionWorker] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Subscribe, start the consumer and the fetch loop."""
        if self._running:
            return
        self.consumer.subscribe(topics=self.topics, listener=_RebalanceListener(self))
        await self.consumer.start()
        self._running = True
        self._task = asyncio.create_task(self._fetch_loop(), name="outbox-consumer-fetch")
        logger.info(
            "Kafka consumer started",
            extra={"topics": self.topics, "consumer_group": self.settings.CONSUMER_GROUP},
        )

    async def stop(self) -> None:
        """
        Stop fetching, let each partition finish its current record and stop.

        Records still queued are not committed and will be redelivered.
        """
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        await self._drop_partitions(set(self._workers))
        await self.consumer.stop()
        logger.info("Kafka consumer stopped")

    async def _fetch_loop(self) -> None:
        while self._running:
            try:
                batches = await self.consumer.getmany(timeout_ms=1000)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Kafka fetch failed", extra={"error": str(e)}, exc_info=True)
                await asyncio.sleep(self.settings.BACKOFF_BASE_SECONDS)
                continue

            for tp, records in batches.items():
                worker = self._workers.get(tp) or self._start_worker(tp)
                for record in records:
                    worker.queue.put_nowait(record)
                if (
                    not worker.backlog_paused
                    and worker.queue.qsize() >= self.settings.CONSUMER_MAX_BUFFERED_RECORDS
                ):
                    worker.backlog_paused = True
                    self.consumer.pause(tp)
                    logger.info(
                        "Partition backlog full, pausing fetch",
                        extra={
                            "topic": tp.topic,
                            "partition": tp.partition,
                            "buffered": worker.queue.qsize(),
                        },
                    )

    def _start_worker(self, tp: TopicPartition) -> _PartitionWorker:
        async def commit(delivery: Delivery) -> None:
            await self.consumer.commit({tp: delivery.offset + 1})

        worker = _PartitionWorker(tp, self.dispatcher_factory(tp, commit))
        worker.task = asyncio.create_task(
            self._run_partition(worker), name=f"outbox-consumer-{tp.topic}-{tp.partition}"
        )
        self._workers[tp] = worker
        return worker

    async def _run_partition(self, worker: _PartitionWorker) -> None:
        while not worker.stopping:
            record = await worker.queue.get()
            if record is None:
                return
            self._resume_if_drained(worker)
            if worker.expected_offset is not None and record.offset < worker.expected_offset:
                continue

            delivery = Delivery(
                topic=record.topic,
                partition=record.partition,
                offset=record.offset,
                value=record.value,
                key=record.key,
            )
            try:
                outcome = await worker.dispatcher.dispatch(delivery)
            except DeliveryFailedError as e:
                await self._redeliver_later(worker, record.offset, e)
                continue
            except Exception as e:
                logger.error(
                    "Unexpected dispatch failure",
                    extra={"topic": record.topic, "offset": record.offset},
                    exc_info=True,
                )
                await self._redeliver_later(worker, record.offset, e)
                continue

            worker.consecutive_failures = 0
            worker.expected_offset = record.offset + 1
            logger.debug(
                "Record finished",
                extra={
                    "topic": record.topic,
                    "partition": record.partition,
                    "offset": record.offset,
                    "outcome": outcome.value,
                },
            )

    def _resume_if_drained(self, worker: _PartitionWorker) -> None:
        if not worker.backlog_paused:
            return
        if worker.queue.qsize() > self.settings.CONSUMER_MAX_BUFFERED_RECORDS // 2:
            return
        worker.backlog_paused = False
        if worker.tp in self.consumer.assignment():
            self.consumer.resume(worker.tp)

    async def _redeliver_later(
        self, worker: _PartitionWorker, offset: int, error: Exception
    ) -> None:
        worker.consecutive_failures += 1
        worker.expected_offset = offset
        delay = self.settings.backoff_seconds(worker.consecutive_failures)
        logger.warning(
            "Delivery failed, seeking back for redelivery",
            extra={
                "topic": worker.tp.topic,
                "partition": worker.tp.partition,
                "offset": offset,
                "retry_in_seconds": delay,
                "error": str(error),
            },
        )

        while not worker.queue.empty():
            worker.queue.get_nowait()
        worker.backlog_paused = False
        self.consumer.seek(worker.tp, offset)
        self.consumer.pause(worker.tp)
        try:
            await asyncio.sleep(delay)
        finally:
            if worker.tp in self.consumer.assignment():
                self.consumer.resume(worker.tp)

    async def _drop_partitions(self, partitions: set[TopicPartition]) -> None:
        """Stop workers for ``partitions``, waiting for their in-flight record."""
        workers = [self._workers.pop(tp) for tp in partitions if tp in self._workers]
        for worker in workers:
            worker.stopping = True
            while not worker.queue.empty():
                worker.queue.get_nowait()
            worker.queue.put_nowait(None)
        for worker in workers:
            if worker.task is not None:
                await self._wait_for_worker(worker, worker.task)

        if workers:
            logger.info(
                "Partitions released",
                extra={"partitions": [f"{w.tp.topic}:{w.tp.partition}" for w in workers]},
            )

    async def _wait_for_worker(self, worker: _PartitionWorker, task: asyncio.Task[None]) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(task), self.settings.SHUTDOWN_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning(
                "Partition worker still busy at revoke, cancelling",
                extra={"topic": worker.tp.topic, "partition": worker.tp.partition},
            )
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
