"""Outbox store contract implemented by the SQLAlchemy and in-memory stores."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any, Protocol

from outbox_pipeline.envelope import EventEnvelope
from outbox_pipeline.outbox.models import OutboxRow


class OutboxStoreProtocol(Protocol):
    """
    Durable table of events awaiting publication.

    Every mutation after ``append`` is conditional on the lease token returned
    by ``fetch_pending``: a relay whose lease expired and was taken over can
    no longer change the row.
    """

    async def append(self, tx: Any, envelope: EventEnvelope, topic: str) -> int:
        """
        Insert a PENDING row inside the caller's active transaction.

        Raises:
            StoreError: ``tx`` is not an active transaction, or the insert failed.
        """
        ...

    async def fetch_pending(
        self, limit: int, lease_duration: timedelta
    ) -> tuple[str, list[OutboxRow]]:
        """
        Lease up to ``limit`` eligible rows, oldest first.

        Returns:
            The lease token and the leased rows, ordered by ``created_at``.
        """
        ...

    async def mark_sent(self, ids: Sequence[int], lease_token: str) -> int:
        ...

    async def mark_failed(
        self,
        ids: Sequence[int],
        lease_token: str,
        error: str,
        next_attempt_at: datetime,
    ) -> int:
        """Count a failed attempt, record ``error`` and schedule the retry."""
        ...

    async def release(self, ids: Sequence[int], lease_token: str) -> int:
        """Drop the lease without counting an attempt."""
        ...

    async def mark_dead_lettered(self, ids: Sequence[int], lease_token: str, error: str) -> int:
        """Count the final attempt and move rows to the terminal FAILED status."""
        ...

    async def purge_sent(self, older_than: datetime) -> int:
        ...

    async def count_pending(self) -> int:
        ...
