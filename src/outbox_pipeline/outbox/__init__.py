"""
Transactional outbox: durable event staging and the relay that publishes it.

Events are appended inside the caller's business transaction and published
afterwards by ``EventRelayWorker``.
"""

from .manager import OutboxManager
from .memory import InMemoryOutboxStore, InMemoryTransaction
from .models import OutboxRow, OutboxStatus
from .models_db import OutboxEventDB
from .protocols import OutboxStoreProtocol
from .relay import EventRelayWorker, RowOutcome
from .repository import SQLAlchemyOutboxStore

__all__ = [
    "EventRelayWorker",
    "InMemoryOutboxStore",
    "InMemoryTransaction",
    "OutboxEventDB",
    "OutboxManager",
    "OutboxRow",
    "OutboxStatus",
    "OutboxStoreProtocol",
    "RowOutcome",
    "SQLAlchemyOutboxStore",
]
