"""Per consumer-group record of processed event ids."""

from .memory import InMemoryDedupStore
from .models import DedupRecord, DedupStatus
from .redis_store import RedisDedupStore

__all__ = ["DedupRecord", "DedupStatus", "InMemoryDedupStore", "RedisDedupStore"]
