"""
SQLAlchemy model for the transactional outbox table.

The table lives in the producing service's database so that events are written
in the same transaction as the business change that caused them.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from outbox_pipeline.outbox.models import OutboxStatus


class Base(DeclarativeBase):
    pass


class OutboxEventDB(Base):
    """
    Database model for the transactional outbox.

    Leases (``lease_token``/``lease_expires_at``) let several relay instances
    share the table without publishing the same row concurrently.
    """

    __tablename__ = "event_outbox"

    # SQLite only autoincrements INTEGER primary keys
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    # Event data
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    topic: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Kafka topic to publish to",
    )
    partition_key: Mapped[str] = mapped_column(String(255), nullable=False)
    envelope: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Encoded event envelope, published verbatim",
    )

    # Publishing state
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=OutboxStatus.PENDING.value,
        server_default=text(f"'{OutboxStatus.PENDING.value}'"),
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relay lease
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        # Relay polling: pending rows in creation order
        Index(
            "ix_event_outbox_pending",
            "status",
            "created_at",
            "id",
            postgresql_where=text("status = 'PENDING'"),
        ),
        # Per-key ordering checks
        Index("ix_event_outbox_partition_key", "partition_key", "status", "created_at"),
        Index("ix_event_outbox_lease_token", "lease_token"),
        # Retention purge
        Index("ix_event_outbox_sent_at", "sent_at"),
    )
