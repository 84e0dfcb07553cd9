"""
Customer Provisioning — CustomerLink SQLAlchemy Model
======================================================

What:  ORM model for the `customer_links` table: one row per internal account,
       binding it to its Stripe customer id.

Table Design Rationale:
    - account_key UNIQUE: the idempotency gate. Concurrent inserts for the same
      account race on this constraint and exactly one wins, across any number
      of processes.
    - provider_customer_id nullable: unknown while the row is PENDING.
    - status: 'pending' → 'confirmed' | 'failed'. Stored as a short string
      (same as the enum value) instead of a native enum type so migrations stay
      trivial on every backend.
    - failure_reason: the provider's rejection message, returned to callers
      that hit a FAILED link.
    - created_at / updated_at: UTC, timezone-aware. updated_at drives the
      reconciliation sweep ("PENDING for longer than N seconds").
    - display_name / contact_email / request_metadata: the parameters of the
      claiming request. Stripe only honours an idempotency key when it is
      replayed with identical parameters, so reconciliation re-issues creation
      from these columns.
    - provision_attempt: generation number baked into the idempotency key.
      Reconciliation bumps it once the provider has been searched and holds
      no customer, so a failure Stripe cached under the old key is not
      replayed for the rest of its 24h window.
"""

import enum
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from provisioning.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LinkStatus(str, enum.Enum):
    """Lifecycle of a customer link."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class CustomerLink(Base):
    """
    Persistent binding of an AccountKey to a payment-provider customer.

    Lifecycle:
        1. Inserted PENDING by the coordinator that wins the insert race
        2. CONFIRMED with provider_customer_id once Stripe returns a customer
        3. FAILED with failure_reason when Stripe rejects the request
        4. Never deleted by this service
    """

    __tablename__ = "customer_links"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    account_key: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Internal account identifier issued by the auth subsystem",
    )

    provider_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        default=None,
        comment="Stripe customer id (cus_...), set when CONFIRMED",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=LinkStatus.PENDING.value,
        comment="pending, confirmed, failed",
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        default=None,
        comment="Provider rejection message when FAILED",
    )

    display_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    contact_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)

    request_metadata: Mapped[Optional[Dict[str, str]]] = mapped_column(JSON, nullable=True)

    provision_attempt: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Idempotency key generation for provider create calls",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("account_key", name="uq_customer_links_account_key"),
        # Reconciliation scans PENDING rows by age
        Index("idx_customer_links_status_updated_at", "status", "updated_at"),
    )

    @property
    def link_status(self) -> LinkStatus:
        return LinkStatus(self.status)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        """Time since the row last changed. SQLite hands back naive UTC datetimes."""
        updated = self.updated_at
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return (now or utcnow()) - updated

    def __repr__(self) -> str:
        return (
            f"<CustomerLink(account_key='{self.account_key}', status='{self.status}', "
            f"provider_customer_id='{self.provider_customer_id}')>"
        )
