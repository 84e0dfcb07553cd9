"""
Customer Provisioning — Identity Store
=======================================

What:  Durable mapping AccountKey → Stripe customer id (`customer_links`).
How:   Every operation opens its own session and commits before returning.
       A PENDING row is therefore visible to every other process the moment
       insert_pending() returns, and no transaction stays open while the
       coordinator waits on Stripe.

Atomicity:
    insert_pending   INSERT guarded by the unique constraint on account_key.
                     IntegrityError → ConflictError (single writer wins).
    mark_confirmed   UPDATE ... WHERE account_key = :k AND status = 'pending'.
    mark_failed      Same guard. Zero rows updated → NotFoundError.
    bump_attempt     Same guard plus provision_attempt = :expected.

Any other SQLAlchemy failure is wrapped in DatabaseError, the only store
outcome treated as an incident.
"""

import logging
from datetime import timedelta
from typing import List, Mapping, Optional

from sqlalchemy import asc, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from provisioning.exceptions import ConflictError, DatabaseError, NotFoundError
from provisioning.models.customer_link import CustomerLink, LinkStatus, utcnow

logger = logging.getLogger(__name__)


class CustomerLinkStore:
    """
    Session-per-operation repository for CustomerLink rows.

    Args:
        session_factory: async_sessionmaker bound to the application engine
            (see provisioning.database.make_session_factory).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_by_account(self, account_key: str) -> Optional[CustomerLink]:
        """Return the link for `account_key`, or None when the account was never provisioned."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CustomerLink).where(CustomerLink.account_key == account_key)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._database_error("find_by_account", account_key, e) from e

    async def insert_pending(
        self,
        account_key: str,
        display_name: Optional[str] = None,
        contact_email: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> CustomerLink:
        """
        Claim provisioning for `account_key` by inserting a PENDING row.

        The optional request parameters are kept on the row so that
        reconciliation can replay the exact same creation request.

        Raises:
            ConflictError: a link in any status already exists.
            DatabaseError: the insert failed for any other reason.
        """
        now = utcnow()
        link = CustomerLink(
            account_key=account_key,
            status=LinkStatus.PENDING.value,
            display_name=display_name,
            contact_email=contact_email,
            request_metadata=dict(metadata) if metadata is not None else None,
            provision_attempt=0,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(link)
        except IntegrityError:
            logger.info("Customer link already exists for account %s", account_key)
            raise ConflictError(account_key)
        except SQLAlchemyError as e:
            raise self._database_error("insert_pending", account_key, e) from e

        logger.info("Inserted PENDING customer link for account %s", account_key)
        return link

    async def mark_confirmed(self, account_key: str, provider_customer_id: str) -> None:
        """PENDING → CONFIRMED. Raises NotFoundError when no PENDING row exists."""
        await self._transition(
            account_key,
            status=LinkStatus.CONFIRMED,
            provider_customer_id=provider_customer_id,
            failure_reason=None,
        )
        logger.info(
            "Customer link CONFIRMED for account %s → %s", account_key, provider_customer_id
        )

    async def mark_failed(self, account_key: str, reason: str) -> None:
        """PENDING → FAILED, storing the reason. Raises NotFoundError when no PENDING row exists."""
        await self._transition(
            account_key,
            status=LinkStatus.FAILED,
            failure_reason=reason,
        )
        logger.warning("Customer link FAILED for account %s: %s", account_key, reason)

    async def bump_attempt(self, account_key: str, expected_attempt: int) -> int:
        """
        Move a PENDING link to the next idempotency key generation.

        Compare-and-set on `expected_attempt`: when two sweeps race, only one
        bumps and the other gets NotFoundError. Also refreshes updated_at, so
        the new generation gets a full search-consistency window before it
        can be bumped again.
        """
        next_attempt = expected_attempt + 1
        stmt = (
            update(CustomerLink)
            .where(
                CustomerLink.account_key == account_key,
                CustomerLink.status == LinkStatus.PENDING.value,
                CustomerLink.provision_attempt == expected_attempt,
            )
            .values(provision_attempt=next_attempt, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise self._database_error("bump_attempt", account_key, e) from e

        if result.rowcount == 0:
            raise NotFoundError(resource="pending customer link", resource_id=account_key)

        logger.info("Customer link for account %s moved to attempt %d", account_key, next_attempt)
        return next_attempt

    async def list_stale_pending(
        self, older_than: timedelta, limit: int = 100
    ) -> List[CustomerLink]:
        """
        PENDING rows not touched for at least `older_than`, oldest first.

        Feeds the reconciliation sweep. Rows younger than the threshold are
        assumed to belong to a request that is still waiting on Stripe.
        """
        cutoff = utcnow() - older_than
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CustomerLink)
                    .where(
                        CustomerLink.status == LinkStatus.PENDING.value,
                        CustomerLink.updated_at <= cutoff,
                    )
                    .order_by(asc(CustomerLink.updated_at))
                    .limit(limit)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise self._database_error("list_stale_pending", None, e) from e

    async def _transition(self, account_key: str, status: LinkStatus, **values) -> None:
        stmt = (
            update(CustomerLink)
            .where(
                CustomerLink.account_key == account_key,
                CustomerLink.status == LinkStatus.PENDING.value,
            )
            .values(status=status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise self._database_error(f"mark_{status.value}", account_key, e) from e

        if result.rowcount == 0:
            raise NotFoundError(resource="pending customer link", resource_id=account_key)

    @staticmethod
    def _database_error(
        operation: str, account_key: Optional[str], error: Exception
    ) -> DatabaseError:
        logger.error(
            "Customer link store %s failed for account %s: %s",
            operation,
            account_key,
            str(error),
            exc_info=True,
        )
        return DatabaseError(
            context={
                "operation": operation,
                "account_key": account_key,
                "error_type": type(error).__name__,
            }
        )
