"""
Customer Provisioning — Provisioning Coordinator
=================================================

What:  "Ensure exactly one Stripe customer exists for account X."
How:   The PENDING row inserted through the Identity Store is the only
       concurrency token. Whoever inserts it owns the provider call; everyone
       else reads the existing row and either returns the confirmed id or
       fails fast. No in-memory locks (requests may be served by many
       processes) and no automatic retries here (retries belong to the
       caller and pass through the same gate).

Orchestration Flow (ensure_customer):
    ┌────────────────┐ won  ┌──────────────────┐ ok  ┌────────────────┐
    │ insert_pending │─────▶│ create_customer  │────▶│ mark_confirmed │──▶ id
    └───────┬────────┘      └────────┬─────────┘     └────────────────┘
            │ conflict               │ ProviderRejected   → mark_failed, raise
            ▼                        │ ProviderUnavailable → stays PENDING, raise
     read existing link
       CONFIRMED → id
       PENDING   → ProvisioningInProgress
       FAILED    → ProvisioningFailed(reason)

Reconciliation:
    A crash or timeout between insert_pending and mark_confirmed leaves a
    PENDING row behind, possibly with a customer already created in Stripe.
    reconcile_account() first asks Stripe for a customer tagged with the
    account and adopts it; only if none exists does it re-issue creation.
    Once the row is older than the search consistency window, the re-issue
    uses the next idempotency key generation (provision_attempt), because
    Stripe replays a 5xx stored under the old key for 24h.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from provisioning.exceptions import (
    ConflictError,
    NotFoundError,
    ProviderRejected,
    ProviderUnavailable,
    ProvisioningFailed,
    ProvisioningInProgress,
)
from provisioning.models.customer_link import CustomerLink, LinkStatus
from provisioning.schemas.customer import ProvisionRequest
from provisioning.services.link_store import CustomerLinkStore
from provisioning.services.provider_base import PaymentProvider

logger = logging.getLogger(__name__)


@dataclass
class ReconcileSummary:
    """Outcome counts of one reconciliation sweep."""

    examined: int = 0
    confirmed: int = 0
    failed: int = 0
    still_pending: int = 0
    account_keys: List[str] = field(default_factory=list)


class ProvisioningCoordinator:
    """
    Business logic for customer provisioning.

    Args:
        store: Identity Store for customer links.
        provider: Payment provider client.
        search_consistency_window: How long a new provider customer may stay
            invisible to search. Reconciliation only moves to a new
            idempotency key once a PENDING row is older than this.
    """

    def __init__(
        self,
        store: CustomerLinkStore,
        provider: PaymentProvider,
        search_consistency_window: timedelta = timedelta(seconds=60),
    ):
        self.store = store
        self.provider = provider
        self.search_consistency_window = search_consistency_window

    async def ensure_customer(self, request: ProvisionRequest) -> str:
        """
        Return the provider customer id for `request.account_key`, creating it if needed.

        Safe to call repeatedly and concurrently for the same account: at most
        one call ever reaches the provider.

        Raises:
            ProvisioningInProgress: another attempt holds the PENDING row.
            ProvisioningFailed: the link was already marked FAILED.
            ProviderRejected: this attempt was rejected; link is now FAILED.
            ProviderUnavailable: this attempt could not reach the provider;
                link stays PENDING until reconciled.
            DatabaseError: unexpected store failure.
        """
        account_key = request.account_key

        try:
            await self.store.insert_pending(
                account_key,
                display_name=request.display_name,
                contact_email=request.contact_email,
                metadata=request.metadata,
            )
        except ConflictError:
            return await self._resolve_existing(account_key)

        # This call owns provisioning for the account from here on
        try:
            customer_id = await self.provider.create_customer(
                account_key=account_key,
                display_name=request.display_name,
                contact_email=request.contact_email,
                metadata=request.metadata,
            )
        except ProviderRejected as e:
            try:
                await self.store.mark_failed(account_key, e.reason)
            except NotFoundError:
                # A reconciliation sweep settled the row first; it decides
                return await self._resolve_existing(account_key)
            raise
        except ProviderUnavailable:
            logger.warning(
                "Provider unavailable while provisioning account %s; link left PENDING",
                account_key,
            )
            raise

        try:
            await self.store.mark_confirmed(account_key, customer_id)
        except NotFoundError:
            logger.info(
                "Link for account %s was settled by reconciliation before this request",
                account_key,
            )
            return await self._resolve_existing(account_key)
        return customer_id

    async def get_link(self, account_key: str) -> CustomerLink:
        """Fetch the link for an account. Raises NotFoundError if none exists."""
        link = await self.store.find_by_account(account_key)
        if link is None:
            raise NotFoundError(resource="customer link", resource_id=account_key)
        return link

    async def reconcile_account(self, account_key: str) -> LinkStatus:
        """
        Resolve a PENDING link left behind by a crashed or timed-out attempt.

        Idempotent: non-PENDING links are returned untouched, and a second run
        over an already-repaired row is a no-op.

        Returns the link status after reconciliation. ProviderUnavailable is
        absorbed (the row simply stays PENDING for the next sweep).
        """
        link = await self.get_link(account_key)
        if link.link_status is not LinkStatus.PENDING:
            return link.link_status

        try:
            customer_id = await self.provider.find_customer_by_account(account_key)
            if customer_id is None:
                if link.contact_email is None:
                    logger.warning(
                        "PENDING account %s has no stored request; cannot re-issue creation",
                        account_key,
                    )
                    return LinkStatus.PENDING
                attempt = link.provision_attempt
                if link.age() >= self.search_consistency_window:
                    # Search has had time to index any customer created under
                    # the current key, and found none: start a fresh key
                    try:
                        attempt = await self.store.bump_attempt(account_key, attempt)
                    except NotFoundError:
                        current = await self.get_link(account_key)
                        return current.link_status
                logger.info(
                    "No provider customer found for PENDING account %s; "
                    "re-issuing creation (attempt %d)",
                    account_key,
                    attempt,
                )
                customer_id = await self.provider.create_customer(
                    account_key=account_key,
                    display_name=link.display_name or "",
                    contact_email=link.contact_email,
                    metadata=link.request_metadata or {},
                    attempt=attempt,
                )
            else:
                logger.info(
                    "Adopting existing provider customer %s for account %s",
                    customer_id,
                    account_key,
                )
        except ProviderRejected as e:
            return await self._settle(account_key, LinkStatus.FAILED, reason=e.reason)
        except ProviderUnavailable:
            logger.warning("Provider unavailable while reconciling account %s", account_key)
            return LinkStatus.PENDING

        return await self._settle(account_key, LinkStatus.CONFIRMED, customer_id=customer_id)

    async def reconcile_stale(self, older_than: timedelta, limit: int = 100) -> ReconcileSummary:
        """Sweep PENDING links older than `older_than` and reconcile each one."""
        summary = ReconcileSummary()
        stale = await self.store.list_stale_pending(older_than=older_than, limit=limit)

        for link in stale:
            status = await self.reconcile_account(link.account_key)
            summary.examined += 1
            summary.account_keys.append(link.account_key)
            if status is LinkStatus.CONFIRMED:
                summary.confirmed += 1
            elif status is LinkStatus.FAILED:
                summary.failed += 1
            else:
                summary.still_pending += 1

        logger.info(
            "Reconciliation sweep: examined=%d confirmed=%d failed=%d still_pending=%d",
            summary.examined,
            summary.confirmed,
            summary.failed,
            summary.still_pending,
        )
        return summary

    async def _resolve_existing(self, account_key: str) -> str:
        link = await self.store.find_by_account(account_key)
        if link is None:
            # Conflict reported but the row is gone: only an administrative
            # delete can do that. Treat it as in flight rather than racing it.
            raise ProvisioningInProgress(account_key, context={"reason": "link vanished"})

        status = link.link_status
        if status is LinkStatus.CONFIRMED:
            logger.info("Account %s already provisioned as %s", account_key, link.provider_customer_id)
            return link.provider_customer_id
        if status is LinkStatus.PENDING:
            raise ProvisioningInProgress(account_key)
        raise ProvisioningFailed(account_key, link.failure_reason)

    async def _settle(
        self,
        account_key: str,
        target: LinkStatus,
        customer_id: str = "",
        reason: str = "",
    ) -> LinkStatus:
        """Apply a reconciliation outcome; a concurrent settle wins quietly."""
        try:
            if target is LinkStatus.CONFIRMED:
                await self.store.mark_confirmed(account_key, customer_id)
            else:
                await self.store.mark_failed(account_key, reason)
        except NotFoundError:
            link = await self.get_link(account_key)
            return link.link_status
        return target
