"""
Customer Provisioning — Payment Provider Interface
===================================================

What:  Abstract contract for the external system that owns customer records.
Why:   The coordinator only needs "create" and "find"; it should not know it
       is talking to Stripe. Tests substitute an AsyncMock with this spec.
How:   StripeProvider implements it. Implementations translate every SDK
       error into exactly one of ProviderUnavailable (retryable) or
       ProviderRejected (terminal), which is what the coordinator's failure
       policy is keyed on.
"""

from abc import ABC, abstractmethod
from typing import Mapping, Optional


class PaymentProvider(ABC):
    """
    Stateless client for the payment provider.

    Every call is a fresh network interaction; nothing is cached locally.
    The provider has no model of our accounts beyond the `account_key`
    metadata stamped on each customer it creates.
    """

    @abstractmethod
    async def create_customer(
        self,
        account_key: str,
        display_name: str,
        contact_email: str,
        metadata: Mapping[str, str],
        attempt: int = 0,
    ) -> str:
        """
        Create a customer and return its provider id (e.g. "cus_...").

        Implementations must derive their idempotency key from `account_key`
        and `attempt` so that a repeated call after a lost response returns
        the customer created the first time. Reconciliation bumps `attempt`
        once it has established that no customer exists, which moves past a
        failure the provider cached under the previous key.

        Raises:
            ProviderUnavailable: timeout, connection failure, 5xx, rate limit,
                or credentials the provider refuses (a configuration fault).
            ProviderRejected: the provider refused the input.
        """
        ...

    @abstractmethod
    async def find_customer_by_account(self, account_key: str) -> Optional[str]:
        """
        Return the id of an existing customer tagged with `account_key`, or None.

        Used by reconciliation to adopt a customer whose creation succeeded
        remotely but was never recorded locally.

        Raises:
            ProviderUnavailable / ProviderRejected, as for create_customer.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight reachability/authentication probe. Never raises."""
        ...
