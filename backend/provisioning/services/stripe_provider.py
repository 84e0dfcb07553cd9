"""
Customer Provisioning — Stripe Provider Client
===============================================

What:  PaymentProvider backed by the Stripe API (customers.create / search).
How:   A StripeClient built from explicit constructor arguments, with two
       layers of protection around every call:

       1. Tenacity retry (exponential backoff + jitter) for transport-level
          transient errors only: connection errors, rate limits, 5xx.
       2. A circuit breaker that fails fast once Stripe has been unavailable
          for several consecutive calls.

Idempotency:
    create_customer sends `Idempotency-Key: provision:<account_key>:<attempt>`.
    A retry after a lost response, or a reconciliation re-attempt within
    Stripe's 24h key window, returns the customer created by the first attempt
    instead of a new one. Stripe also replays stored 5xx responses for a key,
    so reconciliation moves to the next attempt number once a search has shown
    that no customer exists. The account key is written into the customer's
    metadata so find_customer_by_account can locate it later.

Error translation:
    APIConnectionError, RateLimitError, APIError, any 5xx  → ProviderUnavailable
    AuthenticationError, PermissionError                  → ProviderUnavailable
                                                             (logged at ERROR)
    InvalidRequestError, CardError, IdempotencyError,
    other 4xx                                             → ProviderRejected

Credential errors leave links PENDING: a revoked or mistyped key is fixed
by configuration, after which reconciliation completes the affected accounts.
"""

import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import stripe
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from provisioning.exceptions import (
    CircuitBreakerOpenError,
    ProviderRejected,
    ProviderUnavailable,
)
from provisioning.services.provider_base import PaymentProvider

logger = logging.getLogger(__name__)

ACCOUNT_KEY_METADATA = "account_key"

CREDENTIAL_ERRORS = (stripe.AuthenticationError, stripe.PermissionError)


def is_retryable_stripe_error(error: BaseException) -> bool:
    """True for Stripe failures that may succeed if the same request is sent again."""
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
        return True
    if isinstance(error, stripe.APIError):
        return True
    if isinstance(error, stripe.StripeError):
        status = error.http_status
        return status is not None and status >= 500
    return False


def idempotency_key_for(account_key: str, attempt: int = 0) -> str:
    return f"provision:{account_key}:{attempt}"


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Fails fast while Stripe is down.

    State Machine:
        CLOSED     → consecutive failures counted; at threshold → OPEN
        OPEN       → every call raises CircuitBreakerOpenError until
                     recovery_timeout has elapsed → HALF_OPEN
        HALF_OPEN  → one trial call; success → CLOSED, failure → OPEN

    Only ProviderUnavailable outcomes count as failures. A rejection means
    Stripe is up and answering.

    The state is per process. Each uvicorn worker trips independently.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None
        self._clock = clock

    def can_execute(self) -> bool:
        """
        Returns True when a call may proceed.

        Raises:
            CircuitBreakerOpenError while OPEN and the recovery timeout has not elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info("Circuit breaker transitioning to HALF_OPEN after %.1fs", elapsed)
                self.state = self.HALF_OPEN
                return True
            remaining = max(1, int(self.recovery_timeout - elapsed))
            raise CircuitBreakerOpenError(recovery_time=remaining)

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (provider recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (trial call failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Stripe Provider
# ══════════════════════════════════════════════════════════════════════════

class StripeProvider(PaymentProvider):
    """
    Stripe implementation of PaymentProvider.

    Args:
        api_key: Stripe secret or restricted key.
        api_version: Optional Stripe-Version pin; empty uses the account default.
        timeout: Per-request network timeout in seconds.
        max_attempts / min_wait / max_wait / jitter: tenacity retry policy.
        failure_threshold / recovery_timeout: circuit breaker policy.
        health_cache_ttl: Seconds a health_check result is reused.
        client: Pre-built StripeClient (tests inject a mock here).
        clock: Monotonic time source for the breaker and the health cache.
    """

    def __init__(
        self,
        api_key: str,
        api_version: str = "",
        timeout: float = 10.0,
        max_attempts: int = 3,
        min_wait: float = 1,
        max_wait: float = 8,
        jitter: float = 1,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        health_cache_ttl: float = 30.0,
        client: Optional[stripe.StripeClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if client is None:
            # Stripe's own network retries are disabled; tenacity owns the policy
            client = stripe.StripeClient(
                api_key,
                stripe_version=api_version or None,
                http_client=stripe.HTTPXClient(timeout=timeout),
                max_network_retries=0,
            )
        self._client = client
        self._max_attempts = max_attempts
        self._min_wait = min_wait
        self._max_wait = max_wait
        self._jitter = jitter
        self._health_cache_ttl = health_cache_ttl
        self._health_checked_at: Optional[float] = None
        self._healthy = False
        self._clock = clock
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            clock=clock,
        )

        logger.info(
            "StripeProvider initialized: timeout=%.1fs, retries=%d, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            timeout,
            max_attempts,
            failure_threshold,
            recovery_timeout,
        )

    async def create_customer(
        self,
        account_key: str,
        display_name: str,
        contact_email: str,
        metadata: Mapping[str, str],
        attempt: int = 0,
    ) -> str:
        params: Dict[str, Any] = {
            "name": display_name,
            "email": contact_email,
            "metadata": {**dict(metadata), ACCOUNT_KEY_METADATA: account_key},
        }
        options = {"idempotency_key": idempotency_key_for(account_key, attempt)}

        async def create():
            return await self._client.v1.customers.create_async(params=params, options=options)

        customer = await self._call("customers.create", account_key, create)
        logger.info(
            "Stripe customer %s created for account %s (attempt %d)",
            customer.id,
            account_key,
            attempt,
        )
        return customer.id

    async def find_customer_by_account(self, account_key: str) -> Optional[str]:
        # Search is eventually consistent; customers can take up to a minute to appear
        query = f"metadata['{ACCOUNT_KEY_METADATA}']:'{account_key}'"

        async def search():
            return await self._client.v1.customers.search_async(
                params={"query": query, "limit": 10}
            )

        result = await self._call("customers.search", account_key, search)
        customers = list(result.data)
        if not customers:
            return None
        if len(customers) > 1:
            logger.warning(
                "Found %d Stripe customers for account %s; adopting the oldest",
                len(customers),
                account_key,
            )
        oldest = min(customers, key=lambda c: c.created)
        return oldest.id

    async def health_check(self) -> bool:
        """Balance probe, cached for health_cache_ttl so polling does not spend rate limit."""
        now = self._clock()
        if (
            self._health_checked_at is not None
            and now - self._health_checked_at < self._health_cache_ttl
        ):
            return self._healthy

        try:
            await self._client.v1.balance.retrieve_async()
            self._healthy = True
        except stripe.StripeError as e:
            logger.warning("Stripe health check failed: %s", str(e))
            self._healthy = False
        self._health_checked_at = now
        return self._healthy

    async def _call(
        self,
        operation: str,
        account_key: str,
        fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run one Stripe call through the circuit breaker and the retry policy, translating errors."""
        call_id = str(uuid.uuid4())[:8]
        self.circuit_breaker.can_execute()

        retrying = AsyncRetrying(
            retry=retry_if_exception(is_retryable_stripe_error),
            stop=stop_after_attempt(self._max_attempts),
            wait=(
                wait_exponential(multiplier=self._min_wait, min=self._min_wait, max=self._max_wait)
                + wait_random(0, self._jitter)
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        start_time = time.perf_counter()
        try:
            async for attempt in retrying:
                with attempt:
                    result = await fn()
        except stripe.StripeError as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            if is_retryable_stripe_error(e):
                self.circuit_breaker.record_failure()
                logger.warning(
                    "[%s] Stripe %s unavailable for account %s after %.0fms: %s",
                    call_id,
                    operation,
                    account_key,
                    duration_ms,
                    str(e),
                )
                raise ProviderUnavailable(
                    retry_after=self._retry_after(e),
                    context={
                        "call_id": call_id,
                        "operation": operation,
                        "error_type": type(e).__name__,
                        "attempts": self._max_attempts,
                    },
                ) from e

            if isinstance(e, CREDENTIAL_ERRORS):
                self.circuit_breaker.record_failure()
                logger.error(
                    "[%s] Stripe %s refused our credentials for account %s: %s. "
                    "Check STRIPE_SECRET_KEY; the link stays PENDING.",
                    call_id,
                    operation,
                    account_key,
                    str(e),
                )
                raise ProviderUnavailable(
                    message="The payment provider is misconfigured",
                    context={
                        "call_id": call_id,
                        "operation": operation,
                        "error_type": type(e).__name__,
                        "http_status": e.http_status,
                    },
                ) from e

            # Stripe answered; it is not the provider that is broken
            self.circuit_breaker.record_success()
            reason = e.user_message or str(e) or type(e).__name__
            logger.info(
                "[%s] Stripe %s rejected for account %s: %s",
                call_id,
                operation,
                account_key,
                reason,
            )
            raise ProviderRejected(
                reason=reason,
                context={
                    "call_id": call_id,
                    "operation": operation,
                    "error_type": type(e).__name__,
                    "code": e.code,
                    "http_status": e.http_status,
                },
            ) from e

        self.circuit_breaker.record_success()
        logger.debug(
            "[%s] Stripe %s completed in %.0fms",
            call_id,
            operation,
            (time.perf_counter() - start_time) * 1000,
        )
        return result

    @staticmethod
    def _retry_after(error: stripe.StripeError) -> Optional[int]:
        headers = error.headers or {}
        value = headers.get("retry-after") or headers.get("Retry-After")
        if value is None:
            return None
        try:
            return int(float(value))
        except ValueError:
            return None
