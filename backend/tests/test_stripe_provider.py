"""
Customer Provisioning — Stripe Provider Tests
==============================================

StripeProvider with a mocked StripeClient. No network access.

What we test:
    ✅ customers.create receives the request fields, the account key in
       metadata and the deterministic idempotency key
    ✅ Transient errors are retried, then surface as ProviderUnavailable
    ✅ Rejections are not retried and surface as ProviderRejected
    ✅ Credential errors surface as ProviderUnavailable (link stays PENDING)
    ✅ Circuit breaker state machine
    ✅ find_customer_by_account adopts the oldest match
    ✅ Health check, cached between probes
    ✅ The real client behind ProvisioningCoordinator
"""

import warnings
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from provisioning.exceptions import (
    CircuitBreakerOpenError,
    ProviderRejected,
    ProviderUnavailable,
)
from provisioning.models.customer_link import LinkStatus
from provisioning.services.stripe_provider import (
    CircuitBreaker,
    StripeProvider,
    idempotency_key_for,
    is_retryable_stripe_error,
)
from provisioning.services.provisioning_service import ProvisioningCoordinator


@pytest.fixture
def stripe_client():
    client = MagicMock()
    client.v1.customers.create_async = AsyncMock(return_value=SimpleNamespace(id="cus_new"))
    client.v1.customers.search_async = AsyncMock(return_value=SimpleNamespace(data=[]))
    client.v1.balance.retrieve_async = AsyncMock(return_value=SimpleNamespace(object="balance"))
    return client


@pytest.fixture
def provider(stripe_client):
    return StripeProvider(
        api_key="sk_test_not_real",
        max_attempts=3,
        min_wait=0,
        max_wait=0,
        jitter=0,
        failure_threshold=2,
        recovery_timeout=60,
        client=stripe_client,
    )


async def _create(provider, account_key="acct-1"):
    return await provider.create_customer(
        account_key=account_key,
        display_name="Ada Lovelace",
        contact_email="ada@example.com",
        metadata={"company_id": "co-42"},
    )


class TestCreateCustomer:

    @pytest.mark.asyncio
    async def test_sends_params_and_idempotency_key(self, provider, stripe_client):
        customer_id = await _create(provider)

        assert customer_id == "cus_new"
        stripe_client.v1.customers.create_async.assert_awaited_once_with(
            params={
                "name": "Ada Lovelace",
                "email": "ada@example.com",
                "metadata": {"company_id": "co-42", "account_key": "acct-1"},
            },
            options={"idempotency_key": "provision:acct-1:0"},
        )

    @pytest.mark.asyncio
    async def test_retries_transient_error(self, provider, stripe_client):
        stripe_client.v1.customers.create_async.side_effect = [
            stripe.APIConnectionError("connection reset"),
            SimpleNamespace(id="cus_after_retry"),
        ]

        customer_id = await _create(provider)

        assert customer_id == "cus_after_retry"
        assert stripe_client.v1.customers.create_async.await_count == 2
        # Every attempt carries the same key, so Stripe collapses them
        for call in stripe_client.v1.customers.create_async.await_args_list:
            assert call.kwargs["options"] == {"idempotency_key": "provision:acct-1:0"}

    @pytest.mark.asyncio
    async def test_retry_policy_emits_no_deprecation_warning(self, provider, stripe_client):
        stripe_client.v1.customers.create_async.side_effect = [
            stripe.APIConnectionError("connection reset"),
            SimpleNamespace(id="cus_after_retry"),
        ]

        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            assert await _create(provider) == "cus_after_retry"

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_unavailable(self, provider, stripe_client):
        stripe_client.v1.customers.create_async.side_effect = stripe.RateLimitError(
            "Too many requests", http_status=429, headers={"retry-after": "7"}
        )

        with pytest.raises(ProviderUnavailable) as exc_info:
            await _create(provider)

        assert stripe_client.v1.customers.create_async.await_count == 3
        assert exc_info.value.retry_after == 7
        assert exc_info.value.context["error_type"] == "RateLimitError"

    @pytest.mark.asyncio
    async def test_invalid_request_is_rejected_without_retry(self, provider, stripe_client):
        stripe_client.v1.customers.create_async.side_effect = stripe.InvalidRequestError(
            "Invalid email address: ada@", param="email", http_status=400
        )

        with pytest.raises(ProviderRejected) as exc_info:
            await _create(provider)

        assert exc_info.value.reason == "Invalid email address: ada@"
        assert stripe_client.v1.customers.create_async.await_count == 1

    @pytest.mark.asyncio
    async def test_attempt_number_changes_idempotency_key(self, provider, stripe_client):
        await provider.create_customer(
            account_key="acct-1",
            display_name="Ada Lovelace",
            contact_email="ada@example.com",
            metadata={},
            attempt=2,
        )

        options = stripe_client.v1.customers.create_async.await_args.kwargs["options"]
        assert options == {"idempotency_key": "provision:acct-1:2"}

    @pytest.mark.asyncio
    async def test_authentication_error_is_unavailable(self, provider, stripe_client):
        stripe_client.v1.customers.create_async.side_effect = stripe.AuthenticationError(
            "Invalid API Key provided", http_status=401
        )

        with pytest.raises(ProviderUnavailable) as exc_info:
            await _create(provider)

        assert not isinstance(exc_info.value, ProviderRejected)
        assert exc_info.value.context["error_type"] == "AuthenticationError"
        # A bad key does not get better by resending it
        assert stripe_client.v1.customers.create_async.await_count == 1
        assert provider.circuit_breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_permission_error_is_unavailable(self, provider, stripe_client):
        stripe_client.v1.customers.create_async.side_effect = stripe.PermissionError(
            "The provided key does not have the required permissions", http_status=403
        )

        with pytest.raises(ProviderUnavailable):
            await _create(provider)


class TestFindCustomerByAccount:

    @pytest.mark.asyncio
    async def test_no_match(self, provider, stripe_client):
        assert await provider.find_customer_by_account("acct-1") is None

        stripe_client.v1.customers.search_async.assert_awaited_once_with(
            params={"query": "metadata['account_key']:'acct-1'", "limit": 10}
        )

    @pytest.mark.asyncio
    async def test_adopts_oldest_match(self, provider, stripe_client):
        stripe_client.v1.customers.search_async.return_value = SimpleNamespace(
            data=[
                SimpleNamespace(id="cus_newer", created=1_700_000_500),
                SimpleNamespace(id="cus_oldest", created=1_700_000_000),
            ]
        )

        assert await provider.find_customer_by_account("acct-1") == "cus_oldest"

    @pytest.mark.asyncio
    async def test_search_outage(self, provider, stripe_client):
        stripe_client.v1.customers.search_async.side_effect = stripe.APIError(
            "Internal error", http_status=500
        )

        with pytest.raises(ProviderUnavailable):
            await provider.find_customer_by_account("acct-1")


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_outages(self, provider, stripe_client):
        stripe_client.v1.customers.create_async.side_effect = stripe.APIConnectionError("down")

        for _ in range(2):
            with pytest.raises(ProviderUnavailable):
                await _create(provider)

        assert provider.circuit_breaker.state == CircuitBreaker.OPEN
        calls_before = stripe_client.v1.customers.create_async.await_count

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await _create(provider)

        assert stripe_client.v1.customers.create_async.await_count == calls_before
        assert exc_info.value.retry_after is not None

    def test_half_open_after_recovery_timeout(self):
        now = [1000.0]
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=lambda: now[0])

        breaker.record_failure()
        assert breaker.state == CircuitBreaker.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            breaker.can_execute()

        now[0] += 31
        assert breaker.can_execute() is True
        assert breaker.state == CircuitBreaker.HALF_OPEN

        breaker.record_success()
        assert breaker.state == CircuitBreaker.CLOSED
        assert breaker.failure_count == 0

    def test_failed_trial_reopens(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, clock=lambda: now[0])
        breaker.record_failure()
        now[0] += 11
        breaker.can_execute()

        breaker.record_failure()

        assert breaker.state == CircuitBreaker.OPEN


class TestHelpers:

    def test_idempotency_key(self):
        assert idempotency_key_for("acct-1") == "provision:acct-1:0"
        assert idempotency_key_for("acct-1", attempt=3) == "provision:acct-1:3"

    @pytest.mark.parametrize(
        "error, expected",
        [
            (stripe.APIConnectionError("reset"), True),
            (stripe.RateLimitError("slow down", http_status=429), True),
            (stripe.APIError("boom", http_status=500), True),
            (stripe.StripeError("bad gateway", http_status=503), True),
            (stripe.InvalidRequestError("bad param", param="email", http_status=400), False),
            (stripe.CardError("declined", param=None, code="card_declined", http_status=402), False),
            (ValueError("not stripe"), False),
        ],
    )
    def test_is_retryable(self, error, expected):
        assert is_retryable_stripe_error(error) is expected


class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_healthy(self, provider):
        assert await provider.health_check() is True

    @pytest.mark.asyncio
    async def test_unhealthy(self, provider, stripe_client):
        stripe_client.v1.balance.retrieve_async.side_effect = stripe.AuthenticationError(
            "Invalid API Key provided", http_status=401
        )

        assert await provider.health_check() is False

    @pytest.mark.asyncio
    async def test_result_is_cached(self, stripe_client):
        now = [100.0]
        provider = StripeProvider(
            api_key="sk_test_not_real",
            health_cache_ttl=30,
            client=stripe_client,
            clock=lambda: now[0],
        )

        assert await provider.health_check() is True
        now[0] += 10
        assert await provider.health_check() is True
        assert stripe_client.v1.balance.retrieve_async.await_count == 1

        now[0] += 25
        stripe_client.v1.balance.retrieve_async.side_effect = stripe.APIConnectionError("down")
        assert await provider.health_check() is False
        assert stripe_client.v1.balance.retrieve_async.await_count == 2


class TestBehindCoordinator:
    """The real client wired into the coordinator, with only the SDK mocked."""

    @pytest.mark.asyncio
    async def test_provisions_and_confirms(self, provider, stripe_client, store, make_request):
        coordinator = ProvisioningCoordinator(store=store, provider=provider)

        customer_id = await coordinator.ensure_customer(make_request("acct-1"))

        assert customer_id == "cus_new"
        assert stripe_client.v1.customers.create_async.await_count == 1
        link = await store.find_by_account("acct-1")
        assert link.link_status is LinkStatus.CONFIRMED
        assert link.provider_customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_transient_error_retried_then_confirmed(
        self, provider, stripe_client, store, make_request
    ):
        stripe_client.v1.customers.create_async.side_effect = [
            stripe.APIError("Internal error", http_status=500),
            SimpleNamespace(id="cus_second_try"),
        ]
        coordinator = ProvisioningCoordinator(store=store, provider=provider)

        assert await coordinator.ensure_customer(make_request("acct-1")) == "cus_second_try"
        assert (await store.find_by_account("acct-1")).link_status is LinkStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_bad_credentials_leave_link_pending(
        self, provider, stripe_client, store, make_request
    ):
        stripe_client.v1.customers.create_async.side_effect = stripe.AuthenticationError(
            "Invalid API Key provided", http_status=401
        )
        coordinator = ProvisioningCoordinator(store=store, provider=provider)

        with pytest.raises(ProviderUnavailable):
            await coordinator.ensure_customer(make_request("acct-1"))

        link = await store.find_by_account("acct-1")
        assert link.link_status is LinkStatus.PENDING
        assert link.failure_reason is None

        # Once the key is fixed, reconciliation completes the account
        stripe_client.v1.customers.create_async.side_effect = None
        provider.circuit_breaker.record_success()
        assert await coordinator.reconcile_account("acct-1") is LinkStatus.CONFIRMED
        assert (await store.find_by_account("acct-1")).provider_customer_id == "cus_new"
