"""
Customer Provisioning — Exception Hierarchy
============================================

What:  Typed outcomes for every expected failure of the provisioning flow.
How:   Each exception carries a user-safe message and a context dict that is
       logged but never returned. Global handlers in main.py map each type to
       an HTTP status and a JSON body.

Exception Hierarchy:
    ProvisioningError (base)
    ├── ValidationError             → 400 Bad Request
    ├── NotFoundError               → 404 Not Found
    ├── ConflictError               (internal: link already exists)
    ├── ProvisioningInProgress      → 409 Conflict
    ├── ProvisioningFailed          → 422 Unprocessable Entity
    ├── ProviderRejected            → 422 Unprocessable Entity
    ├── ProviderUnavailable         → 502 Bad Gateway (retryable)
    │   └── CircuitBreakerOpenError → 502 Bad Gateway (retryable)
    └── DatabaseError               → 500 Internal Server Error (alertable)

Only DatabaseError signals an incident. Everything else is ordinary control
flow between the store, the coordinator and the request boundary.
"""

from typing import Any, Dict, Optional


class ProvisioningError(Exception):
    """
    Base exception for all provisioning errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(ProvisioningError):
    """Client input failed validation. HTTP 400."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(ProvisioningError):
    """
    The requested customer link does not exist, or is not in the state an
    update requires (e.g. mark_confirmed on a row that is no longer PENDING).
    HTTP 404.
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ConflictError(ProvisioningError):
    """
    A customer link already exists for the account.

    Raised by CustomerLinkStore.insert_pending when the unique constraint on
    account_key rejects the insert. The coordinator always handles it; it
    never reaches the HTTP layer.
    """

    def __init__(self, account_key: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["account_key"] = account_key
        super().__init__(
            message=f"A customer link already exists for account '{account_key}'",
            context=ctx,
        )
        self.account_key = account_key


class ProvisioningInProgress(ProvisioningError):
    """
    Another attempt owns provisioning for this account (row is PENDING).

    The caller may retry later. Rows abandoned by a crashed or timed-out
    attempt stay PENDING until the reconciliation sweep resolves them.
    HTTP 409.
    """

    def __init__(self, account_key: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["account_key"] = account_key
        super().__init__(
            message="Customer provisioning for this account is already in progress",
            context=ctx,
        )
        self.account_key = account_key


class ProvisioningFailed(ProvisioningError):
    """The account's link is FAILED; `reason` is the stored provider rejection. HTTP 422."""

    def __init__(
        self,
        account_key: str,
        reason: Optional[str],
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["account_key"] = account_key
        super().__init__(
            message="Customer provisioning previously failed for this account",
            context=ctx,
        )
        self.account_key = account_key
        self.reason = reason or "unknown"


class ProviderRejected(ProvisioningError):
    """
    The payment provider refused the request (invalid parameters, bad
    credentials, missing permissions). Not retryable until the input or the
    configuration changes. HTTP 422.
    """

    def __init__(
        self,
        reason: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message="The payment provider rejected the request", context=context)
        self.reason = reason


class ProviderUnavailable(ProvisioningError):
    """
    The payment provider could not be reached or answered with a transient
    error after the client's own retries. Caller may retry with backoff.
    HTTP 502.
    """

    def __init__(
        self,
        message: str = "The payment provider is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(ProviderUnavailable):
    """
    Raised without contacting Stripe while the circuit breaker is OPEN.

    CLOSED → failures increment counter
    → threshold reached → OPEN (reject calls for recovery_time seconds)
    → timeout elapsed → HALF_OPEN (one trial call)
    → trial succeeds → CLOSED, trial fails → OPEN again
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(
            message=(
                "The payment provider is temporarily unavailable due to repeated failures. "
                f"Retry in approximately {recovery_time} seconds."
            ),
            retry_after=recovery_time,
            context=ctx,
        )
        self.recovery_time = recovery_time


class DatabaseError(ProvisioningError):
    """
    Unexpected store failure (connection loss, driver error).

    The message returned to the client is always generic; SQL details are
    logged server-side only. HTTP 500.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
