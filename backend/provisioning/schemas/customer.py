"""
Customer Provisioning — Pydantic Request/Response Schemas
=========================================================

What:  The HTTP contract of the request boundary.
How:   FastAPI validates request bodies against these models; any failure is
       turned into a 400 by the RequestValidationError handler in main.py.
       The coordinator receives a validated ProvisionRequest and never
       re-checks its shape.

Validation rules:
    account_key    1-128 chars of [A-Za-z0-9_.:-]
    contact_email  syntactically valid address (email-validator)
    display_name   1-256 chars after trimming
    metadata       at most 20 string pairs; keys ≤ 40 chars, values ≤ 500
                   chars (Stripe's own metadata limits); "account_key" is
                   reserved because the provider client writes it
"""

import re
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

ACCOUNT_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")

MAX_METADATA_KEYS = 20
MAX_METADATA_KEY_LENGTH = 40
MAX_METADATA_VALUE_LENGTH = 500
RESERVED_METADATA_KEYS = {"account_key"}


def validate_account_key(value: str) -> str:
    """Shared by the body model and the path parameter of GET /customers/{account_key}."""
    if not ACCOUNT_KEY_PATTERN.match(value):
        raise ValueError(
            "account_key must be 1-128 characters of letters, digits, '_', '.', ':' or '-'"
        )
    return value


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class ProvisionRequest(BaseModel):
    """
    Body of POST /customers. Transient: consumed once per call.

    account_key is trusted to be authorized by the upstream auth subsystem;
    only its shape is checked here.
    """

    account_key: str = Field(description="Internal account identifier (user or organization id)")
    display_name: str = Field(
        min_length=1, max_length=256, description="Customer name shown in Stripe"
    )
    contact_email: EmailStr = Field(description="Billing contact email")
    metadata: Dict[str, str] = Field(
        default_factory=dict,
        description="Free-form string pairs copied onto the Stripe customer",
    )

    @field_validator("account_key")
    @classmethod
    def check_account_key(cls, v: str) -> str:
        return validate_account_key(v)

    @field_validator("display_name")
    @classmethod
    def strip_display_name(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("display_name must not be blank")
        return stripped

    @field_validator("metadata")
    @classmethod
    def check_metadata(cls, v: Dict[str, str]) -> Dict[str, str]:
        if len(v) > MAX_METADATA_KEYS:
            raise ValueError(f"metadata may contain at most {MAX_METADATA_KEYS} keys")
        for key, value in v.items():
            if key in RESERVED_METADATA_KEYS:
                raise ValueError(f"metadata key '{key}' is reserved")
            if not key or len(key) > MAX_METADATA_KEY_LENGTH:
                raise ValueError(
                    f"metadata keys must be 1-{MAX_METADATA_KEY_LENGTH} characters"
                )
            if len(value) > MAX_METADATA_VALUE_LENGTH:
                raise ValueError(
                    f"metadata value for '{key}' exceeds {MAX_METADATA_VALUE_LENGTH} characters"
                )
        return v


class ReconcileRequest(BaseModel):
    """Body of POST /customers/reconcile. Omitted fields fall back to configured defaults."""

    older_than_seconds: Optional[int] = Field(
        default=None, ge=0, le=86400 * 30, description="Only PENDING rows at least this old"
    )
    limit: Optional[int] = Field(default=None, ge=1, le=1000, description="Max rows per sweep")


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class ProvisionResponse(BaseModel):
    """201 body of POST /customers, for both new and already-confirmed accounts."""

    provider_customer_id: str = Field(description="Stripe customer id (cus_...)")


class CustomerLinkResponse(BaseModel):
    """Current state of an account's customer link (GET /customers/{account_key})."""

    account_key: str
    provider_customer_id: Optional[str] = None
    status: str = Field(description="pending, confirmed or failed")
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ReconcileResponse(BaseModel):
    examined: int
    confirmed: int
    failed: int
    still_pending: int
    account_keys: List[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class ErrorResponse(BaseModel):
    """
    Error body shared by every endpoint.

    Example:
        {
            "error": "rejected",
            "message": "The payment provider rejected the request",
            "reason": "Invalid email address: bob@",
            "request_id": "a1b2c3d4"
        }
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    reason: Optional[str] = Field(default=None, description="Provider rejection reason")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    provider: str = Field(description="Stripe status: available, unavailable, circuit_open")
    uptime_seconds: float = Field(description="Seconds since service started")
