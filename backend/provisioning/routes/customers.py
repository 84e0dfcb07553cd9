"""
Customer Provisioning — Customer Routes (Request Boundary)
===========================================================

What:  HTTP surface of the provisioning flow.
How:   Pydantic validates the body; the coordinator does the work; the
       global exception handlers in main.py turn typed outcomes into status
       codes. No business logic lives here.

Route Inventory:
    POST /customers                 ensure a Stripe customer for an account
    GET  /customers/{account_key}   current link state
    POST /customers/reconcile       sweep stuck PENDING links (internal key)

POST /customers outcomes:
    201  {provider_customer_id}        new or already CONFIRMED
    400  {error: "validation_error"}   malformed body
    409  {error: "in_progress"}        link is PENDING
    422  {error: "rejected", reason}   provider rejected / link is FAILED
    502  {error: "unavailable"}        provider unreachable, retry later
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request

from provisioning.exceptions import ValidationError
from provisioning.middleware.internal_auth import InternalService, require_internal_service
from provisioning.schemas.customer import (
    CustomerLinkResponse,
    ErrorResponse,
    ProvisionRequest,
    ProvisionResponse,
    ReconcileRequest,
    ReconcileResponse,
    validate_account_key,
)
from provisioning.services.provisioning_service import ProvisioningCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/customers", tags=["Customers"])


def get_coordinator(request: Request) -> ProvisioningCoordinator:
    """The coordinator wired by the application lifespan (or by a test)."""
    return request.app.state.coordinator


@router.post(
    "",
    status_code=201,
    response_model=ProvisionResponse,
    responses={
        400: {"description": "Malformed input", "model": ErrorResponse},
        409: {"description": "Provisioning already in progress", "model": ErrorResponse},
        422: {"description": "Rejected by the payment provider", "model": ErrorResponse},
        502: {"description": "Payment provider unavailable", "model": ErrorResponse},
    },
    summary="Ensure a Stripe customer exists for an account",
)
async def provision_customer(
    body: ProvisionRequest,
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
) -> ProvisionResponse:
    """
    Idempotent: repeated calls for a provisioned account return the same id
    without contacting Stripe.
    """
    logger.info("Provision request for account %s", body.account_key)
    customer_id = await coordinator.ensure_customer(body)
    return ProvisionResponse(provider_customer_id=customer_id)


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    responses={
        400: {"description": "older_than_seconds below the configured floor", "model": ErrorResponse},
        401: {"description": "Missing or invalid internal API key", "model": ErrorResponse},
    },
    summary="Resolve PENDING links left behind by crashed or timed-out attempts",
)
async def reconcile_pending(
    request: Request,
    body: Optional[ReconcileRequest] = Body(default=None),
    service: InternalService = Depends(require_internal_service),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
) -> ReconcileResponse:
    defaults = request.app.state.reconcile_defaults
    body = body or ReconcileRequest()
    older_than = body.older_than_seconds
    if older_than is None:
        older_than = defaults["older_than_seconds"]
    if older_than < defaults["min_age"]:
        # Younger rows may belong to a request still waiting on Stripe
        raise ValidationError(
            message=f"older_than_seconds must be at least {defaults['min_age']}",
            field="older_than_seconds",
        )
    limit = body.limit or defaults["limit"]

    logger.info(
        "Reconciliation requested by %s (older_than=%ds, limit=%d)",
        service.name,
        older_than,
        limit,
    )
    summary = await coordinator.reconcile_stale(
        older_than=timedelta(seconds=older_than), limit=limit
    )
    return ReconcileResponse.model_validate(summary)


@router.get(
    "/{account_key}",
    response_model=CustomerLinkResponse,
    responses={
        400: {"description": "Malformed account key", "model": ErrorResponse},
        404: {"description": "Account was never provisioned", "model": ErrorResponse},
    },
    summary="Current customer link for an account",
)
async def get_customer_link(
    account_key: str,
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
) -> CustomerLinkResponse:
    try:
        validate_account_key(account_key)
    except ValueError as e:
        raise ValidationError(message=str(e), field="account_key")

    link = await coordinator.get_link(account_key)
    return CustomerLinkResponse.model_validate(link)
