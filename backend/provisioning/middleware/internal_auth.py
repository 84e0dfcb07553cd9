"""
Internal Service Authentication
================================

API-key guard for operator endpoints (the reconciliation sweep). End-user
authentication belongs to the upstream auth subsystem; this only checks that
the caller is one of our own jobs or operators.

Keys come from INTERNAL_API_KEYS (comma-separated, several allowed for
rotation) and are placed on `app.state.internal_api_keys` by create_app().

Headers:
    X-Internal-Api-Key: <api_key>
    X-Service-Name: <service_name> (optional, for logging)

Usage:
    @router.post("/customers/reconcile")
    async def reconcile(service: InternalService = Depends(require_internal_service)):
        ...
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"


@dataclass
class InternalService:
    """An authenticated internal caller."""
    name: str
    api_key_hash: str  # last 8 chars only, for logs


def validate_internal_key(api_key: Optional[str], valid_keys: Iterable[str]) -> bool:
    """Constant-time check of `api_key` against every configured key."""
    if not api_key:
        return False
    matched = False
    for valid_key in valid_keys:
        if secrets.compare_digest(api_key.encode(), valid_key.encode()):
            matched = True
    return matched


api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def require_internal_service(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),
) -> InternalService:
    """
    FastAPI dependency authenticating an internal caller.

    Raises:
        HTTPException 401 when the key is missing, wrong, or no keys are configured.
    """
    service_name = request.headers.get(SERVICE_NAME_HEADER, "unknown")
    valid_keys = getattr(request.app.state, "internal_api_keys", [])

    if not api_key:
        logger.warning("Missing internal API key from service: %s", service_name)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing internal API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not validate_internal_key(api_key, valid_keys):
        logger.warning(
            "Invalid internal API key from service: %s, key ending: ...%s",
            service_name,
            api_key[-8:],
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    logger.info("Internal service authenticated: %s", service_name)
    return InternalService(name=service_name, api_key_hash=f"...{api_key[-8:]}")
