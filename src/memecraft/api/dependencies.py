"""Shared FastAPI dependencies: the calling principal and per-request services."""

from __future__ import annotations

import structlog
from fastapi import Cookie, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from memecraft.config import settings
from memecraft.database import get_db
from memecraft.errors import AuthenticationRequired
from memecraft.payments.factory import PaymentProviderFactory
from memecraft.services.audit_logger import AuditLogger
from memecraft.services.credit_ledger import CreditLedger
from memecraft.services.monetization_gate import MonetizationGate
from memecraft.services.payment_service import PaymentService
from memecraft.services.subscription_manager import SubscriptionManager

log = structlog.get_logger()

# Optional bearer scheme -- auto_error=False so we can fall back to cookies
_bearer_scheme = HTTPBearer(auto_error=False)


def decode_session_token(token: str) -> str | None:
    """Return the user id (``sub``) of a valid session token, else None.

    Tokens are issued by the external auth layer; this service only verifies.
    """
    if not settings.JWT_SECRET_KEY:
        log.warning("session_token_unverifiable", reason="JWT_SECRET_KEY not set")
        return None
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        log.info("session_token_rejected", error=str(exc))
        return None
    sub = payload.get("sub")
    return str(sub) if sub else None


def token_from_request(request: Request) -> str | None:
    """Bearer header first, then the ``session_token`` cookie."""
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return request.cookies.get("session_token")


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    session_token: str | None = Cookie(default=None),
) -> str | None:
    """Resolve the calling user id, or None for anonymous callers."""
    token: str | None = None
    if credentials is not None:
        token = credentials.credentials
    elif session_token is not None:
        token = session_token

    if token is None:
        return None
    return decode_session_token(token)


async def require_user(principal: str | None = Depends(get_current_principal)) -> str:
    if principal is None:
        raise AuthenticationRequired("Authentication required")
    return principal


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

def get_payment_factory(request: Request) -> PaymentProviderFactory:
    return request.app.state.payment_factory


def get_audit_logger() -> AuditLogger:
    return AuditLogger()


def get_credit_ledger(
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit_logger),
) -> CreditLedger:
    return CreditLedger(db, audit)


def get_subscription_manager(
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
    audit: AuditLogger = Depends(get_audit_logger),
) -> SubscriptionManager:
    return SubscriptionManager(db, ledger, audit)


def get_monetization_gate(
    ledger: CreditLedger = Depends(get_credit_ledger),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
) -> MonetizationGate:
    return MonetizationGate(ledger, subscriptions)


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    factory: PaymentProviderFactory = Depends(get_payment_factory),
    ledger: CreditLedger = Depends(get_credit_ledger),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    audit: AuditLogger = Depends(get_audit_logger),
) -> PaymentService:
    return PaymentService(
        db, factory, ledger, subscriptions,
        currency=settings.DEFAULT_CURRENCY, audit=audit,
    )
