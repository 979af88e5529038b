"""
Component wiring and FastAPI dependencies.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import Settings, get_settings
from ..ledger import InMemoryLedger, Ledger, SqlAlchemyLedger
from ..locks import create_lock_provider
from ..payments import InMemoryRail, LedgerBalanceRail, PaymentRail, RailGateway
from ..services.checkin_service import CheckinService
from ..services.query_service import EscrowQueryService
from ..services.registration_service import RegistrationService
from ..services.settlement_service import SettlementService
from ..utils.auth import verify_token
from ..utils.clock import Clock
from ..utils.exceptions import AuthenticationError
from ..utils.logging_config import log_security_event

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme; missing credentials are reported by get_current_account
security = HTTPBearer(auto_error=False)


@dataclass
class EscrowComponents:
    """Every long-lived object the API needs, built once per process."""
    ledger: Ledger
    rail: PaymentRail
    gateway: RailGateway
    locks: object
    engine: SettlementService
    queries: EscrowQueryService
    registrations: RegistrationService
    checkin: CheckinService


def build_components(
    settings: Optional[Settings] = None,
    *,
    session_factory=None,
    ledger: Optional[Ledger] = None,
    rail: Optional[PaymentRail] = None,
    locks=None,
    clock: Optional[Clock] = None
) -> EscrowComponents:
    """
    Assemble ledger, rail, locks and services from the configured backends.

    Any component passed in explicitly is used as is.
    """
    settings = settings or get_settings()

    if ledger is None:
        if settings.ledger_backend == "memory":
            ledger = InMemoryLedger(clock=clock)
        else:
            if session_factory is None:
                from ..database import get_session_factory
                session_factory = get_session_factory()
            ledger = SqlAlchemyLedger(session_factory, clock=clock)

    if rail is None:
        if settings.payment_rail_backend == "memory":
            rail = InMemoryRail(clock=clock)
        else:
            if session_factory is None:
                from ..database import get_session_factory
                session_factory = get_session_factory()
            rail = LedgerBalanceRail(session_factory)

    if locks is None:
        locks = create_lock_provider(settings)

    gateway = RailGateway(rail, settings=settings)
    engine = SettlementService(ledger, gateway, locks, settings=settings, clock=clock)
    registrations = RegistrationService(ledger, locks, settings=settings)

    logger.info(
        f"Escrow components built: ledger={type(ledger).__name__}, "
        f"rail={type(rail).__name__}, locks={type(locks).__name__}"
    )
    return EscrowComponents(
        ledger=ledger,
        rail=rail,
        gateway=gateway,
        locks=locks,
        engine=engine,
        queries=EscrowQueryService(ledger, settings=settings),
        registrations=registrations,
        checkin=CheckinService(ledger, engine, registrations, settings=settings),
    )


_components: Optional[EscrowComponents] = None


def set_components(components: Optional[EscrowComponents]) -> None:
    global _components
    _components = components


def get_components() -> EscrowComponents:
    """Return the process-wide components, building them on first use."""
    global _components
    if _components is None:
        _components = build_components()
    return _components


def get_settlement_service() -> SettlementService:
    return get_components().engine


def get_query_service() -> EscrowQueryService:
    return get_components().queries


def get_registration_service() -> RegistrationService:
    return get_components().registrations


def get_checkin_service() -> CheckinService:
    return get_components().checkin


async def get_current_account(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """
    Get the calling account from the bearer JWT.

    Args:
        request: Incoming request; the account is stored on ``request.state``
        credentials: HTTP Bearer credentials

    Returns:
        The account named in the token's ``sub`` claim

    Raises:
        AuthenticationError: If the token is missing or invalid
    """
    if credentials is None:
        raise AuthenticationError(
            "Authentication required",
            suggestions=["Include an Authorization: Bearer <token> header"]
        )

    token_data = verify_token(credentials.credentials)
    if token_data is None or not token_data.account:
        log_security_event("InvalidAccessToken", {
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        })
        raise AuthenticationError("Could not validate credentials")

    account = token_data.account.strip().lower()
    request.state.account = account
    return account
