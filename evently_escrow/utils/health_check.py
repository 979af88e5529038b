"""
Health check utilities for monitoring service dependencies.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List

from ..config import get_settings
from .circuit_breaker import CircuitState, get_all_circuit_breaker_stats
from .dependencies import EscrowComponents

logger = logging.getLogger(__name__)


class HealthCheckResult:
    """Result of a health check."""

    def __init__(self, service: str, healthy: bool, response_time: float, details: Dict[str, Any] = None):
        self.service = service
        self.healthy = healthy
        self.response_time = response_time
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "healthy": self.healthy,
            "response_time": self.response_time,
            "details": self.details,
            "timestamp": self.timestamp
        }


async def check_database_health() -> HealthCheckResult:
    """Check database connectivity."""
    from ..database import check_database

    start_time = time.time()
    try:
        await check_database()
        return HealthCheckResult(
            service="database",
            healthy=True,
            response_time=time.time() - start_time,
            details={"query": "SELECT 1", "result": "success"}
        )
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return HealthCheckResult(
            service="database",
            healthy=False,
            response_time=time.time() - start_time,
            details={"error": str(e), "error_type": type(e).__name__}
        )


async def check_lock_provider_health(components: EscrowComponents) -> HealthCheckResult:
    """Check the lock backend; local locks are always available."""
    start_time = time.time()
    ping = getattr(components.locks, "ping", None)
    healthy = True if ping is None else await ping()
    return HealthCheckResult(
        service="locks",
        healthy=healthy,
        response_time=time.time() - start_time,
        details={"backend": type(components.locks).__name__}
    )


def check_payment_rail_health(components: EscrowComponents) -> HealthCheckResult:
    """Report the payment rail circuit breaker; an open circuit is unhealthy."""
    stats = components.gateway.breaker.get_stats()
    return HealthCheckResult(
        service="payment_rail",
        healthy=components.gateway.breaker.state is not CircuitState.OPEN,
        response_time=0.0,
        details={"rail": type(components.rail).__name__, "circuit_breaker": stats}
    )


async def check_celery_health() -> HealthCheckResult:
    """Check Celery worker connectivity."""
    start_time = time.time()

    try:
        from ..tasks.celery_app import celery_app

        inspect = celery_app.control.inspect(timeout=1.0)
        stats = await asyncio.to_thread(inspect.stats)
        response_time = time.time() - start_time

        if stats:
            return HealthCheckResult(
                service="celery",
                healthy=True,
                response_time=response_time,
                details={"active_workers": len(stats), "workers": list(stats.keys())}
            )
        return HealthCheckResult(
            service="celery",
            healthy=False,
            response_time=response_time,
            details={"error": "No active Celery workers found"}
        )

    except Exception as e:
        logger.error(f"Celery health check failed: {e}")
        return HealthCheckResult(
            service="celery",
            healthy=False,
            response_time=time.time() - start_time,
            details={"error": str(e), "error_type": type(e).__name__}
        )


async def get_health_status(components: EscrowComponents, include_celery: bool = True) -> Dict[str, Any]:
    """Get health status of every dependency the settlement engine relies on."""
    settings = get_settings()
    start_time = time.time()

    checks: List = [check_lock_provider_health(components)]
    if settings.ledger_backend == "sql" or settings.payment_rail_backend == "ledger":
        checks.append(check_database_health())
    if include_celery:
        checks.append(check_celery_health())

    health_checks = list(await asyncio.gather(*checks, return_exceptions=True))
    health_checks.append(check_payment_rail_health(components))

    results = []
    overall_healthy = True
    for check in health_checks:
        if isinstance(check, Exception):
            logger.error(f"Health check failed with exception: {check}")
            results.append(HealthCheckResult(
                service="unknown",
                healthy=False,
                response_time=0.0,
                details={"error": str(check)}
            ).to_dict())
            overall_healthy = False
        else:
            results.append(check.to_dict())
            if not check.healthy:
                overall_healthy = False

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_check_time": time.time() - start_time,
        "services": results,
        "circuit_breakers": get_all_circuit_breaker_stats(),
        "summary": {
            "total_services": len(results),
            "healthy_services": sum(1 for r in results if r["healthy"]),
            "unhealthy_services": sum(1 for r in results if not r["healthy"])
        }
    }
