"""
Component lifecycle base class.

Every long-running piece of the worker (ledger, scanner, API server, the
app itself) is a BaseComponent so it can be started, stopped and
health-checked the same way.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def healthy(cls, message: str = "OK", **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.HEALTHY, message=message, details=details)

    @classmethod
    def degraded(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.DEGRADED, message=message, details=details)

    @classmethod
    def unhealthy(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNHEALTHY, message=message, details=details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "checked_at": self.checked_at.isoformat(),
        }


class BaseComponent:
    """Start/stop/health-check scaffolding shared by the worker's components.

    Subclasses override _do_start, _do_stop and _do_health_check. start()
    and stop() are idempotent; a failed _do_start leaves the component
    stopped and re-raises.
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self._name = name or self.__class__.__name__
        self._running = False
        self._started_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if not self._started_at:
            return 0.0
        return (_utcnow() - self._started_at).total_seconds()

    async def start(self) -> None:
        if self._running:
            return
        try:
            await self._do_start()
        except Exception as e:
            log.error("component_start_failed", component=self._name, error=str(e))
            raise
        self._running = True
        self._started_at = _utcnow()
        log.debug("component_started", component=self._name)

    async def stop(self) -> None:
        if not self._running:
            return
        try:
            await self._do_stop()
        finally:
            self._running = False
            log.debug("component_stopped", component=self._name, uptime_seconds=round(self.uptime_seconds, 1))

    async def health_check(self) -> HealthCheckResult:
        if not self._running:
            return HealthCheckResult.unhealthy("Component not running")
        return await self._do_health_check()

    async def _do_start(self) -> None:
        pass

    async def _do_stop(self) -> None:
        pass

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds)
