# services/health.py
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.config_loader import HealthConfig, RestaurantSettings, Threshold
from common.errors import NotFound
from db.models import Call, Callback, CallbackPriority, CallbackStatus, CallStatus, Reservation, Restaurant, utcnow
from services.callbacks import OPEN_STATUSES, CallbackQueue
from services.store import store_guard

_log = logging.getLogger("reservation-core")

SEVERITY_RANK = {"healthy": 0, "degraded": 1, "critical": 2}
BOOKING_FAILURE_REASONS = ("SYSTEM_TIMEOUT", "SYSTEM_UNAVAILABLE", "INTERNAL_ERROR", "BOOKING_CONFLICT", "CRM_TIMEOUT")

_LABELS = {
    "call_error_rate": ("Error Rate", "%"),
    "call_completion_rate": ("Completion Rate", "%"),
    "pending_callbacks": ("Pending Callbacks", ""),
    "oldest_callback_minutes": ("Callback Age", "min"),
    "booking_success_rate": ("Booking Success Rate", "%"),
}


@dataclass(frozen=True)
class HealthMetrics:
    window_minutes: int
    calls_total: int = 0
    calls_completed: int = 0
    calls_error: int = 0
    call_error_rate: float = 0.0
    call_completion_rate: float = 100.0
    pending_callbacks: int = 0
    urgent_callbacks: int = 0
    oldest_callback_minutes: float = 0.0
    reservations_created: int = 0
    booking_failures: int = 0
    booking_success_rate: float = 100.0


@dataclass(frozen=True)
class HealthAlert:
    metric: str
    value: float
    threshold: float
    severity: str  # warning | critical
    message: str


@dataclass
class HealthSnapshot:
    status: str
    metrics: HealthMetrics
    alerts: List[HealthAlert] = field(default_factory=list)
    evaluated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "metrics": asdict(self.metrics),
            "alerts": [asdict(a) for a in self.alerts],
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


def _pct(part: int, whole: int, empty: float) -> float:
    return round(part * 100.0 / whole, 1) if whole else empty


def _observed(metrics: HealthMetrics) -> Dict[str, Optional[float]]:
    return {
        "call_error_rate": metrics.call_error_rate,
        "call_completion_rate": metrics.call_completion_rate,
        "pending_callbacks": float(metrics.pending_callbacks),
        # age only counts while something is waiting
        "oldest_callback_minutes": metrics.oldest_callback_minutes if metrics.pending_callbacks else None,
        "booking_success_rate": metrics.booking_success_rate,
    }


def evaluate_metrics(metrics: HealthMetrics, thresholds: Mapping[str, Threshold]) -> HealthSnapshot:
    """Compare each metric to its {warning, critical} pair. Status is the worst severity seen."""
    alerts: List[HealthAlert] = []
    status = "healthy"
    for metric, value in _observed(metrics).items():
        th = thresholds.get(metric)
        if th is None or value is None:
            continue
        sev = th.severity(value)
        if sev is None:
            continue
        limit = th.critical if sev == "critical" else th.warning
        label, unit = _LABELS.get(metric, (metric, ""))
        cmp = ">=" if th.higher_is_worse else "<"
        alerts.append(
            HealthAlert(
                metric=metric,
                value=value,
                threshold=limit,
                severity=sev,
                message=f"{label} {value:g}{unit} ({cmp} {limit:g}{unit})",
            )
        )
        level = "critical" if sev == "critical" else "degraded"
        if SEVERITY_RANK[level] > SEVERITY_RANK[status]:
            status = level
    return HealthSnapshot(status=status, metrics=metrics, alerts=alerts)


class HealthMonitor:
    """
    Stateless rolling-window evaluation over calls, callbacks and reservations.
    Nothing here is persisted; every call recomputes from the store.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: Optional[HealthConfig] = None,
        *,
        callbacks: Optional[CallbackQueue] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.config = config or HealthConfig()
        self.callbacks = callbacks
        self._clock = clock

    async def _collect(self, db: AsyncSession, restaurant_id: uuid.UUID, now: datetime) -> HealthMetrics:
        since = now - timedelta(minutes=self.config.window_minutes)

        call_rows = (
            await db.execute(
                select(Call.status, func.count())
                .where(Call.restaurant_id == restaurant_id, Call.started_at >= since)
                .group_by(Call.status)
            )
        ).all()
        by_status = {CallStatus(s): int(n) for s, n in call_rows}
        calls_total = sum(by_status.values())
        calls_completed = by_status.get(CallStatus.completed, 0)
        calls_error = by_status.get(CallStatus.error, 0)

        open_rows = (
            await db.execute(
                select(Callback.priority, Callback.created_at).where(
                    Callback.restaurant_id == restaurant_id,
                    Callback.status.in_(OPEN_STATUSES),
                )
            )
        ).all()
        pending = len(open_rows)
        urgent = sum(1 for p, _ in open_rows if p == CallbackPriority.urgent)
        oldest = min((c for _, c in open_rows if c is not None), default=None)
        oldest_minutes = round(max(0.0, (now - oldest).total_seconds() / 60.0), 1) if oldest else 0.0

        created = (
            await db.execute(
                select(func.count())
                .select_from(Reservation)
                .where(Reservation.restaurant_id == restaurant_id, Reservation.created_at >= since)
            )
        ).scalar_one()
        failures = (
            await db.execute(
                select(func.count())
                .select_from(Callback)
                .where(
                    Callback.restaurant_id == restaurant_id,
                    Callback.created_at >= since,
                    Callback.failure_reason.in_(BOOKING_FAILURE_REASONS),
                )
            )
        ).scalar_one()

        return HealthMetrics(
            window_minutes=self.config.window_minutes,
            calls_total=calls_total,
            calls_completed=calls_completed,
            calls_error=calls_error,
            call_error_rate=_pct(calls_error, calls_total, 0.0),
            call_completion_rate=_pct(calls_completed, calls_total, 100.0),
            pending_callbacks=pending,
            urgent_callbacks=urgent,
            oldest_callback_minutes=oldest_minutes,
            reservations_created=int(created),
            booking_failures=int(failures),
            booking_success_rate=_pct(int(created), int(created) + int(failures), 100.0),
        )

    async def collect(self, restaurant_id: uuid.UUID) -> HealthMetrics:
        async with store_guard("collect_health"):
            async with self._session_factory() as db:
                return await self._collect(db, restaurant_id, self._clock())

    async def evaluate(self, restaurant_id: uuid.UUID) -> HealthSnapshot:
        async with store_guard("get_health"):
            async with self._session_factory() as db:
                r = await db.get(Restaurant, restaurant_id)
                if r is None:
                    raise NotFound("Restaurant not found")
                now = self._clock()
                metrics = await self._collect(db, restaurant_id, now)
        overrides = RestaurantSettings.from_mapping(r.settings).health_thresholds
        snap = evaluate_metrics(metrics, self.config.with_overrides(overrides).thresholds)
        snap.evaluated_at = now
        return snap

    async def run_health_checks(self) -> List[Dict[str, Any]]:
        """
        Periodic job: evaluate every active restaurant, log alerts, sweep exhausted callbacks.
        One restaurant failing to evaluate does not stop the others.
        """
        if self.callbacks is not None:
            await self.callbacks.fail_exhausted()

        async with store_guard("run_health_checks"):
            async with self._session_factory() as db:
                ids = list((await db.execute(select(Restaurant.id).where(Restaurant.is_active.is_(True)))).scalars())

        results: List[Dict[str, Any]] = []
        for rid in ids:
            try:
                snap = await self.evaluate(rid)
            except Exception:  # noqa: BLE001
                _log.exception("Health evaluation failed for restaurant %s", rid)
                continue
            for a in snap.alerts:
                level = logging.ERROR if a.severity == "critical" else logging.WARNING
                _log.log(level, "Health alert restaurant=%s %s: %s", rid, a.severity.upper(), a.message)
            results.append({"restaurant_id": str(rid), **snap.to_dict()})
        return results
