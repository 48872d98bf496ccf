"""Sync status and health reporting.

This module provides:
- SyncStatusReport: snapshot of the journal, mappings and checkpoint
- SyncHealthReport: derived health level with warnings and alerts
- assess_health: the thresholds turning a status into a health level

Thresholds:
| Metric                     | Warning | Critical |
|----------------------------|---------|----------|
| error rate                 | > 10%   | > 20%    |
| stuck entries              | > 5     | > 10     |
| minutes since last sync    | > 30    | > 60     |
| high-retry entries         | > 5     | -        |
| errors in the last hour    | > 20    | -        |
| enabled but never synced   | yes     | -        |

Health is for surfacing only; nothing here remediates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from storesync.client.sync.journal import JournalCounts
from storesync.core.timeutil import format_ts
from storesync.core.types import HealthLevel, SyncPhase

ERROR_RATE_WARNING = 10.0
ERROR_RATE_CRITICAL = 20.0
STUCK_WARNING = 5
STUCK_CRITICAL = 10
STALE_WARNING_MINUTES = 30
STALE_CRITICAL_MINUTES = 60
HIGH_RETRY_WARNING = 5
RECENT_ERRORS_WARNING = 20


@dataclass
class SyncStatusReport:
    """Point-in-time view of the sync state."""

    enabled: bool
    configured: bool
    last_sync_at: datetime | None
    counts: JournalCounts
    mappings: int = 0
    deferred_remote: int = 0
    phase: SyncPhase = SyncPhase.IDLE
    locked: bool = False

    @property
    def error_rate(self) -> float:
        """Failed entries as a percentage of the journal."""
        total = self.counts.total
        if total == 0:
            return 0.0
        return self.counts.error / total * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "configured": self.configured,
            "last_sync_at": format_ts(self.last_sync_at) if self.last_sync_at else None,
            "phase": self.phase.value,
            "locked": self.locked,
            "pending": self.counts.pending,
            "syncing": self.counts.syncing,
            "synced": self.counts.synced,
            "error": self.counts.error,
            "conflict": self.counts.conflict,
            "stuck": self.counts.stuck,
            "high_retry": self.counts.high_retry,
            "recent_errors": self.counts.recent_errors,
            "total": self.counts.total,
            "mappings": self.mappings,
            "deferred_remote": self.deferred_remote,
        }


@dataclass
class SyncHealthReport:
    """Health level derived from a status report."""

    level: HealthLevel
    metrics: dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    alerts: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.level is HealthLevel.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "metrics": self.metrics,
            "warnings": self.warnings,
            "alerts": self.alerts,
        }


def assess_health(status: SyncStatusReport, now: datetime) -> SyncHealthReport:
    """Derive the health level of a status snapshot.

    Args:
        status: Current status.
        now: Current time, for the staleness of the last sync.

    Returns:
        The health report. Any alert makes it critical, otherwise any
        warning makes it a warning.
    """
    counts = status.counts
    warnings: list[str] = []
    alerts: list[str] = []

    error_rate = status.error_rate
    if error_rate > ERROR_RATE_CRITICAL:
        alerts.append(f"High error rate: {error_rate:.1f}%")
    elif error_rate > ERROR_RATE_WARNING:
        warnings.append(f"Elevated error rate: {error_rate:.1f}%")

    if counts.stuck > STUCK_CRITICAL:
        alerts.append(f"{counts.stuck} entries stuck in syncing")
    elif counts.stuck > STUCK_WARNING:
        warnings.append(f"{counts.stuck} entries stuck in syncing")

    minutes_since_sync: float | None = None
    if status.last_sync_at is not None:
        minutes_since_sync = (now - status.last_sync_at).total_seconds() / 60
        if minutes_since_sync > STALE_CRITICAL_MINUTES:
            alerts.append(f"Last sync {minutes_since_sync:.0f} minutes ago")
        elif minutes_since_sync > STALE_WARNING_MINUTES:
            warnings.append(f"Last sync {minutes_since_sync:.0f} minutes ago")
    elif status.enabled:
        warnings.append("Sync enabled but never completed")

    if counts.high_retry > HIGH_RETRY_WARNING:
        warnings.append(f"{counts.high_retry} entries failed repeatedly")
    if counts.recent_errors > RECENT_ERRORS_WARNING:
        warnings.append(f"{counts.recent_errors} errors in the last hour")

    if alerts:
        level = HealthLevel.CRITICAL
    elif warnings:
        level = HealthLevel.WARNING
    else:
        level = HealthLevel.HEALTHY

    metrics = {
        "error_rate": round(error_rate, 2),
        "stuck": counts.stuck,
        "pending": counts.pending,
        "error": counts.error,
        "high_retry": counts.high_retry,
        "recent_errors": counts.recent_errors,
        "minutes_since_sync": (
            round(minutes_since_sync, 1) if minutes_since_sync is not None else None
        ),
    }
    return SyncHealthReport(level=level, metrics=metrics, warnings=warnings, alerts=alerts)
