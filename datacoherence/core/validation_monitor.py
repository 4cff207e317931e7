"""
Validation monitor.

A single injected collaborator that records validation successes and failures,
calculation mismatches and data-quality issues. Validators and the mutation
engine call it at exactly two points per operation (success, failure); the
monitor owns the counters, the bounded event history and the log output, so
business logic never logs data-quality problems ad hoc.
"""

from __future__ import annotations

import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from datacoherence.core.logging import component_logger
from datacoherence.datastructures.type_aliases import (
    EntityId,
    EntityKind,
    ErrorCode,
    Timestamp,
    ValidationPattern,
)

monitor_log = component_logger("validation_monitor")

LOG_PREFIX = "[VALIDATION_MONITOR]"


class MonitorEventType(Enum):
    """Kinds of events the monitor keeps in its history."""

    VALIDATION_SUCCESS = "validation_success"
    VALIDATION_ERROR = "validation_error"
    CALCULATION_MISMATCH = "calculation_mismatch"
    DATA_QUALITY_ISSUE = "data_quality_issue"


class IssueSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HealthState(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class MonitorEvent:
    """One recorded monitor event."""

    event_type: MonitorEventType
    context: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: Timestamp = field(default_factory=time.time)


@dataclass(slots=True)
class ValidationMetrics:
    """Counters exposed for health checks."""

    successes: int = 0
    validation_errors: int = 0
    calculation_mismatches: int = 0
    data_quality_issues: int = 0
    last_updated: Timestamp = field(default_factory=time.time)

    def copy(self) -> ValidationMetrics:
        return ValidationMetrics(
            successes=self.successes,
            validation_errors=self.validation_errors,
            calculation_mismatches=self.calculation_mismatches,
            data_quality_issues=self.data_quality_issues,
            last_updated=self.last_updated,
        )


@dataclass(frozen=True, slots=True)
class HealthThresholds:
    """Counts at which the monitor reports WARNING / CRITICAL health."""

    warning_validation_errors: int = 10
    warning_calculation_mismatches: int = 20
    warning_data_quality_issues: int = 15
    critical_validation_errors: int = 25
    critical_calculation_mismatches: int = 50
    critical_data_quality_issues: int = 30


@dataclass(frozen=True, slots=True)
class HealthReport:
    status: HealthState
    issues: tuple[str, ...]
    metrics: ValidationMetrics


@dataclass(frozen=True, slots=True)
class CalculationMismatch:
    """Details of a derived value that drifted from its stored counterpart."""

    kind: str
    expected: float
    actual: float
    tolerance: float
    entity_id: EntityId | None = None

    @property
    def difference(self) -> float:
        return abs(self.expected - self.actual)

    @property
    def exceeds_tolerance(self) -> bool:
        return self.difference > self.tolerance


class ValidationMonitor:
    """Records validation telemetry and auto-corrects calculation drift."""

    def __init__(
        self,
        history_size: int = 500,
        thresholds: HealthThresholds | None = None,
    ) -> None:
        self.thresholds = thresholds or HealthThresholds()
        self._metrics = ValidationMetrics()
        self._events: deque[MonitorEvent] = deque(maxlen=history_size)
        self.failures_by_code: Counter[ErrorCode] = Counter()
        self.successes_by_context: Counter[str] = Counter()

    def record_success(self, pattern: ValidationPattern, context: str) -> None:
        """Record a successful validation using ``pattern`` in ``context``."""
        self._metrics.successes += 1
        self.successes_by_context[context] += 1
        self._record(
            MonitorEventType.VALIDATION_SUCCESS, context, {"pattern": pattern}
        )
        monitor_log.debug(f"{LOG_PREFIX} Validation successful: {context} ({pattern})")

    def record_failure(
        self,
        context: str,
        error_code: ErrorCode,
        message: str,
        *,
        field_path: str | None = None,
        received_value: Any = None,
        source_id: Any = None,
    ) -> None:
        """Record a rejected record. The record itself is dropped by the caller."""
        self._metrics.validation_errors += 1
        self.failures_by_code[error_code] += 1
        self._record(
            MonitorEventType.VALIDATION_ERROR,
            context,
            {
                "error_code": error_code,
                "message": message,
                "field_path": field_path,
                "received_value": received_value,
                "source_id": source_id,
                "impact": "data_rejected",
            },
        )
        monitor_log.warning(
            f"{LOG_PREFIX} Validation error in {context} [{error_code}]"
            f" field={field_path} source={source_id}: {message}"
        )

    def record_calculation_mismatch(
        self,
        kind: str,
        expected: float,
        actual: float,
        tolerance: float,
        *,
        entity_id: EntityId | None = None,
    ) -> float:
        """Compare a derived value against a stored one.

        Returns the value callers should use: ``expected`` (the recomputed
        value) when the drift exceeds ``tolerance``, otherwise ``actual``.
        Only drift beyond the tolerance is recorded.
        """
        mismatch = CalculationMismatch(
            kind=kind,
            expected=expected,
            actual=actual,
            tolerance=tolerance,
            entity_id=entity_id,
        )
        if not mismatch.exceeds_tolerance:
            return actual

        self._metrics.calculation_mismatches += 1
        self._record(
            MonitorEventType.CALCULATION_MISMATCH,
            kind,
            {
                "expected": expected,
                "actual": actual,
                "difference": mismatch.difference,
                "tolerance": tolerance,
                "entity_id": entity_id,
                "corrected": True,
            },
        )

        summary = (
            f"{kind} expected={expected} actual={actual}"
            f" difference={mismatch.difference:.4f} tolerance={tolerance}"
        )
        if mismatch.difference > tolerance * 10:
            monitor_log.error(f"{LOG_PREFIX} CRITICAL calculation mismatch: {summary}")
        elif mismatch.difference > tolerance * 2:
            monitor_log.warning(
                f"{LOG_PREFIX} Significant calculation mismatch: {summary}"
            )
        else:
            monitor_log.info(f"{LOG_PREFIX} Minor calculation correction: {summary}")

        return expected

    def record_data_quality_issue(
        self,
        kind: EntityKind,
        description: str,
        severity: IssueSeverity = IssueSeverity.MEDIUM,
        entity_id: EntityId | None = None,
    ) -> None:
        """Record a data problem that did not cause a rejection."""
        self._metrics.data_quality_issues += 1
        self._record(
            MonitorEventType.DATA_QUALITY_ISSUE,
            kind,
            {
                "description": description,
                "severity": severity.value,
                "entity_id": entity_id,
            },
        )
        message = (
            f"{LOG_PREFIX} Data quality issue ({severity.value}) in {kind}: "
            f"{description}"
        )
        match severity:
            case IssueSeverity.CRITICAL | IssueSeverity.HIGH:
                monitor_log.error(message)
            case IssueSeverity.MEDIUM:
                monitor_log.warning(message)
            case IssueSeverity.LOW:
                monitor_log.info(message)

    def metrics(self) -> ValidationMetrics:
        """Snapshot of the current counters."""
        return self._metrics.copy()

    def recent_events(
        self, event_type: MonitorEventType | None = None, limit: int = 50
    ) -> list[MonitorEvent]:
        events = [
            event
            for event in self._events
            if event_type is None or event.event_type == event_type
        ]
        return events[-limit:]

    def reset(self) -> None:
        self._metrics = ValidationMetrics()
        self._events.clear()
        self.failures_by_code.clear()
        self.successes_by_context.clear()

    def health_status(self) -> HealthReport:
        """Classify the current counters against the configured thresholds."""
        t = self.thresholds
        m = self._metrics
        checks = (
            (
                "validation error",
                m.validation_errors,
                t.warning_validation_errors,
                t.critical_validation_errors,
            ),
            (
                "calculation mismatch",
                m.calculation_mismatches,
                t.warning_calculation_mismatches,
                t.critical_calculation_mismatches,
            ),
            (
                "data quality issue",
                m.data_quality_issues,
                t.warning_data_quality_issues,
                t.critical_data_quality_issues,
            ),
        )

        critical = [
            f"Critical {label} rate: {count}"
            for label, count, _, critical_at in checks
            if count >= critical_at
        ]
        if critical:
            return HealthReport(HealthState.CRITICAL, tuple(critical), self.metrics())

        warnings = [
            f"Elevated {label} rate: {count}"
            for label, count, warning_at, _ in checks
            if count >= warning_at
        ]
        if warnings:
            return HealthReport(HealthState.WARNING, tuple(warnings), self.metrics())

        return HealthReport(HealthState.HEALTHY, (), self.metrics())

    def _record(
        self, event_type: MonitorEventType, context: str, details: dict[str, Any]
    ) -> None:
        self._events.append(
            MonitorEvent(event_type=event_type, context=context, details=details)
        )
        self._metrics.last_updated = time.time()
