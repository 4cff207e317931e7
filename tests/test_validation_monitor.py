"""
Tests for the validation monitor.

Covers:
- Success/failure recording and counters
- Calculation mismatch auto-correction and tolerance handling
- Data quality issues
- Bounded event history
- Health classification against thresholds
"""

import pytest

from datacoherence.core.validation_monitor import (
    CalculationMismatch,
    HealthState,
    HealthThresholds,
    IssueSeverity,
    MonitorEventType,
    ValidationMonitor,
)


class TestRecording:
    """Test success and failure recording."""

    def test_record_success(self):
        monitor = ValidationMonitor()

        monitor.record_success("transformation_schema", "products")

        assert monitor.metrics().successes == 1
        assert monitor.successes_by_context == {"products": 1}

    def test_record_failure(self):
        monitor = ValidationMonitor()

        monitor.record_failure(
            "products",
            "PRODUCT_VALIDATION_FAILED",
            "price must be >= 0",
            field_path="price",
            received_value=-1,
            source_id="p1",
        )

        assert monitor.metrics().validation_errors == 1
        assert monitor.failures_by_code["PRODUCT_VALIDATION_FAILED"] == 1
        event = monitor.recent_events(MonitorEventType.VALIDATION_ERROR)[0]
        assert event.details["field_path"] == "price"
        assert event.details["source_id"] == "p1"

    def test_metrics_snapshot_is_a_copy(self):
        monitor = ValidationMonitor()
        snapshot = monitor.metrics()

        monitor.record_success("p", "c")

        assert snapshot.successes == 0
        assert monitor.metrics().successes == 1


class TestCalculationMismatch:
    """Test auto-correction of derived values."""

    def test_mismatch_beyond_tolerance_returns_expected(self):
        """expected=19.98, actual=20.00, tolerance=0.01 returns 19.98."""
        monitor = ValidationMonitor()

        value = monitor.record_calculation_mismatch(
            "cart_total", expected=19.98, actual=20.00, tolerance=0.01
        )

        assert value == 19.98
        assert monitor.metrics().calculation_mismatches == 1
        event = monitor.recent_events(MonitorEventType.CALCULATION_MISMATCH)[0]
        assert event.details["corrected"] is True

    def test_within_tolerance_returns_actual(self):
        monitor = ValidationMonitor()

        value = monitor.record_calculation_mismatch(
            "cart_total", expected=19.98, actual=19.985, tolerance=0.01
        )

        assert value == 19.985
        assert monitor.metrics().calculation_mismatches == 0
        assert monitor.recent_events() == []

    def test_exact_tolerance_boundary_not_a_mismatch(self):
        monitor = ValidationMonitor()

        value = monitor.record_calculation_mismatch(
            "total", expected=10.0, actual=10.5, tolerance=0.5
        )

        assert value == 10.5

    def test_mismatch_dataclass(self):
        mismatch = CalculationMismatch("x", expected=1.0, actual=1.5, tolerance=0.1)

        assert mismatch.difference == pytest.approx(0.5)
        assert mismatch.exceeds_tolerance


class TestDataQuality:
    def test_record_issue(self):
        monitor = ValidationMonitor()

        monitor.record_data_quality_issue(
            "products", "missing image", IssueSeverity.LOW, entity_id="p1"
        )

        assert monitor.metrics().data_quality_issues == 1
        event = monitor.recent_events(MonitorEventType.DATA_QUALITY_ISSUE)[0]
        assert event.details == {
            "description": "missing image",
            "severity": "low",
            "entity_id": "p1",
        }


class TestHistoryAndHealth:
    """Test history bounds and health classification."""

    def test_history_is_bounded(self):
        monitor = ValidationMonitor(history_size=3)

        for i in range(5):
            monitor.record_success("p", f"ctx{i}")

        events = monitor.recent_events()
        assert len(events) == 3
        assert [e.context for e in events] == ["ctx2", "ctx3", "ctx4"]
        assert monitor.metrics().successes == 5

    def test_recent_events_limit(self):
        monitor = ValidationMonitor()
        for i in range(10):
            monitor.record_success("p", str(i))

        assert [e.context for e in monitor.recent_events(limit=2)] == ["8", "9"]

    def test_healthy_by_default(self):
        report = ValidationMonitor().health_status()

        assert report.status is HealthState.HEALTHY
        assert report.issues == ()

    def test_warning_threshold(self):
        monitor = ValidationMonitor()
        for _ in range(10):
            monitor.record_failure("products", "E", "bad")

        report = monitor.health_status()

        assert report.status is HealthState.WARNING
        assert "validation error" in report.issues[0]

    def test_critical_threshold(self):
        monitor = ValidationMonitor(
            thresholds=HealthThresholds(
                warning_calculation_mismatches=1, critical_calculation_mismatches=2
            )
        )
        for _ in range(2):
            monitor.record_calculation_mismatch("t", 1.0, 2.0, 0.01)

        assert monitor.health_status().status is HealthState.CRITICAL

    def test_reset(self):
        monitor = ValidationMonitor()
        monitor.record_failure("products", "E", "bad")

        monitor.reset()

        assert monitor.metrics().validation_errors == 0
        assert monitor.recent_events() == []
        assert not monitor.failures_by_code
