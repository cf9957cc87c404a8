from unittest.mock import patch

from consultflow.core.exceptions import ConsistencyViolation
from consultflow.monitoring.prometheus_metrics import REGISTRY
from consultflow.services.advisory import report_consistency_violation, run_advisory


def _failures(stage: str) -> float:
    return REGISTRY.get_sample_value("consultflow_advisory_failures_total", {"stage": stage}) or 0.0


def test_returns_result_on_success():
    assert run_advisory("test_ok", lambda a, b=0: a + b, 2, b=3) == 5


def test_failure_is_swallowed_and_reported():
    def broken():
        raise RuntimeError("calendar down")

    before = _failures("test_broken")
    with patch("consultflow.services.advisory.capture_tagged_exception") as capture:
        result = run_advisory("test_broken", broken, default="fallback", context={"booking_id": "b1"})

    assert result == "fallback"
    assert _failures("test_broken") == before + 1
    capture.assert_called_once()
    assert capture.call_args.kwargs["stage"] == "test_broken"
    assert capture.call_args.kwargs["context"] == {"booking_id": "b1"}


def test_default_is_none():
    def broken():
        raise ValueError("nope")

    with patch("consultflow.services.advisory.capture_tagged_exception"):
        assert run_advisory("test_default", broken) is None


def test_consistency_violation_is_reported_as_message(caplog):
    violation = ConsistencyViolation("no candidates", context={"invoice_id": "inv_1"})

    with patch("consultflow.services.advisory.capture_tagged_message") as capture:
        report_consistency_violation(violation, stage="monthly_aggregation")

    capture.assert_called_once_with("no candidates", stage="monthly_aggregation", context={"invoice_id": "inv_1"})
    assert "Consistency violation in monthly_aggregation" in caplog.text
