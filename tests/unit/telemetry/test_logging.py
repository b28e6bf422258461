"""Unit tests for structured logging setup and rollout metrics."""

from __future__ import annotations

import json
from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import pytest
import structlog
from opentelemetry.sdk.trace import TracerProvider

from rollout_core.deployment.metrics import RolloutMetrics
from rollout_core.telemetry.logging import add_trace_context, configure_logging


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_json_lines(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test JSON output carries the event, level and fields."""
        configure_logging(log_level="INFO", json_output=True)

        structlog.get_logger("test").info("job_triggered", run=3)

        line = json.loads(capsys.readouterr().err.strip())
        assert line["event"] == "job_triggered"
        assert line["level"] == "info"
        assert line["run"] == 3
        assert "timestamp" in line

    def test_level_filter(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test events below the level are dropped."""
        configure_logging(log_level="warning", json_output=True)

        structlog.get_logger("test").info("cycle_completed")

        assert capsys.readouterr().err == ""

    def test_unknown_level(self) -> None:
        """Test an unknown level name is rejected."""
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging(log_level="LOUD")


class TestAddTraceContext:
    """Tests for the add_trace_context processor."""

    def test_inside_span(self) -> None:
        """Test trace and span ids are added inside a recording span."""
        tracer = TracerProvider().get_tracer("test")

        with tracer.start_as_current_span("rollout.evaluate") as span:
            event = add_trace_context(None, "info", {"event": "x"})
            context = span.get_span_context()

        assert event["trace_id"] == format(context.trace_id, "032x")
        assert event["span_id"] == format(context.span_id, "016x")

    def test_outside_span(self) -> None:
        """Test nothing is added without an active span."""
        assert add_trace_context(None, "info", {"event": "x"}) == {"event": "x"}


class TestRolloutMetrics:
    """Tests for RolloutMetrics instruments."""

    @pytest.fixture
    def meter(self) -> Iterator[MagicMock]:
        meter = MagicMock()
        with patch("rollout_core.deployment.metrics.metrics.get_meter", return_value=meter):
            yield meter

    def test_counters(self, meter: MagicMock) -> None:
        """Test triggers and aborts are counted with job type and reason."""
        metrics = RolloutMetrics()

        metrics.record_trigger("production-a", reason="automatic")
        metrics.record_abort("system-test", reason="broken_platform")

        counter = meter.create_counter.return_value
        counter.add.assert_any_call(
            1, attributes={"job_type": "production-a", "reason": "automatic"}
        )
        counter.add.assert_any_call(
            1, attributes={"job_type": "system-test", "reason": "broken_platform"}
        )

    def test_instruments_created_once(self, meter: MagicMock) -> None:
        """Test instruments are created lazily and reused."""
        metrics = RolloutMetrics()

        metrics.record_skip("transient")
        metrics.record_skip("error")

        meter.create_counter.assert_called_once()
        assert meter.create_counter.call_args.args[0] == RolloutMetrics.EVALUATIONS_SKIPPED_TOTAL

    def test_evaluation_timer_failure(self, meter: MagicMock) -> None:
        """Test failed evaluations are timed with a failure status."""
        metrics = RolloutMetrics()

        with pytest.raises(RuntimeError):
            with metrics.evaluation_timer("tenant.app"):
                raise RuntimeError("boom")

        histogram = meter.create_histogram.return_value
        attributes = histogram.record.call_args.kwargs["attributes"]
        assert attributes == {"application": "tenant.app", "status": "failure"}
