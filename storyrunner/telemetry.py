"""Telemetry setup for OpenTelemetry traces and metrics.

Exports traces and metrics over OTLP when OTLP_ENABLED=true; otherwise
installs in-process SDK providers that record nothing externally.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from storyrunner.config import RunnerConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
stories_counter: metrics.Counter
attempts_counter: metrics.Counter
cost_counter: metrics.Counter
attempt_duration: metrics.Histogram
rate_limits_counter: metrics.Counter
queue_commands_counter: metrics.Counter


def setup_telemetry(config: RunnerConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with optional OTLP export.

    If OTLP_ENABLED is not "true" or no endpoint is configured, uses
    providers without exporters.

    Args:
        config: Runner configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for run tracking.

    Counters: stories finished (by outcome), agent attempts (by agent and
    result), cost in USD, rate limits hit (by agent), queue commands
    applied (by type). Histogram: attempt duration.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global stories_counter, attempts_counter, cost_counter, attempt_duration
    global rate_limits_counter, queue_commands_counter

    stories_counter = meter.create_counter(
        "storyrunner_stories_total",
        description="Stories finished, by outcome",
    )

    attempts_counter = meter.create_counter(
        "storyrunner_attempts_total",
        description="Agent invocations",
    )

    cost_counter = meter.create_counter(
        "storyrunner_cost_usd_total",
        description="Total cost in USD",
    )

    attempt_duration = meter.create_histogram(
        "storyrunner_attempt_duration_seconds",
        description="Agent invocation duration",
        unit="s",
    )

    rate_limits_counter = meter.create_counter(
        "storyrunner_rate_limits_total",
        description="Rate limits reported by agents",
    )

    queue_commands_counter = meter.create_counter(
        "storyrunner_queue_commands_total",
        description="Queue control commands processed",
    )


def record_attempt(agent: str, model: str, result: str, cost: float, seconds: float) -> None:
    """Record one agent attempt if counters are initialized."""
    try:
        attempts_counter.add(1, {"agent": agent, "model": model, "result": result})
        cost_counter.add(cost, {"agent": agent})
        attempt_duration.record(seconds, {"agent": agent})
        if result == "rate_limited":
            rate_limits_counter.add(1, {"agent": agent})
    except NameError:
        # Counters not initialized - telemetry disabled
        pass


def record_story(outcome: str) -> None:
    """Record a finished story if counters are initialized."""
    try:
        stories_counter.add(1, {"outcome": outcome})
    except NameError:
        pass


def record_queue_command(command: str, applied: bool) -> None:
    """Record a processed queue command if counters are initialized."""
    try:
        queue_commands_counter.add(1, {"command": command, "applied": applied})
    except NameError:
        pass
