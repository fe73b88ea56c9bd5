"""OpenTelemetry メトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("k1s0.flagengine", version="0.1.0")

flag_evaluations_total = _meter.create_counter(
    name="flag_evaluations_total",
    description="Total number of flag evaluations",
    unit="1",
)

flag_evaluation_duration_ms = _meter.create_histogram(
    name="flag_evaluation_duration_ms",
    description="Flag evaluation duration in milliseconds",
    unit="ms",
)

flag_sync_total = _meter.create_counter(
    name="flag_sync_total",
    description="Total number of flag sync attempts by outcome",
    unit="1",
)

telemetry_flush_total = _meter.create_counter(
    name="telemetry_flush_total",
    description="Total number of telemetry flushes by type and outcome",
    unit="1",
)
