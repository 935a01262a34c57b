"""OpenTelemetry + Prometheus fallback wiring for the AgentLens backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from agentlens import config

logger = logging.getLogger("agentlens.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_ingestion_counter: Any | None = None
_ingestion_latency_hist: Any | None = None
_ingestion_failure_counter: Any | None = None
_tool_calls_counter: Any | None = None
_tool_duration_hist: Any | None = None
_tokens_counter: Any | None = None
_cost_counter: Any | None = None

_prom_enabled = False
_prom_ingestion_counter: Any | None = None
_prom_ingestion_latency_hist: Any | None = None
_prom_ingestion_failure_counter: Any | None = None
_prom_tool_calls_counter: Any | None = None
_prom_tool_duration_hist: Any | None = None
_prom_tokens_counter: Any | None = None
_prom_cost_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _labels(*, source: str | None, **extra: str | None) -> dict[str, str]:
    labels = {"source": (source or "").strip() or "unknown"}
    for key, value in extra.items():
        labels[key] = (value or "").strip() or "unknown"
    return labels


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _ingestion_counter, _ingestion_latency_hist, _ingestion_failure_counter
    global _tool_calls_counter, _tool_duration_hist, _tokens_counter, _cost_counter
    global _prom_enabled
    global _prom_ingestion_counter, _prom_ingestion_latency_hist, _prom_ingestion_failure_counter
    global _prom_tool_calls_counter, _prom_tool_duration_hist, _prom_tokens_counter, _prom_cost_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (AGENTLENS_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "agentlens-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "agentlens",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("agentlens.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("agentlens.backend")

    _ingestion_counter = meter.create_counter(
        "agentlens_ingested_events_total",
        unit="1",
        description="Count of agent events received, by kind and result",
    )
    _ingestion_latency_hist = meter.create_histogram(
        "agentlens_ingestion_latency_ms",
        unit="ms",
        description="Latency of the per-event ingestion transaction",
    )
    _ingestion_failure_counter = meter.create_counter(
        "agentlens_ingestion_failures_total",
        unit="1",
        description="Count of ingestion transactions rolled back",
    )
    _tool_calls_counter = meter.create_counter(
        "agentlens_tool_calls_total",
        unit="1",
        description="Tool calls completed, by tool and outcome",
    )
    _tool_duration_hist = meter.create_histogram(
        "agentlens_tool_duration_ms",
        unit="ms",
        description="Reported tool execution durations",
    )
    _tokens_counter = meter.create_counter(
        "agentlens_tokens_total",
        unit="1",
        description="Tokens folded into session usage, by model and direction",
    )
    _cost_counter = meter.create_counter(
        "agentlens_cost_usd_total",
        unit="usd",
        description="Tool-call cost folded into session totals",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_ingestion_counter = Counter(
                "agentlens_ingested_events_total",
                "Count of agent events received, by kind and result",
                ["kind", "result", "source"],
            )
            _prom_ingestion_latency_hist = Histogram(
                "agentlens_ingestion_latency_ms",
                "Latency of the per-event ingestion transaction",
                ["kind", "result", "source"],
            )
            _prom_ingestion_failure_counter = Counter(
                "agentlens_ingestion_failures_total",
                "Count of ingestion transactions rolled back",
                ["kind", "source"],
            )
            _prom_tool_calls_counter = Counter(
                "agentlens_tool_calls_total",
                "Tool calls completed, by tool and outcome",
                ["tool", "status", "source"],
            )
            _prom_tool_duration_hist = Histogram(
                "agentlens_tool_duration_ms",
                "Reported tool execution durations",
                ["tool", "source"],
            )
            _prom_tokens_counter = Counter(
                "agentlens_tokens_total",
                "Tokens folded into session usage, by model and direction",
                ["model", "tool", "direction", "source"],
            )
            _prom_cost_counter = Counter(
                "agentlens_cost_usd_total",
                "Tool-call cost folded into session totals",
                ["model", "tool", "source"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Meter provider shutdown failed: %s", exc)
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Trace provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_ingestion(kind: str, result: str, duration_ms: float, *, source: str | None) -> None:
    labels = _labels(source=source, kind=kind, result=result)
    if _enabled and _ingestion_counter is not None:
        _ingestion_counter.add(1, labels)
    if _enabled and _ingestion_latency_hist is not None:
        _ingestion_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_ingestion_counter is not None:
        _prom_ingestion_counter.labels(**labels).inc()
    if _prom_enabled and _prom_ingestion_latency_hist is not None:
        _prom_ingestion_latency_hist.labels(**labels).observe(max(0.0, float(duration_ms)))


def record_ingestion_failure(kind: str, *, source: str | None) -> None:
    labels = _labels(source=source, kind=kind)
    if _enabled and _ingestion_failure_counter is not None:
        _ingestion_failure_counter.add(1, labels)
    if _prom_enabled and _prom_ingestion_failure_counter is not None:
        _prom_ingestion_failure_counter.labels(**labels).inc()


def record_tool_result(tool: str, status: str, *, source: str | None, duration_ms: float | None = None) -> None:
    labels = _labels(source=source, tool=tool, status=status)
    duration = float(duration_ms or 0.0)
    if _enabled and _tool_calls_counter is not None:
        _tool_calls_counter.add(1, labels)
    if _enabled and _tool_duration_hist is not None and duration > 0:
        _tool_duration_hist.record(duration, _labels(source=source, tool=tool))
    if _prom_enabled and _prom_tool_calls_counter is not None:
        _prom_tool_calls_counter.labels(**labels).inc()
    if _prom_enabled and _prom_tool_duration_hist is not None and duration > 0:
        _prom_tool_duration_hist.labels(**_labels(source=source, tool=tool)).observe(duration)


def record_token_cost(
    *,
    source: str | None,
    model: str | None,
    tool: str | None,
    prompt_tokens: float,
    completion_tokens: float,
    cost_usd: float,
) -> None:
    labels_base = _labels(source=source, model=model, tool=tool)
    in_tokens = max(0, int(prompt_tokens))
    out_tokens = max(0, int(completion_tokens))
    if _enabled and _tokens_counter is not None:
        if in_tokens > 0:
            _tokens_counter.add(in_tokens, {**labels_base, "direction": "prompt"})
        if out_tokens > 0:
            _tokens_counter.add(out_tokens, {**labels_base, "direction": "completion"})
    if _enabled and _cost_counter is not None and cost_usd > 0:
        _cost_counter.add(float(cost_usd), labels_base)

    if _prom_enabled and _prom_tokens_counter is not None:
        if in_tokens > 0:
            _prom_tokens_counter.labels(**{**labels_base, "direction": "prompt"}).inc(in_tokens)
        if out_tokens > 0:
            _prom_tokens_counter.labels(**{**labels_base, "direction": "completion"}).inc(out_tokens)
    if _prom_enabled and _prom_cost_counter is not None and cost_usd > 0:
        _prom_cost_counter.labels(**labels_base).inc(float(cost_usd))
