"""
Logging, tracing and metrics setup for the voice payment pipeline.
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Dict, Optional

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = structlog.get_logger()

# Global tracer and meter
tracer: Optional[trace.Tracer] = None
meter: Optional[metrics.Meter] = None

# Metrics instruments
parse_counter: Optional[metrics.Counter] = None
parse_confidence_histogram: Optional[metrics.Histogram] = None
decision_counter: Optional[metrics.Counter] = None
risk_score_histogram: Optional[metrics.Histogram] = None
validation_counter: Optional[metrics.Counter] = None
pipeline_duration: Optional[metrics.Histogram] = None


def configure_logging(level: str = "INFO") -> None:
    """Route stdlib logging through structlog's JSON renderer."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_observability(
    service_name: str = "voicepay",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False
) -> None:
    """
    Set up OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service for tracing
        service_version: Version of the service
        otlp_endpoint: OTLP endpoint for trace/metric export
        enable_console_export: Whether to enable console export for development
    """
    global tracer, meter
    global parse_counter, parse_confidence_histogram, decision_counter
    global risk_score_histogram, validation_counter, pipeline_duration

    logger.info(
        "Setting up observability",
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint
    )

    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
    })

    # Set up tracing
    trace_provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

    if enable_console_export:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(__name__)

    # Set up metrics
    metric_readers = []

    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=otlp_endpoint),
                export_interval_millis=30000  # 30 seconds
            )
        )

    if enable_console_export:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=ConsoleMetricExporter(),
                export_interval_millis=60000  # 60 seconds
            )
        )

    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=metric_readers))
    meter = metrics.get_meter(__name__)

    parse_counter = meter.create_counter(
        name="voice_commands_parsed_total",
        description="Total number of parsed voice commands",
        unit="1"
    )

    parse_confidence_histogram = meter.create_histogram(
        name="voice_command_confidence",
        description="Parser confidence per command",
        unit="1"
    )

    decision_counter = meter.create_counter(
        name="security_decisions_total",
        description="Total number of security decisions",
        unit="1"
    )

    risk_score_histogram = meter.create_histogram(
        name="security_risk_score",
        description="Risk score per assessed request",
        unit="1"
    )

    validation_counter = meter.create_counter(
        name="transaction_validations_total",
        description="Total number of balance/fee validations",
        unit="1"
    )

    pipeline_duration = meter.create_histogram(
        name="payment_pipeline_duration_seconds",
        description="End-to-end processing time of a voice payment request",
        unit="s"
    )

    logger.info("Observability setup completed")


def instrument_http_clients() -> None:
    """Instrument outgoing httpx calls (the chain oracle) with OpenTelemetry."""
    if tracer is None:
        logger.warning("Tracer not initialized, call setup_observability() first")
        return

    HTTPXClientInstrumentor().instrument()
    logger.info("httpx clients instrumented with OpenTelemetry")


def trace_function(operation_name: Optional[str] = None):
    """
    Decorator to trace function execution.

    Args:
        operation_name: Optional custom operation name for the span
    """
    def decorator(func: Callable) -> Callable:
        span_name = operation_name or f"{func.__module__}.{func.__name__}"

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_attribute("success", False)
                    span.set_attribute("error.type", type(e).__name__)
                    span.set_attribute("error.message", str(e))
                    raise
                span.set_attribute("success", True)
                return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if tracer is None:
                return func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_attribute("success", False)
                    span.set_attribute("error.type", type(e).__name__)
                    span.set_attribute("error.message", str(e))
                    raise
                span.set_attribute("success", True)
                return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_parse_metrics(command_type: str, confidence: float, matched_rule: Optional[str]) -> None:
    """
    Record metrics for one parsed command.

    Args:
        command_type: Intent group of the parsed command
        confidence: Parser confidence
        matched_rule: Name of the rule that matched, if any
    """
    if parse_counter is None or parse_confidence_histogram is None:
        return

    attributes = {
        "command_type": command_type,
        "matched_rule": matched_rule or "none"
    }
    parse_counter.add(1, attributes)
    parse_confidence_histogram.record(confidence, {"command_type": command_type})


def record_decision_metrics(
    allowed: bool,
    required_level: str,
    risk_score: int,
    error_code: Optional[str] = None
) -> None:
    """
    Record metrics for a security decision.

    Args:
        allowed: Whether the request passed the hard checks
        required_level: Authentication level required
        risk_score: Risk score in [0, 100]
        error_code: Denial error code, if denied
    """
    if decision_counter is None or risk_score_histogram is None:
        return

    attributes = {
        "allowed": str(allowed).lower(),
        "required_level": required_level,
        "error_code": error_code or "none"
    }
    decision_counter.add(1, attributes)
    risk_score_histogram.record(risk_score, {"required_level": required_level})

    logger.info(
        "Decision metrics recorded",
        allowed=allowed,
        required_level=required_level,
        risk_score=risk_score,
        error_code=error_code
    )


def record_validation_metrics(ok: bool, error_code: Optional[str], processing_time: float) -> None:
    """
    Record metrics for a balance/fee validation and the request it ended.

    Args:
        ok: Whether validation passed
        error_code: Failure code, if any
        processing_time: End-to-end request time in seconds
    """
    if validation_counter is None or pipeline_duration is None:
        return

    attributes = {
        "ok": str(ok).lower(),
        "error_code": error_code or "none"
    }
    validation_counter.add(1, attributes)
    pipeline_duration.record(processing_time, attributes)


def get_trace_context() -> Dict[str, Any]:
    """
    Get current trace context information.

    Returns:
        Dict with trace ID and span ID if available
    """
    current_span = trace.get_current_span()
    if current_span is None or not current_span.is_recording():
        return {}

    span_context = current_span.get_span_context()
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
        "trace_flags": int(span_context.trace_flags)
    }


def bind_trace_context() -> None:
    """Attach the current trace/span ids to every structlog event in this context."""
    trace_context = get_trace_context()
    if trace_context:
        structlog.contextvars.bind_contextvars(**trace_context)
