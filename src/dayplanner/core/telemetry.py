"""OpenTelemetry initialization and tool span wrappers."""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "dayplanner"

# True once the global TracerProvider has been installed in this process.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing for the planner daemon.

    When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, installs a TracerProvider
    with an OTLP gRPC exporter on the first call. Without it, the default
    no-op tracer is returned.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing it for %s", service_name)
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


class tool_span:
    """Create an OpenTelemetry span for an MCP tool invocation.

    Used as a context manager around each tool call::

        with tool_span("create-task", planner_name="dayplanner"):
            ...

    The span is named ``planner.tool.<tool_name>``. Exceptions are recorded
    on the span and its status is set to ERROR before the exception is
    re-raised.
    """

    def __init__(self, tool_name: str, *, planner_name: str) -> None:
        self._tool_name = tool_name
        self._planner_name = planner_name
        self._span_name = f"planner.tool.{tool_name}"
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        from dayplanner.core.logging import set_planner_context

        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        self._span.set_attribute("planner.name", self._planner_name)
        self._span.set_attribute("planner.tool", self._tool_name)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        set_planner_context(self._planner_name)
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

