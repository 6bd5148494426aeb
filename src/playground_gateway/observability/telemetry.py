"""OpenTelemetry wiring for the gateway.

Spans and counters go through :data:`global_tracer` and :data:`global_metrics`.
Both resolve the global providers lazily, so they are no-ops until
:func:`configure_opentelemetry` installs OTLP exporters.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger(__name__)

_providers: Optional[tuple[TracerProvider, MeterProvider]] = None


def _signal_url(endpoint: str, signal: str) -> str:
    """``collector:4318`` → ``http://collector:4318/v1/<signal>``."""
    if "://" not in endpoint:
        endpoint = f"http://{endpoint}"
    path = f"/v1/{signal}"
    return endpoint if endpoint.endswith(path) else endpoint.rstrip("/") + path


def configure_opentelemetry(
    service_name: str = "playground-gateway",
    otlp_endpoint: Optional[str] = None,
) -> bool:
    """Install OTLP/HTTP trace and metric exporters once per process.

    Returns True if exporters are active after the call.
    """
    global _providers
    if _providers is not None:
        return True
    if not otlp_endpoint:
        logger.info("PLAYGROUND_OTLP_ENDPOINT not set, spans and metrics stay local no-ops")
        return False

    resource = Resource.create({"service.name": service_name})

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_signal_url(otlp_endpoint, "traces")))
    )
    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=[
            PeriodicExportingMetricReader(
                OTLPMetricExporter(endpoint=_signal_url(otlp_endpoint, "metrics"))
            )
        ],
    )
    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(meter_provider)
    _providers = (tracer_provider, meter_provider)
    logger.info("Exporting telemetry for %s to %s", service_name, otlp_endpoint)
    return True


def shutdown_opentelemetry() -> None:
    """Flush pending spans and metrics."""
    global _providers
    if _providers is None:
        return
    tracer_provider, meter_provider = _providers
    _providers = None
    try:
        tracer_provider.shutdown()
        meter_provider.shutdown()
    except Exception:
        logger.exception("Telemetry flush failed")


class Tracer:
    def __init__(self, name: str = "playground_gateway"):
        self._name = name

    @contextmanager
    def start_span(
        self, name: str, attributes: Optional[Dict[str, object]] = None
    ) -> Iterator[trace.Span]:
        with trace.get_tracer(self._name).start_as_current_span(
            name, attributes=attributes or {}
        ) as span:
            yield span


class Metrics:
    """Counters created on first use and cached by name."""

    def __init__(self, name: str = "playground_gateway"):
        self._name = name
        self._counters: Dict[str, metrics.Counter] = {}

    def increment_counter(
        self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None
    ) -> None:
        counter = self._counters.get(name)
        if counter is None:
            counter = metrics.get_meter(self._name).create_counter(name)
            self._counters[name] = counter
        counter.add(value, attributes=tags)


global_tracer = Tracer()
global_metrics = Metrics()
