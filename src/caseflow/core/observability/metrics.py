"""
OpenTelemetry Metrics

Case workflow instruments: creations, transitions, stage deletions and
recreations, version conflicts, time in state and store latency.

Instruments exist only after `init_metrics`; recording against a name that
was never created is a silent no-op.
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

logger = logging.getLogger(__name__)

COUNTERS: Dict[str, str] = {
    "cases_created_total": "Cases opened",
    "case_transitions_total": "Stage transitions applied",
    "case_transitions_rejected_total": "Transitions refused by the stage graph",
    "stage_deletions_total": "Stages soft-deleted",
    "stage_recreations_total": "Stages recreated from backup",
    "concurrent_modifications_total": "Mutations refused for a stale case version",
}

HISTOGRAMS: Dict[str, str] = {
    "case_time_in_state_seconds": "Time a case spent in the stage it is leaving",
    "db_transaction_duration_seconds": "Case store transaction duration",
}

_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}


def init_metrics(
    service_name: str,
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000,
) -> metrics.Meter:
    """Install a meter provider and create the case workflow instruments."""
    readers = []
    if otlp_endpoint:
        readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms,
        ))
        logger.info(f"Metric export to {otlp_endpoint}")
    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(), export_interval_millis=export_interval_ms
        ))

    metrics.set_meter_provider(
        MeterProvider(resource=Resource.create({SERVICE_NAME: service_name}), metric_readers=readers)
    )
    meter = metrics.get_meter(service_name)

    for name, description in COUNTERS.items():
        _counters[name] = meter.create_counter(name, description=description, unit="1")
    for name, description in HISTOGRAMS.items():
        unit = "s" if name.endswith("_seconds") else "1"
        _histograms[name] = meter.create_histogram(name, description=description, unit=unit)

    return meter


def record_counter(name: str, value: int = 1, attributes: Optional[Dict[str, Any]] = None):
    counter = _counters.get(name)
    if counter is not None:
        counter.add(value, attributes or {})


def record_histogram(name: str, value: float, attributes: Optional[Dict[str, Any]] = None):
    histogram = _histograms.get(name)
    if histogram is not None:
        histogram.record(value, attributes or {})
