"""
Telemetry sinks for the MS365 executors.

Executors report one observation per attempt or batch round and one record
per classified failure. Sinks are fire-and-forget: a sink that raises is
logged and otherwise ignored.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from .errors import GraphError


log = logging.getLogger("m365_gateway.telemetry")


@runtime_checkable
class TelemetrySink(Protocol):
    def track_metric(self, name: str, value: float, attributes: Mapping[str, Any]) -> None:
        ...

    def log_error(self, error: GraphError) -> None:
        ...


class LoggingTelemetry:
    """Default sink: metric observations at DEBUG, error records at ERROR."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or log

    def track_metric(self, name: str, value: float, attributes: Mapping[str, Any]) -> None:
        self.logger.debug("metric %s=%.1f %s", name, value, dict(attributes))

    def log_error(self, error: GraphError) -> None:
        record = error.to_dict()
        self.logger.error(
            "%s [%s/%s] %s",
            record["category"],
            record["severity"],
            record["id"],
            record["message"],
            extra={"graph_error": record},
        )


class NullTelemetry:
    def track_metric(self, name: str, value: float, attributes: Mapping[str, Any]) -> None:
        pass

    def log_error(self, error: GraphError) -> None:
        pass


def emit_metric(sink: TelemetrySink, name: str, value: float, attributes: Dict[str, Any]) -> None:
    try:
        sink.track_metric(name, value, attributes)
    except Exception as e:
        log.warning("Telemetry sink failed on metric %s: %s", name, e)


def emit_error(sink: TelemetrySink, error: GraphError) -> None:
    try:
        sink.log_error(error)
    except Exception as e:
        log.warning("Telemetry sink failed on error %s: %s", error.id, e)
