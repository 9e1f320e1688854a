"""
Prometheus metrics for cl-probe-rebalance

Lightweight, thread-safe exporter built on the standard library only.
Counts probes and rebalances by outcome, tracks rebalanced volume and fees,
and serves everything in the Prometheus text format on /metrics.

All metric names are prefixed with 'cl_probe_rebalance_'.
"""

import socket
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Any, Dict, Optional


class MetricType:
    GAUGE = "gauge"
    COUNTER = "counter"


class MetricNames:
    """Metric names shared by the probe engine and the rebalancer."""

    # Probe Engine (Counter, label: outcome)
    PROBES_TOTAL = "cl_probe_rebalance_probes_total"
    # Probe Engine (Gauge)
    PROBE_LATENCY_MS = "cl_probe_rebalance_probe_latency_ms"

    # Rebalancer (Counter, label: outcome)
    REBALANCES_TOTAL = "cl_probe_rebalance_rebalances_total"
    # Rebalancer (Counters)
    REBALANCED_SATS_TOTAL = "cl_probe_rebalance_rebalanced_sats_total"
    REBALANCE_FEES_SATS_TOTAL = "cl_probe_rebalance_rebalance_fees_sats_total"


METRIC_HELP = {
    MetricNames.PROBES_TOTAL: "Probes by outcome (success, failed, no_path)",
    MetricNames.PROBE_LATENCY_MS: "Time taken by the last successful probe in milliseconds",
    MetricNames.REBALANCES_TOTAL: "Rebalance attempts by outcome",
    MetricNames.REBALANCED_SATS_TOTAL: "Total volume moved by circular rebalances in sats",
    MetricNames.REBALANCE_FEES_SATS_TOTAL: "Total fees paid for circular rebalances in sats",
}


class PrometheusExporter:
    """
    Gauges and counters with labels, plus a background /metrics server.

    Usage:
        exporter = PrometheusExporter(port=9810, plugin=plugin)
        exporter.start_server()
        exporter.inc_counter(MetricNames.PROBES_TOTAL, 1, {"outcome": "success"})
    """

    def __init__(self, port: int = 9810, plugin=None):
        self.port = port
        self.plugin = plugin

        self._lock = threading.Lock()
        # {name: {"type": ..., "help": ..., "values": {frozenset(labels): value}}}
        self._metrics: Dict[str, Dict[str, Any]] = {}

        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def _log(self, message: str, level: str = 'info'):
        if self.plugin:
            self.plugin.log(message, level=level)

    def _entry(self, name: str, metric_type: str) -> Dict[str, Any]:
        if name not in self._metrics:
            self._metrics[name] = {
                "type": metric_type,
                "help": METRIC_HELP.get(name, ""),
                "values": {},
            }
        return self._metrics[name]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._entry(name, MetricType.GAUGE)["values"][label_key] = value

    def inc_counter(self, name: str, value: float = 1,
                    labels: Optional[Dict[str, str]] = None) -> None:
        label_key = frozenset((labels or {}).items())
        with self._lock:
            values = self._entry(name, MetricType.COUNTER)["values"]
            values[label_key] = values.get(label_key, 0) + value

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value for an exact label set, None if never recorded."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            if name in self._metrics:
                return self._metrics[name]["values"].get(label_key)
        return None

    def summary(self) -> Dict[str, Dict[str, float]]:
        """All values keyed by metric name and rendered label set, for status output."""
        result: Dict[str, Dict[str, float]] = {}
        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                result[name] = {
                    ",".join(f"{k}={v}" for k, v in sorted(label_key)) or "total": value
                    for label_key, value in metric["values"].items()
                }
        return result

    def format_prometheus(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""
        lines = []

        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                if metric["help"]:
                    lines.append(f"# HELP {name} {metric['help']}")
                lines.append(f"# TYPE {name} {metric['type']}")

                for label_key, value in sorted(metric["values"].items(), key=lambda x: str(x[0])):
                    if label_key:
                        label_part = ", ".join(f'{k}="{v}"' for k, v in sorted(label_key))
                        lines.append(f"{name}{{{label_part}}} {value}")
                    else:
                        lines.append(f"{name} {value}")

                lines.append("")

        return "\n".join(lines)

    def _create_request_handler(self):
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):

            def log_message(self, format, *args):
                # Keep stderr quiet; lightningd captures it
                pass

            def do_GET(self):
                try:
                    if self.path not in ('/', '/metrics'):
                        self.send_response(404)
                        self.send_header('Content-Type', 'text/plain')
                        self.end_headers()
                        self.wfile.write(b'Not Found. Try /metrics')
                        return

                    content = exporter.format_prometheus().encode('utf-8')
                    self.send_response(200)
                    self.send_header('Content-Type', 'text/plain; charset=utf-8')
                    self.send_header('Content-Length', str(len(content)))
                    self.end_headers()
                    self.wfile.write(content)
                except (BrokenPipeError, ConnectionResetError):
                    # Client went away mid-response
                    pass

        return MetricsHandler

    def start_server(self) -> bool:
        """Start the HTTP server in a daemon thread. Returns False if it could not bind."""
        if self._running:
            return True

        try:
            self._server = HTTPServer(('0.0.0.0', self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self._log(f"Failed to start Prometheus server on port {self.port}: {e}. "
                      "Plugin continues without metrics.", level='error')
            return False

        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="prometheus-exporter"
        )
        self._server_thread.start()
        self._running = True

        self._log(f"Prometheus metrics server started on port {self.port}")
        return True

    def stop_server(self):
        if self._server:
            self._server.shutdown()
            self._running = False
            self._log("Prometheus metrics server stopped")

    def is_running(self) -> bool:
        return self._running
