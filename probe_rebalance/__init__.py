"""
cl-probe-rebalance modules package

This package contains the core modules for the probe and rebalance plugin:
- node: Core Lightning adapter (the only module that calls lightningd)
- channel_selector: Outgoing channel choice for a peer restriction
- inbound_path: Final-hop hint for an inbound peer restriction
- routing: Route assembly from explicit hop channels and fee helpers
- network_probe: Non-committing probe over candidate routes
- payability: Single route payability checks and max routable search
- probe: Probe engine (probe, find max, optional real payment)
- rebalance: Circular rebalance planner and executor
- config: Configuration and runtime snapshots
- errors: Structured engine errors
- metrics: Prometheus exporter
"""

from .channel_selector import select_outbound_channel
from .config import Config, ConfigSnapshot
from .errors import ProbeRebalanceError
from .inbound_path import build_inbound_path
from .metrics import PrometheusExporter, MetricNames
from .models import Channel, GraphChannel, PathHop, Policy, ProbeOutcome, RebalanceResult, Route
from .node import NodeClient
from .payability import is_route_payable, find_max_routable
from .probe import ProbeEngine
from .rebalance import Rebalancer
from .routing import route_from_channels

__all__ = [
    'select_outbound_channel',
    'Config',
    'ConfigSnapshot',
    'ProbeRebalanceError',
    'build_inbound_path',
    'PrometheusExporter',
    'MetricNames',
    'Channel',
    'GraphChannel',
    'PathHop',
    'Policy',
    'ProbeOutcome',
    'RebalanceResult',
    'Route',
    'NodeClient',
    'is_route_payable',
    'find_max_routable',
    'ProbeEngine',
    'Rebalancer',
    'route_from_channels',
]
