#!/usr/bin/env python3
"""
cl-probe-rebalance: Probe and Rebalance Plugin for Core Lightning

This plugin answers two operator questions without guessing:

1. "Can I pay this node (or this invoice), how much, and at what fee?"
   It probes the destination with an HTLC whose payment hash nobody knows.
   The destination rejects it as an unknown payment, which proves the route
   works while no funds move. The probe can also search for the largest
   amount the route carries, and can pay a real invoice along exactly the
   probed route.

2. "Move liquidity from where I have too much to where I have too little."
   It picks an outbound-heavy peer and an inbound-heavy peer, probes a
   circle from our node back to itself through both, and pays a
   self-invoice along that circle when the fee fits the operator's limits.

Nothing runs in the background and nothing is persisted: every RPC call is
one self-contained invocation.

Dependencies:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import threading
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from pyln.client import Plugin, RpcError

from probe_rebalance.config import Config, CONFIG_FIELD_TYPES, IMMUTABLE_CONFIG_KEYS
from probe_rebalance.errors import ProbeRebalanceError
from probe_rebalance.metrics import PrometheusExporter
from probe_rebalance.node import NodeClient
from probe_rebalance.payability import is_route_payable
from probe_rebalance.probe import ProbeEngine
from probe_rebalance.rebalance import Rebalancer


plugin = Plugin()

# =============================================================================
# THREAD-SAFE RPC WRAPPER
# =============================================================================
# pyln-client's RPC is not safe for concurrent calls over one connection.
# The probe engine resolves its inputs on worker threads, so every RPC call
# is serialized through this lock.

RPC_LOCK = threading.Lock()


class ThreadSafeRpcProxy:
    """Serializes all calls to the plugin's LightningRpc through RPC_LOCK."""

    def __init__(self, rpc):
        self._rpc = rpc

    def __getattr__(self, name):
        method = getattr(self._rpc, name)
        if not callable(method):
            return method

        def wrapper(*args, **kwargs):
            with RPC_LOCK:
                return method(*args, **kwargs)

        return wrapper

    def call(self, method_name: str, payload: Any = None, **kwargs):
        with RPC_LOCK:
            return self._rpc.call(method_name, payload, **kwargs)


class ThreadSafePluginProxy:
    """A proxy for the Plugin object that provides thread-safe RPC access."""

    def __init__(self, plugin_instance: Plugin):
        self._plugin = plugin_instance
        self.rpc = ThreadSafeRpcProxy(plugin_instance.rpc)

    def log(self, message, level='info'):
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        return getattr(self._plugin, name)


# Global instances (initialized in init)
config: Optional[Config] = None
safe_plugin: Optional[ThreadSafePluginProxy] = None
node: Optional[NodeClient] = None
probe_engine: Optional[ProbeEngine] = None
rebalancer: Optional[Rebalancer] = None
metrics_exporter: Optional[PrometheusExporter] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='probe-rebalance-probe-tokens',
    default='10',
    description='Probe amount in sats when neither tokens nor an invoice amount is given (default: 10)'
)

plugin.add_option(
    name='probe-rebalance-default-cltv-delta',
    default='144',
    description='Final CLTV delta assumed when the destination states none (default: 144)'
)

plugin.add_option(
    name='probe-rebalance-cltv-buffer',
    default='3',
    description='Blocks added to the final CLTV delta of probes (default: 3)'
)

plugin.add_option(
    name='probe-rebalance-max-cltv-delta',
    default='4320',
    description='Maximum total timelock of a probed route in blocks (default: 4320, ~30 days)'
)

plugin.add_option(
    name='probe-rebalance-reserve-ratio',
    default='0.01',
    description='Channel reserve share assumed when a channel reports none (default: 0.01)'
)

plugin.add_option(
    name='probe-rebalance-pathfinding-timeout',
    default='60',
    description='Seconds a single HTLC attempt may take before it counts as failed (default: 60)'
)

plugin.add_option(
    name='probe-rebalance-max-probe-attempts',
    default='25',
    description='Candidate routes tried by one probe before giving up (default: 25)'
)

plugin.add_option(
    name='probe-rebalance-riskfactor',
    default='10',
    description='getroute riskfactor used for candidate routes (default: 10)'
)

plugin.add_option(
    name='probe-rebalance-find-max-accuracy',
    default='1000',
    description='Stop the max routable search once the window is below this many sats (default: 1000)'
)

plugin.add_option(
    name='probe-rebalance-max-fee',
    default='1337',
    description='Default absolute fee ceiling for a rebalance in sats (default: 1337)'
)

plugin.add_option(
    name='probe-rebalance-max-fee-rate',
    default='250',
    description='Default fee rate ceiling for a rebalance in ppm (default: 250)'
)

plugin.add_option(
    name='probe-rebalance-liquidity-floor',
    default='4294967',
    description='Peers with less remote balance than this are outbound rebalance candidates (default: 4294967)'
)

plugin.add_option(
    name='probe-rebalance-inbound-liquidity-floor',
    default='8589934',
    description='Channels with more remote balance than this are inbound rebalance candidates (default: 8589934)'
)

plugin.add_option(
    name='probe-rebalance-max-tokens',
    default='4294967',
    description='Maximum amount of a single rebalance in sats (default: 4294967)'
)

plugin.add_option(
    name='probe-rebalance-find-max-tokens',
    default='5000000',
    description='Ceiling of the max routable search for rebalance circles in sats (default: 5000000)'
)

plugin.add_option(
    name='probe-rebalance-probe-amount',
    default='10000',
    description='Probe amount for rebalance circles in sats (default: 10000)'
)

plugin.add_option(
    name='probe-rebalance-probe-fee-rate',
    default='0.0025',
    description='Probe fee ceiling for rebalance circles as a share of the search ceiling (default: 0.0025)'
)

plugin.add_option(
    name='probe-rebalance-cltv-delta',
    default='40',
    description='CLTV delta of rebalance self-invoices (default: 40)'
)

plugin.add_option(
    name='probe-rebalance-dry-run',
    default='false',
    description='Probe and plan, but never send a real payment (default: false)'
)

plugin.add_option(
    name='probe-rebalance-enable-prometheus',
    default='false',
    description='Enable Prometheus metrics exporter (default: false)'
)

plugin.add_option(
    name='probe-rebalance-prometheus-port',
    default='9810',
    description='Port for Prometheus metrics HTTP server (default: 9810)'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the probe and rebalance plugin.

    This is called once when the plugin starts. We:
    1. Parse options into Config
    2. Wrap the plugin with a lock-serialized RPC proxy
    3. Create the node adapter, probe engine and rebalancer
    4. Start Prometheus metrics exporter (if enabled)
    """
    global config, safe_plugin, node, probe_engine, rebalancer, metrics_exporter

    plugin.log("Initializing cl-probe-rebalance plugin...")

    config = Config(
        probe_default_tokens=int(options['probe-rebalance-probe-tokens']),
        default_cltv_delta=int(options['probe-rebalance-default-cltv-delta']),
        cltv_buffer=int(options['probe-rebalance-cltv-buffer']),
        max_cltv_delta=int(options['probe-rebalance-max-cltv-delta']),
        reserve_ratio=float(options['probe-rebalance-reserve-ratio']),
        pathfinding_timeout_seconds=int(options['probe-rebalance-pathfinding-timeout']),
        max_probe_attempts=int(options['probe-rebalance-max-probe-attempts']),
        probe_riskfactor=int(options['probe-rebalance-riskfactor']),
        find_max_accuracy_tokens=int(options['probe-rebalance-find-max-accuracy']),
        rebalance_max_fee=int(options['probe-rebalance-max-fee']),
        rebalance_max_fee_rate=int(options['probe-rebalance-max-fee-rate']),
        liquidity_floor_tokens=int(options['probe-rebalance-liquidity-floor']),
        inbound_liquidity_floor_tokens=int(options['probe-rebalance-inbound-liquidity-floor']),
        max_rebalance_tokens=int(options['probe-rebalance-max-tokens']),
        rebalance_find_max_tokens=int(options['probe-rebalance-find-max-tokens']),
        rebalance_probe_tokens=int(options['probe-rebalance-probe-amount']),
        rebalance_probe_fee_rate=float(options['probe-rebalance-probe-fee-rate']),
        rebalance_cltv_delta=int(options['probe-rebalance-cltv-delta']),
        dry_run=options['probe-rebalance-dry-run'].lower() == 'true',
        enable_prometheus=options['probe-rebalance-enable-prometheus'].lower() == 'true',
        prometheus_port=int(options['probe-rebalance-prometheus-port']),
    )

    plugin.log(f"Configuration loaded: max_fee={config.rebalance_max_fee}, "
               f"max_fee_rate={config.rebalance_max_fee_rate}, dry_run={config.dry_run}")

    safe_plugin = ThreadSafePluginProxy(plugin)

    if config.enable_prometheus:
        metrics_exporter = PrometheusExporter(port=config.prometheus_port, plugin=safe_plugin)
        if not metrics_exporter.start_server():
            plugin.log("Prometheus metrics disabled due to server startup failure", level='warn')
            metrics_exporter = None
    else:
        metrics_exporter = None

    node = NodeClient(safe_plugin, riskfactor=config.probe_riskfactor)
    probe_engine = ProbeEngine(safe_plugin, config, node, metrics=metrics_exporter)
    rebalancer = Rebalancer(safe_plugin, config, node, probe_engine, metrics=metrics_exporter)

    plugin.log("cl-probe-rebalance initialized")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ('true', '1', 'yes', 'on')
    return bool(value)


def _as_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


# =============================================================================
# RPC METHODS - Exposed to lightning-cli
# =============================================================================

@plugin.method("probe-destination")
def probe_destination(plugin: Plugin,
                      destination: Optional[str] = None,
                      request: Optional[str] = None,
                      tokens: Optional[int] = None,
                      ignore: Optional[List[Any]] = None,
                      out_through: Optional[str] = None,
                      in_through: Optional[str] = None,
                      max_fee: Optional[int] = None,
                      is_strict_max_fee: bool = False,
                      find_max: Optional[int] = None,
                      is_real_payment: bool = False) -> Dict[str, Any]:
    """
    Probe a destination (or invoice) without paying, optionally paying it.

    Usage:
      lightning-cli probe-destination -k destination=<node_id> [tokens=<sats>]
      lightning-cli probe-destination -k request=<bolt11> [find_max=<sats>]
      lightning-cli probe-destination -k request=<bolt11> is_real_payment=true max_fee=<sats>
    """
    if probe_engine is None:
        return {"error": "Plugin not fully initialized"}

    try:
        outcome = probe_engine.probe(
            destination=destination,
            request=request,
            tokens=_as_int(tokens),
            ignore=ignore,
            out_through=out_through,
            in_through=in_through,
            max_fee=_as_int(max_fee),
            is_strict_max_fee=_as_bool(is_strict_max_fee),
            find_max=_as_int(find_max),
            is_real_payment=_as_bool(is_real_payment),
        )
    except ProbeRebalanceError as e:
        return e.to_dict()
    except RpcError as e:
        return {"status": "error", "error": str(e)}

    return {"status": "success", **outcome.to_dict()}


@plugin.method("probe-rebalance")
def probe_rebalance(plugin: Plugin,
                    avoid: Optional[List[str]] = None,
                    in_through: Optional[str] = None,
                    out_through: Optional[str] = None,
                    max_fee: Optional[int] = None,
                    max_fee_rate: Optional[int] = None) -> Dict[str, Any]:
    """
    Run one circular rebalance between an outbound-heavy and an inbound-heavy peer.

    Usage:
      lightning-cli probe-rebalance
      lightning-cli probe-rebalance -k out_through=<node_id> in_through=<node_id> max_fee=500
      lightning-cli probe-rebalance -k avoid='["<node_id>"]' max_fee_rate=100
    """
    if rebalancer is None:
        return {"error": "Plugin not fully initialized"}

    try:
        result = rebalancer.rebalance(
            avoid=avoid,
            in_through=in_through,
            out_through=out_through,
            max_fee=_as_int(max_fee),
            max_fee_rate=_as_int(max_fee_rate),
        )
    except ProbeRebalanceError as e:
        plugin.log(f"Rebalance failed: {e.code} {e.details or ''}", level='info')
        return e.to_dict()
    except RpcError as e:
        return {"status": "error", "error": str(e)}

    return {"status": "success", **result.to_dict()}


@plugin.method("probe-route-payable")
def probe_route_payable(plugin: Plugin, channels: List[str], cltv: int,
                        tokens: int) -> Dict[str, Any]:
    """
    Check whether an exact channel sequence starting at our node can carry tokens.

    Usage: lightning-cli probe-route-payable '["<scid>", ...]' <final_cltv> <sats>
    """
    if node is None:
        return {"error": "Plugin not fully initialized"}

    try:
        hops = channels
        if isinstance(channels, list):
            own_key = node.get_wallet_info()["public_key"]
            hops = node.get_hop_chain(own_key, channels)
        result = is_route_payable(
            node, hops, _as_int(cltv), _as_int(tokens),
            pathfinding_timeout=config.pathfinding_timeout_seconds,
        )
    except ProbeRebalanceError as e:
        return e.to_dict()
    except (ValueError, RpcError) as e:
        return {"status": "error", "error": str(e)}

    return {"status": "success", **result}


@plugin.method("probe-rebalance-config")
def probe_rebalance_config(plugin: Plugin, action: str, key: str = None,
                           value: str = None) -> Dict[str, Any]:
    """
    Get or set runtime configuration. Changes live in memory until restart.

    Usage:
      lightning-cli probe-rebalance-config get                # Get all config
      lightning-cli probe-rebalance-config get <key>          # Get specific key
      lightning-cli probe-rebalance-config set <key> <value>  # Set key
      lightning-cli probe-rebalance-config list-mutable       # List changeable keys
    """
    if config is None:
        return {"error": "Plugin not initialized"}

    if action == "get":
        if key:
            if key not in CONFIG_FIELD_TYPES:
                return {"error": f"Unknown config key: {key}"}
            return {"key": key, "value": getattr(config, key), "version": config._version}
        return {"config": asdict(config.snapshot()), "version": config._version}

    elif action == "set":
        if not key or value is None:
            return {"error": "Usage: probe-rebalance-config set <key> <value>"}

        result = config.update_runtime(key, str(value))

        if result.get("status") == "success":
            plugin.log(
                f"CONFIG UPDATE: {key} changed from {result['old_value']} "
                f"to {result['new_value']} (v{result['version']})",
                level='info'
            )

        return result

    elif action == "list-mutable":
        mutable = [k for k in CONFIG_FIELD_TYPES if k not in IMMUTABLE_CONFIG_KEYS]
        return {"mutable_keys": sorted(mutable), "count": len(mutable)}

    return {"error": f"Unknown action: {action}. Use 'get', 'set', or 'list-mutable'"}


@plugin.method("probe-rebalance-status")
def probe_rebalance_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current status of the plugin.

    Usage: lightning-cli probe-rebalance-status
    """
    if config is None:
        return {"error": "Plugin not fully initialized"}

    return {
        "status": "running",
        "dry_run": config.dry_run,
        "config_version": config._version,
        "config": config.to_dict(),
        "prometheus": {
            "enabled": metrics_exporter is not None,
            "port": config.prometheus_port if metrics_exporter else None,
        },
        "metrics": metrics_exporter.summary() if metrics_exporter else {},
    }


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
