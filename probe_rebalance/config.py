"""
Configuration module for cl-probe-rebalance

Contains the Config dataclass that holds all tunable parameters of the
probe and rebalance engine, plus:
- ConfigSnapshot: immutable snapshot taken at the start of every probe or
  rebalance so a runtime update cannot change values mid-invocation
- Runtime configuration updates via RPC (in memory only)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet


# Immutable keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'dry_run',  # Safety: don't allow toggling dry_run to hide or enable payments
    'enable_prometheus',
    'prometheus_port',
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'probe_default_tokens': int,
    'default_cltv_delta': int,
    'cltv_buffer': int,
    'max_cltv_delta': int,
    'reserve_ratio': float,
    'pathfinding_timeout_seconds': int,
    'max_probe_attempts': int,
    'probe_riskfactor': int,
    'find_max_accuracy_tokens': int,
    'rebalance_max_fee': int,
    'rebalance_max_fee_rate': int,
    'liquidity_floor_tokens': int,
    'inbound_liquidity_floor_tokens': int,
    'max_rebalance_tokens': int,
    'rebalance_find_max_tokens': int,
    'rebalance_probe_tokens': int,
    'rebalance_probe_fee_rate': float,
    'rebalance_cltv_delta': int,
    'dry_run': bool,
    'enable_prometheus': bool,
    'prometheus_port': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'probe_default_tokens': (1, 100000000),
    'default_cltv_delta': (9, 2016),
    'cltv_buffer': (0, 144),
    'max_cltv_delta': (144, 20160),
    'reserve_ratio': (0.0, 0.5),
    'pathfinding_timeout_seconds': (1, 600),
    'max_probe_attempts': (1, 500),
    'probe_riskfactor': (0, 1000),
    'find_max_accuracy_tokens': (1, 1000000),
    'rebalance_max_fee': (1, 10000000),
    'rebalance_max_fee_rate': (1, 1000000),
    'liquidity_floor_tokens': (0, 2100000000000000),
    'inbound_liquidity_floor_tokens': (0, 2100000000000000),
    'max_rebalance_tokens': (1, 2100000000000000),
    'rebalance_find_max_tokens': (1, 2100000000000000),
    'rebalance_probe_tokens': (1, 100000000),
    'rebalance_probe_fee_rate': (0.0, 1.0),
    'rebalance_cltv_delta': (9, 2016),
}


@dataclass
class Config:
    """
    Configuration container for the probe and rebalance engine.

    All values can be set via plugin options at startup.
    """

    # Probing
    probe_default_tokens: int = 10         # Probe size when neither tokens nor a request amount is given
    default_cltv_delta: int = 144          # Final CLTV when the destination does not state one
    cltv_buffer: int = 3                   # Extra blocks added to the probe's final CLTV
    max_cltv_delta: int = 144 * 30         # Probe routes may not lock funds longer than ~30 days
    reserve_ratio: float = 0.01            # Assumed reserve share when a channel reports none
    pathfinding_timeout_seconds: int = 60  # How long a single HTLC attempt may take
    max_probe_attempts: int = 25           # Candidate routes tried per probe before giving up
    probe_riskfactor: int = 10             # getroute riskfactor
    find_max_accuracy_tokens: int = 1000   # Stop the max-routable search below this window

    # Rebalancing
    rebalance_max_fee: int = 1337                # Default absolute fee ceiling (sats)
    rebalance_max_fee_rate: int = 250            # Default fee rate ceiling (ppm)
    liquidity_floor_tokens: int = 4294967        # Out peers below this remote balance need a push
    inbound_liquidity_floor_tokens: int = 4294967 * 2  # In peer channels above this can receive a pull
    max_rebalance_tokens: int = 4294967          # Cap on a single circular rebalance
    rebalance_find_max_tokens: int = 5000000     # Ceiling of the max-routable search
    rebalance_probe_tokens: int = 10000          # Probe size of the self-to-self probe
    rebalance_probe_fee_rate: float = 0.0025     # Probe fee ceiling as a share of the ceiling above
    rebalance_cltv_delta: int = 40               # CLTV of the rebalance self-invoice

    # Safety flags
    dry_run: bool = False          # If True, probe and plan but never send a real payment

    # Prometheus Metrics
    enable_prometheus: bool = False
    prometheus_port: int = 9810

    # Internal version tracking (not a user-configurable option)
    _version: int = field(default=0, repr=False, compare=False)

    @property
    def rebalance_probe_max_fee(self) -> int:
        return int(self.rebalance_find_max_tokens * self.rebalance_probe_fee_rate)

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for one invocation.

        Every probe and rebalance captures a snapshot when it starts and
        uses only that snapshot until it returns.
        """
        return ConfigSnapshot.from_config(self)

    def update_runtime(self, key: str, value: str) -> Dict[str, Any]:
        """
        Runtime update: Validate type -> Validate range -> Update memory.

        Returns:
            Dict with status, old_value, new_value, version
        """
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if not hasattr(self, key) or key.startswith('_') or key not in CONFIG_FIELD_TYPES:
            return {"error": f"Unknown config key: {key}"}

        field_type = CONFIG_FIELD_TYPES[key]
        try:
            if field_type == bool:
                typed_value = str(value).lower() in ('true', '1', 'yes', 'on')
            elif field_type == int:
                typed_value = int(value)
            elif field_type == float:
                typed_value = float(value)
            else:
                typed_value = value
        except (ValueError, TypeError) as e:
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        old_value = getattr(self, key)
        setattr(self, key, typed_value)
        self._version += 1

        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": self._version
        }

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, key) for key in CONFIG_FIELD_TYPES}


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot for one probe or rebalance.

    Usage:
        def rebalance(self, ...):
            cfg = self.config.snapshot()  # Immutable for this invocation
            # All logic uses cfg, never self.config directly
    """
    # Probing
    probe_default_tokens: int
    default_cltv_delta: int
    cltv_buffer: int
    max_cltv_delta: int
    reserve_ratio: float
    pathfinding_timeout_seconds: int
    max_probe_attempts: int
    probe_riskfactor: int
    find_max_accuracy_tokens: int

    # Rebalancing
    rebalance_max_fee: int
    rebalance_max_fee_rate: int
    liquidity_floor_tokens: int
    inbound_liquidity_floor_tokens: int
    max_rebalance_tokens: int
    rebalance_find_max_tokens: int
    rebalance_probe_tokens: int
    rebalance_probe_max_fee: int
    rebalance_cltv_delta: int

    # Safety flags
    dry_run: bool

    # Version tracking
    version: int = 0

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(
            probe_default_tokens=config.probe_default_tokens,
            default_cltv_delta=config.default_cltv_delta,
            cltv_buffer=config.cltv_buffer,
            max_cltv_delta=config.max_cltv_delta,
            reserve_ratio=config.reserve_ratio,
            pathfinding_timeout_seconds=config.pathfinding_timeout_seconds,
            max_probe_attempts=config.max_probe_attempts,
            probe_riskfactor=config.probe_riskfactor,
            find_max_accuracy_tokens=config.find_max_accuracy_tokens,
            rebalance_max_fee=config.rebalance_max_fee,
            rebalance_max_fee_rate=config.rebalance_max_fee_rate,
            liquidity_floor_tokens=config.liquidity_floor_tokens,
            inbound_liquidity_floor_tokens=config.inbound_liquidity_floor_tokens,
            max_rebalance_tokens=config.max_rebalance_tokens,
            rebalance_find_max_tokens=config.rebalance_find_max_tokens,
            rebalance_probe_tokens=config.rebalance_probe_tokens,
            rebalance_probe_max_fee=config.rebalance_probe_max_fee,
            rebalance_cltv_delta=config.rebalance_cltv_delta,
            dry_run=config.dry_run,
            version=config._version,
        )
