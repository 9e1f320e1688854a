"""
Structured errors for cl-probe-rebalance

Every failure raised by the probe and rebalance engine is a
ProbeRebalanceError carrying a (class, code, details) triple:

- status: 400 (caller/input error or policy violation), 404 (no path, no
  qualifying channel or peer), 500 (internal), 503 (payment attempt failed)
- code: machine readable string, e.g. "RebalanceFeeTooHigh"
- details: optional numeric context, e.g. {"needed_max_fee": 2000}

Errors from lightningd itself (pyln.client.RpcError) are not wrapped and
propagate to the caller unchanged.
"""

from typing import Any, Dict, List, Optional


# Failure classes
BAD_REQUEST = 400
NOT_FOUND = 404
INTERNAL_ERROR = 500
PAYMENT_FAILED = 503


class ProbeRebalanceError(Exception):
    """A structured engine failure."""

    def __init__(self, status: int, code: str, details: Optional[Dict[str, Any]] = None):
        self.status = status
        self.code = code
        self.details = details or {}
        super().__init__(f"[{status}] {code}")

    def to_list(self) -> List[Any]:
        """The [status, code, details?] form."""
        if self.details:
            return [self.status, self.code, self.details]
        return [self.status, self.code]

    def to_dict(self) -> Dict[str, Any]:
        """RPC response shape returned to lightning-cli callers."""
        result = {
            "status": "error",
            "error": self.code,
            "error_class": self.status,
        }
        result.update(self.details)
        return result

    def __eq__(self, other):
        if not isinstance(other, ProbeRebalanceError):
            return NotImplemented
        return self.to_list() == other.to_list()

    def __hash__(self):
        return hash((self.status, self.code))
