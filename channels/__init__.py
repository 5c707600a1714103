"""Outbound delivery channels: the simulated email vendor."""
from channels.vendor import (
    VendorSimulator,
    VendorError,
    VendorBatchError,
    BulkSendResult,
    FAILURE_REASONS,
)

__all__ = [
    "VendorSimulator", "VendorError", "VendorBatchError",
    "BulkSendResult", "FAILURE_REASONS",
]
