"""
Handoff: cryptographically verifiable proof of presence at last-mile delivery handoff.
Session secrets + single-use challenges + registered actor keys, anchored to an append-only ledger.

Inspired by the physical signature-on-delivery slip, minus the trust in the courier.
"""

__version__ = "0.1.0-dev"

from handoff.context import HandoffContext
from handoff.service import HandoffService

__all__ = ["HandoffContext", "HandoffService", "__version__"]
