"""
Source-control triggers.

Components:
    - signature: HMAC verification of webhook deliveries
    - listener: classifies deliveries into trigger decisions
"""

from .listener import TriggerDecision, TriggerListener
from .signature import sign, verify_signature

__all__ = ["TriggerDecision", "TriggerListener", "sign", "verify_signature"]
