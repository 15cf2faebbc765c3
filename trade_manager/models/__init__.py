"""Database models."""

from trade_manager.models.trade_envelope import TradeEnvelope
from trade_manager.models.trade_close import TradeClose
from trade_manager.models.trade_reflection import TradeReflection
from trade_manager.models.price_sample import TradePriceSample
from trade_manager.models.audit_event import AuditEvent

__all__ = [
    "TradeEnvelope",
    "TradeClose",
    "TradeReflection",
    "TradePriceSample",
    "AuditEvent",
]
