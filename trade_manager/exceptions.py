"""Exception hierarchy for the trade management engine.

    TradeManagementError (base)
    ├── MarketDataUnavailable: per-symbol, skip symbol for this tick
    ├── OrderRejected: venue said no; retry up to the ceiling
    ├── OrderOutcomeUnknown: order op timed out; reconcile before acting again
    ├── ReconciliationMismatch: ledger and venue disagree in a way policy can't resolve
    ├── PersistenceFailure: ledger write failed; no venue-mutating calls may follow
    ├── CloseEscalated: close retries exhausted; lock kept for the operator
    └── ConfigurationError

All of these are caught at tick granularity by the monitor; the loop re-arms.
"""


class TradeManagementError(Exception):
    """Base exception for all trade management errors."""

    def __init__(self, message: str = "", *, symbol: str | None = None, trade_id: str | None = None):
        super().__init__(message)
        self.symbol = symbol
        self.trade_id = trade_id


class MarketDataUnavailable(TradeManagementError):
    """No usable price for a symbol (fetch failed, timed out, or returned nothing)."""


class OrderRejected(TradeManagementError):
    """The venue rejected an order or cancel request."""


class OrderOutcomeUnknown(TradeManagementError):
    """An order operation timed out; it may or may not have reached the venue."""


class ReconciliationMismatch(TradeManagementError):
    """Ledger and venue state diverge and no automatic resolution applies."""


class PersistenceFailure(TradeManagementError):
    """A ledger read or write failed."""


class CloseEscalated(TradeManagementError):
    """Close retries are exhausted; the envelope stays close-pending."""


class ConfigurationError(TradeManagementError):
    """Settings are missing or inconsistent for the requested mode."""
