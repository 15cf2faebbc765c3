"""Collaborator interfaces the engine depends on.

Concrete implementations live in trade_manager.services; tests use fakes.
"""

from datetime import datetime
from typing import Any, Protocol

from trade_manager.schemas.venue import (
    CancelOutcome,
    MarketSnapshot,
    OrderRef,
    OrderSpec,
    VenueFill,
    VenueOrder,
    VenueOrderRef,
    VenuePosition,
)


class MarketClient(Protocol):
    async def get_snapshot(self, symbol: str) -> MarketSnapshot:
        """Latest mid/mark price and funding for a symbol.

        Raises MarketDataUnavailable when no usable price exists.
        """
        ...


class ExecutionAdapter(Protocol):
    async def place_order(self, spec: OrderSpec) -> OrderRef:
        """Submit an order. Raises OrderRejected, or OrderOutcomeUnknown on timeout."""
        ...

    async def cancel_order(self, ref: VenueOrderRef) -> CancelOutcome:
        ...

    async def get_open_positions(self) -> list[VenuePosition]:
        ...

    async def get_open_orders(self) -> list[VenueOrder]:
        ...

    async def get_fills(self, since: datetime | None = None) -> list[VenueFill]:
        ...


class AuditSink(Protocol):
    async def record(
        self,
        action: str,
        outcome: str,
        *,
        trade_id: str | None = None,
        symbol: str | None = None,
        message: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        ...
