"""Trade ledger: the only component that writes envelope, close and reflection rows.

Every mutation of an envelope filters on status == "open", so a closed
envelope can never change again. Callers receive frozen EnvelopeSnapshots.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from trade_manager.engine.exit_evaluator import TrailingUpdate
from trade_manager.exceptions import PersistenceFailure
from trade_manager.models import TradeClose, TradeEnvelope, TradePriceSample, TradeReflection
from trade_manager.schemas.envelope import (
    CloseRecord,
    EnvelopeSnapshot,
    TradeExitReason,
    TradeStatus,
    ensure_utc,
)

logger = logging.getLogger(__name__)

REFLECTION_FIELDS = (
    "thesis_correct",
    "timing_correct",
    "exit_reason_appropriate",
    "what_worked",
    "what_failed",
    "lesson_for_next_trade",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradeLedger:
    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def _session(self, trade_id: str | None = None) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"[{trade_id or 'ledger'}] Ledger operation failed: {e}")
            raise PersistenceFailure(str(e), trade_id=trade_id) from e

    @staticmethod
    def _open_row(session: Session, trade_id: str, *, lock: bool = True) -> TradeEnvelope | None:
        stmt = select(TradeEnvelope).where(
            TradeEnvelope.trade_id == trade_id,
            TradeEnvelope.status == TradeStatus.OPEN.value,
        )
        if lock:
            stmt = stmt.with_for_update()
        return session.exec(stmt).first()

    # ------------------------------------------------------------------
    # Envelopes
    # ------------------------------------------------------------------

    def create_envelope(self, envelope: EnvelopeSnapshot) -> EnvelopeSnapshot:
        """Insert a new open envelope. Runtime state always starts cleared."""
        values = envelope.to_row_values()
        values.update(
            status=TradeStatus.OPEN.value,
            high_water_price=None,
            low_water_price=None,
            trailing_activated=False,
            close_pending=False,
            close_pending_reason=None,
            close_pending_at=None,
        )
        row = TradeEnvelope(**values)
        with self._session(envelope.trade_id) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(
                f"[{row.trade_id}] Envelope created: {row.symbol} {row.side} "
                f"size={row.size} entry={row.entry_price}"
            )
            return EnvelopeSnapshot.model_validate(row)

    def get_envelope(self, trade_id: str) -> EnvelopeSnapshot | None:
        with self._session(trade_id) as session:
            row = session.get(TradeEnvelope, trade_id)
            return EnvelopeSnapshot.model_validate(row) if row else None

    def list_open_envelopes(self) -> list[EnvelopeSnapshot]:
        with self._session() as session:
            rows = session.exec(
                select(TradeEnvelope)
                .where(TradeEnvelope.status == TradeStatus.OPEN.value)
                .order_by(TradeEnvelope.entered_at)
            ).all()
            return [EnvelopeSnapshot.model_validate(r) for r in rows]

    def update_trailing(self, trade_id: str, update: TrailingUpdate) -> EnvelopeSnapshot | None:
        """Persist trailing state. Writes only the side-selected water mark."""
        with self._session(trade_id) as session:
            row = self._open_row(session, trade_id)
            if row is None:
                return None
            # Activation is one-way while the envelope is open
            row.trailing_activated = row.trailing_activated or update.trailing_activated
            if row.side == "buy":
                if row.high_water_price is None or update.water_price > row.high_water_price:
                    row.high_water_price = update.water_price
            else:
                if row.low_water_price is None or update.water_price < row.low_water_price:
                    row.low_water_price = update.water_price
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            session.refresh(row)
            return EnvelopeSnapshot.model_validate(row)

    def update_funding(self, trade_id: str, funding_usd: Decimal) -> bool:
        with self._session(trade_id) as session:
            row = self._open_row(session, trade_id)
            if row is None:
                return False
            row.funding_since_open_usd = funding_usd
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            return True

    def set_protective_orders(
        self, trade_id: str, *, tp_oid: str | None = None, sl_oid: str | None = None
    ) -> bool:
        """Record venue-accepted take-profit / stop-loss order ids."""
        with self._session(trade_id) as session:
            row = self._open_row(session, trade_id)
            if row is None:
                return False
            if tp_oid is not None:
                row.tp_oid = tp_oid
            if sl_oid is not None:
                row.sl_oid = sl_oid
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            return True

    def clear_protective_order(self, trade_id: str, oid: str) -> bool:
        """Clear tp_oid or sl_oid once its cancel is confirmed."""
        with self._session(trade_id) as session:
            row = self._open_row(session, trade_id)
            if row is None:
                return False
            if row.tp_oid == oid:
                row.tp_oid = None
            elif row.sl_oid == oid:
                row.sl_oid = None
            else:
                return False
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            return True

    # ------------------------------------------------------------------
    # Close-intent lock
    # ------------------------------------------------------------------

    def try_set_close_pending(
        self, trade_id: str, reason: TradeExitReason, now: datetime | None = None
    ) -> bool:
        """Compare-and-set close_pending false -> true. True only for the winner."""
        with self._session(trade_id) as session:
            row = session.exec(
                select(TradeEnvelope)
                .where(
                    TradeEnvelope.trade_id == trade_id,
                    TradeEnvelope.status == TradeStatus.OPEN.value,
                    TradeEnvelope.close_pending == False,  # noqa: E712
                )
                .with_for_update()
            ).first()
            if row is None:
                return False
            row.close_pending = True
            row.close_pending_reason = TradeExitReason(reason).value
            row.close_pending_at = now or _utcnow()
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            logger.info(f"[{trade_id}] close_pending set ({row.close_pending_reason})")
            return True

    def touch_close_pending(self, trade_id: str, now: datetime | None = None) -> bool:
        """Restart the retry clock of a pending close without releasing the lock."""
        with self._session(trade_id) as session:
            row = self._open_row(session, trade_id)
            if row is None or not row.close_pending:
                return False
            row.close_pending_at = now or _utcnow()
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            return True

    def clear_close_pending(self, trade_id: str) -> bool:
        """Release the lock after a confirmed abort."""
        with self._session(trade_id) as session:
            row = self._open_row(session, trade_id)
            if row is None or not row.close_pending:
                return False
            row.close_pending = False
            row.close_pending_reason = None
            row.close_pending_at = None
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            logger.info(f"[{trade_id}] close_pending cleared (abort confirmed)")
            return True

    def finalize_close(self, record: CloseRecord, *, needs_review: bool = False) -> bool:
        """Insert the close record and flip the envelope to closed in one transaction.

        Returns False if the envelope was already closed.
        """
        with self._session(record.trade_id) as session:
            row = self._open_row(session, record.trade_id)
            if row is None:
                logger.warning(f"[{record.trade_id}] finalize_close: envelope not open, ignoring")
                return False
            session.add(
                TradeClose(
                    trade_id=record.trade_id,
                    symbol=record.symbol,
                    exit_price=record.exit_price,
                    exit_reason=TradeExitReason(record.exit_reason).value,
                    pnl_usd=record.pnl_usd,
                    pnl_pct=record.pnl_pct,
                    hold_duration_seconds=record.hold_duration_seconds,
                    funding_paid_usd=record.funding_paid_usd,
                    fees_usd=record.fees_usd,
                    close_order_ids=list(record.close_order_ids),
                    closed_at=record.closed_at,
                )
            )
            row.status = TradeStatus.CLOSED.value
            row.close_pending = False
            row.close_pending_reason = None
            row.close_pending_at = None
            row.tp_oid = None
            row.sl_oid = None
            row.needs_review = row.needs_review or needs_review
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            logger.info(
                f"[{record.trade_id}] Closed {record.symbol} reason={TradeExitReason(record.exit_reason).value} "
                f"exit={record.exit_price} pnl=${record.pnl_usd:.2f}"
            )
            return True

    def get_close_record(self, trade_id: str) -> CloseRecord | None:
        with self._session(trade_id) as session:
            row = session.get(TradeClose, trade_id)
            return CloseRecord.model_validate(row) if row else None

    def list_closed_trades(self, limit: int | None = None) -> list[tuple[EnvelopeSnapshot, CloseRecord]]:
        """Closed trades, most recent first."""
        with self._session() as session:
            stmt = (
                select(TradeEnvelope, TradeClose)
                .join(TradeClose, TradeClose.trade_id == TradeEnvelope.trade_id)
                .order_by(TradeClose.closed_at.desc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return [
                (EnvelopeSnapshot.model_validate(env), CloseRecord.model_validate(close))
                for env, close in session.exec(stmt).all()
            ]

    # ------------------------------------------------------------------
    # Price samples
    # ------------------------------------------------------------------

    def record_price_sample(
        self, trade_id: str, symbol: str, mid_price: Decimal, at: datetime | None = None
    ) -> None:
        with self._session(trade_id) as session:
            session.add(
                TradePriceSample(
                    trade_id=trade_id, symbol=symbol, mid_price=mid_price, created_at=at or _utcnow()
                )
            )
            session.commit()

    def list_price_samples(self, trade_id: str) -> list[tuple[datetime, Decimal]]:
        with self._session(trade_id) as session:
            rows = session.exec(
                select(TradePriceSample)
                .where(TradePriceSample.trade_id == trade_id)
                .order_by(TradePriceSample.created_at)
            ).all()
            return [(ensure_utc(r.created_at), r.mid_price) for r in rows]

    # ------------------------------------------------------------------
    # Reflections
    # ------------------------------------------------------------------

    def request_reflection(self, trade_id: str, facts: dict[str, Any]) -> bool:
        """Create a reflection request; at most one per trade."""
        with self._session(trade_id) as session:
            existing = session.exec(
                select(TradeReflection).where(TradeReflection.trade_id == trade_id)
            ).first()
            if existing is not None:
                return False
            session.add(TradeReflection(trade_id=trade_id, status="requested", facts=facts))
            session.commit()
            logger.info(f"[{trade_id}] Reflection requested")
            return True

    def list_reflection_requests(self) -> list[TradeReflection]:
        with self._session() as session:
            return list(
                session.exec(
                    select(TradeReflection)
                    .where(TradeReflection.status == "requested")
                    .order_by(TradeReflection.created_at)
                ).all()
            )

    def record_reflection(self, trade_id: str, **answers) -> bool:
        """Store the upstream layer's answers to a reflection request."""
        unknown = set(answers) - set(REFLECTION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown reflection fields: {sorted(unknown)}")
        with self._session(trade_id) as session:
            row = session.exec(
                select(TradeReflection).where(TradeReflection.trade_id == trade_id)
            ).first()
            if row is None:
                return False
            for key, value in answers.items():
                setattr(row, key, value)
            row.status = "completed"
            row.completed_at = _utcnow()
            session.add(row)
            session.commit()
            return True

    def list_completed_reflections(self, limit: int = 5) -> list[TradeReflection]:
        with self._session() as session:
            return list(
                session.exec(
                    select(TradeReflection)
                    .where(TradeReflection.status == "completed")
                    .order_by(TradeReflection.completed_at.desc())
                    .limit(limit)
                ).all()
            )
