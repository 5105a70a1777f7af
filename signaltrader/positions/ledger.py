from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from signaltrader.broker.models import BrokerPosition
from signaltrader.config import AppConfig
from signaltrader.signals.models import AggregatedConviction
from signaltrader.storage.models import PositionEntry, PositionState
from signaltrader.storage.store import StateStore

LOGGER = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Position lifecycle transition not allowed from the current state."""


class PositionLedger:
    """Per-symbol lifecycle NONE -> OPEN -> CLOSING -> NONE, persisted in the state store."""

    def __init__(self, store: StateStore, config: AppConfig):
        self.store = store
        self.config = config

    def _exit_levels(self, asset_class: str) -> tuple[float, float]:
        if asset_class == "crypto":
            return self.config.crypto.take_profit_pct, self.config.crypto.stop_loss_pct
        return self.config.exits.take_profit_pct, self.config.exits.stop_loss_pct

    def state_of(self, symbol: str) -> PositionState:
        entry = self.store.get_position(symbol)
        return entry.state if entry is not None else PositionState.NONE

    def get(self, symbol: str) -> PositionEntry | None:
        return self.store.get_position(symbol)

    def entries(self) -> list[PositionEntry]:
        return self.store.list_positions()

    def open_position(
        self,
        *,
        symbol: str,
        qty: Decimal,
        fill_price: Decimal,
        asset_class: str,
        now: datetime,
        conviction: AggregatedConviction | None = None,
        reason: str = "",
    ) -> PositionEntry:
        current = self.state_of(symbol)
        if current != PositionState.NONE:
            raise InvalidTransitionError(f"{symbol} cannot open from state {current.value}")
        take_profit_pct, stop_loss_pct = self._exit_levels(asset_class)
        entry = PositionEntry(
            symbol=symbol,
            qty=qty,
            entry_time=now,
            entry_price=fill_price,
            highest_price=fill_price,
            take_profit_pct=take_profit_pct,
            stop_loss_pct=stop_loss_pct,
            trailing_stop_pct=self.config.exits.trailing_stop_pct,
            asset_class=asset_class,
            entry_conviction=conviction.sentiment if conviction is not None else 0.0,
            entry_volume=conviction.weighted_volume if conviction is not None else 0.0,
            entry_sources=list(conviction.sources) if conviction is not None else [],
            entry_reason=reason,
            state=PositionState.OPEN,
            last_mention_at=now if conviction is not None else None,
            updated_at=now,
        )
        self.store.upsert_position(entry)
        LOGGER.info("Position opened %s qty=%s price=%s reason=%s", symbol, qty, fill_price, reason or "-")
        return entry

    def ratchet(self, entry: PositionEntry, price: Decimal, now: datetime) -> PositionEntry:
        if price > entry.highest_price:
            entry.highest_price = price
            entry.updated_at = now
            self.store.upsert_position(entry)
        return entry

    def record_mention(self, entry: PositionEntry, at: datetime) -> None:
        if entry.last_mention_at is None or at > entry.last_mention_at:
            entry.last_mention_at = at
            self.store.upsert_position(entry)

    def mark_closing(self, entry: PositionEntry, reason: str, now: datetime) -> PositionEntry:
        if entry.state == PositionState.CLOSING:
            return entry
        if entry.state != PositionState.OPEN:
            raise InvalidTransitionError(f"{entry.symbol} cannot close from state {entry.state.value}")
        entry.state = PositionState.CLOSING
        entry.exit_reason = reason
        entry.updated_at = now
        self.store.upsert_position(entry)
        LOGGER.info("Position closing %s reason=%s", entry.symbol, reason)
        return entry

    def confirm_close(self, symbol: str) -> PositionEntry | None:
        entry = self.store.get_position(symbol)
        if entry is None:
            return None
        if entry.state != PositionState.CLOSING:
            raise InvalidTransitionError(f"{symbol} cannot confirm close from state {entry.state.value}")
        self.store.delete_position(symbol)
        LOGGER.info("Position closed %s reason=%s", symbol, entry.exit_reason or "-")
        return entry

    def reconcile(self, broker_positions: list[BrokerPosition], now: datetime) -> list[str]:
        """
        Align the ledger with what the broker actually holds.

        Untracked broker positions are adopted as OPEN. CLOSING entries
        that disappeared at the broker are confirmed closed; OPEN entries
        that disappeared were closed outside the agent and are dropped.
        Returns the symbols whose close was confirmed here.
        """
        held = {position.symbol: position for position in broker_positions if position.qty != 0}
        closed: list[str] = []
        for entry in self.entries():
            position = held.get(entry.symbol)
            if position is not None:
                if position.qty != entry.qty:
                    entry.qty = position.qty
                    entry.updated_at = now
                    self.store.upsert_position(entry)
                continue
            if entry.state == PositionState.CLOSING:
                self.confirm_close(entry.symbol)
                closed.append(entry.symbol)
            else:
                LOGGER.warning("Position %s no longer held at broker; dropping from ledger", entry.symbol)
                self.store.delete_position(entry.symbol)
        tracked = {entry.symbol for entry in self.entries()}
        for symbol, position in held.items():
            if symbol in tracked or position.qty < 0:
                continue
            take_profit_pct, stop_loss_pct = self._exit_levels(position.asset_class)
            entry_price = position.avg_entry_price
            self.store.upsert_position(
                PositionEntry(
                    symbol=symbol,
                    qty=position.qty,
                    entry_time=now,
                    entry_price=entry_price,
                    highest_price=max(entry_price, position.current_price),
                    take_profit_pct=take_profit_pct,
                    stop_loss_pct=stop_loss_pct,
                    trailing_stop_pct=self.config.exits.trailing_stop_pct,
                    asset_class=position.asset_class,
                    entry_reason="adopted",
                    state=PositionState.OPEN,
                    updated_at=now,
                )
            )
            LOGGER.info("Adopted untracked broker position %s qty=%s avg=%s", symbol, position.qty, entry_price)
        return closed
