from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from signaltrader.clock import hours_between
from signaltrader.config import ExitsConfig
from signaltrader.signals.models import AggregatedConviction
from signaltrader.storage.models import PositionEntry

HUNDRED = Decimal("100")


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


@dataclass(slots=True)
class StalenessAnalysis:
    score: float
    hold_hours: float
    gain_pct: float
    volume_decay: float | None
    should_exit: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ExitDecision:
    symbol: str
    reason: str
    price: Decimal
    detail: str


class ExitEvaluator:
    """Exit triggers for one open position, checked in priority order."""

    def __init__(self, config: ExitsConfig):
        self.config = config

    def analyze_staleness(
        self,
        entry: PositionEntry,
        price: Decimal,
        now: datetime,
        conviction: AggregatedConviction | None,
    ) -> StalenessAnalysis:
        cfg = self.config
        hold_hours = max(0.0, hours_between(entry.entry_time, now))
        hold_days = hold_hours / 24.0
        gain_pct = float(entry.unrealized_pct(price))
        volume_decay: float | None = None
        if entry.entry_volume > 0:
            current_volume = conviction.weighted_volume if conviction is not None else 0.0
            volume_decay = current_volume / entry.entry_volume
        last_seen = entry.last_mention_at or entry.entry_time
        silent_hours = max(0.0, hours_between(last_seen, now))

        time_score = min(1.0, hold_days / cfg.stale_max_hold_days) if cfg.stale_max_hold_days > 0 else 0.0
        decay_score = 0.0 if volume_decay is None else max(0.0, min(1.0, 1.0 - volume_decay))
        silence_score = min(1.0, silent_hours / cfg.stale_no_mentions_hours)
        score = round(max(time_score, decay_score, silence_score), 4)

        reasons: list[str] = []
        if cfg.stale_position_enabled and hold_hours >= cfg.stale_min_hold_hours:
            if hold_days >= cfg.stale_mid_hold_days and gain_pct < cfg.stale_mid_min_gain_pct:
                reasons.append("stale_mid_hold")
            if hold_days >= cfg.stale_max_hold_days and gain_pct < cfg.stale_min_gain_pct:
                reasons.append("stale_max_hold")
            if silent_hours >= cfg.stale_no_mentions_hours:
                reasons.append("stale_no_mentions")
            if volume_decay is not None and conviction is not None and volume_decay <= cfg.stale_social_volume_decay:
                reasons.append("stale_volume_decay")
            if conviction is not None and conviction.sentiment <= cfg.sell_sentiment_threshold:
                reasons.append("stale_sentiment_reversal")
        return StalenessAnalysis(
            score=score,
            hold_hours=round(hold_hours, 2),
            gain_pct=round(gain_pct, 4),
            volume_decay=None if volume_decay is None else round(volume_decay, 4),
            should_exit=bool(reasons),
            reasons=reasons,
        )

    def evaluate(
        self,
        entry: PositionEntry,
        price: Decimal,
        now: datetime,
        conviction: AggregatedConviction | None = None,
    ) -> ExitDecision | None:
        """
        Return the highest-priority exit trigger, or None to keep holding.

        ``entry.highest_price`` must already include ``price``; the ledger
        ratchets it before evaluation.
        """
        pnl_pct = entry.unrealized_pct(price)
        if pnl_pct >= _dec(entry.take_profit_pct):
            return ExitDecision(entry.symbol, "take_profit", price, f"pnl={pnl_pct:.2f}% tp={entry.take_profit_pct}%")
        if pnl_pct <= -_dec(entry.stop_loss_pct):
            return ExitDecision(entry.symbol, "stop_loss", price, f"pnl={pnl_pct:.2f}% sl={entry.stop_loss_pct}%")
        if entry.trailing_stop_pct is not None and pnl_pct > 0:
            trigger = entry.highest_price * (Decimal("1") - _dec(entry.trailing_stop_pct) / HUNDRED)
            if price <= trigger:
                return ExitDecision(
                    entry.symbol,
                    "trailing_stop",
                    price,
                    f"price={price} trigger={trigger} high={entry.highest_price}",
                )
        staleness = self.analyze_staleness(entry, price, now, conviction)
        if staleness.should_exit:
            return ExitDecision(
                entry.symbol,
                staleness.reasons[0],
                price,
                f"score={staleness.score} hold_h={staleness.hold_hours} gain={staleness.gain_pct}% "
                f"reasons={','.join(staleness.reasons)}",
            )
        return None
