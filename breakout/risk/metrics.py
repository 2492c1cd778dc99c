# breakout/risk/metrics.py
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from breakout.account.models import AccountState, Position

# Advisory display numbers: bad denominators return 0, never raise.


def daily_drawdown_pct(balance: float, day_start_balance: float) -> float:
    if day_start_balance <= 0:
        return 0.0
    dd = (day_start_balance - balance) / day_start_balance * 100.0
    return max(0.0, dd)


def total_drawdown_pct(balance: float, high_water_mark: float) -> float:
    if high_water_mark <= 0:
        return 0.0
    dd = (high_water_mark - balance) / high_water_mark * 100.0
    return max(0.0, dd)


def _stop_risk(pos: Position, fee_pct: float) -> float:
    if pos.stop_loss is None or pos.entry_price <= 0:
        return 0.0
    stop_dist = abs(pos.entry_price - pos.stop_loss) / pos.entry_price
    exit_fee = pos.size * (fee_pct / 100.0)
    return pos.size * stop_dist + exit_fee


def risk_if_all_stops_hit(
    positions: Iterable[Position], balance: float, fee_pct: float
) -> float:
    """
    Percent of balance lost if every stop fills, including the exit fee.
    Positions without a stop contribute 0.
    """
    total = sum(_stop_risk(p, fee_pct) for p in positions)
    return (total / balance) * 100.0 if balance > 0 else 0.0


def reward_if_all_targets_hit(
    positions: Iterable[Position], balance: float, fee_pct: float
) -> float:
    """Percent of balance gained if every take-profit fills, net of the exit fee."""
    total = 0.0
    for p in positions:
        if p.take_profit is None or p.entry_price <= 0:
            continue
        move = abs(p.take_profit - p.entry_price) / p.entry_price
        total += p.size * move - p.size * (fee_pct / 100.0)
    return (total / balance) * 100.0 if balance > 0 else 0.0


def drawdown_zone(pct: float, limit: float) -> str:
    """green below half the limit, yellow below 80%, red otherwise."""
    if limit <= 0:
        return "red" if pct > 0 else "green"
    ratio = pct / limit
    if ratio < 0.5:
        return "green"
    if ratio < 0.8:
        return "yellow"
    return "red"


def daily_reset_boundary_ms(reset_hour_utc: int, now_ms: Optional[int] = None) -> int:
    """Most recent `reset_hour_utc:00` UTC at or before now."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    hour = min(max(int(reset_hour_utc), 0), 23)
    now = datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc)
    boundary = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now < boundary:
        boundary -= timedelta(days=1)
    return int(boundary.timestamp() * 1000)


def daily_reset_due(
    last_reset_ms: int, reset_hour_utc: int, now_ms: Optional[int] = None
) -> bool:
    return int(last_reset_ms) < daily_reset_boundary_ms(reset_hour_utc, now_ms)


def unrealized_pnl(pos: Position, price: float) -> float:
    if pos.entry_price <= 0:
        return 0.0
    return (price - pos.entry_price) / pos.entry_price * pos.size * pos.direction


def total_unrealized_pnl(
    positions: Iterable[Position], prices: Mapping[str, float]
) -> float:
    total = 0.0
    for p in positions:
        px = prices.get(p.asset)
        if px is None:
            continue
        total += unrealized_pnl(p, px)
    return total


def risk_snapshot(state: AccountState, prices: Mapping[str, float]) -> Dict[str, Any]:
    """Dashboard bundle of the risk numbers for one account state."""
    s = state.settings
    daily_dd = daily_drawdown_pct(state.balance, state.day_start_balance)
    total_dd = total_drawdown_pct(state.balance, state.high_water_mark)
    upnl = total_unrealized_pnl(state.positions, prices)
    priced = [p for p in state.positions if prices.get(p.asset) is not None]

    return {
        "balance": state.balance,
        "equity": state.balance + upnl,
        "high_water_mark": state.high_water_mark,
        "day_start_balance": state.day_start_balance,
        "realized_pnl": state.realized_pnl,
        "unrealized_pnl": upnl,
        "positions_priced": len(priced),
        "positions_open": len(state.positions),
        "open_notional": sum(p.size for p in state.positions),
        "daily_drawdown_pct": daily_dd,
        "daily_drawdown_zone": drawdown_zone(daily_dd, s.daily_hard_drawdown_pct),
        "daily_soft_limit_breached": daily_dd >= s.daily_soft_drawdown_pct > 0,
        "total_drawdown_pct": total_dd,
        "total_drawdown_zone": drawdown_zone(total_dd, s.total_drawdown_pct),
        "risk_if_all_stops_hit_pct": risk_if_all_stops_hit(
            state.positions, state.balance, s.trading_fee_pct
        ),
        "reward_if_all_targets_hit_pct": reward_if_all_targets_hit(
            state.positions, state.balance, s.trading_fee_pct
        ),
    }
