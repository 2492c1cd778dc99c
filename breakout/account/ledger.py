# breakout/account/ledger.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from breakout.account.models import (
    DIRECTIONS,
    SIDES,
    AccountSettings,
    AccountState,
    EquitySnapshot,
    PnlAlert,
    Position,
    PriceAlert,
    Trade,
)
from breakout.risk.metrics import daily_reset_due, total_drawdown_pct

# Paper-account mutations. Every balance change goes through _set_balance so the
# high-water mark stays max(high_water_mark, balance).


def _new_id() -> str:
    return str(uuid.uuid4())


def _fee(size: float, settings: AccountSettings) -> float:
    return size * (settings.trading_fee_pct / 100.0)


def _set_balance(state: AccountState, balance: float) -> None:
    state.balance = float(balance)
    state.high_water_mark = max(state.high_water_mark, state.balance)


def _require_position(state: AccountState, position_id: str) -> Position:
    pos = state.find_position(position_id)
    if pos is None:
        raise KeyError(position_id)
    return pos


def _check_choice(value: str, allowed: tuple, name: str) -> str:
    v = str(value or "").lower().strip()
    if v not in allowed:
        raise ValueError(f"{name} must be one of {allowed}, got {value!r}")
    return v


# ---------- positions ----------
def open_position(
    state: AccountState,
    *,
    asset: str,
    side: str,
    entry_price: float,
    size: float,
    now_ms: int,
    stop_loss: Optional[float] = None,
    take_profit: Optional[float] = None,
) -> Position:
    """Opens a paper position and deducts the entry fee from balance."""
    if entry_price <= 0:
        raise ValueError("entry_price must be > 0")
    if size <= 0:
        raise ValueError("size must be > 0")

    pos = Position(
        id=_new_id(),
        asset=str(asset).strip().upper(),
        side=_check_choice(side, SIDES, "side"),
        entry_price=float(entry_price),
        size=float(size),
        stop_loss=stop_loss,
        take_profit=take_profit,
        opened_at=now_ms,
    )
    state.positions.append(pos)
    _set_balance(state, state.balance - _fee(pos.size, state.settings))
    return pos


def close_position(
    state: AccountState,
    position_id: str,
    exit_price: float,
    *,
    now_ms: int,
    notes: str = "",
    tags: Optional[List[str]] = None,
) -> Trade:
    """
    Realizes P&L net of the exit fee (the entry fee was taken at open) and
    journals a Trade whose `fees` carries both sides.
    """
    pos = _require_position(state, position_id)
    if exit_price <= 0:
        raise ValueError("exit_price must be > 0")

    gross = (exit_price - pos.entry_price) * pos.direction / pos.entry_price * pos.size
    exit_fee = _fee(pos.size, state.settings)
    entry_fee = _fee(pos.size, state.settings)

    trade = Trade(
        id=_new_id(),
        asset=pos.asset,
        side=pos.side,
        entry_price=pos.entry_price,
        exit_price=float(exit_price),
        size=pos.size,
        pnl=gross - exit_fee,
        fees=entry_fee + exit_fee,
        notes=notes,
        tags=list(tags or []),
        opened_at=pos.opened_at,
        closed_at=now_ms,
    )

    state.positions = [p for p in state.positions if p.id != position_id]
    state.trades.append(trade)
    state.realized_pnl += trade.pnl
    _set_balance(state, state.balance + trade.pnl)
    return trade


def delete_position(state: AccountState, position_id: str) -> Position:
    """Removes a position without a trade and refunds the entry fee."""
    pos = _require_position(state, position_id)
    state.positions = [p for p in state.positions if p.id != position_id]
    _set_balance(state, state.balance + _fee(pos.size, state.settings))
    return pos


def update_position_stop(
    state: AccountState, position_id: str, stop_loss: Optional[float]
) -> bool:
    """Returns True when the stop actually moved."""
    pos = _require_position(state, position_id)
    changed = pos.stop_loss != stop_loss
    pos.stop_loss = stop_loss
    return changed


def update_position_take_profit(
    state: AccountState, position_id: str, take_profit: Optional[float]
) -> bool:
    pos = _require_position(state, position_id)
    changed = pos.take_profit != take_profit
    pos.take_profit = take_profit
    return changed


# ---------- balance / daily ----------
def set_balance(state: AccountState, balance: float) -> None:
    """Manual balance override; also restarts the trading day from it."""
    _set_balance(state, balance)
    state.day_start_balance = state.balance


def add_equity_snapshot(state: AccountState, now_ms: int) -> EquitySnapshot:
    """One point per UTC date; a second call on the same date replaces it."""
    today = datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc).date().isoformat()
    snap = EquitySnapshot(
        date=today,
        balance=state.balance,
        drawdown_pct=total_drawdown_pct(state.balance, state.high_water_mark),
    )
    state.equity_history = [e for e in state.equity_history if e.date != today]
    state.equity_history.append(snap)
    return snap


def check_daily_reset(state: AccountState, now_ms: int) -> bool:
    if not daily_reset_due(state.last_daily_reset, state.settings.daily_reset_hour_utc, now_ms):
        return False
    state.day_start_balance = state.balance
    state.last_daily_reset = now_ms
    add_equity_snapshot(state, now_ms)
    return True


def apply_swap_fees(state: AccountState) -> float:
    """Charges one day of swap/funding on all open notional. Returns the fee."""
    if not state.positions:
        return 0.0
    fee = sum(p.size * (state.settings.daily_swap_fee_pct / 100.0) for p in state.positions)
    _set_balance(state, state.balance - fee)
    return fee


def reset_account(state: AccountState, now_ms: int) -> None:
    """Back to starting balance; alerts and settings survive."""
    start = state.settings.starting_balance
    state.balance = start
    state.high_water_mark = start
    state.day_start_balance = start
    state.last_daily_reset = now_ms
    state.realized_pnl = 0.0
    state.positions = []
    state.trades = []
    state.equity_history = []


# ---------- journal ----------
def edit_trade(
    state: AccountState,
    trade_id: str,
    *,
    notes: Optional[str] = None,
    tags: Optional[List[str]] = None,
    fees: Optional[float] = None,
) -> Trade:
    for t in state.trades:
        if t.id == trade_id:
            if notes is not None:
                t.notes = notes
            if tags is not None:
                t.tags = list(tags)
            if fees is not None:
                t.fees = float(fees)
            return t
    raise KeyError(trade_id)


def delete_trade(state: AccountState, trade_id: str) -> Trade:
    """Removes a journal row and backs its P&L out of balance and realized P&L."""
    for t in state.trades:
        if t.id == trade_id:
            state.trades = [x for x in state.trades if x.id != trade_id]
            state.realized_pnl -= t.pnl
            _set_balance(state, state.balance - t.pnl)
            return t
    raise KeyError(trade_id)


# ---------- alerts ----------
def add_price_alert(
    state: AccountState,
    *,
    asset: str,
    target_price: float,
    direction: str,
    now_ms: int,
    note: str = "",
    persistent: bool = False,
) -> PriceAlert:
    alert = PriceAlert(
        id=_new_id(),
        asset=str(asset).strip().upper(),
        target_price=float(target_price),
        direction=_check_choice(direction, DIRECTIONS, "direction"),
        note=note,
        persistent=bool(persistent),
        created_at=now_ms,
    )
    state.price_alerts.append(alert)
    return alert


def edit_price_alert(state: AccountState, alert_id: str, **updates) -> PriceAlert:
    """Edits target/direction/note in place without touching trigger state."""
    alert = state.find_price_alert(alert_id)
    if alert is None:
        raise KeyError(alert_id)
    _apply(alert, updates, {"target_price": float, "direction": None, "note": str})
    return alert


def delete_price_alert(state: AccountState, alert_id: str) -> PriceAlert:
    alert = state.find_price_alert(alert_id)
    if alert is None:
        raise KeyError(alert_id)
    state.price_alerts = [a for a in state.price_alerts if a.id != alert_id]
    return alert


def add_pnl_alert(
    state: AccountState,
    *,
    target_pnl: float,
    direction: str,
    now_ms: int,
    note: str = "",
    persistent: bool = False,
) -> PnlAlert:
    alert = PnlAlert(
        id=_new_id(),
        target_pnl=float(target_pnl),
        direction=_check_choice(direction, DIRECTIONS, "direction"),
        note=note,
        persistent=bool(persistent),
        created_at=now_ms,
    )
    state.pnl_alerts.append(alert)
    return alert


def edit_pnl_alert(state: AccountState, alert_id: str, **updates) -> PnlAlert:
    alert = state.find_pnl_alert(alert_id)
    if alert is None:
        raise KeyError(alert_id)
    _apply(alert, updates, {"target_pnl": float, "direction": None, "note": str})
    return alert


def delete_pnl_alert(state: AccountState, alert_id: str) -> PnlAlert:
    alert = state.find_pnl_alert(alert_id)
    if alert is None:
        raise KeyError(alert_id)
    state.pnl_alerts = [a for a in state.pnl_alerts if a.id != alert_id]
    return alert


def _apply(obj, updates: Dict[str, object], allowed: Dict[str, object]) -> None:
    for k, v in updates.items():
        if k not in allowed:
            raise ValueError(f"cannot edit field {k!r}")
        if v is None:
            continue
        if k == "direction":
            v = _check_choice(v, DIRECTIONS, "direction")
        else:
            v = allowed[k](v)
        setattr(obj, k, v)
