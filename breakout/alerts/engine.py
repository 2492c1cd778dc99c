# breakout/alerts/engine.py
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from breakout.account.models import AccountState, PnlAlert, Position, PriceAlert
from breakout.alerts.registry import FiredRegistry, pnl_key, sl_key, tp_key
from breakout.errors import StateFormatError
from breakout.ops.clock import Clock, SystemClock
from breakout.risk.metrics import total_unrealized_pnl, unrealized_pnl

log = logging.getLogger("breakout.alerts")

DEFAULT_COOLDOWN_SECONDS = 30
DEFAULT_WARMUP_SECONDS = 10


class AlertKind(str, Enum):
    PRICE = "PRICE"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    PNL = "PNL"


@dataclass
class PositionLine:
    side: str
    size: float
    entry_price: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    pnl: float


@dataclass
class NotificationEvent:
    kind: AlertKind
    key: str
    title: str
    body: str
    fired_at: int
    asset: Optional[str] = None
    value: Optional[float] = None  # price for price/SL/TP, aggregate P&L for P&L alerts
    target: Optional[float] = None
    created_at: Optional[int] = None
    persistent: bool = False
    positions: List[PositionLine] = field(default_factory=list)

    def audit_details(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "value": self.value,
            "target": self.target,
            "persistent": self.persistent,
        }


@dataclass
class EvaluationResult:
    events: List[NotificationEvent]
    state: Optional[AccountState]
    modified: bool


def is_hit(direction: str, value: float, target: float) -> bool:
    """Inclusive on both sides: above means >=, below means <=."""
    if direction == "above":
        return value >= target
    return value <= target


def stop_hit(pos: Position, price: float) -> bool:
    if pos.stop_loss is None:
        return False
    return price <= pos.stop_loss if pos.side == "long" else price >= pos.stop_loss


def target_hit(pos: Position, price: float) -> bool:
    if pos.take_profit is None:
        return False
    return price >= pos.take_profit if pos.side == "long" else price <= pos.take_profit


def _price(prices: Mapping[str, float], asset: str) -> Optional[float]:
    v = prices.get(asset)
    if v is None:
        return None
    try:
        px = float(v)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(px) or px <= 0:
        return None
    return px


def _valid_prices(prices: Mapping[str, float]) -> Dict[str, float]:
    """Usable float prices only; anything else counts as missing."""
    out: Dict[str, float] = {}
    for asset in prices:
        px = _price(prices, asset)
        if px is not None:
            out[asset] = px
    return out


def fmt_num(x: float) -> str:
    x = float(x)
    if x.is_integer():
        return f"{int(x):,}"
    return f"{x:,.8f}".rstrip("0").rstrip(".")


class AlertEngine:
    """
    Transport-agnostic alert evaluator.

    One instance per account. The dedup memory (FiredRegistry) and the clock are
    injected, so the headless checker and the HTTP service share the same logic and
    tests control time precisely.

    A pass is: garbage-collect -> price alerts -> SL/TP per position -> P&L alerts.
    Trigger flags are mutated in place; the caller persists the state once when
    EvaluationResult.modified is true. Passes must not overlap (see AlertChecker).
    """

    def __init__(
        self,
        registry: Optional[FiredRegistry] = None,
        clock: Optional[Clock] = None,
        *,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        warmup_seconds: float = DEFAULT_WARMUP_SECONDS,
    ):
        self.registry = registry or FiredRegistry()
        self.clock = clock or SystemClock()
        self.cooldown_ms = int(float(cooldown_seconds) * 1000)
        self.warmup_ms = int(float(warmup_seconds) * 1000)
        self.started_at_ms = self.clock.now_ms()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def garbage_collect(self, state: AccountState) -> List[str]:
        removed = self.registry.garbage_collect(state)
        if removed:
            log.debug("gc removed fired keys: %s", removed)
        return removed

    def evaluate(
        self,
        prices: Mapping[str, float],
        state: Union[AccountState, Dict[str, Any], None],
    ) -> EvaluationResult:
        acct = self._coerce_state(state)
        if acct is None:
            return EvaluationResult(events=[], state=None, modified=False)

        now = self.clock.now_ms()
        events: List[NotificationEvent] = []
        prices = _valid_prices(prices)

        self.garbage_collect(acct)

        modified = self._check_price_alerts(prices, acct, now, events)
        self._check_levels(prices, acct, now, events)
        if self._pnl_ready(prices, acct, now):
            modified = self._check_pnl_alerts(prices, acct, now, events) or modified

        return EvaluationResult(events=events, state=acct, modified=modified)

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------
    def rearm_price_alert(
        self,
        state: AccountState,
        alert_id: str,
        *,
        target_price: Optional[float] = None,
        direction: Optional[str] = None,
    ) -> PriceAlert:
        alert = state.find_price_alert(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        if target_price is not None:
            alert.target_price = float(target_price)
        if direction is not None:
            alert.direction = _direction(direction)
        alert.triggered = False
        alert.triggered_at = None
        alert.created_at = self.clock.now_ms()
        self.registry.forget(alert.id)
        return alert

    def rearm_pnl_alert(
        self,
        state: AccountState,
        alert_id: str,
        *,
        target_pnl: Optional[float] = None,
        direction: Optional[str] = None,
    ) -> PnlAlert:
        alert = state.find_pnl_alert(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        if target_pnl is not None:
            alert.target_pnl = float(target_pnl)
        if direction is not None:
            alert.direction = _direction(direction)
        alert.triggered = False
        alert.triggered_at = None
        alert.created_at = self.clock.now_ms()
        self.registry.forget(pnl_key(alert.id))
        return alert

    def dismiss_price_alert(self, state: AccountState, alert_id: str) -> PriceAlert:
        """Fired -> removed. Armed alerts are deleted, not dismissed."""
        alert = state.find_price_alert(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        if not alert.triggered:
            raise ValueError(f"price alert {alert_id} has not fired; delete it instead")
        state.price_alerts = [a for a in state.price_alerts if a.id != alert_id]
        self.registry.forget(alert.id)
        return alert

    def dismiss_pnl_alert(self, state: AccountState, alert_id: str) -> PnlAlert:
        alert = state.find_pnl_alert(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        if not alert.triggered:
            raise ValueError(f"P&L alert {alert_id} has not fired; delete it instead")
        state.pnl_alerts = [a for a in state.pnl_alerts if a.id != alert_id]
        self.registry.forget(pnl_key(alert.id))
        return alert

    def level_edited(
        self, position_id: str, *, stop_loss: bool = False, take_profit: bool = False
    ) -> None:
        """Let an edited stop/target fire again (when the registry is configured to)."""
        if not self.registry.clear_on_level_edit:
            return
        if stop_loss:
            self.registry.unmark(sl_key(position_id))
        if take_profit:
            self.registry.unmark(tp_key(position_id))

    # ------------------------------------------------------------------
    # Rule categories
    # ------------------------------------------------------------------
    def _check_price_alerts(
        self,
        prices: Mapping[str, float],
        state: AccountState,
        now: int,
        events: List[NotificationEvent],
    ) -> bool:
        modified = False
        for alert in state.price_alerts:
            if alert.triggered or self.registry.is_fired(alert.id):
                continue
            price = _price(prices, alert.asset)
            if price is None:
                continue
            if not is_hit(alert.direction, price, alert.target_price):
                continue
            if not self.registry.cooldown_ok(alert.id, now, self.cooldown_ms):
                continue

            self.registry.touch(alert.id, now)
            if not alert.persistent:
                self.registry.mark_fired(alert.id)
                alert.triggered = True
                alert.triggered_at = now
                modified = True

            arrow = "↑" if alert.direction == "above" else "↓"
            body = f"{alert.asset} hit {fmt_num(price)}"
            if alert.note:
                body += f" — {alert.note}"
            events.append(
                NotificationEvent(
                    kind=AlertKind.PRICE,
                    key=alert.id,
                    title=f"{alert.asset} {arrow} {fmt_num(alert.target_price)}",
                    body=body,
                    fired_at=now,
                    asset=alert.asset,
                    value=price,
                    target=alert.target_price,
                    created_at=alert.created_at,
                    persistent=alert.persistent,
                    positions=_position_lines(alert.asset, state, prices),
                )
            )
        return modified

    def _check_levels(
        self,
        prices: Mapping[str, float],
        state: AccountState,
        now: int,
        events: List[NotificationEvent],
    ) -> None:
        # SL/TP fire at most once per position per level; no persisted flag.
        for pos in state.positions:
            price = _price(prices, pos.asset)
            if price is None:
                continue

            if pos.stop_loss is not None and stop_hit(pos, price):
                key = sl_key(pos.id)
                if self._level_permitted(key, now):
                    self.registry.mark_fired(key, pos.stop_loss)
                    self.registry.touch(key, now)
                    events.append(
                        self._level_event(
                            AlertKind.STOP_LOSS, key, "STOP LOSS", "SL", pos, price,
                            pos.stop_loss, now, state, prices,
                        )
                    )

            if pos.take_profit is not None and target_hit(pos, price):
                key = tp_key(pos.id)
                if self._level_permitted(key, now):
                    self.registry.mark_fired(key, pos.take_profit)
                    self.registry.touch(key, now)
                    events.append(
                        self._level_event(
                            AlertKind.TAKE_PROFIT, key, "TAKE PROFIT", "TP", pos, price,
                            pos.take_profit, now, state, prices,
                        )
                    )

    def _level_permitted(self, key: str, now: int) -> bool:
        if self.registry.is_fired(key):
            return False
        return self.registry.cooldown_ok(key, now, self.cooldown_ms)

    def _level_event(
        self,
        kind: AlertKind,
        key: str,
        label: str,
        short: str,
        pos: Position,
        price: float,
        level: float,
        now: int,
        state: AccountState,
        prices: Mapping[str, float],
    ) -> NotificationEvent:
        return NotificationEvent(
            kind=kind,
            key=key,
            title=f"{label} — {pos.asset}",
            body=(
                f"{pos.asset} {pos.side.upper()} hit {short} at {fmt_num(price)} "
                f"({short}: {fmt_num(level)})"
            ),
            fired_at=now,
            asset=pos.asset,
            value=price,
            target=level,
            positions=_position_lines(pos.asset, state, prices),
        )

    def _pnl_ready(self, prices: Mapping[str, float], state: AccountState, now: int) -> bool:
        # no partial-price evaluation, and give the feed time to fill the snapshot
        if any(_price(prices, p.asset) is None for p in state.positions):
            return False
        return now - self.started_at_ms >= self.warmup_ms

    def _check_pnl_alerts(
        self,
        prices: Mapping[str, float],
        state: AccountState,
        now: int,
        events: List[NotificationEvent],
    ) -> bool:
        modified = False
        total = total_unrealized_pnl(state.positions, prices)

        for alert in state.pnl_alerts:
            key = pnl_key(alert.id)
            met = is_hit(alert.direction, total, alert.target_pnl)

            if (
                met
                and not alert.triggered
                and not self.registry.is_fired(key)
                and self.registry.cooldown_ok(key, now, self.cooldown_ms)
            ):
                self.registry.touch(key, now)
                if not alert.persistent:
                    self.registry.mark_fired(key)
                    alert.triggered = True
                    alert.triggered_at = now
                    modified = True

                arrow = "↑" if alert.direction == "above" else "↓"
                body = f"Unrealized P&L hit ${total:.2f}"
                if alert.note:
                    body += f" — {alert.note}"
                events.append(
                    NotificationEvent(
                        kind=AlertKind.PNL,
                        key=key,
                        title=f"P&L {arrow} ${fmt_num(alert.target_pnl)}",
                        body=body,
                        fired_at=now,
                        value=total,
                        target=alert.target_pnl,
                        created_at=alert.created_at,
                        persistent=alert.persistent,
                    )
                )

            # self-heal: a fired one-shot P&L alert re-arms once the condition clears
            if alert.triggered and not met and not alert.persistent:
                alert.triggered = False
                alert.triggered_at = None
                self.registry.unmark(key)
                modified = True

        return modified

    # ------------------------------------------------------------------
    def _coerce_state(
        self, state: Union[AccountState, Dict[str, Any], None]
    ) -> Optional[AccountState]:
        if state is None:
            return None
        if isinstance(state, AccountState):
            return state
        try:
            return AccountState.from_dict(state)
        except StateFormatError as e:
            log.warning("skipping pass, malformed account state: %s", e)
            return None


def _direction(v: str) -> str:
    d = str(v or "").lower().strip()
    if d not in ("above", "below"):
        raise ValueError(f"direction must be 'above' or 'below', got {v!r}")
    return d


def _position_lines(
    asset: str, state: AccountState, prices: Mapping[str, float]
) -> List[PositionLine]:
    price = _price(prices, asset)
    out = []
    for p in state.positions:
        if p.asset != asset:
            continue
        out.append(
            PositionLine(
                side=p.side,
                size=p.size,
                entry_price=p.entry_price,
                stop_loss=p.stop_loss,
                take_profit=p.take_profit,
                pnl=unrealized_pnl(p, price) if price is not None else 0.0,
            )
        )
    return out
