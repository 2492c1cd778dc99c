# breakout/account/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from breakout.errors import StateFormatError

SIDES = ("long", "short")
DIRECTIONS = ("above", "below")


def _num(d: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    v = d.get(key)
    if v is None:
        v = default
    if v is None:
        raise StateFormatError(f"missing numeric field: {key}")
    if isinstance(v, bool):
        raise StateFormatError(f"field {key} must be a number, got bool")
    try:
        return float(v)
    except (TypeError, ValueError):
        raise StateFormatError(f"field {key} must be a number, got {v!r}")


def _opt_num(d: Dict[str, Any], key: str) -> Optional[float]:
    v = d.get(key)
    if v is None:
        return None
    return _num(d, key)


def _ms(d: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    return int(_num(d, key, default))


def _opt_ms(d: Dict[str, Any], key: str) -> Optional[int]:
    v = _opt_num(d, key)
    return int(v) if v is not None else None


def _choice(d: Dict[str, Any], key: str, allowed: tuple) -> str:
    v = str(d.get(key) or "").lower().strip()
    if v not in allowed:
        raise StateFormatError(f"field {key} must be one of {allowed}, got {d.get(key)!r}")
    return v


def _list(d: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    v = d.get(key)
    if v is None:
        return []
    if not isinstance(v, list):
        raise StateFormatError(f"field {key} must be a list")
    for item in v:
        if not isinstance(item, dict):
            raise StateFormatError(f"entries of {key} must be objects")
    return v


@dataclass
class Position:
    id: str
    asset: str
    side: str  # "long" | "short"
    entry_price: float
    size: float  # notional USD
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    opened_at: int = 0

    @property
    def direction(self) -> int:
        return 1 if self.side == "long" else -1

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Position":
        return cls(
            id=str(d.get("id") or ""),
            asset=str(d.get("asset") or "").upper(),
            side=_choice(d, "side", SIDES),
            entry_price=_num(d, "entryPrice"),
            size=_num(d, "size"),
            stop_loss=_opt_num(d, "stopLoss"),
            take_profit=_opt_num(d, "takeProfit"),
            opened_at=_ms(d, "openedAt", 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset": self.asset,
            "side": self.side,
            "entryPrice": self.entry_price,
            "size": self.size,
            "stopLoss": self.stop_loss,
            "takeProfit": self.take_profit,
            "openedAt": self.opened_at,
        }


@dataclass
class Trade:
    id: str
    asset: str
    side: str
    entry_price: float
    exit_price: float
    size: float
    pnl: float
    fees: float
    notes: str = ""
    tags: List[str] = field(default_factory=list)
    opened_at: int = 0
    closed_at: int = 0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Trade":
        return cls(
            id=str(d.get("id") or ""),
            asset=str(d.get("asset") or "").upper(),
            side=_choice(d, "side", SIDES),
            entry_price=_num(d, "entryPrice"),
            exit_price=_num(d, "exitPrice"),
            size=_num(d, "size"),
            pnl=_num(d, "pnl", 0.0),
            fees=_num(d, "fees", 0.0),
            notes=str(d.get("notes") or ""),
            tags=[str(t) for t in (d.get("tags") or [])],
            opened_at=_ms(d, "openedAt", 0),
            closed_at=_ms(d, "closedAt", 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset": self.asset,
            "side": self.side,
            "entryPrice": self.entry_price,
            "exitPrice": self.exit_price,
            "size": self.size,
            "pnl": self.pnl,
            "fees": self.fees,
            "notes": self.notes,
            "tags": list(self.tags),
            "openedAt": self.opened_at,
            "closedAt": self.closed_at,
        }


@dataclass
class EquitySnapshot:
    date: str  # YYYY-MM-DD (UTC)
    balance: float
    drawdown_pct: float

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EquitySnapshot":
        return cls(
            date=str(d.get("date") or ""),
            balance=_num(d, "balance"),
            drawdown_pct=_num(d, "drawdownPct", 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "balance": self.balance, "drawdownPct": self.drawdown_pct}


@dataclass
class PriceAlert:
    id: str
    asset: str
    target_price: float
    direction: str  # "above" | "below"
    note: str = ""
    persistent: bool = False
    triggered: bool = False
    created_at: int = 0
    triggered_at: Optional[int] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PriceAlert":
        return cls(
            id=str(d.get("id") or ""),
            asset=str(d.get("asset") or "").upper(),
            target_price=_num(d, "targetPrice"),
            direction=_choice(d, "direction", DIRECTIONS),
            note=str(d.get("note") or ""),
            persistent=bool(d.get("persistent", False)),
            triggered=bool(d.get("triggered", False)),
            created_at=_ms(d, "createdAt", 0),
            triggered_at=_opt_ms(d, "triggeredAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "asset": self.asset,
            "targetPrice": self.target_price,
            "direction": self.direction,
            "note": self.note,
            "persistent": self.persistent,
            "triggered": self.triggered,
            "createdAt": self.created_at,
        }
        if self.triggered_at is not None:
            out["triggeredAt"] = self.triggered_at
        return out


@dataclass
class PnlAlert:
    id: str
    target_pnl: float  # signed USD
    direction: str
    note: str = ""
    persistent: bool = False
    triggered: bool = False
    created_at: int = 0
    triggered_at: Optional[int] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PnlAlert":
        return cls(
            id=str(d.get("id") or ""),
            target_pnl=_num(d, "targetPnl"),
            direction=_choice(d, "direction", DIRECTIONS),
            note=str(d.get("note") or ""),
            persistent=bool(d.get("persistent", False)),
            triggered=bool(d.get("triggered", False)),
            created_at=_ms(d, "createdAt", 0),
            triggered_at=_opt_ms(d, "triggeredAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "targetPnl": self.target_pnl,
            "direction": self.direction,
            "note": self.note,
            "persistent": self.persistent,
            "triggered": self.triggered,
            "createdAt": self.created_at,
        }
        if self.triggered_at is not None:
            out["triggeredAt"] = self.triggered_at
        return out


@dataclass
class AccountSettings:
    starting_balance: float = 100000.0
    daily_hard_drawdown_pct: float = 3.0
    total_drawdown_pct: float = 6.0
    daily_soft_drawdown_pct: float = 1.0
    btc_eth_leverage: float = 5.0
    alt_leverage: float = 2.0
    daily_reset_hour_utc: int = 0
    dark_mode: bool = True
    trading_fee_pct: float = 0.04
    daily_swap_fee_pct: float = 0.033

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "AccountSettings":
        base = cls()
        if not d:
            return base
        if not isinstance(d, dict):
            raise StateFormatError("settings must be an object")
        return cls(
            starting_balance=_num(d, "startingBalance", base.starting_balance),
            daily_hard_drawdown_pct=_num(d, "dailyHardDrawdownPct", base.daily_hard_drawdown_pct),
            total_drawdown_pct=_num(d, "totalDrawdownPct", base.total_drawdown_pct),
            daily_soft_drawdown_pct=_num(d, "dailySoftDrawdownPct", base.daily_soft_drawdown_pct),
            btc_eth_leverage=_num(d, "btcEthLeverage", base.btc_eth_leverage),
            alt_leverage=_num(d, "altLeverage", base.alt_leverage),
            daily_reset_hour_utc=_ms(d, "dailyResetHourUTC", base.daily_reset_hour_utc),
            dark_mode=bool(d.get("darkMode", base.dark_mode)),
            trading_fee_pct=_num(d, "tradingFeePct", base.trading_fee_pct),
            daily_swap_fee_pct=_num(d, "dailySwapFeePct", base.daily_swap_fee_pct),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startingBalance": self.starting_balance,
            "dailyHardDrawdownPct": self.daily_hard_drawdown_pct,
            "totalDrawdownPct": self.total_drawdown_pct,
            "dailySoftDrawdownPct": self.daily_soft_drawdown_pct,
            "btcEthLeverage": self.btc_eth_leverage,
            "altLeverage": self.alt_leverage,
            "dailyResetHourUTC": self.daily_reset_hour_utc,
            "darkMode": self.dark_mode,
            "tradingFeePct": self.trading_fee_pct,
            "dailySwapFeePct": self.daily_swap_fee_pct,
        }


# Keys of the persisted snapshot, in wire order.
DATA_KEYS = (
    "balance",
    "highWaterMark",
    "dayStartBalance",
    "lastDailyReset",
    "realizedPnl",
    "positions",
    "trades",
    "equityHistory",
    "settings",
    "priceAlerts",
    "pnlAlerts",
)


@dataclass
class AccountState:
    balance: float
    high_water_mark: float
    day_start_balance: float
    last_daily_reset: int = 0
    realized_pnl: float = 0.0
    positions: List[Position] = field(default_factory=list)
    trades: List[Trade] = field(default_factory=list)
    equity_history: List[EquitySnapshot] = field(default_factory=list)
    settings: AccountSettings = field(default_factory=AccountSettings)
    price_alerts: List[PriceAlert] = field(default_factory=list)
    pnl_alerts: List[PnlAlert] = field(default_factory=list)
    # unmodelled top-level keys, carried through on push
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def fresh(cls, settings: Optional[AccountSettings] = None, now_ms: int = 0) -> "AccountState":
        s = settings or AccountSettings()
        return cls(
            balance=s.starting_balance,
            high_water_mark=s.starting_balance,
            day_start_balance=s.starting_balance,
            last_daily_reset=now_ms,
            settings=s,
        )

    @classmethod
    def from_dict(cls, d: Any) -> "AccountState":
        """
        Parse a flat JSON snapshot from the state store.
        Raises StateFormatError when the blob is not a usable account state.
        """
        if not isinstance(d, dict):
            raise StateFormatError("state snapshot must be an object")
        if d.get("balance") is None:
            raise StateFormatError("state snapshot has no balance")

        balance = _num(d, "balance")
        return cls(
            balance=balance,
            high_water_mark=_num(d, "highWaterMark", balance),
            day_start_balance=_num(d, "dayStartBalance", balance),
            last_daily_reset=_ms(d, "lastDailyReset", 0),
            realized_pnl=_num(d, "realizedPnl", 0.0),
            positions=[Position.from_dict(p) for p in _list(d, "positions")],
            trades=[Trade.from_dict(t) for t in _list(d, "trades")],
            equity_history=[EquitySnapshot.from_dict(e) for e in _list(d, "equityHistory")],
            settings=AccountSettings.from_dict(d.get("settings")),
            price_alerts=[PriceAlert.from_dict(a) for a in _list(d, "priceAlerts")],
            pnl_alerts=[PnlAlert.from_dict(a) for a in _list(d, "pnlAlerts")],
            extra={k: v for k, v in d.items() if k not in DATA_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        out.update(
            {
                "balance": self.balance,
                "highWaterMark": self.high_water_mark,
                "dayStartBalance": self.day_start_balance,
                "lastDailyReset": self.last_daily_reset,
                "realizedPnl": self.realized_pnl,
                "positions": [p.to_dict() for p in self.positions],
                "trades": [t.to_dict() for t in self.trades],
                "equityHistory": [e.to_dict() for e in self.equity_history],
                "settings": self.settings.to_dict(),
                "priceAlerts": [a.to_dict() for a in self.price_alerts],
                "pnlAlerts": [a.to_dict() for a in self.pnl_alerts],
            }
        )
        return out

    # ---------- lookups ----------
    def find_position(self, position_id: str) -> Optional[Position]:
        for p in self.positions:
            if p.id == position_id:
                return p
        return None

    def find_price_alert(self, alert_id: str) -> Optional[PriceAlert]:
        for a in self.price_alerts:
            if a.id == alert_id:
                return a
        return None

    def find_pnl_alert(self, alert_id: str) -> Optional[PnlAlert]:
        for a in self.pnl_alerts:
            if a.id == alert_id:
                return a
        return None
