# breakout/risk/sizing.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

from breakout.account.models import AccountSettings

BTC_ETH_ASSETS = ("BTC", "ETH")


def max_leverage_for(asset: str, settings: AccountSettings) -> float:
    """BTC/ETH get the majors cap, everything else the alt cap."""
    if (asset or "").strip().upper() in BTC_ETH_ASSETS:
        return float(settings.btc_eth_leverage)
    return float(settings.alt_leverage)


@dataclass
class SizeResult:
    stop_distance_pct: float
    effective_risk_fraction: float
    size_from_risk: float
    size_from_leverage: float
    recommended_size: float
    dollar_risk: float
    leverage_used: float
    estimated_liquidation_price: float
    entry_fee: float
    exit_fee: float
    total_fees: float
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)


def _empty(reason: str, **details: Any) -> SizeResult:
    return SizeResult(
        stop_distance_pct=0.0,
        effective_risk_fraction=0.0,
        size_from_risk=0.0,
        size_from_leverage=0.0,
        recommended_size=0.0,
        dollar_risk=0.0,
        leverage_used=0.0,
        estimated_liquidation_price=0.0,
        entry_fee=0.0,
        exit_fee=0.0,
        total_fees=0.0,
        reason=reason,
        details=details,
    )


def size_position(
    *,
    entry: float,
    stop: float,
    risk_pct: float,
    balance: float,
    max_leverage: float,
    fee_pct: float,
    side: str = "long",
) -> SizeResult:
    """
    Risk-budget sizing capped by leverage.

      stop distance      = |entry - stop| / entry
      effective fraction = stop distance + 2 * fee_pct/100   (entry + exit fee drag)
      size from risk     = balance * risk_pct/100 / effective fraction
      size from leverage = balance * max_leverage
      recommended        = min of the two

    Liquidation is estimated as a full margin loss at the leverage actually used
    (floored at 1x).
    """
    entry = float(entry)
    balance = float(balance)

    if entry <= 0:
        return _empty("invalid_entry", entry=entry)
    if balance <= 0:
        return _empty("invalid_balance", balance=balance)

    stop_distance = abs(entry - float(stop)) / entry
    fee_frac = float(fee_pct) / 100.0
    effective = stop_distance + 2.0 * fee_frac
    budget = balance * float(risk_pct) / 100.0

    size_from_leverage = balance * max(0.0, float(max_leverage))
    reason = "ok"
    if effective <= 0:
        # zero stop distance and no fees: the risk budget does not bound size
        size_from_risk = size_from_leverage
        reason = "zero_risk_fraction"
    else:
        size_from_risk = budget / effective

    recommended = max(0.0, min(size_from_risk, size_from_leverage))
    leverage_used = recommended / balance
    liq_lev = max(leverage_used, 1.0)
    if (side or "long").lower() == "short":
        liq = entry * (1.0 + 1.0 / liq_lev)
    else:
        liq = entry * (1.0 - 1.0 / liq_lev)

    entry_fee = recommended * fee_frac
    exit_fee = recommended * fee_frac

    return SizeResult(
        stop_distance_pct=stop_distance * 100.0,
        effective_risk_fraction=effective,
        size_from_risk=size_from_risk,
        size_from_leverage=size_from_leverage,
        recommended_size=recommended,
        dollar_risk=recommended * effective,
        leverage_used=leverage_used,
        estimated_liquidation_price=liq,
        entry_fee=entry_fee,
        exit_fee=exit_fee,
        total_fees=entry_fee + exit_fee,
        reason=reason,
        details={
            "risk_budget_usd": budget,
            "bound_by": "risk" if size_from_risk <= size_from_leverage else "leverage",
            "side": (side or "long").lower(),
        },
    )
