# breakout/alerts/registry.py
from __future__ import annotations

from typing import Dict, List, Optional

from breakout.account.models import AccountState

PNL_PREFIX = "pnl-"
SL_PREFIX = "sl-"
TP_PREFIX = "tp-"


def pnl_key(alert_id: str) -> str:
    return f"{PNL_PREFIX}{alert_id}"


def sl_key(position_id: str) -> str:
    return f"{SL_PREFIX}{position_id}"


def tp_key(position_id: str) -> str:
    return f"{TP_PREFIX}{position_id}"


class FiredRegistry:
    """
    Process-local dedup memory for one account.

    fired:      key -> level the rule fired at (stop/target price for sl-/tp- keys,
                None otherwise). Presence means "suppressed until re-armed".
    last_fired: key -> epoch ms of the last notification (cooldown clock).

    Keys: "pnl-<alertId>", "sl-<positionId>", "tp-<positionId>", or a raw
    PriceAlert id. Nothing here is persisted.
    """

    def __init__(self, *, clear_on_level_edit: bool = True):
        self.clear_on_level_edit = bool(clear_on_level_edit)
        self.fired: Dict[str, Optional[float]] = {}
        self.last_fired: Dict[str, int] = {}

    # ---------- fired-set ----------
    def is_fired(self, key: str) -> bool:
        return key in self.fired

    def mark_fired(self, key: str, level: Optional[float] = None) -> None:
        self.fired[key] = level

    def unmark(self, key: str) -> None:
        self.fired.pop(key, None)

    def forget(self, key: str) -> None:
        """Drop both the fired entry and the cooldown clock for a key."""
        self.fired.pop(key, None)
        self.last_fired.pop(key, None)

    # ---------- cooldown ----------
    def cooldown_ok(self, key: str, now_ms: int, cooldown_ms: int) -> bool:
        if cooldown_ms <= 0:
            return True
        last = self.last_fired.get(key)
        if last is None:
            return True
        return (now_ms - last) >= cooldown_ms

    def touch(self, key: str, now_ms: int) -> None:
        self.last_fired[key] = int(now_ms)

    # ---------- garbage collection ----------
    def garbage_collect(self, state: AccountState) -> List[str]:
        """
        Reclaim entries that no longer match the account state.
        Returns the fired keys that were removed.
        """
        removed: List[str] = []

        for key in list(self.fired):
            if not self._fired_entry_live(key, state):
                self.fired.pop(key, None)
                removed.append(key)

        for key in list(self.last_fired):
            if not self._cooldown_entry_live(key, state):
                self.last_fired.pop(key, None)

        return removed

    def _fired_entry_live(self, key: str, state: AccountState) -> bool:
        if key.startswith(PNL_PREFIX):
            alert = state.find_pnl_alert(key[len(PNL_PREFIX):])
            return alert is not None and alert.triggered

        if key.startswith(SL_PREFIX) or key.startswith(TP_PREFIX):
            is_sl = key.startswith(SL_PREFIX)
            pos = state.find_position(key[len(SL_PREFIX if is_sl else TP_PREFIX):])
            if pos is None:
                return False
            if self.clear_on_level_edit:
                current = pos.stop_loss if is_sl else pos.take_profit
                return current is not None and current == self.fired[key]
            return True

        alert = state.find_price_alert(key)
        return alert is not None and alert.triggered

    def _cooldown_entry_live(self, key: str, state: AccountState) -> bool:
        last = self.last_fired[key]

        if key.startswith(PNL_PREFIX):
            alert = state.find_pnl_alert(key[len(PNL_PREFIX):])
            # a re-armed alert carries a fresh created_at
            return alert is not None and alert.created_at <= last

        if key.startswith(SL_PREFIX):
            return state.find_position(key[len(SL_PREFIX):]) is not None
        if key.startswith(TP_PREFIX):
            return state.find_position(key[len(TP_PREFIX):]) is not None

        alert = state.find_price_alert(key)
        return alert is not None and alert.created_at <= last
