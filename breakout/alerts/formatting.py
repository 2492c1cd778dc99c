from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from breakout.alerts.engine import NotificationEvent, PositionLine, fmt_num


def fmt_ts(ts_ms: Optional[int], tz_name: str = "America/New_York") -> str:
    """'Oct 19, 03:23 PM' in the notification timezone."""
    if not ts_ms:
        return ""
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(ZoneInfo(tz_name))
    return f"{dt:%b} {dt.day}, {dt:%I:%M %p}"


def _usd(x: float) -> str:
    return f"+${x:,.2f}" if x >= 0 else f"-${abs(x):,.2f}"


def format_positions(asset: str, lines: List[PositionLine]) -> str:
    if not lines:
        return ""
    rows = []
    for p in lines:
        sl = fmt_num(p.stop_loss) if p.stop_loss is not None else "—"
        tp = fmt_num(p.take_profit) if p.take_profit is not None else "—"
        rows.append(
            f"  {p.side.upper()} ${fmt_num(p.size)} @ {fmt_num(p.entry_price)} "
            f"| SL {sl} | TP {tp} | P&amp;L {_usd(p.pnl)}"
        )
    return f"\n\n<b>Open {html.escape(asset)} positions:</b>\n" + "\n".join(rows)


def format_message(event: NotificationEvent, tz_name: str = "America/New_York") -> str:
    """Telegram HTML: title, body, trigger/set times, then open positions for the asset."""
    fired = fmt_ts(event.fired_at, tz_name)
    created = fmt_ts(event.created_at, tz_name) if event.created_at else ""
    time_info = f"\n<i>Triggered: {fired}" + (f" | Set: {created}" if created else "") + "</i>"
    position_info = format_positions(event.asset, event.positions) if event.asset else ""
    return (
        f"<b>{html.escape(event.title)}</b>\n"
        f"{html.escape(event.body)}"
        f"{time_info}"
        f"{position_info}"
    )
