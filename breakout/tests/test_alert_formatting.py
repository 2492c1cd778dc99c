from datetime import datetime, timezone

from breakout.alerts.engine import AlertKind, NotificationEvent, PositionLine, fmt_num
from breakout.alerts.formatting import fmt_ts, format_message


def _ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def test_fmt_num():
    assert fmt_num(58000) == "58,000"
    assert fmt_num(0.00001234) == "0.00001234"
    assert fmt_num(1.5) == "1.5"


def test_fmt_ts_in_new_york():
    # 19:23 UTC on Oct 19 is 03:23 PM EDT
    assert fmt_ts(_ms(2025, 10, 19, 19, 23), "America/New_York") == "Oct 19, 03:23 PM"
    assert fmt_ts(None) == ""


def test_message_layout():
    ev = NotificationEvent(
        kind=AlertKind.PRICE,
        key="a1",
        title="BTC ↑ 61,000",
        body="BTC hit 61,000 — breakout <retest>",
        fired_at=_ms(2025, 10, 19, 19, 23),
        asset="BTC",
        created_at=_ms(2025, 10, 19, 14, 0),
        positions=[PositionLine(side="long", size=6000, entry_price=60000, stop_loss=58000,
                                take_profit=None, pnl=100.0)],
    )
    msg = format_message(ev, "America/New_York")
    lines = msg.split("\n")

    assert lines[0] == "<b>BTC ↑ 61,000</b>"
    assert lines[1] == "BTC hit 61,000 — breakout &lt;retest&gt;"
    assert lines[2] == "<i>Triggered: Oct 19, 03:23 PM | Set: Oct 19, 10:00 AM</i>"
    assert "<b>Open BTC positions:</b>" in msg
    assert "LONG $6,000 @ 60,000 | SL 58,000 | TP — | P&amp;L +$100.00" in msg


def test_pnl_message_has_no_position_block():
    ev = NotificationEvent(
        kind=AlertKind.PNL, key="pnl-n1", title="P&L ↑ $50", body="Unrealized P&L hit $60.00",
        fired_at=_ms(2025, 1, 2, 12, 0),
    )
    msg = format_message(ev, "UTC")
    assert msg == (
        "<b>P&amp;L ↑ $50</b>\nUnrealized P&amp;L hit $60.00\n<i>Triggered: Jan 2, 12:00 PM</i>"
    )
