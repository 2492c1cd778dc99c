from datetime import datetime, timezone

import pytest

from breakout.account.models import AccountState, Position
from breakout.risk.metrics import (
    daily_drawdown_pct,
    daily_reset_due,
    drawdown_zone,
    risk_if_all_stops_hit,
    risk_snapshot,
    total_drawdown_pct,
    total_unrealized_pnl,
    unrealized_pnl,
)


def _ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def test_total_drawdown_examples():
    assert total_drawdown_pct(9000, 10000) == pytest.approx(10.0)
    assert total_drawdown_pct(10500, 10000) == 0


def test_drawdowns_never_raise_on_bad_denominator():
    assert total_drawdown_pct(100, 0) == 0.0
    assert daily_drawdown_pct(100, -5) == 0.0
    assert daily_drawdown_pct(9900, 10000) == pytest.approx(1.0)


def test_risk_if_all_stops_hit_includes_exit_fee():
    pos = Position(id="p1", asset="BTC", side="long", entry_price=100, size=1000, stop_loss=95)
    assert risk_if_all_stops_hit([pos], 10000, 0.04) == pytest.approx(0.504)


def test_risk_ignores_positions_without_stop_and_zero_balance():
    no_stop = Position(id="p1", asset="BTC", side="long", entry_price=100, size=1000)
    bad_entry = Position(id="p2", asset="ETH", side="short", entry_price=0, size=1000, stop_loss=5)
    assert risk_if_all_stops_hit([no_stop, bad_entry], 10000, 0.04) == 0.0
    assert risk_if_all_stops_hit([no_stop], 0, 0.04) == 0.0


@pytest.mark.parametrize(
    "pct,limit,zone",
    [
        (0.0, 3.0, "green"),
        (1.49, 3.0, "green"),
        (1.5, 3.0, "yellow"),
        (2.39, 3.0, "yellow"),
        (4.0, 5.0, "red"),
        (3.0, 3.0, "red"),
        (0.0, 0.0, "green"),
        (0.1, 0.0, "red"),
    ],
)
def test_drawdown_zone(pct, limit, zone):
    assert drawdown_zone(pct, limit) == zone


def test_daily_reset_due_around_boundary():
    # reset hour 0 UTC
    last = _ms(2025, 3, 1, 23, 59)
    assert daily_reset_due(last, 0, _ms(2025, 3, 2, 0, 1)) is True
    assert daily_reset_due(last, 0, _ms(2025, 3, 1, 23, 59, 30)) is False

    # reset hour 8: before 08:00 the boundary is yesterday's
    last = _ms(2025, 3, 1, 9, 0)
    assert daily_reset_due(last, 8, _ms(2025, 3, 2, 7, 0)) is False
    assert daily_reset_due(last, 8, _ms(2025, 3, 2, 8, 0)) is True


def test_unrealized_pnl_sign_follows_side():
    long_ = Position(id="a", asset="BTC", side="long", entry_price=100, size=1000)
    short = Position(id="b", asset="BTC", side="short", entry_price=100, size=1000)
    assert unrealized_pnl(long_, 110) == pytest.approx(100.0)
    assert unrealized_pnl(short, 110) == pytest.approx(-100.0)
    assert total_unrealized_pnl([long_, short], {"BTC": 110}) == pytest.approx(0.0)
    assert total_unrealized_pnl([long_], {}) == 0.0


def test_risk_snapshot_bundle():
    st = AccountState(balance=9700, high_water_mark=10000, day_start_balance=10000)
    st.positions.append(
        Position(id="p1", asset="BTC", side="long", entry_price=100, size=1000, stop_loss=95)
    )
    snap = risk_snapshot(st, {"BTC": 105})

    assert snap["unrealized_pnl"] == pytest.approx(50.0)
    assert snap["equity"] == pytest.approx(9750.0)
    assert snap["daily_drawdown_pct"] == pytest.approx(3.0)
    assert snap["daily_drawdown_zone"] == "red"
    assert snap["total_drawdown_zone"] == "yellow"
    assert snap["positions_priced"] == 1
