from decimal import Decimal

import pytest

from breakout.account.models import AccountState, PnlAlert, Position, PriceAlert
from breakout.alerts.engine import AlertEngine, AlertKind, is_hit
from breakout.alerts.registry import FiredRegistry, pnl_key, sl_key


def _state(**kw):
    return AccountState(balance=10000, high_water_mark=10000, day_start_balance=10000, **kw)


def _engine(clock, **kw):
    return AlertEngine(FiredRegistry(**kw), clock, cooldown_seconds=30, warmup_seconds=10)


def _price_alert(clock, **kw):
    base = dict(id="a1", asset="BTC", target_price=61000, direction="above", created_at=clock.now)
    base.update(kw)
    return PriceAlert(**base)


@pytest.mark.parametrize(
    "direction,value,target,hit",
    [
        ("above", 100, 100, True),
        ("above", 99.99, 100, False),
        ("below", 100, 100, True),
        ("below", 100.01, 100, False),
    ],
)
def test_hit_is_inclusive(direction, value, target, hit):
    assert is_hit(direction, value, target) is hit


def test_non_persistent_price_alert_fires_once_then_rearms(clock):
    eng = _engine(clock)
    st = _state(price_alerts=[_price_alert(clock)])

    res = eng.evaluate({"BTC": 61000}, st)
    assert [e.kind for e in res.events] == [AlertKind.PRICE]
    assert res.modified is True
    assert st.price_alerts[0].triggered is True
    assert st.price_alerts[0].triggered_at == clock.now

    clock.advance(60_000)
    assert eng.evaluate({"BTC": 62000}, st).events == []

    eng.rearm_price_alert(st, "a1")
    assert st.price_alerts[0].triggered is False
    res = eng.evaluate({"BTC": 62000}, st)
    assert len(res.events) == 1


def test_persistent_alert_respects_cooldown_and_never_triggers(clock):
    eng = _engine(clock)
    st = _state(price_alerts=[_price_alert(clock, persistent=True)])

    assert len(eng.evaluate({"BTC": 61500}, st).events) == 1
    assert st.price_alerts[0].triggered is False

    clock.advance(29_999)
    assert eng.evaluate({"BTC": 61500}, st).events == []

    clock.advance(1)
    res = eng.evaluate({"BTC": 61500}, st)
    assert len(res.events) == 1
    assert res.modified is False


def test_missing_or_bad_price_skips_rule(clock):
    eng = _engine(clock)
    st = _state(price_alerts=[_price_alert(clock)])

    assert eng.evaluate({}, st).events == []
    assert eng.evaluate({"BTC": float("nan")}, st).events == []
    assert eng.evaluate({"BTC": 0}, st).events == []


def test_none_and_malformed_state_skip_pass(clock):
    eng = _engine(clock)
    assert eng.evaluate({"BTC": 1}, None).events == []
    res = eng.evaluate({"BTC": 1}, {"positions": []})
    assert res.state is None and res.events == []


def test_state_dict_is_accepted(clock):
    eng = _engine(clock)
    snap = _state(price_alerts=[_price_alert(clock)]).to_dict()
    res = eng.evaluate({"BTC": 61000}, snap)
    assert len(res.events) == 1
    assert res.state.price_alerts[0].triggered is True


def test_stop_loss_end_to_end_fires_once(clock):
    eng = _engine(clock)
    st = _state(positions=[
        Position(id="p1", asset="BTC", side="long", entry_price=60000, size=5000, stop_loss=58000)
    ])

    fired = []
    for px in (60000, 58500, 57900, 57800, 57950):
        fired += eng.evaluate({"BTC": px}, st).events
        clock.advance(600)

    assert len(fired) == 1
    ev = fired[0]
    assert ev.kind is AlertKind.STOP_LOSS
    assert ev.value == 57900
    assert ev.title == "STOP LOSS — BTC"
    assert "hit SL at 57,900 (SL: 58,000)" in ev.body


def test_short_take_profit_direction(clock):
    eng = _engine(clock)
    st = _state(positions=[
        Position(id="p1", asset="ETH", side="short", entry_price=3000, size=1000, take_profit=2800)
    ])
    assert eng.evaluate({"ETH": 2900}, st).events == []
    res = eng.evaluate({"ETH": 2800}, st)
    assert [e.kind for e in res.events] == [AlertKind.TAKE_PROFIT]
    # SL/TP do not mutate persisted state
    assert res.modified is False


def test_edited_stop_fires_again_when_enabled(clock):
    eng = _engine(clock, clear_on_level_edit=True)
    pos = Position(id="p1", asset="BTC", side="long", entry_price=60000, size=5000, stop_loss=58000)
    st = _state(positions=[pos])

    assert len(eng.evaluate({"BTC": 57000}, st).events) == 1
    pos.stop_loss = 57500
    eng.level_edited("p1", stop_loss=True)

    clock.advance(31_000)
    assert len(eng.evaluate({"BTC": 57000}, st).events) == 1


def test_edited_stop_stays_silent_when_disabled(clock):
    eng = _engine(clock, clear_on_level_edit=False)
    pos = Position(id="p1", asset="BTC", side="long", entry_price=60000, size=5000, stop_loss=58000)
    st = _state(positions=[pos])

    assert len(eng.evaluate({"BTC": 57000}, st).events) == 1
    pos.stop_loss = 57500
    eng.level_edited("p1", stop_loss=True)

    clock.advance(31_000)
    assert eng.evaluate({"BTC": 57000}, st).events == []
    assert eng.registry.is_fired(sl_key("p1"))


def test_deleted_position_releases_its_keys(clock):
    eng = _engine(clock)
    st = _state(positions=[
        Position(id="p1", asset="BTC", side="long", entry_price=60000, size=5000, stop_loss=58000)
    ])
    eng.evaluate({"BTC": 57000}, st)
    assert eng.registry.is_fired(sl_key("p1"))

    st.positions = []
    eng.evaluate({"BTC": 57000}, st)
    assert not eng.registry.is_fired(sl_key("p1"))


def _pnl_state():
    return _state(
        positions=[Position(id="p1", asset="BTC", side="long", entry_price=100, size=1000)],
        pnl_alerts=[PnlAlert(id="n1", target_pnl=50, direction="above")],
    )


def test_pnl_waits_for_warmup_and_full_pricing(clock):
    eng = _engine(clock)
    st = _pnl_state()
    st.positions.append(Position(id="p2", asset="ETH", side="long", entry_price=10, size=100))

    assert eng.evaluate({"BTC": 110, "ETH": 10}, st).events == []  # warm-up

    clock.advance(10_000)
    assert eng.evaluate({"BTC": 110}, st).events == []  # ETH unpriced

    res = eng.evaluate({"BTC": 110, "ETH": 10}, st)
    assert [e.kind for e in res.events] == [AlertKind.PNL]
    assert res.events[0].body == "Unrealized P&L hit $100.00"
    assert res.events[0].title == "P&L ↑ $50"


def test_pnl_alert_self_heals(clock):
    eng = _engine(clock)
    st = _pnl_state()
    clock.advance(10_000)

    assert len(eng.evaluate({"BTC": 106}, st).events) == 1
    assert st.pnl_alerts[0].triggered is True

    clock.advance(1000)
    res = eng.evaluate({"BTC": 101}, st)
    assert res.events == []
    assert res.modified is True
    assert st.pnl_alerts[0].triggered is False
    assert not eng.registry.is_fired(pnl_key("n1"))

    # met again, but still inside the cooldown
    clock.advance(1000)
    assert eng.evaluate({"BTC": 106}, st).events == []

    clock.advance(30_000)
    assert len(eng.evaluate({"BTC": 106}, st).events) == 1


def test_persistent_pnl_alert_repeats_after_cooldown(clock):
    eng = _engine(clock)
    st = _pnl_state()
    st.pnl_alerts[0].persistent = True
    clock.advance(10_000)

    res = eng.evaluate({"BTC": 106}, st)
    assert [e.kind for e in res.events] == [AlertKind.PNL]
    assert res.events[0].persistent is True
    assert res.modified is False
    assert st.pnl_alerts[0].triggered is False

    clock.advance(29_999)
    assert eng.evaluate({"BTC": 106}, st).events == []

    # condition clearing leaves a persistent alert untouched
    res = eng.evaluate({"BTC": 101}, st)
    assert res.events == []
    assert res.modified is False

    clock.advance(1)
    res = eng.evaluate({"BTC": 106}, st)
    assert len(res.events) == 1
    assert res.modified is False
    assert st.pnl_alerts[0].triggered is False
    assert st.pnl_alerts[0].triggered_at is None


@pytest.mark.parametrize("px", [Decimal("110"), "110"])
def test_pnl_total_uses_normalized_prices(clock, px):
    eng = _engine(clock)
    st = _pnl_state()
    clock.advance(10_000)

    res = eng.evaluate({"BTC": px}, st)
    assert [e.kind for e in res.events] == [AlertKind.PNL]
    assert res.events[0].value == pytest.approx(100.0)


def test_rearm_clears_cooldown_and_can_change_target(clock):
    eng = _engine(clock)
    st = _state(price_alerts=[_price_alert(clock)])
    eng.evaluate({"BTC": 61000}, st)

    clock.advance(1000)
    eng.rearm_price_alert(st, "a1", target_price=62000)
    assert eng.evaluate({"BTC": 61500}, st).events == []
    assert len(eng.evaluate({"BTC": 62000}, st).events) == 1


def test_dismiss_only_fired_alerts(clock):
    eng = _engine(clock)
    st = _state(price_alerts=[_price_alert(clock)])

    with pytest.raises(ValueError):
        eng.dismiss_price_alert(st, "a1")
    with pytest.raises(KeyError):
        eng.dismiss_price_alert(st, "nope")

    eng.evaluate({"BTC": 61000}, st)
    removed = eng.dismiss_price_alert(st, "a1")
    assert removed.id == "a1"
    assert st.price_alerts == []
    assert not eng.registry.is_fired("a1")


def test_events_carry_open_positions_for_asset(clock):
    eng = _engine(clock)
    st = _state(
        price_alerts=[_price_alert(clock)],
        positions=[
            Position(id="p1", asset="BTC", side="long", entry_price=60000, size=6000),
            Position(id="p2", asset="ETH", side="long", entry_price=3000, size=1000),
        ],
    )
    ev = eng.evaluate({"BTC": 61000, "ETH": 3000}, st).events[0]
    assert len(ev.positions) == 1
    assert ev.positions[0].pnl == pytest.approx(100.0)
