import asyncio

import pytest
from fastapi.testclient import TestClient

import breakout.main as main
from breakout.account.models import AccountState, PnlAlert, Position, PriceAlert
from breakout.alerts.registry import sl_key
from breakout.core.config import Settings


class _FakeStore:
    def __init__(self, snapshot):
        self.snapshot = snapshot
        self.puts = []

    def get(self):
        return self.snapshot

    def put(self, snapshot):
        self.puts.append(snapshot)
        return True


class _FakeNotifier:
    configured = False

    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        return True


def _snapshot():
    st = AccountState(balance=10000, high_water_mark=10000, day_start_balance=10000)
    st.positions.append(
        Position(id="p1", asset="BTC", side="long", entry_price=100, size=1000, stop_loss=95)
    )
    st.price_alerts.append(
        PriceAlert(id="a1", asset="BTC", target_price=110, direction="above", triggered=True,
                   created_at=1, triggered_at=2)
    )
    st.pnl_alerts.append(PnlAlert(id="n1", target_pnl=50, direction="above"))
    return st.to_dict()


@pytest.fixture
def svc(monkeypatch, clock):
    store = _FakeStore(_snapshot())
    service = main.build_service(Settings(), client=store, notifier=_FakeNotifier(), clock=clock)
    service.sync.pull()
    monkeypatch.setattr(main, "service", service)
    monkeypatch.setattr(main.settings, "API_PASSWORD", "")
    return service


@pytest.fixture
def api(svc):
    return TestClient(main.app)


def test_root_and_status(api):
    assert api.get("/").json()["state_loaded"] is True
    body = api.get("/status").json()
    assert body["state"]["loaded"] is True
    assert body["checker"]["passes"] == 0


def test_risk_metrics(api, svc):
    svc.feed.prices["BTC"] = 105.0
    body = api.get("/risk/metrics").json()
    assert body["unrealized_pnl"] == pytest.approx(50.0)
    assert body["risk_if_all_stops_hit_pct"] == pytest.approx(0.504)


def test_risk_size_uses_account_settings(api):
    r = api.post("/risk/size", json={"asset": "BTC", "entry": 100, "stop": 95, "risk_pct": 1})
    body = r.json()
    assert r.status_code == 200
    assert body["recommended_size"] == pytest.approx(1968.5, abs=0.1)
    assert body["size_from_leverage"] == pytest.approx(50000)


def test_rearm_and_dismiss_are_audited(api, svc):
    r = api.post("/alerts/price/a1/rearm", json={"target": 120})
    assert r.status_code == 200
    assert r.json()["triggered"] is False
    assert r.json()["targetPrice"] == 120

    r = api.post("/alerts/price/a1/dismiss")
    assert r.status_code == 400

    svc.sync.state.price_alerts[0].triggered = True
    assert api.post("/alerts/price/a1/dismiss").json()["status"] == "dismissed"

    kinds = [e["event_type"] for e in api.get("/logs/events/tail").json()["events"]]
    assert kinds == ["ALERT_REARMED", "ALERT_DISMISSED"]


def test_unknown_ids_are_404(api):
    assert api.post("/alerts/price/nope/rearm").status_code == 404
    assert api.post("/alerts/pnl/nope/dismiss").status_code == 404
    assert api.patch("/positions/nope/levels", json={"stop_loss": 1}).status_code == 404


def test_level_edit_rearms_stop(api, svc):
    svc.engine.registry.mark_fired(sl_key("p1"), 95.0)

    r = api.patch("/positions/p1/levels", json={"stop_loss": 96})
    assert r.status_code == 200
    assert r.json()["stopLoss"] == 96
    assert r.json()["stop_loss_changed"] is True
    assert not svc.engine.registry.is_fired(sl_key("p1"))

    # omitted take_profit is left alone, explicit null clears it
    r = api.patch("/positions/p1/levels", json={"take_profit": None})
    assert r.json()["takeProfit"] is None
    assert r.json()["stopLoss"] == 96


def test_open_and_close_position(api, svc):
    r = api.post("/positions", json={"asset": "eth", "side": "short", "entry_price": 3000, "size": 1500})
    assert r.status_code == 200
    pos_id = r.json()["id"]

    r = api.post(f"/positions/{pos_id}/close", json={"exit_price": 2900})
    assert r.status_code == 200
    assert r.json()["pnl"] == pytest.approx(50.0 - 0.6)
    assert svc.sync.state.find_position(pos_id) is None


def test_bad_side_is_400(api):
    r = api.post("/positions", json={"asset": "ETH", "side": "up", "entry_price": 1, "size": 1})
    assert r.status_code == 400


def test_auth_required_when_password_set(api, monkeypatch):
    monkeypatch.setattr(main.settings, "API_PASSWORD", "secret")
    assert api.post("/alerts/pnl", json={"target_pnl": 10, "direction": "above"}).status_code == 401
    r = api.post(
        "/alerts/pnl",
        json={"target_pnl": 10, "direction": "above"},
        headers={"Authorization": "Bearer secret"},
    )
    assert r.status_code == 200
    # reads stay open
    assert api.get("/alerts").status_code == 200


def test_state_not_loaded_is_503(monkeypatch, clock):
    service = main.build_service(Settings(), client=_FakeStore(None), notifier=_FakeNotifier(), clock=clock)
    monkeypatch.setattr(main, "service", service)
    assert TestClient(main.app).get("/risk/metrics").status_code == 503


def test_poll_loop_refuses_unstarted_service(svc):
    svc.stop_event = None
    with pytest.raises(RuntimeError):
        asyncio.run(main.state_poll_loop(svc))
