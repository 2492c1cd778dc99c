import pytest

from breakout.account.models import AccountState, PriceAlert
from breakout.errors import StateFormatError


def _snapshot():
    return {
        "balance": 9800,
        "highWaterMark": 10000,
        "dayStartBalance": 9900,
        "lastDailyReset": 1_700_000_000_000,
        "realizedPnl": -200,
        "positions": [
            {"id": "p1", "asset": "btc", "side": "long", "entryPrice": 60000, "size": 5000,
             "stopLoss": 58000, "takeProfit": None, "openedAt": 1_700_000_000_000},
        ],
        "trades": [],
        "equityHistory": [{"date": "2025-03-01", "balance": 9900, "drawdownPct": 1.0}],
        "settings": {"startingBalance": 10000, "btcEthLeverage": 10},
        "priceAlerts": [
            {"id": "a1", "asset": "ETH", "targetPrice": 3000, "direction": "above",
             "note": "", "persistent": False, "triggered": True, "createdAt": 5, "triggeredAt": 9},
        ],
        "pnlAlerts": [],
        "uiTheme": "neon",
    }


def test_parse_snapshot():
    st = AccountState.from_dict(_snapshot())

    assert st.balance == 9800
    assert st.positions[0].asset == "BTC"
    assert st.positions[0].stop_loss == 58000
    assert st.positions[0].take_profit is None
    assert st.settings.btc_eth_leverage == 10
    # unspecified settings keep their defaults
    assert st.settings.trading_fee_pct == 0.04
    assert st.price_alerts[0].triggered is True
    assert st.extra == {"uiTheme": "neon"}


def test_to_dict_carries_unknown_keys():
    out = AccountState.from_dict(_snapshot()).to_dict()
    assert out["uiTheme"] == "neon"
    assert out["priceAlerts"][0]["triggeredAt"] == 9
    assert out["positions"][0]["stopLoss"] == 58000


def test_defaults_for_missing_account_fields():
    st = AccountState.from_dict({"balance": 5000})
    assert st.high_water_mark == 5000
    assert st.day_start_balance == 5000
    assert st.positions == []


@pytest.mark.parametrize(
    "blob",
    [
        None,
        [],
        {"highWaterMark": 1},
        {"balance": "lots"},
        {"balance": 1, "positions": {"p": 1}},
        {"balance": 1, "positions": [{"id": "p", "asset": "BTC", "side": "up", "entryPrice": 1, "size": 1}]},
        {"balance": 1, "priceAlerts": [{"id": "a", "asset": "BTC", "direction": "above"}]},
    ],
)
def test_malformed_snapshot_raises(blob):
    with pytest.raises(StateFormatError):
        AccountState.from_dict(blob)


def test_untriggered_alert_omits_triggered_at():
    a = PriceAlert(id="x", asset="BTC", target_price=1, direction="below")
    assert "triggeredAt" not in a.to_dict()
