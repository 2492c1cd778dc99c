import pytest


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Keep tests off the network and out of the working tree.
    """
    monkeypatch.setenv("STATE_API_URL", "http://state.test")
    monkeypatch.setenv("STATE_API_PASSWORD", "test-pw")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "")
    monkeypatch.setenv("TRACKED_ASSETS", "BTC,ETH")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "breakout.db"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "alert_audit.jsonl"))


class FakeClock:
    def __init__(self, now_ms: int = 0):
        self.now = now_ms

    def now_ms(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock(1_700_000_000_000)
