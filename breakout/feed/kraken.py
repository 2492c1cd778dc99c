# breakout/feed/kraken.py
from __future__ import annotations

import asyncio
import json
import logging
import math
import random
from typing import Callable, Dict, Iterable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

log = logging.getLogger("breakout.feed")

# dashboard asset -> Kraken v2 symbol
KRAKEN_MAP: Dict[str, str] = {
    "BTC": "XBT/USD",
    "ETH": "ETH/USD",
    "SOL": "SOL/USD",
    "XRP": "XRP/USD",
    "ADA": "ADA/USD",
    "AVAX": "AVAX/USD",
    "DOT": "DOT/USD",
    "LINK": "LINK/USD",
    "MATIC": "MATIC/USD",
    "DOGE": "DOGE/USD",
    "ATOM": "ATOM/USD",
    "UNI": "UNI/USD",
    "LTC": "LTC/USD",
    "NEAR": "NEAR/USD",
    "APT": "APT/USD",
    "ARB": "ARB/USD",
    "OP": "OP/USD",
    "SUI": "SUI/USD",
    "SEI": "SEI/USD",
    "TIA": "TIA/USD",
    "INJ": "INJ/USD",
    "FET": "FET/USD",
    "RNDR": "RNDR/USD",
    "ASTR": "ASTR/USD",
    "HYPE": "HYPE/USD",
    "TRUMP": "TRUMP/USD",
    "TAO": "TAO/USD",
    "PUMP": "PUMP/USD",
    "FARTCOIN": "FARTCOIN/USD",
    "BCH": "BCH/USD",
    "BONK": "BONK/USD",
    "AAVE": "AAVE/USD",
    "LDO": "LDO/USD",
    "KAS": "KAS/USD",
    "BNB": "BNB/USD",
    "PEPE": "PEPE/USD",
    "WIF": "WIF/USD",
    "FLOKI": "FLOKI/USD",
    "SHIB": "SHIB/USD",
    "FIL": "FIL/USD",
    "IMX": "IMX/USD",
    "GRT": "GRT/USD",
    "PENDLE": "PENDLE/USD",
    "JUP": "JUP/USD",
    "ENA": "ENA/USD",
    "ONDO": "ONDO/USD",
    "STX": "STX/USD",
    "MKR": "MKR/USD",
    "RENDER": "RENDER/USD",
    "TRX": "TRX/USD",
    "TON": "TON/USD",
    "XLM": "XLM/USD",
    "ALGO": "ALGO/USD",
    "VET": "VET/USD",
    "SAND": "SAND/USD",
    "MANA": "MANA/USD",
    "AXS": "AXS/USD",
    "CRV": "CRV/USD",
    "SNX": "SNX/USD",
    "COMP": "COMP/USD",
    "SUSHI": "SUSHI/USD",
    "DYDX": "DYDX/USD",
    "BLUR": "BLUR/USD",
    "W": "W/USD",
    "PYTH": "PYTH/USD",
    "JTO": "JTO/USD",
    "STRK": "STRK/USD",
    "MEME": "MEME/USD",
    "ORDI": "ORDI/USD",
    "RUNE": "RUNE/USD",
    "WLD": "WLD/USD",
    "FTM": "FTM/USD",
}

_PAIR_TO_ASSET: Dict[str, str] = {pair: asset for asset, pair in KRAKEN_MAP.items()}


def to_kraken_pair(asset: str) -> str:
    a = (asset or "").strip().upper()
    return KRAKEN_MAP.get(a, f"{a}/USD")


def from_kraken_pair(pair: str) -> Optional[str]:
    return _PAIR_TO_ASSET.get(pair)


def parse_ticker_message(raw: str) -> Dict[str, float]:
    """
    Extract {asset: last} from one Kraken v2 frame.
    Non-ticker frames (heartbeat, status, subscribe acks) yield {}.
    """
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    if not isinstance(msg, dict) or msg.get("channel") != "ticker":
        return {}

    out: Dict[str, float] = {}
    for tick in msg.get("data") or []:
        if not isinstance(tick, dict):
            continue
        asset = from_kraken_pair(str(tick.get("symbol", "")))
        last = tick.get("last")
        if asset is None or last is None:
            continue
        try:
            px = float(last)
        except (TypeError, ValueError):
            continue
        if math.isfinite(px) and px > 0:
            out[asset] = px
    return out


PriceListener = Callable[[Dict[str, float]], None]


class KrakenPriceFeed:
    """
    Streams Kraken ticker prices into `self.prices` (latest wins per asset)
    and notifies listeners with a snapshot copy after every ticker batch.
    Reconnects with exponential backoff; never raises out of run().
    """

    def __init__(
        self,
        url: str = "wss://ws.kraken.com/v2",
        assets: Optional[Iterable[str]] = None,
        reconnect_seconds: float = 3.0,
        reconnect_max_seconds: float = 60.0,
    ):
        self.url = url
        tracked = [a.strip().upper() for a in (assets or []) if a and a.strip()]
        self.pairs: List[str] = (
            [to_kraken_pair(a) for a in tracked] if tracked else list(KRAKEN_MAP.values())
        )
        self.reconnect_seconds = float(reconnect_seconds)
        self.reconnect_max_seconds = max(float(reconnect_max_seconds), self.reconnect_seconds)

        self.prices: Dict[str, float] = {}
        self.connected = False
        self._listeners: List[PriceListener] = []

    def on_price(self, cb: PriceListener) -> None:
        self._listeners.append(cb)

    def subscribe_message(self) -> str:
        return json.dumps(
            {"method": "subscribe", "params": {"channel": "ticker", "symbol": self.pairs}}
        )

    def handle_message(self, raw: str) -> bool:
        """Merge one frame. Returns True when prices were updated."""
        batch = parse_ticker_message(raw)
        if not batch:
            return False
        self.prices.update(batch)
        snapshot = dict(self.prices)
        for cb in self._listeners:
            try:
                cb(snapshot)
            except Exception as e:
                # a broken listener must not stop the stream
                log.exception("price listener failed: %s", e)
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        delay = self.reconnect_seconds
        while not stop_event.is_set():
            try:
                async with websockets.connect(
                    self.url,
                    open_timeout=30,
                    ping_interval=20,
                    ping_timeout=60,
                ) as ws:
                    self.connected = True
                    delay = self.reconnect_seconds
                    log.info("kraken connected, subscribing to %d pairs", len(self.pairs))
                    await ws.send(self.subscribe_message())

                    async for raw in ws:
                        if stop_event.is_set():
                            break
                        self.handle_message(raw)

            except asyncio.CancelledError:
                self.connected = False
                raise

            except (ConnectionClosed, OSError, asyncio.TimeoutError) as e:
                log.warning("kraken disconnected (%s), reconnecting in %.1fs", e, delay)

            except Exception as e:
                log.error("kraken feed error: %s", e)

            self.connected = False
            if stop_event.is_set():
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay + random.uniform(0, 0.5))
            except asyncio.TimeoutError:
                pass
            delay = min(delay * 2, self.reconnect_max_seconds)

        self.connected = False
        log.info("kraken feed stopped")
