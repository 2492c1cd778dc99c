import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from breakout.account import ledger
from breakout.account.models import AccountState
from breakout.alerts.engine import AlertEngine
from breakout.alerts.registry import FiredRegistry, pnl_key
from breakout.core.config import Settings, settings
from breakout.feed.kraken import KrakenPriceFeed
from breakout.notify.telegram import TelegramNotifier
from breakout.ops.clock import Clock, SystemClock
from breakout.persistence.audit import Audit
from breakout.persistence.db import DB
from breakout.persistence.state_client import StateStoreClient
from breakout.persistence.state_sync import StateSynchronizer
from breakout.risk.metrics import risk_snapshot
from breakout.risk.sizing import max_leverage_for, size_position
from breakout.runner.checker import AlertChecker

log = logging.getLogger("breakout.api")

app = FastAPI(title="Breakout Alert & Risk Service")

SENSITIVE_KEYS = {
    "STATE_API_PASSWORD",
    "TELEGRAM_BOT_TOKEN",
    "API_PASSWORD",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Service:
    db: DB
    audit: Audit
    sync: StateSynchronizer
    engine: AlertEngine
    notifier: TelegramNotifier
    feed: KrakenPriceFeed
    checker: AlertChecker
    clock: Clock
    started_at: str = field(default_factory=_utc_now_iso)
    stop_event: Optional[asyncio.Event] = None
    tasks: List[asyncio.Task] = field(default_factory=list)


def build_service(
    cfg: Settings = settings,
    *,
    client: Optional[StateStoreClient] = None,
    notifier: Optional[TelegramNotifier] = None,
    clock: Optional[Clock] = None,
) -> Service:
    clock = clock or SystemClock()
    db = DB(cfg.DB_PATH)
    audit = Audit(db, cfg.AUDIT_JSONL_PATH)

    client = client or StateStoreClient(
        cfg.STATE_API_URL,
        cfg.STATE_API_PASSWORD,
        timeout=cfg.STATE_HTTP_TIMEOUT,
        max_retries=cfg.STATE_MAX_RETRIES,
    )
    sync = StateSynchronizer(client, audit)

    engine = AlertEngine(
        FiredRegistry(clear_on_level_edit=cfg.CLEAR_FIRED_ON_LEVEL_EDIT),
        clock,
        cooldown_seconds=cfg.ALERT_COOLDOWN_SECONDS,
        warmup_seconds=cfg.PNL_WARMUP_SECONDS,
    )
    notifier = notifier or TelegramNotifier(
        cfg.TELEGRAM_BOT_TOKEN, cfg.TELEGRAM_CHAT_ID, base_url=cfg.TELEGRAM_API_BASE_URL
    )
    feed = KrakenPriceFeed(
        cfg.KRAKEN_WS_URL,
        cfg.TRACKED_ASSETS,
        reconnect_seconds=cfg.FEED_RECONNECT_SECONDS,
        reconnect_max_seconds=cfg.FEED_RECONNECT_MAX_SECONDS,
    )
    checker = AlertChecker(
        engine,
        sync,
        notifier,
        audit,
        tz_name=cfg.NOTIFY_TIMEZONE,
        min_interval_ms=cfg.EVAL_MIN_INTERVAL_MS,
        clock=clock,
    )
    return Service(
        db=db,
        audit=audit,
        sync=sync,
        engine=engine,
        notifier=notifier,
        feed=feed,
        checker=checker,
        clock=clock,
    )


service: Optional[Service] = None


def get_service() -> Service:
    global service
    if service is None:
        service = build_service()
    return service


# ------------------------------------------------------------------
# Background loops
# ------------------------------------------------------------------
async def state_poll_loop(svc: Service) -> None:
    """Pulls the remote snapshot every STATE_POLL_SECONDS until stopped."""
    if svc.stop_event is None:
        raise RuntimeError("state_poll_loop needs a started service (stop_event unset)")
    while not svc.stop_event.is_set():
        try:
            await asyncio.to_thread(svc.sync.pull)
        except Exception as e:
            # keep polling; the synchronizer already audits store failures
            log.exception("state poll failed: %s", e)
        try:
            await asyncio.wait_for(svc.stop_event.wait(), timeout=settings.STATE_POLL_SECONDS)
        except asyncio.TimeoutError:
            pass


def _wire_feed(svc: Service, loop: asyncio.AbstractEventLoop) -> None:
    # passes do blocking I/O (telegram, push), so run them off the event loop
    def _on_price(prices: Dict[str, float]) -> None:
        loop.run_in_executor(None, svc.checker.on_tick, prices)

    svc.feed.on_price(_on_price)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        warnings = settings.validate_runtime()
        for w in warnings:
            print(f"[CONFIG WARNING] {w}")
    except Exception as e:
        print(str(e))
        raise


@app.on_event("startup")
async def _startup_service():
    configure_logging(settings.LOG_LEVEL)
    svc = get_service()
    svc.stop_event = asyncio.Event()

    await asyncio.to_thread(svc.sync.pull)
    _wire_feed(svc, asyncio.get_running_loop())

    svc.tasks = [
        asyncio.create_task(state_poll_loop(svc)),
        asyncio.create_task(svc.feed.run(svc.stop_event)),
    ]
    await asyncio.to_thread(svc.checker.start)
    print(f"[RUN] alert checker started, tracking {len(svc.feed.pairs)} pairs")


@app.on_event("shutdown")
async def _shutdown_service():
    svc = service
    if svc is None:
        return
    if svc.stop_event is not None:
        svc.stop_event.set()
    for t in svc.tasks:
        if not t.done():
            t.cancel()
            try:
                await t
            except asyncio.CancelledError:
                pass
    svc.tasks = []
    await asyncio.to_thread(svc.checker.shutdown)
    print("[RUN] alert checker stopped")


# ------------------------------------------------------------------
# Error mapping / auth
# ------------------------------------------------------------------
@app.exception_handler(KeyError)
async def _not_found(request: Request, exc: KeyError):
    return JSONResponse(status_code=404, content={"error": "not_found", "id": str(exc.args[0]) if exc.args else None})


@app.exception_handler(ValueError)
async def _bad_request(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": "bad_request", "detail": str(exc)})


def require_auth(authorization: Optional[str] = Header(None)) -> None:
    if not settings.API_PASSWORD:
        return
    if authorization != f"Bearer {settings.API_PASSWORD}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def _state_or_503(state: Optional[AccountState]) -> AccountState:
    if state is None:
        raise HTTPException(status_code=503, detail="account state not loaded yet")
    return state


def _committed(svc: Service) -> None:
    svc.sync.mark_dirty()
    svc.sync.push_in_background()


# ------------------------------------------------------------------
# Read endpoints
# ------------------------------------------------------------------
@app.get("/")
def root():
    svc = get_service()
    return {
        "status": "ok",
        "service": "breakout-alerts",
        "state_loaded": svc.sync.state is not None,
        "feed_connected": svc.feed.connected,
        "telegram_configured": svc.notifier.configured,
    }


@app.get("/status")
def status():
    svc = get_service()
    reg = svc.engine.registry
    return {
        "started_at": svc.started_at,
        "time_utc": _utc_now_iso(),
        "feed": {"connected": svc.feed.connected, "priced_assets": len(svc.feed.prices)},
        "state": {
            "loaded": svc.sync.state is not None,
            "dirty": svc.sync.dirty,
            "last_pull_ok": svc.sync.last_pull_ok,
            "last_push_ok": svc.sync.last_push_ok,
        },
        "checker": {
            "passes": svc.checker.passes,
            "events_fired": svc.checker.events_fired,
            "last_pass_at": svc.checker.last_pass_at,
        },
        "registry": {"fired": len(reg.fired), "cooldowns": len(reg.last_fired)},
    }


@app.get("/prices")
def prices():
    svc = get_service()
    return {"count": len(svc.feed.prices), "prices": dict(svc.feed.prices)}


@app.get("/risk/metrics")
def risk_metrics():
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        return risk_snapshot(state, dict(svc.feed.prices))


class SizeRequest(BaseModel):
    asset: str = "BTC"
    entry: float
    stop: float
    risk_pct: float = Field(1.0, ge=0)
    side: str = "long"
    balance: Optional[float] = None
    max_leverage: Optional[float] = None


@app.post("/risk/size")
def risk_size(req: SizeRequest):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        acct = state.settings
        balance = req.balance if req.balance is not None else state.balance

    res = size_position(
        entry=req.entry,
        stop=req.stop,
        risk_pct=req.risk_pct,
        balance=balance,
        max_leverage=req.max_leverage or max_leverage_for(req.asset, acct),
        fee_pct=acct.trading_fee_pct,
        side=req.side,
    )
    return {"asset": req.asset.upper(), **asdict(res)}


@app.get("/alerts")
def alerts():
    svc = get_service()
    reg = svc.engine.registry
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        return {
            "price_alerts": [
                {**a.to_dict(), "fired": reg.is_fired(a.id)} for a in state.price_alerts
            ],
            "pnl_alerts": [
                {**a.to_dict(), "fired": reg.is_fired(pnl_key(a.id))} for a in state.pnl_alerts
            ],
        }


@app.get("/positions")
def positions():
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        return {"positions": [p.to_dict() for p in state.positions]}


@app.get("/logs/events/tail")
def logs_events_tail(limit: int = Query(50, ge=1, le=500)):
    events = get_service().audit.tail(limit)
    return {"count": len(events), "events": events}


@app.get("/debug/config", dependencies=[Depends(require_auth)])
def debug_config():
    data = settings.model_dump()
    for k in list(data.keys()):
        if k in SENSITIVE_KEYS and data[k]:
            data[k] = "***"
    return {"config": data}


# ------------------------------------------------------------------
# Alert lifecycle
# ------------------------------------------------------------------
class PriceAlertIn(BaseModel):
    asset: str
    target_price: float = Field(..., gt=0)
    direction: str
    note: str = ""
    persistent: bool = False


class PriceAlertEdit(BaseModel):
    target_price: Optional[float] = Field(None, gt=0)
    direction: Optional[str] = None
    note: Optional[str] = None


class PnlAlertIn(BaseModel):
    target_pnl: float
    direction: str
    note: str = ""
    persistent: bool = False


class PnlAlertEdit(BaseModel):
    target_pnl: Optional[float] = None
    direction: Optional[str] = None
    note: Optional[str] = None


class RearmIn(BaseModel):
    target: Optional[float] = None
    direction: Optional[str] = None


@app.post("/alerts/price", dependencies=[Depends(require_auth)])
def add_price_alert(body: PriceAlertIn):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = ledger.add_price_alert(state, now_ms=svc.clock.now_ms(), **body.model_dump())
        _committed(svc)
        return alert.to_dict()


@app.patch("/alerts/price/{alert_id}", dependencies=[Depends(require_auth)])
def edit_price_alert(alert_id: str, body: PriceAlertEdit):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = ledger.edit_price_alert(state, alert_id, **body.model_dump())
        _committed(svc)
        return alert.to_dict()


@app.delete("/alerts/price/{alert_id}", dependencies=[Depends(require_auth)])
def delete_price_alert(alert_id: str):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = ledger.delete_price_alert(state, alert_id)
        svc.engine.registry.forget(alert.id)
        _committed(svc)
        return {"status": "deleted", "id": alert.id}


@app.post("/alerts/price/{alert_id}/rearm", dependencies=[Depends(require_auth)])
def rearm_price_alert(alert_id: str, body: Optional[RearmIn] = None):
    svc = get_service()
    body = body or RearmIn()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = svc.engine.rearm_price_alert(
            state, alert_id, target_price=body.target, direction=body.direction
        )
        _committed(svc)
    svc.audit.event("ALERT_REARMED", action="PRICE", alert_key=alert.id, asset=alert.asset,
                    details={"target": alert.target_price, "direction": alert.direction})
    return alert.to_dict()


@app.post("/alerts/price/{alert_id}/dismiss", dependencies=[Depends(require_auth)])
def dismiss_price_alert(alert_id: str):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = svc.engine.dismiss_price_alert(state, alert_id)
        _committed(svc)
    svc.audit.event("ALERT_DISMISSED", action="PRICE", alert_key=alert.id, asset=alert.asset)
    return {"status": "dismissed", "id": alert.id}


@app.post("/alerts/pnl", dependencies=[Depends(require_auth)])
def add_pnl_alert(body: PnlAlertIn):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = ledger.add_pnl_alert(state, now_ms=svc.clock.now_ms(), **body.model_dump())
        _committed(svc)
        return alert.to_dict()


@app.patch("/alerts/pnl/{alert_id}", dependencies=[Depends(require_auth)])
def edit_pnl_alert(alert_id: str, body: PnlAlertEdit):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = ledger.edit_pnl_alert(state, alert_id, **body.model_dump())
        _committed(svc)
        return alert.to_dict()


@app.delete("/alerts/pnl/{alert_id}", dependencies=[Depends(require_auth)])
def delete_pnl_alert(alert_id: str):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = ledger.delete_pnl_alert(state, alert_id)
        svc.engine.registry.forget(pnl_key(alert.id))
        _committed(svc)
        return {"status": "deleted", "id": alert.id}


@app.post("/alerts/pnl/{alert_id}/rearm", dependencies=[Depends(require_auth)])
def rearm_pnl_alert(alert_id: str, body: Optional[RearmIn] = None):
    svc = get_service()
    body = body or RearmIn()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = svc.engine.rearm_pnl_alert(
            state, alert_id, target_pnl=body.target, direction=body.direction
        )
        _committed(svc)
    svc.audit.event("ALERT_REARMED", action="PNL", alert_key=pnl_key(alert.id),
                    details={"target": alert.target_pnl, "direction": alert.direction})
    return alert.to_dict()


@app.post("/alerts/pnl/{alert_id}/dismiss", dependencies=[Depends(require_auth)])
def dismiss_pnl_alert(alert_id: str):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        alert = svc.engine.dismiss_pnl_alert(state, alert_id)
        _committed(svc)
    svc.audit.event("ALERT_DISMISSED", action="PNL", alert_key=pnl_key(alert.id))
    return {"status": "dismissed", "id": alert.id}


# ------------------------------------------------------------------
# Positions / account
# ------------------------------------------------------------------
class OpenPositionIn(BaseModel):
    asset: str
    side: str
    entry_price: float = Field(..., gt=0)
    size: float = Field(..., gt=0)
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


class ClosePositionIn(BaseModel):
    exit_price: float = Field(..., gt=0)
    notes: str = ""
    tags: List[str] = Field(default_factory=list)


class LevelsIn(BaseModel):
    # an explicit null clears the level; an omitted field leaves it alone
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


class BalanceIn(BaseModel):
    balance: float


class TradeEdit(BaseModel):
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    fees: Optional[float] = None


@app.post("/positions", dependencies=[Depends(require_auth)])
def open_position(body: OpenPositionIn):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        pos = ledger.open_position(state, now_ms=svc.clock.now_ms(), **body.model_dump())
        _committed(svc)
        return pos.to_dict()


@app.post("/positions/{position_id}/close", dependencies=[Depends(require_auth)])
def close_position(position_id: str, body: ClosePositionIn):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        trade = ledger.close_position(
            state, position_id, body.exit_price,
            now_ms=svc.clock.now_ms(), notes=body.notes, tags=body.tags,
        )
        _committed(svc)
        return trade.to_dict()


@app.delete("/positions/{position_id}", dependencies=[Depends(require_auth)])
def delete_position(position_id: str):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        pos = ledger.delete_position(state, position_id)
        _committed(svc)
        return {"status": "deleted", "id": pos.id}


@app.patch("/positions/{position_id}/levels", dependencies=[Depends(require_auth)])
def edit_position_levels(position_id: str, body: LevelsIn):
    svc = get_service()
    sent = body.model_fields_set
    if not sent & {"stop_loss", "take_profit"}:
        raise ValueError("send stop_loss and/or take_profit")

    with svc.sync.editing() as state:
        state = _state_or_503(state)
        sl_changed = tp_changed = False
        if "stop_loss" in sent:
            sl_changed = ledger.update_position_stop(state, position_id, body.stop_loss)
        if "take_profit" in sent:
            tp_changed = ledger.update_position_take_profit(state, position_id, body.take_profit)

        svc.engine.level_edited(position_id, stop_loss=sl_changed, take_profit=tp_changed)
        if sl_changed or tp_changed:
            _committed(svc)
        return {
            **state.find_position(position_id).to_dict(),
            "stop_loss_changed": sl_changed,
            "take_profit_changed": tp_changed,
        }


@app.put("/account/balance", dependencies=[Depends(require_auth)])
def set_balance(body: BalanceIn):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        ledger.set_balance(state, body.balance)
        _committed(svc)
        return {"balance": state.balance, "high_water_mark": state.high_water_mark}


@app.post("/account/daily-reset", dependencies=[Depends(require_auth)])
def daily_reset():
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        did = ledger.check_daily_reset(state, svc.clock.now_ms())
        if did:
            _committed(svc)
        return {"reset": did, "day_start_balance": state.day_start_balance}


@app.post("/account/swap-fees", dependencies=[Depends(require_auth)])
def swap_fees():
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        fee = ledger.apply_swap_fees(state)
        if fee:
            _committed(svc)
        return {"fee": fee, "balance": state.balance}


@app.post("/account/reset", dependencies=[Depends(require_auth)])
def reset_account():
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        ledger.reset_account(state, svc.clock.now_ms())
        _committed(svc)
        return {"balance": state.balance}


@app.patch("/trades/{trade_id}", dependencies=[Depends(require_auth)])
def edit_trade(trade_id: str, body: TradeEdit):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        trade = ledger.edit_trade(state, trade_id, **body.model_dump())
        _committed(svc)
        return trade.to_dict()


@app.delete("/trades/{trade_id}", dependencies=[Depends(require_auth)])
def delete_trade(trade_id: str):
    svc = get_service()
    with svc.sync.editing() as state:
        state = _state_or_503(state)
        trade = ledger.delete_trade(state, trade_id)
        _committed(svc)
        return {"status": "deleted", "id": trade.id, "balance": state.balance}


# ------------------------------------------------------------------
# State sync
# ------------------------------------------------------------------
@app.post("/state/pull", dependencies=[Depends(require_auth)])
def state_pull():
    svc = get_service()
    replaced = svc.sync.pull()
    return {"replaced": replaced, "dirty": svc.sync.dirty}


@app.post("/state/flush", dependencies=[Depends(require_auth)])
def state_flush():
    svc = get_service()
    ok = svc.sync.flush()
    return {"ok": ok, "dirty": svc.sync.dirty}
