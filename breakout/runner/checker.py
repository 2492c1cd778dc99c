# breakout/runner/checker.py
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Mapping, Optional, Protocol

from breakout.alerts.engine import AlertEngine, NotificationEvent
from breakout.alerts.formatting import format_message
from breakout.ops.clock import Clock, SystemClock
from breakout.ops.context import evaluation_pass
from breakout.persistence.audit import Audit
from breakout.persistence.state_sync import StateSynchronizer

log = logging.getLogger("breakout.checker")

ONLINE_MESSAGE = "<b>🟢 Alert checker online</b>"
OFFLINE_MESSAGE = "<b>🔴 Alert checker offline</b>"


class Notifier(Protocol):
    def send(self, message: str) -> bool: ...


class AlertChecker:
    """
    Headless driver: price tick -> one evaluation pass -> notifications -> push.

    Passes are throttled to min_interval_ms and never overlap: a tick that
    arrives while a pass is running is dropped, not queued.
    """

    def __init__(
        self,
        engine: AlertEngine,
        sync: StateSynchronizer,
        notifier: Notifier,
        audit: Optional[Audit] = None,
        *,
        tz_name: str = "America/New_York",
        min_interval_ms: int = 500,
        clock: Optional[Clock] = None,
        background_push: bool = True,
    ):
        self.engine = engine
        self.sync = sync
        self.notifier = notifier
        self.audit = audit
        self.tz_name = tz_name
        self.min_interval_ms = int(min_interval_ms)
        self.clock = clock or engine.clock or SystemClock()
        self.background_push = background_push

        self._pass_lock = threading.Lock()
        self._last_check_ms: Optional[int] = None

        self.passes = 0
        self.events_fired = 0
        self.last_pass_at: Optional[int] = None
        self.last_error: Optional[str] = None

    # ---------- lifecycle ----------
    def start(self) -> None:
        self._audit("CHECKER_START")
        self.notifier.send(ONLINE_MESSAGE)

    def shutdown(self) -> None:
        if not self.sync.flush():
            log.warning("shutdown: pending state could not be pushed")
        self.notifier.send(OFFLINE_MESSAGE)
        self._audit("CHECKER_STOP", details={"passes": self.passes, "events": self.events_fired})

    # ---------- ticks ----------
    def on_tick(self, prices: Mapping[str, float]) -> List[NotificationEvent]:
        now = self.clock.now_ms()
        if self._last_check_ms is not None and now - self._last_check_ms < self.min_interval_ms:
            return []

        if not self._pass_lock.acquire(blocking=False):
            log.debug("tick dropped: pass in flight")
            return []
        try:
            self._last_check_ms = now
            return self._run_pass(dict(prices))
        finally:
            self._pass_lock.release()

    def _run_pass(self, prices: Dict[str, float]) -> List[NotificationEvent]:
        with evaluation_pass():
            with self.sync.editing() as state:
                if state is None:
                    return []
                result = self.engine.evaluate(prices, state)
                if result.modified:
                    self.sync.mark_dirty()

            self.passes += 1
            self.last_pass_at = self.clock.now_ms()

            for ev in result.events:
                self._dispatch(ev)

            if result.modified:
                if self.background_push:
                    self.sync.push_in_background()
                else:
                    self.sync.flush()

            return result.events

    def _dispatch(self, ev: NotificationEvent) -> None:
        self.events_fired += 1
        log.info("alert fired: %s | %s", ev.title, ev.body)
        self._audit(
            "ALERT_FIRED",
            action=ev.kind.value,
            alert_key=ev.key,
            asset=ev.asset,
            details=ev.audit_details(),
        )

        if not self.notifier.send(format_message(ev, self.tz_name)):
            self._audit("NOTIFY_FAILED", action=ev.kind.value, alert_key=ev.key, asset=ev.asset)

    def _audit(self, event_type: str, action: Optional[str] = None, **kw) -> None:
        if self.audit is not None:
            self.audit.event(event_type, action=action, **kw)
