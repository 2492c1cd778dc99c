# breakout/persistence/state_sync.py
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from breakout.account.models import AccountState
from breakout.errors import StateFormatError, StateStoreError
from breakout.persistence.audit import Audit
from breakout.persistence.state_client import StateStoreClient

log = logging.getLogger("breakout.state")


class StateSynchronizer:
    """
    Owns the cached AccountState and keeps it in step with the remote store.

    Local writes win: mutators run inside `editing()` and call `mark_dirty()`;
    a pull first tries to flush pending changes and is discarded if a push is
    still outstanding or local state changed while the GET was in flight.
    A failed push keeps the dirty flag (retried on the next flush) and never
    rolls back local state.
    """

    def __init__(self, client: StateStoreClient, audit: Optional[Audit] = None):
        self.client = client
        self.audit = audit

        self._lock = threading.RLock()
        self._push_lock = threading.Lock()
        self._state: Optional[AccountState] = None
        self._dirty = False
        self._version = 0

        self.last_pull_ok: Optional[bool] = None
        self.last_push_ok: Optional[bool] = None

    # ---------- access ----------
    @property
    def state(self) -> Optional[AccountState]:
        return self._state

    @property
    def dirty(self) -> bool:
        return self._dirty

    @contextmanager
    def editing(self) -> Iterator[Optional[AccountState]]:
        """Hold the state lock so a concurrent pull cannot swap the object mid-edit."""
        with self._lock:
            yield self._state

    def mark_dirty(self) -> None:
        with self._lock:
            self._version += 1
            self._dirty = True

    def replace(self, state: AccountState) -> None:
        """Install a locally built state (e.g. account reset) and schedule it for push."""
        with self._lock:
            self._state = state
            self.mark_dirty()

    # ---------- pull ----------
    def pull(self) -> bool:
        """Returns True when the cached state was replaced by the remote snapshot."""
        if self._dirty:
            self.flush()
            if self._dirty:
                log.info("pull skipped: local changes still pending push")
                return False

        version_before = self._version
        try:
            raw = self.client.get()
        except StateStoreError as e:
            self.last_pull_ok = False
            log.warning("state pull failed: %s", e)
            self._audit("STATE_PULL_FAILED", {"error": str(e)})
            return False

        if raw is None:
            self.last_pull_ok = True
            return False

        try:
            fresh = AccountState.from_dict(raw)
        except StateFormatError as e:
            self.last_pull_ok = False
            log.warning("state pull returned a malformed snapshot, keeping last good state: %s", e)
            self._audit("STATE_PULL_FAILED", {"error": str(e), "malformed": True})
            return False

        with self._lock:
            if self._dirty or self._version != version_before:
                log.debug("pull discarded: local state changed during fetch")
                return False
            self._state = fresh
        self.last_pull_ok = True
        return True

    # ---------- push ----------
    def flush(self) -> bool:
        """Push the current snapshot if dirty. Returns True when nothing is pending afterwards."""
        with self._push_lock:
            with self._lock:
                if not self._dirty or self._state is None:
                    return True
                snapshot = self._state.to_dict()
                version = self._version

            ok = self.client.put(snapshot)
            self.last_push_ok = ok

            with self._lock:
                if ok and self._version == version:
                    self._dirty = False

            if not ok:
                self._audit("STATE_PUSH_FAILED", {"version": version})
            return ok and not self._dirty

    def push_in_background(self) -> threading.Thread:
        t = threading.Thread(target=self.flush, name="state-push", daemon=True)
        t.start()
        return t

    def _audit(self, event_type: str, details: dict) -> None:
        if self.audit is not None:
            self.audit.event(event_type, action="SYNC", details=details)
