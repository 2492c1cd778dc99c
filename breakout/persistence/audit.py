# breakout/persistence/audit.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from breakout.ops.context import get_pass_id
from breakout.persistence.db import DB, utc_now_iso

log = logging.getLogger("breakout.audit")


class Audit:
    """
    Alert audit trail: fired / rearmed / dismissed alerts and I/O failures.
    DB is the source of truth; every row is mirrored to a JSONL file for tailing.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/alert_audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            log.warning("audit jsonl unavailable at %s: %s", self.jsonl_path, e)

    def event(
        self,
        event_type: str,
        action: Optional[str] = None,
        alert_key: Optional[str] = None,
        asset: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        pass_id: Optional[str] = None,
    ) -> None:
        pass_id = pass_id or get_pass_id()
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)
        ts = utc_now_iso()

        # audit must never take down the checker
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events(timestamp_utc, pass_id, alert_key, asset, event_type, action, details_json)
                    VALUES (?,?,?,?,?,?,?)
                    """,
                    (ts, pass_id, alert_key, asset, event_type, action, payload),
                )
        except Exception as e:
            log.error("audit insert failed (%s/%s): %s", event_type, action, e)

        self._write_jsonl(
            {
                "timestamp_utc": ts,
                "event_type": event_type,
                "action": action,
                "pass_id": pass_id,
                "alert_key": alert_key,
                "asset": asset,
                "details": details or {},
            }
        )

    def tail(self, limit: int = 50) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 500))
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT id, timestamp_utc, pass_id, alert_key, asset, event_type, action, details_json "
                "FROM events ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()

        out = []
        for r in rows[::-1]:
            out.append(
                {
                    "id": r["id"],
                    "timestamp_utc": r["timestamp_utc"],
                    "pass_id": r["pass_id"],
                    "alert_key": r["alert_key"],
                    "asset": r["asset"],
                    "event_type": r["event_type"],
                    "action": r["action"],
                    "details": json.loads(r["details_json"] or "{}"),
                }
            )
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            log.warning("audit jsonl write failed: %s", e)
