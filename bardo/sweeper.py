from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from .db import Store
from .events import TERMINAL_STATUSES, refresh_event_status
from .utils import now_utc, to_iso

logger = logging.getLogger(__name__)


def deactivate_ended_stages(store: Store, now: datetime) -> int:
    """Mark every stage whose end date has passed as inactive, on any event."""
    now_iso = to_iso(now)
    count = 0
    events = store.events.find(
        {"preSaleStages": {"$elemMatch": {"isActive": True, "endDate": {"$lte": now_iso}}}},
        {"preSaleStages": 1},
    )
    for e in events:
        for idx, stage in enumerate(e.get("preSaleStages") or []):
            if not stage.get("isActive") or stage.get("endDate", "") > now_iso:
                continue
            res = store.events.update_one(
                {"_id": e["_id"], f"preSaleStages.{idx}.stageId": stage.get("stageId"),
                 f"preSaleStages.{idx}.isActive": True},
                {"$set": {f"preSaleStages.{idx}.isActive": False, "updatedAt": now_iso}},
            )
            if res.modified_count:
                count += 1
                logger.info("Stage %s (%s) on event %s ended", stage.get("stageId"), stage.get("name"), e["_id"])
    return count


def sweep_event_statuses(store: Store, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Recompute every open event's status. One bad event does not stop the sweep."""
    now = now or now_utc()
    summary = {"scanned": 0, "updated": 0, "stagesDeactivated": 0, "errors": 0}

    try:
        summary["stagesDeactivated"] = deactivate_ended_stages(store, now)
    except Exception:
        summary["errors"] += 1
        logger.exception("Stage deactivation failed")

    for e in store.events.find({"status": {"$nin": list(TERMINAL_STATUSES)}}):
        summary["scanned"] += 1
        try:
            updated = refresh_event_status(store.events, e, now)
            if updated.get("status") != e.get("status"):
                summary["updated"] += 1
        except Exception:
            summary["errors"] += 1
            logger.exception("Status sweep failed for event %s", e.get("_id"))

    logger.info(
        "Status sweep done: scanned=%(scanned)s updated=%(updated)s stages=%(stagesDeactivated)s errors=%(errors)s",
        summary,
    )
    return summary


def parse_run_at(run_at: str) -> Tuple[int, int]:
    """Parse a UTC HH:MM schedule into (hour, minute)."""
    try:
        hour, minute = (int(p) for p in str(run_at).split(":", 1))
    except ValueError:
        raise ValueError(f"SWEEPER_RUN_AT must be HH:MM, got {run_at!r}") from None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"SWEEPER_RUN_AT must be HH:MM, got {run_at!r}")
    return hour, minute


def seconds_until(run_at: str, now: Optional[datetime] = None) -> float:
    """Seconds from now until the next HH:MM (UTC)."""
    now = now or now_utc()
    hour, minute = parse_run_at(run_at)
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class StatusSweeper(threading.Thread):
    """Runs the sweep once at start, then daily at `run_at` UTC."""

    def __init__(self, store: Store, run_at: str = "00:00"):
        super().__init__(name="status-sweeper", daemon=True)
        self.store = store
        self.run_at = run_at
        self.stop_event = threading.Event()

    def run(self) -> None:
        self._sweep()
        while not self.stop_event.wait(seconds_until(self.run_at)):
            self._sweep()

    def _sweep(self) -> None:
        try:
            sweep_event_statuses(self.store)
        except Exception:
            logger.exception("Status sweep crashed")

    def stop(self) -> None:
        self.stop_event.set()
