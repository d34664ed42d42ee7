from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.collection import Collection

from .db import get_store
from .errors import ApiError
from .events import (
    TERMINAL_STATUSES,
    base_is_open,
    derive_status,
    free_remaining,
    refresh_event_status,
    resolve_stage,
    stage_remaining,
)
from .utils import now_utc, to_iso, to_oid

logger = logging.getLogger(__name__)

MAX_TICKETS_PER_ORDER = 4
ALLOCATE_ATTEMPTS = 3


# -------------------------
# Allocation errors
# -------------------------
class AllocationError(ApiError):
    """A purchase intent the event's current inventory cannot satisfy."""


class EventNotAvailable(AllocationError):
    def __init__(self, status: str):
        super().__init__("El evento no está disponible para reservas", 400, "EVENT_NOT_ACTIVE",
                         {"eventStatus": status})


class FreeTicketsDisabled(AllocationError):
    def __init__(self):
        super().__init__("Las entradas gratis no están habilitadas para este evento", 400, "FREE_TICKETS_DISABLED")


class FreeTicketsSoldOut(AllocationError):
    def __init__(self, available: int):
        super().__init__(f"Solo quedan {available} entradas gratis disponibles", 400, "FREE_TICKETS_SOLD_OUT",
                         {"available": available})


class InvalidStage(AllocationError):
    def __init__(self):
        super().__init__("La etapa de preventa no existe", 400, "INVALID_STAGE")


class StageInactive(AllocationError):
    def __init__(self, name: str):
        super().__init__(f"La etapa {name} no está activa", 400, "STAGE_INACTIVE")


class StageSoldOut(AllocationError):
    def __init__(self, name: str, available: int):
        super().__init__(f"Solo quedan {available} entradas disponibles en {name}", 400, "STAGE_SOLD_OUT",
                         {"available": available})


class SelectionRequired(AllocationError):
    def __init__(self):
        super().__init__("Seleccione una etapa de preventa o entradas gratis", 400, "SELECTION_REQUIRED")


@dataclass
class Allocation:
    event: Dict[str, Any]
    quantity: int
    unit_price: float
    label: str
    stage_id: Optional[str] = None
    is_free: bool = False
    counted: bool = False

    @property
    def total(self) -> float:
        return round(self.unit_price * self.quantity, 2)

    @property
    def event_id(self):
        return self.event["_id"]


class InventoryAllocator:
    """Prices a purchase intent and moves the event's stage and free-ticket counters.

    Every increment is one conditional update whose filter carries the bound, so two
    requests racing for the last tickets cannot both succeed.
    """

    def __init__(self, events: Collection):
        self.events = events

    def _load(self, event_id: Any) -> Dict[str, Any]:
        e = self.events.find_one({"_id": to_oid(event_id, "eventId")})
        if not e:
            raise ApiError("Evento no encontrado", 404, "EVENT_NOT_FOUND")
        return e

    def quote(self, event_id: Any, quantity: int, stage_ref: Any = None, free: bool = False,
              now: Optional[datetime] = None) -> Allocation:
        """Validate a purchase intent against the current event without touching counters."""
        now = now or now_utc()
        now_iso = to_iso(now)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= MAX_TICKETS_PER_ORDER:
            raise ApiError(f"Se pueden reservar entre 1 y {MAX_TICKETS_PER_ORDER} entradas", 400,
                           "VALIDATION_ERROR", {"field": "tickets"})
        if free and stage_ref not in (None, ""):
            raise ApiError("No se puede combinar una etapa de preventa con entradas gratis", 400,
                           "VALIDATION_ERROR", {"field": "preSaleStageId"})

        event = self._load(event_id)
        status = derive_status(event, now)
        if status in TERMINAL_STATUSES:
            raise EventNotAvailable(status)

        if free:
            ft = event.get("freeTickets") or {}
            if not ft.get("enabled"):
                raise FreeTicketsDisabled()
            remaining = free_remaining(event)
            if remaining is not None and quantity > remaining:
                raise FreeTicketsSoldOut(remaining)
            return Allocation(event, quantity, 0.0, "Entrada gratis", is_free=True)

        if stage_ref not in (None, ""):
            _, stage = resolve_stage(event, stage_ref)
            if stage is None:
                raise InvalidStage()
            name = stage.get("name", "")
            if not stage.get("isActive") or stage.get("endDate", "") <= now_iso:
                raise StageInactive(name)
            remaining = stage_remaining(stage)
            if quantity > remaining:
                raise StageSoldOut(name, remaining)
            return Allocation(event, quantity, float(stage.get("price", 0.0)), name, stage_id=stage["stageId"])

        if not base_is_open(event):
            raise SelectionRequired()
        return Allocation(event, quantity, float(event.get("basePrice", 0.0) or 0.0), "Entrada general")

    def allocate(self, event_id: Any, quantity: int, stage_ref: Any = None, free: bool = False,
                 now: Optional[datetime] = None) -> Allocation:
        """Quote, then count the tickets against the stage or free pool."""
        now = now or now_utc()
        for _ in range(ALLOCATE_ATTEMPTS):
            allocation = self.quote(event_id, quantity, stage_ref, free, now)
            if not allocation.is_free and allocation.stage_id is None:
                return allocation
            updated = self._increment(allocation, now)
            if updated is not None:
                allocation.event = refresh_event_status(self.events, updated, now)
                allocation.counted = True
                logger.info(
                    "Allocated %s ticket(s) on event %s (%s)", quantity, allocation.event_id, allocation.label
                )
                return allocation
            # Bound hit or config changed between read and write; re-quote reports which.
        raise ApiError("Las entradas cambiaron mientras se reservaba. Intente nuevamente.", 409, "CONFLICT",
                       {"retryable": True})

    def _increment(self, allocation: Allocation, now: datetime) -> Optional[Dict[str, Any]]:
        event = allocation.event
        n = allocation.quantity
        now_iso = to_iso(now)
        flt: Dict[str, Any] = {
            "_id": event["_id"],
            "status": {"$nin": list(TERMINAL_STATUSES)},
            "date": {"$gt": now_iso},
        }
        if allocation.is_free:
            quantity = int((event.get("freeTickets") or {}).get("quantity", 0))
            flt["freeTickets.enabled"] = True
            flt["freeTickets.quantity"] = quantity
            if quantity > 0:
                flt["freeTickets.ticketsClaimed"] = {"$lte": quantity - n}
            update = {"$inc": {"freeTickets.ticketsClaimed": n}}
        else:
            idx, stage = resolve_stage(event, allocation.stage_id)
            limit = int(stage.get("ticketLimit", 0))
            path = f"preSaleStages.{idx}"
            # Stages are addressed by index; the stageId check fails the write if the list moved.
            flt.update({
                f"{path}.stageId": allocation.stage_id,
                f"{path}.isActive": True,
                f"{path}.endDate": {"$gt": now_iso},
                f"{path}.ticketLimit": limit,
                f"{path}.ticketsSold": {"$lte": limit - n},
            })
            update = {"$inc": {f"{path}.ticketsSold": n}}
        update["$set"] = {"updatedAt": now_iso}
        return self.events.find_one_and_update(flt, update, return_document=ReturnDocument.AFTER)

    def _adjust_stage(self, oid: Any, stage_id: str, delta: int, now: datetime,
                      min_sold: Optional[int] = None) -> Optional[Dict[str, Any]]:
        for _ in range(ALLOCATE_ATTEMPTS):
            e = self.events.find_one({"_id": oid}, {"preSaleStages": 1})
            idx, _ = resolve_stage(e or {}, stage_id)
            if idx < 0:
                return None
            path = f"preSaleStages.{idx}"
            flt: Dict[str, Any] = {"_id": oid, f"{path}.stageId": stage_id}
            if min_sold is not None:
                flt[f"{path}.ticketsSold"] = {"$gte": min_sold}
            updated = self.events.find_one_and_update(
                flt,
                {"$inc": {f"{path}.ticketsSold": delta}, "$set": {"updatedAt": to_iso(now)}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                return updated
            if self.events.count_documents({"_id": oid, f"{path}.stageId": stage_id}, limit=1):
                # stage still in place, so the counter bound is what refused the write
                return None
        return None

    def confirm(self, event_id: Any, quantity: int, stage_id: Optional[str] = None, is_free: bool = False,
                now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Count tickets for a captured payment. A paid capture is never refused for stock."""
        if not is_free and not stage_id:
            return None
        now = now or now_utc()
        oid = to_oid(event_id, "eventId")
        if is_free:
            updated = self.events.find_one_and_update(
                {"_id": oid},
                {"$inc": {"freeTickets.ticketsClaimed": quantity}, "$set": {"updatedAt": to_iso(now)}},
                return_document=ReturnDocument.AFTER,
            )
        else:
            updated = self._adjust_stage(oid, stage_id, quantity, now)
        if updated is None:
            logger.warning("Confirm skipped: event %s / stage %s no longer exists", event_id, stage_id)
            return None
        if stage_id:
            _, stage = resolve_stage(updated, stage_id)
            if stage and int(stage.get("ticketsSold", 0)) > int(stage.get("ticketLimit", 0)):
                logger.warning("Stage %s on event %s oversold by payment capture", stage_id, event_id)
        return refresh_event_status(self.events, updated, now)

    def release(self, event_id: Any, quantity: int, stage_id: Optional[str] = None, is_free: bool = False,
                now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Give counted tickets back to their pool. Counters never go below zero."""
        if not is_free and not stage_id:
            return None
        now = now or now_utc()
        oid = to_oid(event_id, "eventId")
        if is_free:
            updated = self.events.find_one_and_update(
                {"_id": oid, "freeTickets.ticketsClaimed": {"$gte": quantity}},
                {"$inc": {"freeTickets.ticketsClaimed": -quantity}, "$set": {"updatedAt": to_iso(now)}},
                return_document=ReturnDocument.AFTER,
            )
        else:
            updated = self._adjust_stage(oid, stage_id, -quantity, now, min_sold=quantity)
        if updated is None:
            logger.warning("Release of %s ticket(s) on event %s / stage %s matched nothing", quantity, event_id, stage_id)
            return None
        logger.info("Released %s ticket(s) on event %s", quantity, event_id)
        return refresh_event_status(self.events, updated, now)


def get_allocator() -> InventoryAllocator:
    return InventoryAllocator(get_store().events)
