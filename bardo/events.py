from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, request
from pymongo import ASCENDING, ReturnDocument
from pymongo.collection import Collection

from .auth import admin_required
from .db import get_store
from .errors import ApiError, FieldErrors, ok, require_json
from .utils import (
    as_bool,
    clean_str,
    now_utc,
    page_args,
    parse_datetime,
    safe_int,
    to_iso,
    to_oid,
    total_pages,
)

logger = logging.getLogger(__name__)

events_bp = Blueprint("events", __name__, url_prefix="/api/events")

ACTIVE = "active"
CANCELLED = "cancelled"
COMPLETED = "completed"
SOLD_OUT = "sold-out"
FREE_SOLD_OUT = "free-sold-out"
EVENT_STATUSES = (ACTIVE, CANCELLED, COMPLETED, SOLD_OUT, FREE_SOLD_OUT)
TERMINAL_STATUSES = (CANCELLED, COMPLETED)

MAX_TAGS = 10
IMAGE_DATA_RE = re.compile(r"^data:([A-Za-z-+/]+);base64,(.+)$", re.DOTALL)


# -------------------------
# Inventory views
# -------------------------
def stage_remaining(stage: Dict[str, Any]) -> int:
    return max(0, int(stage.get("ticketLimit", 0)) - int(stage.get("ticketsSold", 0)))


def stage_is_open(stage: Dict[str, Any], now_iso: str) -> bool:
    return bool(stage.get("isActive")) and stage.get("endDate", "") > now_iso and stage_remaining(stage) > 0


def free_remaining(event: Dict[str, Any]) -> Optional[int]:
    """Free tickets left, or None when the pool is unlimited."""
    ft = event.get("freeTickets") or {}
    quantity = int(ft.get("quantity", 0))
    if quantity == 0:
        return None
    return max(0, quantity - int(ft.get("ticketsClaimed", 0)))


def free_is_open(event: Dict[str, Any]) -> bool:
    ft = event.get("freeTickets") or {}
    if not ft.get("enabled"):
        return False
    remaining = free_remaining(event)
    return remaining is None or remaining > 0


def base_is_open(event: Dict[str, Any]) -> bool:
    """Tickets at base price need no stage; an event with no inventory configured is open entry."""
    if float(event.get("basePrice", 0) or 0) > 0:
        return True
    ft = event.get("freeTickets") or {}
    return not event.get("preSaleStages") and not ft.get("enabled")


def derive_status(event: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """The one place event status is computed.

    Cancelled and completed are terminal here; leaving cancelled takes the
    explicit reactivation operation. Everything else follows the date and the
    inventory counters, so raising a limit moves a sold-out event back to active.
    """
    now_iso = to_iso(now or now_utc())
    current = event.get("status", ACTIVE)
    if current in TERMINAL_STATUSES:
        return current
    if event.get("date", "") < now_iso:
        return COMPLETED

    paid_open = base_is_open(event) or any(stage_is_open(s, now_iso) for s in event.get("preSaleStages") or [])
    ft = event.get("freeTickets") or {}
    free_open = free_is_open(event)

    if not paid_open and not free_open:
        return SOLD_OUT
    if ft.get("enabled") and not free_open:
        return FREE_SOLD_OUT
    return ACTIVE


def refresh_event_status(events: Collection, event: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Recompute status for a freshly read event and persist it if it changed."""
    new_status = derive_status(event, now)
    old_status = event.get("status")
    if new_status == old_status:
        return event
    updated = events.find_one_and_update(
        {"_id": event["_id"], "status": old_status},
        {"$set": {"status": new_status, "updatedAt": to_iso(now or now_utc())}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # Someone else moved it first; their write went through the same function.
        return events.find_one({"_id": event["_id"]}) or event
    logger.info("Event %s status %s -> %s", event["_id"], old_status, new_status)
    return updated


def resolve_stage(event: Dict[str, Any], stage_ref: Any) -> Tuple[int, Optional[Dict[str, Any]]]:
    """Find a stage by stable id, or by positional index for older clients."""
    stages = event.get("preSaleStages") or []
    if stage_ref is None or stage_ref == "":
        return -1, None
    if isinstance(stage_ref, str):
        for i, s in enumerate(stages):
            if s.get("stageId") == stage_ref.strip():
                return i, s
        if not stage_ref.strip().isdigit():
            return -1, None
    if isinstance(stage_ref, bool):
        return -1, None
    try:
        index = int(stage_ref)
    except (TypeError, ValueError):
        return -1, None
    if 0 <= index < len(stages):
        return index, stages[index]
    return -1, None


# -------------------------
# Serialization helpers
# -------------------------
def public_stage(s: Dict[str, Any], now_iso: str) -> Dict[str, Any]:
    return {
        "stageId": s.get("stageId"),
        "name": s.get("name", ""),
        "price": float(s.get("price", 0.0)),
        "ticketLimit": int(s.get("ticketLimit", 0)),
        "ticketsSold": int(s.get("ticketsSold", 0)),
        "available": stage_remaining(s),
        "endDate": s.get("endDate", ""),
        "isActive": bool(s.get("isActive")) and s.get("endDate", "") > now_iso,
    }


def ticket_info(e: Dict[str, Any]) -> str:
    price = float(e.get("basePrice", 0) or 0)
    ft = e.get("freeTickets") or {}
    remaining = free_remaining(e)
    if price > 0:
        if not ft.get("enabled"):
            return f"Entrada: ${price:g}"
        if remaining is None:
            return f"Entrada: ${price:g} | entradas gratis ilimitadas"
        return f"Entrada: ${price:g} | {remaining} entradas gratis disponibles"
    if ft.get("enabled"):
        return "Entrada gratis (ilimitadas)" if remaining is None else f"Entrada gratis ({remaining} disponibles)"
    return "Entrada gratis"


def public_event(e: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now_iso = to_iso(now or now_utc())
    ft = e.get("freeTickets") or {}
    return {
        "id": str(e["_id"]),
        "title": e.get("title", ""),
        "date": e.get("date", ""),
        "location": e.get("location", ""),
        "dj": e.get("dj", ""),
        "info": e.get("info", ""),
        "image": e.get("image", ""),
        "tags": list(e.get("tags") or []),
        "basePrice": float(e.get("basePrice", 0.0) or 0.0),
        "preSaleStages": [public_stage(s, now_iso) for s in e.get("preSaleStages") or []],
        "freeTickets": {
            "enabled": bool(ft.get("enabled")),
            "quantity": int(ft.get("quantity", 0)),
            "ticketsClaimed": int(ft.get("ticketsClaimed", 0)),
        },
        "freeTicketsAvailable": free_remaining(e),
        "hasUnlimitedFreeTickets": bool(ft.get("enabled")) and int(ft.get("quantity", 0)) == 0,
        "status": e.get("status", ACTIVE),
        "cancellationReason": e.get("cancellationReason"),
        "cancelledAt": e.get("cancelledAt"),
        "isUpcoming": e.get("date", "") > now_iso,
        "isPast": e.get("date", "") < now_iso,
        "ticketInfo": ticket_info(e),
        "createdAt": e.get("createdAt", ""),
        "updatedAt": e.get("updatedAt", ""),
    }


# -------------------------
# Validation
# -------------------------
def _check_length(errors: FieldErrors, field: str, value: str, lo: int, hi: int, label: str) -> None:
    if lo and len(value) < lo:
        errors.add(field, f"{label} debe tener al menos {lo} caracteres")
    if len(value) > hi:
        errors.add(field, f"{label} no puede exceder los {hi} caracteres")


def _future_date(errors: FieldErrors, field: str, value: Any, now: datetime, label: str) -> Optional[str]:
    dt = parse_datetime(value)
    if dt is None:
        errors.add(field, f"{label} debe estar en formato ISO 8601")
        return None
    if dt < now:
        errors.add(field, f"{label} no puede ser en el pasado")
        return None
    return to_iso(dt)


def _valid_image(value: str) -> bool:
    if value.startswith("data:image/"):
        return IMAGE_DATA_RE.match(value) is not None
    return value.startswith("http://") or value.startswith("https://")


def _price(errors: FieldErrors, field: str, value: Any) -> Optional[float]:
    if isinstance(value, bool):
        errors.add(field, "El precio debe ser un número")
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        errors.add(field, "El precio debe ser un número")
        return None
    if price < 0:
        errors.add(field, "El precio no puede ser negativo")
        return None
    return round(price, 2)


def clean_stage(data: Any, errors: FieldErrors, now: datetime, prefix: str = "preSaleStage",
                existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Validate a pre-sale stage payload; with `existing`, only given keys change."""
    if not isinstance(data, dict):
        errors.add(prefix, "La etapa debe ser un objeto")
        return {}
    partial = existing is not None
    out: Dict[str, Any] = {}

    if not partial or "name" in data:
        name = clean_str(data.get("name"))
        if not name:
            errors.add(f"{prefix}.name", "El nombre de la etapa es requerido")
        elif len(name) > 100:
            errors.add(f"{prefix}.name", "El nombre de la etapa no puede exceder los 100 caracteres")
        out["name"] = name
    if not partial or "price" in data:
        price = _price(errors, f"{prefix}.price", data.get("price"))
        if price is not None:
            out["price"] = price
    if not partial or "ticketLimit" in data:
        raw = data.get("ticketLimit")
        try:
            limit = int(raw) if not isinstance(raw, bool) else None
        except (TypeError, ValueError):
            limit = None
        if limit is None or limit < 1:
            errors.add(f"{prefix}.ticketLimit", "El límite de entradas debe ser un entero >= 1")
        elif existing and limit < int(existing.get("ticketsSold", 0)):
            errors.add(f"{prefix}.ticketLimit", "El límite no puede ser menor a las entradas ya vendidas")
        else:
            out["ticketLimit"] = limit
    if not partial or "endDate" in data:
        end = _future_date(errors, f"{prefix}.endDate", data.get("endDate"), now, "La fecha de fin de la etapa")
        if end is not None:
            out["endDate"] = end
    if "isActive" in data:
        out["isActive"] = as_bool(data.get("isActive"))

    if not partial:
        out.setdefault("isActive", True)
        out["stageId"] = uuid.uuid4().hex
        out["ticketsSold"] = 0
    return out


def clean_free_tickets(data: Any, errors: FieldErrors, existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if not isinstance(data, dict):
        errors.add("freeTickets", "freeTickets debe ser un objeto")
        return {}
    current = existing or {"enabled": False, "quantity": 0, "ticketsClaimed": 0}
    out = {
        "enabled": as_bool(data["enabled"]) if "enabled" in data else bool(current.get("enabled")),
        "quantity": int(current.get("quantity", 0)),
        "ticketsClaimed": int(current.get("ticketsClaimed", 0)),
    }
    if "quantity" in data:
        raw = data.get("quantity")
        try:
            quantity = int(raw) if not isinstance(raw, bool) else -1
        except (TypeError, ValueError):
            quantity = -1
        if quantity < 0:
            errors.add("freeTickets.quantity", "Las entradas gratis no pueden ser negativas")
        elif 0 < quantity < out["ticketsClaimed"]:
            errors.add("freeTickets.quantity", "La cantidad no puede ser menor a las entradas ya reclamadas")
        else:
            out["quantity"] = quantity
    return out


def clean_event(data: Dict[str, Any], now: datetime, existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Validate an event payload, reporting every bad field at once."""
    errors = FieldErrors()
    partial = existing is not None
    out: Dict[str, Any] = {}

    for field, label, lo, hi in (("title", "El título", 5, 100), ("location", "La ubicación", 5, 200)):
        if not partial or field in data:
            value = clean_str(data.get(field))
            if not value:
                errors.add(field, f"{label} es requerido")
            else:
                _check_length(errors, field, value, lo, hi, label)
            out[field] = value
    for field, label, hi in (("dj", "La lista de DJs", 500), ("info", "La información", 1000)):
        if not partial or field in data:
            value = clean_str(data.get(field))
            _check_length(errors, field, value, 0, hi, label)
            out[field] = value

    if not partial or "date" in data:
        if not data.get("date"):
            errors.add("date", "La fecha del evento es requerida")
        else:
            date = _future_date(errors, "date", data.get("date"), now, "La fecha del evento")
            if date is not None:
                out["date"] = date

    if not partial or "image" in data:
        image = clean_str(data.get("image"))
        if not image:
            errors.add("image", "La imagen del evento es requerida")
        elif not _valid_image(image):
            errors.add("image", "La imagen debe ser en formato Base64 o URL válida")
        else:
            out["image"] = image

    price_key = "basePrice" if "basePrice" in data else "price"
    if price_key in data:
        price = _price(errors, "basePrice", data.get(price_key))
        if price is not None:
            out["basePrice"] = price
    elif not partial:
        out["basePrice"] = 0.0

    if "tags" in data:
        tags = data.get("tags")
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            errors.add("tags", "Los tags deben ser una lista de textos")
        elif len(tags) > MAX_TAGS:
            errors.add("tags", f"No se pueden agregar más de {MAX_TAGS} tags")
        else:
            out["tags"] = [t.strip() for t in tags if t.strip()]
    elif not partial:
        out["tags"] = []

    if not partial:
        stages = data.get("preSaleStages") or []
        if not isinstance(stages, list):
            errors.add("preSaleStages", "preSaleStages debe ser una lista")
            stages = []
        out["preSaleStages"] = [
            clean_stage(s, errors, now, prefix=f"preSaleStages[{i}]") for i, s in enumerate(stages)
        ]
        out["freeTickets"] = clean_free_tickets(data.get("freeTickets") or {}, errors)

    errors.raise_if_any()
    return out


# -------------------------
# Lookups
# -------------------------
def load_event(event_id: str) -> Dict[str, Any]:
    e = get_store().events.find_one({"_id": to_oid(event_id, "eventId")})
    if not e:
        raise ApiError("Evento no encontrado", 404, "EVENT_NOT_FOUND")
    return e


def _apply_update(event: Dict[str, Any], update: Dict[str, Any], now: datetime,
                  extra_filter: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    events = get_store().events
    update.setdefault("$set", {})["updatedAt"] = to_iso(now)
    flt = {"_id": event["_id"]}
    if extra_filter:
        flt.update(extra_filter)
    updated = events.find_one_and_update(flt, update, return_document=ReturnDocument.AFTER)
    if updated is None:
        raise ApiError("El evento cambió mientras se actualizaba. Intente nuevamente.", 409, "CONFLICT")
    return refresh_event_status(events, updated, now)


# -------------------------
# Event APIs
# -------------------------
@events_bp.get("")
def list_events():
    page, limit = page_args(default_limit=10)
    now_iso = to_iso(now_utc())
    query: Dict[str, Any] = {}

    if as_bool(request.args.get("upcoming", "")):
        query["date"] = {"$gte": now_iso}
        query["status"] = ACTIVE
    elif as_bool(request.args.get("past", "")):
        query["date"] = {"$lt": now_iso}

    status = clean_str(request.args.get("status"))
    if status and status != "all":
        if status not in EVENT_STATUSES:
            raise ApiError("Estado no válido.", 400, "INVALID_STATUS", {"allowed": list(EVENT_STATUSES)})
        query["status"] = status

    search = clean_str(request.args.get("search"))
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"title": pattern}, {"location": pattern}, {"dj": pattern}]

    events = get_store().events
    total = events.count_documents(query)
    docs = list(events.find(query).sort("date", ASCENDING).skip((page - 1) * limit).limit(limit))
    return ok({
        "events": [public_event(e) for e in docs],
        "totalPages": total_pages(total, limit),
        "currentPage": page,
        "total": total,
    })


@events_bp.get("/upcoming/next")
def upcoming_events():
    limit = safe_int(request.args.get("limit", 6), "limit", min_value=1, max_value=50)
    docs = get_store().events.find({"date": {"$gte": to_iso(now_utc())}}).sort("date", ASCENDING).limit(limit)
    return ok({"events": [public_event(e) for e in docs]})


@events_bp.get("/stats/overview")
def events_overview_stats():
    events = get_store().events
    now = now_utc()
    now_iso = to_iso(now)
    return ok({
        "totalEvents": events.count_documents({}),
        "upcomingEvents": events.count_documents({"date": {"$gte": now_iso}}),
        "pastEvents": events.count_documents({"date": {"$lt": now_iso}}),
        "nextWeekEvents": events.count_documents(
            {"date": {"$gte": now_iso, "$lte": to_iso(now + timedelta(days=7))}}
        ),
    })


@events_bp.get("/<event_id>")
def get_event(event_id: str):
    return ok({"event": public_event(load_event(event_id))})


@events_bp.post("")
@admin_required
def create_event():
    data = require_json()
    now = now_utc()
    doc = clean_event(data, now)
    doc.update({
        "status": ACTIVE,
        "cancellationReason": None,
        "cancelledAt": None,
        "createdAt": to_iso(now),
        "updatedAt": to_iso(now),
    })
    doc["status"] = derive_status(doc, now)
    res = get_store().events.insert_one(doc)
    doc["_id"] = res.inserted_id
    logger.info("Event created: %s (%s)", doc["_id"], doc["title"])
    return ok({"message": "Evento creado exitosamente", "event": public_event(doc, now)}, 201)


@events_bp.put("/<event_id>")
@admin_required
def update_event(event_id: str):
    data = require_json()
    event = load_event(event_id)
    now = now_utc()
    updates = clean_event(data, now, existing=event)
    if "freeTickets" in data:
        errors = FieldErrors()
        updates["freeTickets"] = clean_free_tickets(data.get("freeTickets"), errors, event.get("freeTickets"))
        errors.raise_if_any()
        ft = updates.pop("freeTickets")
        updates["freeTickets.enabled"] = ft["enabled"]
        updates["freeTickets.quantity"] = ft["quantity"]
    updated = _apply_update(event, {"$set": updates}, now)
    return ok({"message": "Evento actualizado exitosamente", "event": public_event(updated, now)})


@events_bp.delete("/<event_id>")
@admin_required
def delete_event(event_id: str):
    event = load_event(event_id)
    get_store().events.delete_one({"_id": event["_id"]})
    logger.info("Event deleted: %s (%s)", event["_id"], event.get("title"))
    return ok({
        "message": "Evento eliminado correctamente",
        "deletedEvent": {"id": str(event["_id"]), "title": event.get("title", "")},
    })


@events_bp.patch("/<event_id>/status")
@admin_required
def update_event_status(event_id: str):
    data = require_json()
    status = clean_str(data.get("status"))
    if status not in EVENT_STATUSES:
        raise ApiError(
            "Estado no válido. Use: " + ", ".join(EVENT_STATUSES), 400, "INVALID_STATUS",
            {"allowed": list(EVENT_STATUSES)},
        )
    event = load_event(event_id)
    now = now_utc()
    current = event.get("status", ACTIVE)

    if status == CANCELLED:
        reason = clean_str(data.get("cancellationReason"))
        if len(reason) > 500:
            raise ApiError("La razón de cancelación no puede exceder los 500 caracteres", 400, "VALIDATION_ERROR",
                           {"errors": [{"field": "cancellationReason", "message": "Máximo 500 caracteres"}]})
        updated = _apply_update(event, {"$set": {
            "status": CANCELLED,
            "cancellationReason": reason or None,
            "cancelledAt": to_iso(now),
        }}, now)
    elif current == CANCELLED:
        raise ApiError(
            "El evento está cancelado. Use la reactivación explícita para volver a activarlo.",
            409, "EVENT_CANCELLED", {"currentStatus": current},
        )
    elif status == COMPLETED:
        updated = _apply_update(event, {"$set": {"status": COMPLETED}}, now)
    else:
        derived = derive_status(event, now)
        if derived != status:
            raise ApiError(
                "El estado se calcula a partir de la fecha y el inventario del evento.",
                400, "STATUS_DERIVED", {"currentStatus": current, "derivedStatus": derived},
            )
        updated = refresh_event_status(get_store().events, event, now)

    return ok({"message": f"Evento marcado como {updated['status']}", "event": public_event(updated, now)})


@events_bp.post("/<event_id>/reactivate")
@admin_required
def reactivate_event(event_id: str):
    event = load_event(event_id)
    now = now_utc()
    if event.get("status") != CANCELLED:
        raise ApiError("Solo se pueden reactivar eventos cancelados.", 409, "EVENT_NOT_CANCELLED",
                       {"currentStatus": event.get("status")})
    if event.get("date", "") < to_iso(now):
        raise ApiError("La fecha del evento ya pasó; no se puede reactivar.", 400, "EVENT_DATE_PASSED")
    status = derive_status({**event, "status": ACTIVE}, now)
    updated = _apply_update(
        event,
        {"$set": {"status": status, "cancellationReason": None, "cancelledAt": None}},
        now,
        extra_filter={"status": CANCELLED},
    )
    logger.info("Event %s reactivated as %s", event["_id"], updated["status"])
    return ok({"message": "Evento reactivado", "event": public_event(updated, now)})


@events_bp.patch("/<event_id>/pre-sale/stage")
@admin_required
def add_pre_sale_stage(event_id: str):
    data = require_json()
    event = load_event(event_id)
    now = now_utc()
    errors = FieldErrors()
    stage = clean_stage(data, errors, now)
    errors.raise_if_any()
    updated = _apply_update(event, {"$push": {"preSaleStages": stage}}, now)
    return ok({"message": "Etapa de preventa agregada", "stage": public_stage(stage, to_iso(now)),
               "event": public_event(updated, now)}, 201)


@events_bp.patch("/<event_id>/pre-sale/stage/<stage_ref>")
@admin_required
def update_pre_sale_stage(event_id: str, stage_ref: str):
    data = require_json()
    event = load_event(event_id)
    idx, stage = resolve_stage(event, stage_ref)
    if stage is None:
        raise ApiError("La etapa de preventa no existe", 404, "INVALID_STAGE")
    now = now_utc()
    errors = FieldErrors()
    changes = clean_stage(data, errors, now, existing=stage)
    errors.raise_if_any()
    if not changes:
        return ok({"event": public_event(event, now)})
    path = f"preSaleStages.{idx}"
    sets = {f"{path}.{k}": v for k, v in changes.items()}
    extra: Dict[str, Any] = {f"{path}.stageId": stage["stageId"]}
    if "ticketLimit" in changes:
        # The sold counter may move concurrently; a new limit must still cover it.
        extra[f"{path}.ticketsSold"] = {"$lte": changes["ticketLimit"]}
    updated = _apply_update(event, {"$set": sets}, now, extra_filter=extra)
    return ok({"message": "Etapa de preventa actualizada", "event": public_event(updated, now)})


@events_bp.patch("/<event_id>/free-tickets")
@admin_required
def update_free_tickets(event_id: str):
    data = require_json()
    event = load_event(event_id)
    now = now_utc()
    errors = FieldErrors()
    ft = clean_free_tickets(data, errors, event.get("freeTickets"))
    errors.raise_if_any()
    extra: Dict[str, Any] = {}
    if ft["quantity"] > 0:
        extra["freeTickets.ticketsClaimed"] = {"$lte": ft["quantity"]}
    updated = _apply_update(
        event,
        {"$set": {"freeTickets.enabled": ft["enabled"], "freeTickets.quantity": ft["quantity"]}},
        now,
        extra_filter=extra,
    )
    return ok({"message": "Entradas gratis actualizadas", "event": public_event(updated, now)})
