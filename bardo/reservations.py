from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from flask import Blueprint, current_app, request
from pymongo import DESCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from .auth import admin_required
from .db import Store, get_store
from .errors import ApiError, FieldErrors, ok, require_json
from .inventory import MAX_TICKETS_PER_ORDER, Allocation, InventoryAllocator, get_allocator
from .utils import as_bool, clean_str, iso_now, is_valid_email, page_args, to_oid, total_pages

logger = logging.getLogger(__name__)

reservations_bp = Blueprint("reservations", __name__, url_prefix="/api/reservations")

CONFIRMED = "confirmed"
CANCELLED = "cancelled"

PAYMENT_PENDING = "pending"
PAYMENT_IN_PROCESS = "in_process"
PAYMENT_APPROVED = "approved"
PAYMENT_REJECTED = "rejected"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_REFUNDED = "refunded"
PAYMENT_STATUSES = (
    PAYMENT_PENDING, PAYMENT_IN_PROCESS, PAYMENT_APPROVED, PAYMENT_REJECTED, PAYMENT_CANCELLED, PAYMENT_REFUNDED,
)

# Whether a reservation's tickets are currently counted on its event.
INV_NONE = "none"
INV_HELD = "held"
INV_CONFIRMED = "confirmed"
INV_RELEASED = "released"

BASE36 = string.digits + string.ascii_lowercase


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(BASE36[r])
    return "".join(reversed(out))


def generate_reservation_code(prefix: str = "BARDO") -> str:
    """Prefix + base36 millisecond clock + 4 random base36 chars. Not unique by itself."""
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(BASE36) for _ in range(4))
    return f"{prefix}{stamp}{suffix}".upper()


def generate_direct_order_id(event_id: Any) -> str:
    suffix = "".join(secrets.choice(BASE36) for _ in range(6))
    return f"DIRECT_{event_id}_{int(time.time() * 1000)}_{suffix}"


# -------------------------
# Ticket holders
# -------------------------
def clean_tickets(raw: Any) -> List[Dict[str, str]]:
    errors = FieldErrors()
    if not isinstance(raw, list) or not raw:
        errors.add("tickets", "Se requiere al menos una entrada")
        errors.raise_if_any()
    if len(raw) > MAX_TICKETS_PER_ORDER:
        errors.add("tickets", f"No se pueden reservar más de {MAX_TICKETS_PER_ORDER} entradas")
        errors.raise_if_any()

    tickets = []
    for i, t in enumerate(raw):
        if not isinstance(t, dict):
            errors.add(f"tickets[{i}]", "Cada entrada debe ser un objeto")
            continue
        nombre = clean_str(t.get("nombre"))
        apellido = clean_str(t.get("apellido"))
        email = clean_str(t.get("email")).lower()
        if not nombre:
            errors.add(f"tickets[{i}].nombre", "El nombre es requerido")
        if not apellido:
            errors.add(f"tickets[{i}].apellido", "El apellido es requerido")
        if email and not is_valid_email(email):
            errors.add(f"tickets[{i}].email", "El email no es válido")
        tickets.append({
            "nombre": nombre,
            "apellido": apellido,
            "telefono": clean_str(t.get("telefono")),
            "email": email,
        })
    errors.raise_if_any()
    return tickets


def holders_from_customer(count: int, customer: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Fill every ticket with the buyer's details when no per-ticket holders were sent."""
    customer = customer or {}
    phone = customer.get("phone")
    if isinstance(phone, dict):
        phone = f"{phone.get('area_code') or ''}{phone.get('number') or ''}"
    nombre = clean_str(customer.get("name"))
    apellido = clean_str(customer.get("surname"))
    return [
        {
            "nombre": nombre or f"Invitado{i + 1}",
            "apellido": apellido or "BARDO",
            "telefono": clean_str(phone) if isinstance(phone, str) else "",
            "email": clean_str(customer.get("email")).lower(),
        }
        for i in range(count)
    ]


def backfill_contact(reservations: Collection, reservation: Dict[str, Any],
                     contact: Dict[str, str]) -> Dict[str, Any]:
    """Copy payer details onto tickets only where the ticket field is empty."""
    changed = False
    tickets = []
    for t in reservation.get("tickets") or []:
        t = dict(t)
        for key in ("email", "telefono", "nombre", "apellido"):
            if contact.get(key) and not t.get(key):
                t[key] = contact[key]
                changed = True
        tickets.append(t)
    if not changed:
        return reservation
    return reservations.find_one_and_update(
        {"_id": reservation["_id"]},
        {"$set": {"tickets": tickets, "updatedAt": iso_now()}},
        return_document=ReturnDocument.AFTER,
    ) or reservation


# -------------------------
# Serialization
# -------------------------
def public_reservation(r: Dict[str, Any], event: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = {
        "id": str(r["_id"]),
        "reservationCode": r.get("reservationCode", ""),
        "orderId": r.get("orderId", ""),
        "eventId": str(r.get("eventId", "")),
        "eventTitle": r.get("eventTitle", ""),
        "tickets": list(r.get("tickets") or []),
        "totalTickets": int(r.get("totalTickets", 0)),
        "status": r.get("status", CONFIRMED),
        "paymentStatus": r.get("paymentStatus", PAYMENT_PENDING),
        "paymentStatusDetail": r.get("paymentStatusDetail"),
        "isPaid": bool(r.get("isPaid")),
        "paidAt": r.get("paidAt"),
        "paymentId": r.get("paymentId"),
        "paymentMethod": r.get("paymentMethod"),
        "totalAmount": float(r.get("totalAmount", 0.0) or 0.0),
        "unitPrice": float(r.get("unitPrice", 0.0) or 0.0),
        "preSaleStageId": r.get("preSaleStageId"),
        "preSaleStageName": r.get("preSaleStageName"),
        "isFreeTicket": bool(r.get("isFreeTicket")),
        "inventoryStatus": r.get("inventoryStatus", INV_NONE),
        "userIdentifier": r.get("userIdentifier"),
        "sessionId": r.get("sessionId"),
        "deviceId": r.get("deviceId"),
        "source": r.get("source"),
        "reservationDate": r.get("reservationDate", ""),
        "updatedAt": r.get("updatedAt", ""),
    }
    if event is not None:
        out["event"] = {
            "title": event.get("title", ""),
            "date": event.get("date", ""),
            "location": event.get("location", ""),
            "image": event.get("image", ""),
        }
    return out


def reservation_summary(r: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not r:
        return None
    return {
        "reservationCode": r.get("reservationCode", ""),
        "status": r.get("status", CONFIRMED),
        "paymentStatus": r.get("paymentStatus", PAYMENT_PENDING),
        "tickets": int(r.get("totalTickets", 0)),
        "isPaid": bool(r.get("isPaid")),
    }


# -------------------------
# Persistence
# -------------------------
def new_reservation(event: Dict[str, Any], tickets: List[Dict[str, str]], order_id: str,
                    allocation: Optional[Allocation] = None, meta: Optional[Dict[str, Any]] = None,
                    **fields: Any) -> Dict[str, Any]:
    meta = meta or {}
    now = iso_now()
    doc: Dict[str, Any] = {
        "eventId": event["_id"],
        "eventTitle": event.get("title", ""),
        "tickets": tickets,
        "totalTickets": len(tickets),
        "status": CONFIRMED,
        "paymentStatus": PAYMENT_PENDING,
        "paymentStatusDetail": None,
        "isPaid": False,
        "paidAt": None,
        "orderId": order_id,
        "paymentId": None,
        "paymentMethod": "mercadopago",
        "unitPrice": allocation.unit_price if allocation else 0.0,
        "totalAmount": allocation.total if allocation else 0.0,
        "preSaleStageId": allocation.stage_id if allocation else None,
        "preSaleStageName": allocation.label if allocation and allocation.stage_id else None,
        "isFreeTicket": bool(allocation and allocation.is_free),
        "inventoryStatus": INV_NONE,
        "userIdentifier": meta.get("user_identifier"),
        "sessionId": meta.get("session_id"),
        "deviceId": meta.get("device_id"),
        "source": meta.get("source") or "bardo_web_app",
        "reservationDate": now,
        "updatedAt": now,
    }
    doc.update(fields)
    return doc


def insert_reservation(store: Store, doc: Dict[str, Any]) -> Dict[str, Any]:
    """Insert with a freshly generated code. A code collision is surfaced, not retried."""
    doc["reservationCode"] = generate_reservation_code(current_app.config["RESERVATION_CODE_PREFIX"])
    try:
        res = store.reservations.insert_one(doc)
    except DuplicateKeyError:
        doc.pop("_id", None)
        if store.reservations.find_one({"orderId": doc["orderId"]}, {"_id": 1}):
            raise ApiError("Ya existe una reserva para esta orden", 409, "ORDER_EXISTS", {"orderId": doc["orderId"]})
        logger.warning("Reservation code collision: %s", doc["reservationCode"])
        raise ApiError(
            "No se pudo generar un código de reserva único. Intente nuevamente.",
            500,
            "RESERVATION_CODE_CONFLICT",
            {"retryable": True},
        )
    doc["_id"] = res.inserted_id
    return doc


def claim_inventory_transition(reservations: Collection, reservation_id: Any, from_states: Iterable[str],
                               to_state: str) -> Optional[Dict[str, Any]]:
    """Move inventoryStatus atomically; None means another writer already moved it."""
    return reservations.find_one_and_update(
        {"_id": reservation_id, "inventoryStatus": {"$in": list(from_states)}},
        {"$set": {"inventoryStatus": to_state, "updatedAt": iso_now()}},
        return_document=ReturnDocument.BEFORE,
    )


def release_reservation_inventory(store: Store, allocator: InventoryAllocator, reservation: Dict[str, Any],
                                  from_states: Iterable[str] = (INV_HELD, INV_CONFIRMED)) -> bool:
    before = claim_inventory_transition(store.reservations, reservation["_id"], from_states, INV_RELEASED)
    if before is None:
        return False
    allocator.release(
        before["eventId"],
        int(before.get("totalTickets", 0)),
        stage_id=before.get("preSaleStageId"),
        is_free=bool(before.get("isFreeTicket")),
    )
    return True


def create_free_reservation(store: Store, allocator: InventoryAllocator, allocation: Allocation,
                            tickets: List[Dict[str, str]], order_id: str, meta: Dict[str, Any],
                            source: str) -> Dict[str, Any]:
    """Persist an approved zero-price reservation for tickets already counted by `allocation`."""
    now = iso_now()
    doc = new_reservation(
        allocation.event,
        tickets,
        order_id,
        allocation,
        meta,
        paymentStatus=PAYMENT_APPROVED,
        paymentMethod="free",
        isPaid=True,
        paidAt=now,
        totalAmount=0.0,
        unitPrice=0.0,
        inventoryStatus=INV_CONFIRMED if allocation.counted else INV_NONE,
        source=source,
    )
    try:
        insert_reservation(store, doc)
    except Exception:
        if allocation.counted:
            # Best-effort rollback; the tickets were never handed out.
            logger.exception("Failed to record free reservation; releasing counted tickets")
            allocator.release(allocation.event_id, allocation.quantity, allocation.stage_id, allocation.is_free)
        raise
    logger.info("Free reservation created: %s (order %s)", doc["reservationCode"], order_id)
    return doc


def upsert_for_payment(store: Store, order_id: str,
                       build: Callable[[], Dict[str, Any]]) -> Tuple[Dict[str, Any], bool]:
    """Find the reservation for an order, creating it when the gateway reports first."""
    existing = store.reservations.find_one({"orderId": order_id})
    if existing is not None:
        return existing, False
    try:
        return insert_reservation(store, build()), True
    except ApiError as e:
        if e.code != "ORDER_EXISTS":
            raise
    # Lost the race to a concurrent delivery for the same order.
    return store.reservations.find_one({"orderId": order_id}), False


def load_reservation(query: Dict[str, Any]) -> Dict[str, Any]:
    r = get_store().reservations.find_one(query)
    if not r:
        raise ApiError("Reserva no encontrada", 404, "RESERVATION_NOT_FOUND")
    return r


def _events_by_id(store: Store, reservations: List[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
    ids = list({r.get("eventId") for r in reservations if r.get("eventId") is not None})
    if not ids:
        return {}
    return {e["_id"]: e for e in store.events.find({"_id": {"$in": ids}})}


# -------------------------
# Reservation APIs
# -------------------------
@reservations_bp.post("")
def create_reservation():
    data = require_json()
    store = get_store()
    allocator = get_allocator()

    event_id = to_oid(data.get("eventId"), "eventId")
    raw_tickets = data.get("tickets")
    if isinstance(raw_tickets, int) and not isinstance(raw_tickets, bool):
        if not 1 <= raw_tickets <= MAX_TICKETS_PER_ORDER:
            raise ApiError(f"Se pueden reservar entre 1 y {MAX_TICKETS_PER_ORDER} entradas", 400,
                           "VALIDATION_ERROR", {"field": "tickets"})
        tickets = holders_from_customer(raw_tickets, data.get("customerInfo"))
    else:
        tickets = clean_tickets(raw_tickets)

    free = as_bool(data.get("isFreeTicket"))
    stage_ref = data.get("preSaleStageId")
    if stage_ref in (None, ""):
        stage_ref = data.get("preSaleStageIndex")
    meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

    quote = allocator.quote(event_id, len(tickets), stage_ref, free)
    if quote.unit_price > 0:
        raise ApiError("Esta entrada requiere pago. Use el flujo de pago.", 400, "PAYMENT_REQUIRED",
                       {"unitPrice": quote.unit_price})

    allocation = allocator.allocate(event_id, len(tickets), stage_ref, free)
    doc = create_free_reservation(
        store, allocator, allocation, tickets, generate_direct_order_id(event_id), meta, "bardo_web_app_direct"
    )
    return ok({"message": "Reserva creada exitosamente", "reservation": public_reservation(doc)}, 201)


@reservations_bp.get("")
@admin_required
def list_reservations():
    page, limit = page_args(default_limit=10)
    query: Dict[str, Any] = {}
    if request.args.get("eventId"):
        query["eventId"] = to_oid(request.args.get("eventId"), "eventId")
    col = get_store().reservations
    total = col.count_documents(query)
    docs = list(col.find(query).sort("reservationDate", DESCENDING).skip((page - 1) * limit).limit(limit))
    return ok({
        "reservations": [public_reservation(r) for r in docs],
        "totalPages": total_pages(total, limit),
        "currentPage": page,
        "total": total,
    })


@reservations_bp.get("/stats/overview")
@admin_required
def reservations_overview():
    col = get_store().reservations
    active = {"status": {"$ne": CANCELLED}}
    totals = list(col.aggregate([
        {"$match": active},
        {"$group": {"_id": None, "reservations": {"$sum": 1}, "tickets": {"$sum": "$totalTickets"}}},
    ]))
    by_event = list(col.aggregate([
        {"$match": active},
        {"$group": {
            "_id": "$eventId",
            "eventTitle": {"$first": "$eventTitle"},
            "reservationCount": {"$sum": 1},
            "ticketCount": {"$sum": "$totalTickets"},
        }},
        {"$sort": {"ticketCount": -1}},
        {"$limit": 10},
    ]))
    return ok({
        "totalReservations": int(totals[0]["reservations"]) if totals else 0,
        "totalTickets": int(totals[0]["tickets"]) if totals else 0,
        "reservationsByEvent": [
            {
                "eventId": str(r["_id"]),
                "eventTitle": r.get("eventTitle", ""),
                "reservationCount": int(r.get("reservationCount", 0)),
                "ticketCount": int(r.get("ticketCount", 0)),
            }
            for r in by_event
        ],
    })


@reservations_bp.get("/event/<event_id>")
@admin_required
def reservations_for_event(event_id: str):
    page, limit = page_args(default_limit=20)
    oid = to_oid(event_id, "eventId")
    col = get_store().reservations
    query = {"eventId": oid}
    total = col.count_documents(query)
    docs = list(col.find(query).sort("reservationDate", DESCENDING).skip((page - 1) * limit).limit(limit))
    tickets = list(col.aggregate([
        {"$match": {"eventId": oid, "status": {"$ne": CANCELLED}}},
        {"$group": {"_id": None, "total": {"$sum": "$totalTickets"}}},
    ]))
    return ok({
        "reservations": [public_reservation(r) for r in docs],
        "totalPages": total_pages(total, limit),
        "currentPage": page,
        "totalReservations": total,
        "totalTickets": int(tickets[0]["total"]) if tickets else 0,
    })


@reservations_bp.get("/user")
def reservations_for_user():
    args = request.args
    if args.get("userIdentifier"):
        query: Dict[str, Any] = {"userIdentifier": args["userIdentifier"]}
    elif args.get("deviceId"):
        query = {"deviceId": args["deviceId"]}
    elif args.get("sessionId"):
        query = {"sessionId": args["sessionId"]}
    elif args.get("email"):
        query = {"tickets.email": args["email"].strip().lower()}
    else:
        raise ApiError("Se requiere al menos un criterio de búsqueda", 400, "MISSING_SEARCH_CRITERIA")

    store = get_store()
    docs = list(store.reservations.find(query).sort("reservationDate", DESCENDING).limit(200))
    events = _events_by_id(store, docs)
    return ok({
        "reservations": [public_reservation(r, events.get(r.get("eventId"))) for r in docs],
        "total": len(docs),
    })


@reservations_bp.get("/order/<order_id>")
def reservation_by_order(order_id: str):
    r = load_reservation({"orderId": order_id})
    event = get_store().events.find_one({"_id": r.get("eventId")})
    return ok({"reservation": public_reservation(r, event)})


@reservations_bp.patch("/order/<order_id>/contact")
def update_contact(order_id: str):
    data = require_json()
    r = load_reservation({"orderId": order_id})

    errors = FieldErrors()
    changes: Dict[str, str] = {}
    for src, dst in (("email", "email"), ("phone", "telefono"), ("name", "nombre"), ("surname", "apellido")):
        if src in data:
            value = clean_str(data.get(src))
            if not value:
                continue
            if dst == "email":
                value = value.lower()
                if not is_valid_email(value):
                    errors.add("email", "El email no es válido")
                    continue
            changes[dst] = value
    errors.raise_if_any()
    if not changes:
        raise ApiError("No hay datos de contacto para actualizar", 400, "VALIDATION_ERROR")

    tickets = [{**t, **changes} for t in r.get("tickets") or []]
    updated = get_store().reservations.find_one_and_update(
        {"_id": r["_id"]},
        {"$set": {"tickets": tickets, "updatedAt": iso_now()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Contact updated for reservation %s", r.get("reservationCode"))
    return ok({"message": "Información de contacto actualizada exitosamente", "reservation": public_reservation(updated)})


@reservations_bp.get("/<code>")
def get_reservation(code: str):
    return ok({"reservation": public_reservation(load_reservation({"reservationCode": code.strip().upper()}))})


@reservations_bp.delete("/<code>")
def cancel_reservation(code: str):
    store = get_store()
    r = load_reservation({"reservationCode": code.strip().upper()})
    updated = store.reservations.find_one_and_update(
        {"_id": r["_id"], "status": {"$ne": CANCELLED}},
        {"$set": {"status": CANCELLED, "updatedAt": iso_now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ApiError("La reserva ya está cancelada", 409, "RESERVATION_ALREADY_CANCELLED")

    # Paid captures stay counted; refunds are handled by the gateway.
    if updated.get("paymentMethod") == "free" or updated.get("inventoryStatus") == INV_HELD:
        if release_reservation_inventory(store, get_allocator(), updated):
            updated = store.reservations.find_one({"_id": updated["_id"]})
    logger.info("Reservation cancelled: %s", updated.get("reservationCode"))
    return ok({"message": "Reserva cancelada exitosamente", "reservation": public_reservation(updated)})
