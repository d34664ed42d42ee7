from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import Blueprint, Response, current_app, request
from pymongo import DESCENDING, ReturnDocument

from .auth import admin_required
from .db import Store, get_store
from .errors import ApiError, FieldErrors, ok, require_json
from .events import resolve_stage
from .inventory import MAX_TICKETS_PER_ORDER, Allocation, InventoryAllocator, get_allocator
from .mercadopago import GatewayError, get_gateway
from .reservations import (
    CANCELLED,
    CONFIRMED,
    INV_CONFIRMED,
    INV_HELD,
    INV_NONE,
    INV_RELEASED,
    PAYMENT_APPROVED,
    PAYMENT_CANCELLED,
    PAYMENT_IN_PROCESS,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_REJECTED,
    backfill_contact,
    claim_inventory_transition,
    clean_tickets,
    create_free_reservation,
    holders_from_customer,
    insert_reservation,
    new_reservation,
    public_reservation,
    release_reservation_inventory,
    reservation_summary,
    upsert_for_payment,
)
from .utils import as_bool, clean_str, iso_now, page_args, to_oid, total_pages

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _first_present(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None and value != "":
            return value
    return None


# -------------------------
# Preference
# -------------------------
def build_preference_body(event: Dict[str, Any], allocation: Allocation, order_id: str,
                          customer: Dict[str, Any], meta: Dict[str, Any]) -> Dict[str, Any]:
    cfg = current_app.config
    title = event.get("title", "")
    image = event.get("image", "")

    phone = customer.get("phone") if isinstance(customer.get("phone"), dict) else None
    payer: Dict[str, Any] = {
        "name": (clean_str(customer.get("name")) or "Cliente")[:50],
        "surname": (clean_str(customer.get("surname")) or "BARDO")[:50],
        "email": clean_str(customer.get("email")) or None,
    }
    if phone and phone.get("number"):
        payer["phone"] = {
            "area_code": str(phone.get("area_code") or "")[:5],
            "number": "".join(c for c in str(phone["number"]) if c.isdigit())[:15],
        }

    item = {
        "id": "item_1",
        "title": f"Entrada para {title}"[:200],
        "description": f"Evento: {title} - {allocation.label}"[:200],
        "quantity": allocation.quantity,
        "unit_price": allocation.unit_price,
        "currency_id": cfg["CURRENCY_ID"],
    }
    if image.startswith("http"):
        item["picture_url"] = image

    return {
        "items": [item],
        "payer": payer,
        "back_urls": {
            "success": f"{cfg['FRONTEND_URL']}/pago-exitoso",
            "failure": f"{cfg['FRONTEND_URL']}/pago-error",
            "pending": f"{cfg['FRONTEND_URL']}/pago-pendiente",
        },
        "auto_return": "approved",
        "external_reference": order_id[:256],
        "notification_url": f"{cfg['BACKEND_URL']}/api/payments/webhook",
        "statement_descriptor": cfg["STATEMENT_DESCRIPTOR"],
        "binary_mode": True,
        "expires": False,
        "payment_methods": {
            "excluded_payment_types": [{"id": "atm"}],
            "installments": 6,
            "default_installments": 1,
        },
        "metadata": {
            "event_id": str(event["_id"]),
            "event_title": title[:100],
            "tickets": allocation.quantity,
            "pre_sale_stage_id": allocation.stage_id,
            "pre_sale_stage_name": allocation.label if allocation.stage_id else None,
            "is_free_ticket": False,
            "unit_price": allocation.unit_price,
            "session_id": meta.get("session_id"),
            "device_id": meta.get("device_id"),
            "user_identifier": meta.get("user_identifier"),
            "customer_email": payer["email"],
            "customer_name": f"{payer['name']} {payer['surname']}",
            "customer_phone": (payer.get("phone") or {}).get("number"),
            "source": meta.get("source") or "bardo_web_app",
            "timestamp": iso_now(),
        },
    }


@payments_bp.post("/create-preference")
def create_preference():
    data = require_json()
    store = get_store()
    allocator = get_allocator()

    errors = FieldErrors()
    order_id = clean_str(data.get("orderId"))
    if not order_id:
        errors.add("orderId", "El orderId es requerido")
    elif len(order_id) > 256:
        errors.add("orderId", "El orderId no puede exceder los 256 caracteres")
    if not data.get("eventId"):
        errors.add("eventId", "El evento es requerido")
    count = data.get("tickets")
    if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= MAX_TICKETS_PER_ORDER:
        errors.add("tickets", f"Se pueden reservar entre 1 y {MAX_TICKETS_PER_ORDER} entradas")
    errors.raise_if_any("Faltan campos requeridos o son inválidos")

    event_id = to_oid(data.get("eventId"), "eventId")
    meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    free = as_bool(meta.get("is_free_ticket")) or as_bool(data.get("isFreeTicket"))
    stage_ref = _first_present(meta, "pre_sale_stage_id", "pre_sale_stage")

    if data.get("holders"):
        tickets = clean_tickets(data.get("holders"))
        if len(tickets) != count:
            raise ApiError("La cantidad de titulares no coincide con las entradas", 400, "VALIDATION_ERROR",
                           {"errors": [{"field": "holders", "message": f"Se esperaban {count} titulares"}]})
    else:
        tickets = holders_from_customer(count, customer)

    if store.reservations.find_one({"orderId": order_id}, {"_id": 1}):
        raise ApiError("Ya existe una reserva para esta orden", 409, "ORDER_EXISTS", {"orderId": order_id})

    if free:
        allocation = allocator.allocate(event_id, count, stage_ref, free=True)
        doc = create_free_reservation(store, allocator, allocation, tickets, order_id, meta, "bardo_web_app")
        return ok({
            "isFreeTicket": True,
            "message": "Entrada gratis reservada exitosamente",
            "reservationCode": doc["reservationCode"],
            "reservation": public_reservation(doc),
        }, 201)

    quote = allocator.quote(event_id, count, stage_ref)
    if quote.unit_price <= 0:
        raise ApiError("El precio de la entrada no es válido para un pago", 400, "INVALID_PRICE",
                       {"unitPrice": quote.unit_price})

    allocation = allocator.allocate(event_id, count, stage_ref)
    doc = new_reservation(
        allocation.event, tickets, order_id, allocation, meta,
        inventoryStatus=INV_HELD if allocation.counted else INV_NONE,
    )
    try:
        insert_reservation(store, doc)
    except Exception:
        if allocation.counted:
            logger.exception("Failed to record pending reservation; releasing hold")
            allocator.release(allocation.event_id, allocation.quantity, allocation.stage_id)
        raise

    body = build_preference_body(allocation.event, allocation, order_id, customer, meta)
    try:
        pref = get_gateway().create_preference(body, idempotency_key=order_id)
    except Exception as e:
        logger.warning("Preference creation failed for order %s: %s", order_id, e)
        store.reservations.update_one(
            {"_id": doc["_id"]},
            {"$set": {
                "status": CANCELLED,
                "paymentStatus": PAYMENT_CANCELLED,
                "paymentStatusDetail": getattr(e, "code", "PREFERENCE_CREATION_ERROR"),
                "updatedAt": iso_now(),
            }},
        )
        release_reservation_inventory(store, allocator, doc, (INV_HELD,))
        raise

    store.reservations.update_one({"_id": doc["_id"]}, {"$set": {"preferenceId": pref.get("id")}})
    logger.info("Preference %s created for order %s (%s x %s)", pref.get("id"), order_id, count, allocation.label)
    return ok({
        "isFreeTicket": False,
        "preferenceId": pref.get("id"),
        "initPoint": pref.get("init_point"),
        "sandboxInitPoint": pref.get("sandbox_init_point"),
        "orderId": order_id,
        "reservationCode": doc["reservationCode"],
        "amount": allocation.total,
    })


# -------------------------
# Payment reconciliation
# -------------------------
def payer_contact(metadata: Dict[str, Any], payer: Optional[Dict[str, Any]]) -> Dict[str, str]:
    contact = {"nombre": "", "apellido": "", "email": "", "telefono": ""}
    if metadata.get("customer_email"):
        contact["email"] = str(metadata["customer_email"]).strip().lower()
    if metadata.get("customer_name"):
        names = str(metadata["customer_name"]).split()
        contact["nombre"] = names[0] if names else ""
        contact["apellido"] = " ".join(names[1:])
    if metadata.get("customer_phone"):
        contact["telefono"] = str(metadata["customer_phone"])
    payer = payer or {}
    if payer.get("first_name"):
        contact["nombre"] = payer["first_name"]
    if payer.get("last_name"):
        contact["apellido"] = payer["last_name"]
    if payer.get("email"):
        contact["email"] = str(payer["email"]).strip().lower()
    phone = payer.get("phone") or {}
    if phone.get("number"):
        contact["telefono"] = f"{phone.get('area_code') or ''}{phone.get('number') or ''}"
    return contact


def _reservation_from_payment(store: Store, payment: Dict[str, Any], contact: Dict[str, str]) -> Dict[str, Any]:
    """Build the reservation for a payment whose order was never recorded here."""
    metadata = payment.get("metadata") or {}
    event_oid = to_oid(metadata.get("event_id"), "event_id")
    event = store.events.find_one({"_id": event_oid}) or {"_id": event_oid, "title": metadata.get("event_title") or "Evento"}

    stage_id, stage_name = None, None
    stage_ref = _first_present(metadata, "pre_sale_stage_id", "pre_sale_stage")
    if stage_ref is not None:
        _, stage = resolve_stage(event, stage_ref)
        if stage is not None:
            stage_id, stage_name = stage.get("stageId"), stage.get("name")

    count = int(metadata.get("tickets") or 1)
    customer = {
        "name": contact["nombre"],
        "surname": contact["apellido"],
        "email": contact["email"],
        "phone": contact["telefono"],
    }
    amount = float(payment.get("transaction_amount") or 0.0)
    return new_reservation(
        event,
        holders_from_customer(count, customer),
        payment.get("external_reference"),
        None,
        metadata,
        unitPrice=round(amount / count, 2) if count else 0.0,
        totalAmount=amount,
        preSaleStageId=stage_id,
        preSaleStageName=stage_name,
        isFreeTicket=as_bool(metadata.get("is_free_ticket")),
    )


def _confirm_inventory(store: Store, allocator: InventoryAllocator, reservation: Dict[str, Any]) -> None:
    """Move a counted reservation to confirmed, counting it unless its hold already did."""
    if not (reservation.get("preSaleStageId") or reservation.get("isFreeTicket")):
        return
    if claim_inventory_transition(store.reservations, reservation["_id"], (INV_HELD,), INV_CONFIRMED):
        return
    before = claim_inventory_transition(store.reservations, reservation["_id"], (INV_NONE, INV_RELEASED), INV_CONFIRMED)
    if before is None:
        return
    try:
        allocator.confirm(
            before["eventId"],
            int(before.get("totalTickets", 0)),
            stage_id=before.get("preSaleStageId"),
            is_free=bool(before.get("isFreeTicket")),
        )
    except Exception:
        # Put the claim back so a redelivery or retry counts the tickets.
        store.reservations.update_one(
            {"_id": before["_id"], "inventoryStatus": INV_CONFIRMED},
            {"$set": {"inventoryStatus": before.get("inventoryStatus", INV_NONE), "updatedAt": iso_now()}},
        )
        raise


def apply_approved(store: Store, allocator: InventoryAllocator, payment: Dict[str, Any]) -> Dict[str, Any]:
    order_id = payment.get("external_reference")
    if not order_id:
        raise ValueError(f"Payment {payment.get('id')} has no external_reference")
    contact = payer_contact(payment.get("metadata") or {}, payment.get("payer"))

    reservation, created = upsert_for_payment(store, order_id, lambda: _reservation_from_payment(store, payment, contact))
    if not created:
        reservation = backfill_contact(store.reservations, reservation, contact)

    now = iso_now()
    before = store.reservations.find_one_and_update(
        {"_id": reservation["_id"], "paymentStatus": {"$ne": PAYMENT_APPROVED}},
        {"$set": {
            "status": CONFIRMED,
            "paymentStatus": PAYMENT_APPROVED,
            "paymentStatusDetail": payment.get("status_detail"),
            "isPaid": True,
            "paymentId": str(payment.get("id")),
            "totalAmount": float(payment.get("transaction_amount") or reservation.get("totalAmount") or 0.0),
            "updatedAt": now,
        }},
        return_document=ReturnDocument.BEFORE,
    )
    if before is None:
        # Already approved. Finish whatever an earlier delivery left undone.
        before = store.reservations.find_one({"_id": reservation["_id"]})
        if before.get("status") == CANCELLED:
            logger.info("Payment %s re-delivered for cancelled order %s; nothing to do", payment.get("id"), order_id)
            return before
        logger.info("Payment %s re-delivered for approved order %s", payment.get("id"), order_id)

    store.reservations.update_one({"_id": reservation["_id"], "paidAt": None}, {"$set": {"paidAt": now}})
    _confirm_inventory(store, allocator, before)
    logger.info("Payment %s approved for order %s (%s)", payment.get("id"), order_id, before.get("reservationCode"))
    return store.reservations.find_one({"_id": reservation["_id"]})


def apply_not_approved(store: Store, allocator: InventoryAllocator, payment: Dict[str, Any],
                       status: str) -> Optional[Dict[str, Any]]:
    """Rejected, cancelled or pending. Never downgrades an approved reservation."""
    order_id = payment.get("external_reference")
    reservation = store.reservations.find_one({"orderId": order_id}) if order_id else None
    if reservation is None:
        logger.info("Payment %s (%s) has no reservation for order %s", payment.get("id"), status, order_id)
        return None
    updated = store.reservations.find_one_and_update(
        {"_id": reservation["_id"], "paymentStatus": {"$ne": PAYMENT_APPROVED}},
        {"$set": {
            "paymentStatus": status,
            "paymentStatusDetail": payment.get("status_detail"),
            "isPaid": False,
            "paymentId": str(payment.get("id")),
            "updatedAt": iso_now(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        logger.warning("Ignoring %s for already approved order %s", status, order_id)
        return reservation
    if status in (PAYMENT_REJECTED, PAYMENT_CANCELLED):
        # The preference stays payable; approval later confirms again.
        release_reservation_inventory(store, allocator, updated, (INV_HELD,))
    logger.info("Payment %s for order %s -> %s", payment.get("id"), order_id, status)
    return updated


def apply_refunded(store: Store, allocator: InventoryAllocator, payment: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    order_id = payment.get("external_reference")
    updated = store.reservations.find_one_and_update(
        {"orderId": order_id},
        {"$set": {
            "paymentStatus": PAYMENT_REFUNDED,
            "paymentStatusDetail": payment.get("status_detail") or payment.get("status"),
            "isPaid": False,
            "updatedAt": iso_now(),
        }},
        return_document=ReturnDocument.AFTER,
    ) if order_id else None
    if updated is None:
        logger.info("Refund for payment %s has no reservation for order %s", payment.get("id"), order_id)
        return None
    release_reservation_inventory(store, allocator, updated)
    logger.info("Payment %s refunded for order %s", payment.get("id"), order_id)
    return updated


def process_payment_notification(store: Store, gateway: Any, allocator: InventoryAllocator, payment_id: Any) -> str:
    payment = gateway.get_payment(payment_id)
    status = payment.get("status")
    logger.info("Processing payment %s: status=%s order=%s", payment_id, status, payment.get("external_reference"))

    if status == PAYMENT_APPROVED:
        apply_approved(store, allocator, payment)
    elif status in (PAYMENT_REJECTED, PAYMENT_CANCELLED, PAYMENT_PENDING, PAYMENT_IN_PROCESS):
        apply_not_approved(store, allocator, payment, status)
    elif status in (PAYMENT_REFUNDED, "charged_back"):
        apply_refunded(store, allocator, payment)
    else:
        logger.warning("Unhandled payment status %r for payment %s", status, payment_id)
    return status or ""


# -------------------------
# Dead letter
# -------------------------
def record_webhook_failure(store: Store, payment_id: str, topic: str, payload: Any, error: Exception) -> None:
    now = iso_now()
    store.webhook_failures.find_one_and_update(
        {"paymentId": payment_id, "resolved": False},
        {
            "$set": {"topic": topic, "payload": payload, "error": f"{type(error).__name__}: {error}",
                     "lastAttemptAt": now},
            "$inc": {"attempts": 1},
            "$setOnInsert": {"createdAt": now},
        },
        upsert=True,
    )


def public_failure(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(f["_id"]),
        "paymentId": f.get("paymentId"),
        "topic": f.get("topic"),
        "error": f.get("error"),
        "attempts": int(f.get("attempts", 0)),
        "resolved": bool(f.get("resolved")),
        "createdAt": f.get("createdAt"),
        "lastAttemptAt": f.get("lastAttemptAt"),
        "resolvedAt": f.get("resolvedAt"),
    }


# -------------------------
# Webhook APIs
# -------------------------
@payments_bp.post("/webhook")
def webhook():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    topic = data.get("type") or data.get("topic") or request.args.get("type") or request.args.get("topic")
    payment_id = (data.get("data") or {}).get("id") if isinstance(data.get("data"), dict) else None
    payment_id = payment_id or request.args.get("data.id") or request.args.get("id")

    if topic == "payment" and payment_id:
        store = get_store()
        try:
            process_payment_notification(store, get_gateway(), get_allocator(), payment_id)
        except Exception as e:
            logger.exception("Webhook processing failed for payment %s", payment_id)
            try:
                record_webhook_failure(store, str(payment_id), topic, data, e)
            except Exception:
                logger.exception("Could not record webhook failure for payment %s", payment_id)
    else:
        logger.info("Webhook ignored: topic=%s id=%s", topic, payment_id)

    # Always acknowledge so the gateway does not retry-storm.
    return Response("OK", status=200, mimetype="text/plain")


@payments_bp.get("/webhook/failures")
@admin_required
def list_webhook_failures():
    page, limit = page_args(default_limit=20)
    query = {"resolved": as_bool(request.args.get("resolved", "0"))}
    col = get_store().webhook_failures
    total = col.count_documents(query)
    docs = list(col.find(query).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit))
    return ok({
        "failures": [public_failure(f) for f in docs],
        "totalPages": total_pages(total, limit),
        "currentPage": page,
        "total": total,
    })


@payments_bp.post("/webhook/failures/<failure_id>/retry")
@admin_required
def retry_webhook_failure(failure_id: str):
    store = get_store()
    failure = store.webhook_failures.find_one({"_id": to_oid(failure_id, "failureId")})
    if not failure:
        raise ApiError("Registro no encontrado", 404, "NOT_FOUND")
    if failure.get("resolved"):
        return ok({"failure": public_failure(failure)})

    now = iso_now()
    try:
        status = process_payment_notification(store, get_gateway(), get_allocator(), failure["paymentId"])
    except Exception as e:
        logger.exception("Retry failed for payment %s", failure["paymentId"])
        store.webhook_failures.update_one(
            {"_id": failure["_id"]},
            {"$set": {"error": f"{type(e).__name__}: {e}", "lastAttemptAt": now}, "$inc": {"attempts": 1}},
        )
        raise ApiError("No se pudo reprocesar la notificación", 502, "WEBHOOK_RETRY_FAILED", {"detail": str(e)})

    updated = store.webhook_failures.find_one_and_update(
        {"_id": failure["_id"]},
        {"$set": {"resolved": True, "resolvedAt": now, "lastAttemptAt": now}, "$inc": {"attempts": 1}},
        return_document=ReturnDocument.AFTER,
    )
    return ok({"paymentStatus": status, "failure": public_failure(updated)})


# -------------------------
# Lookups
# -------------------------
@payments_bp.get("/payment/<payment_id>")
def payment_status(payment_id: str):
    payment = get_gateway().get_payment(payment_id)
    reservation = get_store().reservations.find_one({"paymentId": str(payment.get("id", payment_id))})
    return ok({
        "paymentId": payment.get("id"),
        "status": payment.get("status"),
        "statusDetail": payment.get("status_detail"),
        "orderId": payment.get("external_reference"),
        "amount": payment.get("transaction_amount"),
        "dateCreated": payment.get("date_created"),
        "dateApproved": payment.get("date_approved"),
        "paymentMethod": payment.get("payment_method_id"),
        "reservation": reservation_summary(reservation),
    })


@payments_bp.get("/order/<order_id>")
def payments_for_order(order_id: str):
    try:
        payments = get_gateway().search_payments(order_id)
    except GatewayError as e:
        logger.warning("Payment search by external_reference failed for %s: %s", order_id, e.message)
        payments = []
    reservation = get_store().reservations.find_one({"orderId": order_id})
    return ok({
        "orderId": order_id,
        "payments": [
            {
                "paymentId": p.get("id"),
                "status": p.get("status"),
                "statusDetail": p.get("status_detail"),
                "amount": p.get("transaction_amount"),
                "dateCreated": p.get("date_created"),
                "dateApproved": p.get("date_approved"),
                "paymentMethod": p.get("payment_method_id"),
            }
            for p in payments
        ],
        "reservation": reservation_summary(reservation),
    })
