from __future__ import annotations

import logging
import re
from io import BytesIO
from typing import Any, Dict, Iterable, List, Optional

from flask import Blueprint, request, send_file
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from pymongo import ASCENDING, DESCENDING
from werkzeug.utils import secure_filename

from .auth import admin_required
from .db import get_store
from .errors import ApiError, ok
from .events import EVENT_STATUSES, free_remaining, load_event, stage_remaining
from .reservations import CANCELLED, PAYMENT_APPROVED, PAYMENT_STATUSES, public_reservation
from .utils import clean_str, page_args, parse_datetime, to_iso, total_pages

logger = logging.getLogger(__name__)

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")

SORT_FIELDS = ("date", "title", "status", "createdAt")
XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
HOLDER_HEADERS = ("Nombre", "Apellido", "Teléfono", "Email", "Código Reserva", "Fecha Reserva")
NOT_PROVIDED = "No proporcionado"


def _is_free(r: Dict[str, Any]) -> bool:
    return bool(r.get("isFreeTicket")) or r.get("paymentMethod") == "free"


def event_totals(event: Dict[str, Any], reservations: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    reserved = paid = free = 0
    revenue = 0.0
    for r in reservations:
        if r.get("status") == CANCELLED:
            continue
        n = int(r.get("totalTickets", 0))
        reserved += n
        if _is_free(r):
            free += n
        elif r.get("paymentStatus") == PAYMENT_APPROVED:
            paid += n
            revenue += float(r.get("totalAmount", 0.0) or 0.0)
    ft = event.get("freeTickets") or {}
    return {
        "ticketsReserved": reserved,
        "freeTicketsReserved": free,
        "freeTicketsClaimed": int(ft.get("ticketsClaimed", 0)),
        "freeTicketsAvailable": free_remaining(event) if ft.get("enabled") else 0,
        "hasUnlimitedFreeTickets": bool(ft.get("enabled")) and int(ft.get("quantity", 0)) == 0,
        "paidTickets": paid,
        "revenue": round(revenue, 2),
    }


def _reservations_by_event(event_ids: List[Any]) -> Dict[Any, List[Dict[str, Any]]]:
    grouped: Dict[Any, List[Dict[str, Any]]] = {eid: [] for eid in event_ids}
    if not event_ids:
        return grouped
    for r in get_store().reservations.find({"eventId": {"$in": event_ids}}):
        grouped.setdefault(r["eventId"], []).append(r)
    return grouped


def free_ticket_holders(reservations: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "nombre": t.get("nombre", ""),
            "apellido": t.get("apellido", ""),
            "telefono": t.get("telefono") or NOT_PROVIDED,
            "email": t.get("email") or NOT_PROVIDED,
            "reservationCode": r.get("reservationCode", ""),
            "reservationDate": r.get("reservationDate", ""),
        }
        for r in reservations
        for t in r.get("tickets") or []
    ]


def _display_date(value: str, fmt: str) -> str:
    dt = parse_datetime(value)
    return dt.strftime(fmt) if dt else (value or "")


def build_free_tickets_workbook(event: Dict[str, Any], holders: List[Dict[str, Any]]) -> BytesIO:
    """Event header rows, a blank row, then one row per ticket holder."""
    workbook = Workbook()
    worksheet = workbook.active
    worksheet.title = "Lista de Free Tickets"

    header_lines = [
        f"Evento: {event.get('title', '')}",
        f"Fecha: {_display_date(event.get('date', ''), '%d/%m/%Y')}",
        f"Ubicación: {event.get('location', '')}",
        f"Total de personas: {len(holders)}",
    ]
    for row, line in enumerate(header_lines, start=1):
        cell = worksheet.cell(row=row, column=1, value=line)
        cell.font = Font(bold=row == 1)
        worksheet.merge_cells(start_row=row, start_column=1, end_row=row, end_column=len(HOLDER_HEADERS))
    # row 5 stays blank

    header_row = len(header_lines) + 2
    header_fill = PatternFill(start_color="E0E0E0", end_color="E0E0E0", fill_type="solid")
    for col, title in enumerate(HOLDER_HEADERS, start=1):
        cell = worksheet.cell(row=header_row, column=col, value=title)
        cell.font = Font(bold=True)
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal="center", vertical="center")

    for row, h in enumerate(holders, start=header_row + 1):
        worksheet.cell(row=row, column=1, value=h["nombre"])
        worksheet.cell(row=row, column=2, value=h["apellido"])
        worksheet.cell(row=row, column=3, value=h["telefono"])
        worksheet.cell(row=row, column=4, value=h["email"])
        worksheet.cell(row=row, column=5, value=h["reservationCode"])
        worksheet.cell(row=row, column=6, value=_display_date(h["reservationDate"], "%d/%m/%Y %H:%M"))

    for col, width in zip("ABCDEF", (20, 20, 15, 30, 20, 20)):
        worksheet.column_dimensions[col].width = width

    output = BytesIO()
    workbook.save(output)
    output.seek(0)
    logger.info("Exported %s free ticket holders for event %s", len(holders), event.get("_id"))
    return output


def _free_reservations_query(event: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "eventId": event["_id"],
        "status": {"$ne": CANCELLED},
        "$or": [{"isFreeTicket": True}, {"paymentMethod": "free"}],
    }


def _export_free_tickets(event: Dict[str, Any]):
    docs = get_store().reservations.find(_free_reservations_query(event)).sort("reservationDate", DESCENDING)
    output = build_free_tickets_workbook(event, free_ticket_holders(docs))
    filename = secure_filename(f"free-tickets-{event.get('title', '')}-{event.get('date', '')[:10]}.xlsx")
    return send_file(output, mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=filename or "free-tickets.xlsx")


# -------------------------
# Report APIs
# -------------------------
@reports_bp.get("/events-overview")
@admin_required
def events_overview():
    page, limit = page_args(default_limit=10)
    args = request.args
    query: Dict[str, Any] = {}

    status = clean_str(args.get("status"))
    if status and status != "all":
        if status not in EVENT_STATUSES:
            raise ApiError("Estado no válido.", 400, "INVALID_STATUS", {"allowed": list(EVENT_STATUSES)})
        query["status"] = status
    search = clean_str(args.get("search"))
    if search:
        query["title"] = {"$regex": re.escape(search), "$options": "i"}

    date_range: Dict[str, str] = {}
    for key, op in (("startDate", "$gte"), ("endDate", "$lte")):
        if args.get(key):
            dt = parse_datetime(args.get(key))
            if dt is None:
                raise ApiError(f"{key} debe estar en formato ISO 8601", 400, "VALIDATION_ERROR", {"field": key})
            date_range[op] = to_iso(dt)
    if date_range:
        query["date"] = date_range

    sort_by = args.get("sortBy", "date")
    if sort_by not in SORT_FIELDS:
        raise ApiError("sortBy no válido.", 400, "VALIDATION_ERROR", {"allowed": list(SORT_FIELDS)})
    direction = DESCENDING if args.get("sortOrder") == "desc" else ASCENDING

    events_col = get_store().events
    total = events_col.count_documents(query)
    events = list(events_col.find(query).sort(sort_by, direction).skip((page - 1) * limit).limit(limit))
    by_event = _reservations_by_event([e["_id"] for e in events])

    rows = []
    for e in events:
        ft = e.get("freeTickets") or {}
        rows.append({
            "id": str(e["_id"]),
            "title": e.get("title", ""),
            "date": e.get("date", ""),
            "location": e.get("location", ""),
            "status": e.get("status", ""),
            "basePrice": float(e.get("basePrice", 0.0) or 0.0),
            "freeTickets": {"enabled": bool(ft.get("enabled")), "quantity": int(ft.get("quantity", 0))},
            **event_totals(e, by_event.get(e["_id"], [])),
        })

    return ok({
        "events": rows,
        "totalPages": total_pages(total, limit),
        "currentPage": page,
        "total": total,
        "filters": {
            "status": status or "all",
            "search": search,
            "startDate": args.get("startDate", ""),
            "endDate": args.get("endDate", ""),
            "sortBy": sort_by,
            "sortOrder": "desc" if direction == DESCENDING else "asc",
        },
    })


@reports_bp.get("/events/<event_id>/free-tickets")
@admin_required
def free_tickets_report(event_id: str):
    event = load_event(event_id)
    if request.args.get("export") == "excel":
        return _export_free_tickets(event)

    page, limit = page_args(default_limit=20)
    docs = list(get_store().reservations.find(_free_reservations_query(event)).sort("reservationDate", DESCENDING))
    # Pages count holders, not reservations.
    holders = free_ticket_holders(docs)
    total = len(holders)
    return ok({
        "event": {
            "id": str(event["_id"]),
            "title": event.get("title", ""),
            "date": event.get("date", ""),
            "location": event.get("location", ""),
        },
        "freeTicketHolders": holders[(page - 1) * limit:page * limit],
        "totalPages": total_pages(total, limit),
        "currentPage": page,
        "total": total,
        "totalReservations": len(docs),
        "hasExport": True,
    })


@reports_bp.get("/events/<event_id>/free-tickets/export")
@admin_required
def export_free_tickets(event_id: str):
    return _export_free_tickets(load_event(event_id))


@reports_bp.get("/events/<event_id>/all-reservations")
@admin_required
def all_reservations(event_id: str):
    event = load_event(event_id)
    query: Dict[str, Any] = {"eventId": event["_id"]}
    payment_status = clean_str(request.args.get("paymentStatus"))
    if payment_status and payment_status != "all":
        if payment_status not in PAYMENT_STATUSES:
            raise ApiError("paymentStatus no válido.", 400, "VALIDATION_ERROR", {"allowed": list(PAYMENT_STATUSES)})
        query["paymentStatus"] = payment_status

    docs = list(get_store().reservations.find(query).sort("reservationDate", DESCENDING))
    return ok({
        "event": {"id": str(event["_id"]), "title": event.get("title", ""), "date": event.get("date", "")},
        "reservations": [public_reservation(r) for r in docs],
        "totalReservations": len(docs),
        "totalTickets": sum(int(r.get("totalTickets", 0)) for r in docs if r.get("status") != CANCELLED),
    })


def occupancy(event: Dict[str, Any]) -> Dict[str, Optional[float]]:
    """Sold over capacity; capacity is unbounded while base-price or unlimited free sales exist."""
    ft = event.get("freeTickets") or {}
    stages = event.get("preSaleStages") or []
    sold = sum(int(s.get("ticketsSold", 0)) for s in stages) + int(ft.get("ticketsClaimed", 0))
    unbounded = float(event.get("basePrice", 0) or 0) > 0 or (ft.get("enabled") and int(ft.get("quantity", 0)) == 0)
    capacity = sum(int(s.get("ticketLimit", 0)) for s in stages)
    if ft.get("enabled"):
        capacity += int(ft.get("quantity", 0))
    if unbounded or capacity == 0:
        return {"sold": sold, "capacity": None, "rate": None}
    return {"sold": sold, "capacity": capacity, "rate": round(sold / capacity * 100, 2)}


@reports_bp.get("/events/<event_id>/complete-stats")
@admin_required
def complete_stats(event_id: str):
    event = load_event(event_id)
    docs = list(get_store().reservations.find({"eventId": event["_id"]}))
    active = [r for r in docs if r.get("status") != CANCELLED]

    by_status: Dict[str, int] = {s: 0 for s in PAYMENT_STATUSES}
    for r in active:
        by_status[r.get("paymentStatus", "pending")] = by_status.get(r.get("paymentStatus", "pending"), 0) + 1

    stage_revenue: Dict[str, float] = {}
    for r in active:
        if r.get("preSaleStageId") and r.get("paymentStatus") == PAYMENT_APPROVED:
            stage_revenue[r["preSaleStageId"]] = stage_revenue.get(r["preSaleStageId"], 0.0) + float(
                r.get("totalAmount", 0.0) or 0.0
            )

    ft = event.get("freeTickets") or {}
    totals = event_totals(event, docs)
    return ok({
        "event": {
            "id": str(event["_id"]),
            "title": event.get("title", ""),
            "date": event.get("date", ""),
            "status": event.get("status", ""),
        },
        "totals": {
            "reservations": len(active),
            "cancelledReservations": len(docs) - len(active),
            "tickets": totals["ticketsReserved"],
            "freeTickets": totals["freeTicketsReserved"],
            "paidTickets": totals["paidTickets"],
            "revenue": totals["revenue"],
        },
        "byPaymentStatus": by_status,
        "stages": [
            {
                "stageId": s.get("stageId"),
                "name": s.get("name", ""),
                "price": float(s.get("price", 0.0)),
                "ticketsSold": int(s.get("ticketsSold", 0)),
                "ticketLimit": int(s.get("ticketLimit", 0)),
                "available": stage_remaining(s),
                "revenue": round(stage_revenue.get(s.get("stageId"), 0.0), 2),
            }
            for s in event.get("preSaleStages") or []
        ],
        "freeTickets": {
            "enabled": bool(ft.get("enabled")),
            "quantity": int(ft.get("quantity", 0)),
            "claimed": int(ft.get("ticketsClaimed", 0)),
            "available": totals["freeTicketsAvailable"],
        },
        "occupancy": occupancy(event),
    })
