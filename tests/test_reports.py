from io import BytesIO

import pytest
from openpyxl import load_workbook

from bardo.reports import occupancy
from bardo.utils import iso_now
from helpers import holder, stage


@pytest.fixture
def free_event(client, make_event):
    e = make_event(title="Fiesta Gratis", freeTickets={"enabled": True, "quantity": 10, "ticketsClaimed": 0})
    tickets = [holder(), {"nombre": "Luis", "apellido": "Pérez", "telefono": "", "email": ""}]
    resp = client.post("/api/reservations", json={"eventId": str(e["_id"]), "tickets": tickets, "isFreeTicket": True})
    assert resp.status_code == 201
    return e


def _paid_reservation(store, event, stage_id, amount=200.0, tickets=2, status="approved"):
    store.reservations.insert_one({
        "eventId": event["_id"],
        "eventTitle": event["title"],
        "tickets": [holder()] * tickets,
        "totalTickets": tickets,
        "status": "confirmed",
        "paymentStatus": status,
        "paymentMethod": "mercadopago",
        "isFreeTicket": False,
        "preSaleStageId": stage_id,
        "totalAmount": amount,
        "orderId": f"ORDER-{stage_id}-{status}",
        "reservationCode": f"BARDOTEST{status.upper()}",
        "reservationDate": iso_now(),
    })


def test_free_ticket_holders_listing(admin_client, free_event):
    resp = admin_client.get(f"/api/reports/events/{free_event['_id']}/free-tickets")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["total"] == 2
    assert body["totalReservations"] == 1
    luis = [h for h in body["freeTicketHolders"] if h["nombre"] == "Luis"][0]
    assert luis["email"] == "No proporcionado"
    assert luis["telefono"] == "No proporcionado"


def test_free_ticket_holders_are_paged_by_holder(admin_client, free_event):
    url = f"/api/reports/events/{free_event['_id']}/free-tickets"

    first = admin_client.get(f"{url}?limit=1").get_json()
    second = admin_client.get(f"{url}?limit=1&page=2").get_json()

    assert first["totalPages"] == 2
    assert len(first["freeTicketHolders"]) == 1
    assert len(second["freeTicketHolders"]) == 1
    names = {first["freeTicketHolders"][0]["nombre"], second["freeTicketHolders"][0]["nombre"]}
    assert names == {"Ana", "Luis"}


def test_free_ticket_excel_layout(admin_client, free_event):
    resp = admin_client.get(f"/api/reports/events/{free_event['_id']}/free-tickets?export=excel")

    assert resp.status_code == 200
    assert resp.mimetype == "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    assert "attachment" in resp.headers["Content-Disposition"]
    assert ".xlsx" in resp.headers["Content-Disposition"]

    ws = load_workbook(BytesIO(resp.data)).active
    assert ws.title == "Lista de Free Tickets"
    assert ws["A1"].value == "Evento: Fiesta Gratis"
    assert ws["A2"].value.startswith("Fecha: ")
    assert ws["A3"].value == "Ubicación: Club Central, Buenos Aires"
    assert ws["A4"].value == "Total de personas: 2"
    assert {str(r) for r in ws.merged_cells.ranges} >= {"A1:F1", "A2:F2", "A3:F3", "A4:F4"}
    assert ws["A5"].value is None
    assert [c.value for c in ws[6]] == ["Nombre", "Apellido", "Teléfono", "Email", "Código Reserva", "Fecha Reserva"]
    names = sorted(ws.cell(row=r, column=1).value for r in (7, 8))
    assert names == ["Ana", "Luis"]
    assert ws.cell(row=9, column=1).value is None


def test_export_route_matches_query_flag(admin_client, free_event):
    resp = admin_client.get(f"/api/reports/events/{free_event['_id']}/free-tickets/export")

    assert resp.status_code == 200
    ws = load_workbook(BytesIO(resp.data)).active
    assert ws["A4"].value == "Total de personas: 2"


def test_reports_require_admin(client, free_event):
    assert client.get(f"/api/reports/events/{free_event['_id']}/free-tickets").status_code == 401
    assert client.get("/api/reports/events-overview").status_code == 401


def test_complete_stats(admin_client, store, make_event, client):
    e = make_event(
        preSaleStages=[stage("Early", 100.0, limit=10, sold=4)],
        freeTickets={"enabled": True, "quantity": 10, "ticketsClaimed": 0},
    )
    sid = e["preSaleStages"][0]["stageId"]
    client.post("/api/reservations", json={"eventId": str(e["_id"]), "tickets": [holder()] * 2, "isFreeTicket": True})
    _paid_reservation(store, e, sid)
    _paid_reservation(store, e, sid, amount=100.0, tickets=1, status="pending")

    body = admin_client.get(f"/api/reports/events/{e['_id']}/complete-stats").get_json()

    assert body["totals"] == {
        "reservations": 3,
        "cancelledReservations": 0,
        "tickets": 5,
        "freeTickets": 2,
        "paidTickets": 2,
        "revenue": 200.0,
    }
    assert body["byPaymentStatus"]["approved"] == 2
    assert body["byPaymentStatus"]["pending"] == 1
    assert body["stages"][0]["revenue"] == 200.0
    assert body["freeTickets"]["claimed"] == 2
    assert body["freeTickets"]["available"] == 8
    assert body["occupancy"] == {"sold": 6, "capacity": 20, "rate": 30.0}


def test_occupancy_is_unbounded_with_base_price_or_unlimited_free():
    assert occupancy({"basePrice": 100.0, "preSaleStages": [stage(limit=10, sold=5)]})["rate"] is None
    unlimited = {"basePrice": 0, "freeTickets": {"enabled": True, "quantity": 0, "ticketsClaimed": 7}}
    assert occupancy(unlimited) == {"sold": 7, "capacity": None, "rate": None}


def test_events_overview(admin_client, store, make_event):
    a = make_event(title="Alfa Party", preSaleStages=[stage(limit=10)])
    make_event(title="Zeta Party", status="cancelled")
    _paid_reservation(store, a, a["preSaleStages"][0]["stageId"], amount=300.0, tickets=3)

    body = admin_client.get("/api/reports/events-overview?sortBy=title&sortOrder=desc").get_json()

    assert [e["title"] for e in body["events"]] == ["Zeta Party", "Alfa Party"]
    alfa = body["events"][1]
    assert alfa["paidTickets"] == 3
    assert alfa["revenue"] == 300.0
    assert body["filters"]["sortOrder"] == "desc"

    only_cancelled = admin_client.get("/api/reports/events-overview?status=cancelled").get_json()
    assert [e["title"] for e in only_cancelled["events"]] == ["Zeta Party"]

    assert admin_client.get("/api/reports/events-overview?sortBy=password").status_code == 400


def test_all_reservations_filter(admin_client, store, make_event):
    e = make_event(preSaleStages=[stage()])
    sid = e["preSaleStages"][0]["stageId"]
    _paid_reservation(store, e, sid)
    _paid_reservation(store, e, sid, status="pending", tickets=1)

    url = f"/api/reports/events/{e['_id']}/all-reservations"
    assert admin_client.get(url).get_json()["totalTickets"] == 3
    pending = admin_client.get(f"{url}?paymentStatus=pending").get_json()
    assert pending["totalReservations"] == 1
    assert admin_client.get(f"{url}?paymentStatus=bogus").status_code == 400
