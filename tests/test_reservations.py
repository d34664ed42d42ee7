import re

import pytest

import bardo.reservations
from bardo.reservations import generate_reservation_code
from helpers import holder, stage

FREE_POOL = {"enabled": True, "quantity": 10, "ticketsClaimed": 0}


def _claimed(store, event_id):
    return store.events.find_one({"_id": event_id})["freeTickets"]["ticketsClaimed"]


def _reserve(client, event, **body):
    payload = {"eventId": str(event["_id"]), "tickets": [holder()]}
    payload.update(body)
    return client.post("/api/reservations", json=payload)


def test_free_reservation_counts_the_pool(client, store, make_event):
    e = make_event(freeTickets=dict(FREE_POOL))

    resp = _reserve(client, e, tickets=[holder(), holder("Luis", "Pérez", "luis@example.com")], isFreeTicket=True)

    assert resp.status_code == 201
    r = resp.get_json()["reservation"]
    assert r["totalTickets"] == 2
    assert r["isFreeTicket"] is True
    assert r["paymentStatus"] == "approved"
    assert r["paymentMethod"] == "free"
    assert r["isPaid"] is True
    assert r["inventoryStatus"] == "confirmed"
    assert r["source"] == "bardo_web_app_direct"
    assert r["orderId"].startswith(f"DIRECT_{e['_id']}_")
    assert _claimed(store, e["_id"]) == 2


def test_open_entry_reservation_needs_no_counter(client, make_event):
    e = make_event()

    resp = _reserve(client, e, tickets=2, customerInfo={"name": "Ana", "surname": "García", "email": "ANA@example.com"})

    assert resp.status_code == 201
    r = resp.get_json()["reservation"]
    assert r["inventoryStatus"] == "none"
    assert [t["nombre"] for t in r["tickets"]] == ["Ana", "Ana"]
    assert r["tickets"][0]["email"] == "ana@example.com"


def test_zero_price_stage_counts_the_stage(client, store, make_event):
    e = make_event(preSaleStages=[stage("Invitados", price=0.0, limit=3)])

    resp = _reserve(client, e, preSaleStageId=e["preSaleStages"][0]["stageId"])

    assert resp.status_code == 201
    assert resp.get_json()["reservation"]["preSaleStageName"] == "Invitados"
    assert store.events.find_one({"_id": e["_id"]})["preSaleStages"][0]["ticketsSold"] == 1


def test_priced_tickets_require_payment(client, store, make_event):
    e = make_event(preSaleStages=[stage(price=300.0)])

    resp = _reserve(client, e, preSaleStageIndex=0)

    assert resp.status_code == 400
    assert resp.get_json()["code"] == "PAYMENT_REQUIRED"
    assert store.events.find_one({"_id": e["_id"]})["preSaleStages"][0]["ticketsSold"] == 0
    assert store.reservations.count_documents({}) == 0


def test_ticket_holder_errors_are_reported_together(client, make_event):
    e = make_event()

    resp = _reserve(client, e, tickets=[{"nombre": ""}, {"nombre": "Ana", "apellido": "García", "email": "nope"}])

    assert resp.status_code == 400
    fields = [err["field"] for err in resp.get_json()["details"]["errors"]]
    assert fields == ["tickets[0].nombre", "tickets[0].apellido", "tickets[1].email"]


def test_too_many_tickets(client, make_event):
    e = make_event()

    resp = _reserve(client, e, tickets=[holder()] * 5)

    assert resp.status_code == 400
    assert resp.get_json()["code"] == "VALIDATION_ERROR"


def test_sold_out_free_pool_is_refused(client, make_event):
    e = make_event(freeTickets={"enabled": True, "quantity": 2, "ticketsClaimed": 1})

    resp = _reserve(client, e, tickets=[holder(), holder()], isFreeTicket=True)

    assert resp.status_code == 400
    body = resp.get_json()
    assert body["code"] == "FREE_TICKETS_SOLD_OUT"
    assert body["details"]["available"] == 1


def test_reservation_code_format(monkeypatch):
    monkeypatch.setattr(bardo.reservations.time, "time", lambda: 1_700_000_000.123)

    a = generate_reservation_code()
    b = generate_reservation_code()

    assert re.fullmatch(r"BARDO[0-9A-Z]{12}", a)
    assert a[:13] == b[:13]
    assert a != b


def test_code_collision_is_surfaced_and_rolled_back(client, store, make_event, monkeypatch):
    e = make_event(freeTickets=dict(FREE_POOL))
    monkeypatch.setattr(bardo.reservations, "generate_reservation_code", lambda prefix="BARDO": "BARDOFIXED")

    assert _reserve(client, e, isFreeTicket=True).status_code == 201
    resp = _reserve(client, e, isFreeTicket=True)

    assert resp.status_code == 500
    body = resp.get_json()
    assert body["code"] == "RESERVATION_CODE_CONFLICT"
    assert body["details"] == {"retryable": True}
    assert _claimed(store, e["_id"]) == 1
    assert store.reservations.count_documents({}) == 1


def test_lookup_by_code_and_order(client, make_event):
    e = make_event()
    r = _reserve(client, e).get_json()["reservation"]

    by_code = client.get(f"/api/reservations/{r['reservationCode'].lower()}")
    assert by_code.status_code == 200
    assert by_code.get_json()["reservation"]["id"] == r["id"]

    by_order = client.get(f"/api/reservations/order/{r['orderId']}").get_json()["reservation"]
    assert by_order["event"]["title"] == e["title"]

    assert client.get("/api/reservations/NOPE").status_code == 404


def test_cancel_releases_free_tickets_once(client, store, make_event):
    e = make_event(freeTickets=dict(FREE_POOL))
    code = _reserve(client, e, tickets=[holder()] * 3, isFreeTicket=True).get_json()["reservation"]["reservationCode"]
    assert _claimed(store, e["_id"]) == 3

    resp = client.delete(f"/api/reservations/{code}")

    assert resp.status_code == 200
    r = resp.get_json()["reservation"]
    assert r["status"] == "cancelled"
    assert r["inventoryStatus"] == "released"
    assert _claimed(store, e["_id"]) == 0

    again = client.delete(f"/api/reservations/{code}")
    assert again.status_code == 409
    assert again.get_json()["code"] == "RESERVATION_ALREADY_CANCELLED"
    assert _claimed(store, e["_id"]) == 0


def test_contact_update_applies_to_every_ticket(client, make_event):
    e = make_event()
    r = _reserve(client, e, tickets=[holder(), holder("Luis", "Pérez", "")]).get_json()["reservation"]
    url = f"/api/reservations/order/{r['orderId']}/contact"

    resp = client.patch(url, json={"email": "Nuevo@Example.com", "phone": "1144443333"})

    assert resp.status_code == 200
    tickets = resp.get_json()["reservation"]["tickets"]
    assert {t["email"] for t in tickets} == {"nuevo@example.com"}
    assert {t["telefono"] for t in tickets} == {"1144443333"}
    assert [t["nombre"] for t in tickets] == ["Ana", "Luis"]

    assert client.patch(url, json={"email": "bad"}).status_code == 400
    assert client.patch(url, json={}).status_code == 400


def test_user_lookup_requires_a_criterion(client, make_event):
    e = make_event()
    _reserve(client, e, metadata={"device_id": "dev-1"})
    _reserve(client, e, tickets=[holder(email="otra@example.com")])

    resp = client.get("/api/reservations/user")
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "MISSING_SEARCH_CRITERIA"

    by_device = client.get("/api/reservations/user?deviceId=dev-1").get_json()
    assert by_device["total"] == 1
    assert by_device["reservations"][0]["event"]["title"] == e["title"]

    by_email = client.get("/api/reservations/user?email=OTRA@example.com").get_json()
    assert by_email["total"] == 1


@pytest.mark.parametrize("path", ["", "/stats/overview"])
def test_admin_listings_require_login(client, path):
    assert client.get(f"/api/reservations{path}").status_code == 401


def test_admin_stats_skip_cancelled(admin_client, client, make_event):
    e = make_event()
    _reserve(client, e, tickets=[holder()] * 2)
    code = _reserve(client, e).get_json()["reservation"]["reservationCode"]
    client.delete(f"/api/reservations/{code}")

    stats = admin_client.get("/api/reservations/stats/overview").get_json()
    assert stats["totalReservations"] == 1
    assert stats["totalTickets"] == 2
    assert stats["reservationsByEvent"][0]["eventId"] == str(e["_id"])

    listing = admin_client.get(f"/api/reservations/event/{e['_id']}").get_json()
    assert listing["totalReservations"] == 2
    assert listing["totalTickets"] == 2
