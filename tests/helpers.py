import typing as t
import uuid
from datetime import timedelta

from bardo.mercadopago import GatewayError
from bardo.utils import now_utc, to_iso

ADMIN_EMAIL = "admin@bardo.test"
ADMIN_PASSWORD = "Secreto123!"


class FakeGateway:
    """Stands in for the MercadoPago client: records preferences, serves canned payments."""

    def __init__(self) -> None:
        self.preferences: t.List[t.Dict[str, t.Any]] = []
        self.payments: t.Dict[str, t.Dict[str, t.Any]] = {}
        self.fail_with: t.Optional[GatewayError] = None
        self.lookups = 0

    def create_preference(self, body, idempotency_key=None):
        if self.fail_with:
            raise self.fail_with
        self.preferences.append({"body": body, "idempotency_key": idempotency_key})
        pref_id = f"pref-{len(self.preferences)}"
        return {
            "id": pref_id,
            "init_point": f"https://mp.test/checkout/{pref_id}",
            "sandbox_init_point": f"https://sandbox.mp.test/checkout/{pref_id}",
        }

    def get_payment(self, payment_id):
        self.lookups += 1
        if self.fail_with:
            raise self.fail_with
        return self.payments[str(payment_id)]

    def search_payments(self, external_reference):
        if self.fail_with:
            raise self.fail_with
        return [p for p in self.payments.values() if p.get("external_reference") == external_reference]

    def add_payment(self, payment_id, status, order_id, amount=0.0, metadata=None, payer=None, detail=None):
        self.payments[str(payment_id)] = {
            "id": payment_id,
            "status": status,
            "status_detail": detail or status,
            "external_reference": order_id,
            "transaction_amount": amount,
            "metadata": metadata or {},
            "payer": payer or {},
        }


def future(days: float = 30) -> str:
    return to_iso(now_utc() + timedelta(days=days))


def past(days: float = 1) -> str:
    return to_iso(now_utc() - timedelta(days=days))


def stage(name: str = "Preventa 1", price: float = 100.0, limit: int = 10, sold: int = 0,
          end: t.Optional[str] = None, active: bool = True) -> t.Dict[str, t.Any]:
    return {
        "stageId": uuid.uuid4().hex,
        "name": name,
        "price": price,
        "ticketLimit": limit,
        "ticketsSold": sold,
        "endDate": end or future(10),
        "isActive": active,
    }


def holder(nombre: str = "Ana", apellido: str = "García", email: str = "ana@example.com") -> t.Dict[str, str]:
    return {"nombre": nombre, "apellido": apellido, "telefono": "1155550000", "email": email}
