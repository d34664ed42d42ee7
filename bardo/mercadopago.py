from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional

import requests
from flask import current_app

from .errors import ApiError

logger = logging.getLogger(__name__)


# -------------------------
# Gateway errors
# -------------------------
class GatewayError(ApiError):
    """The payment gateway could not complete a call."""


class GatewayAuthError(GatewayError):
    def __init__(self, detail: str = "Token de acceso inválido o expirado"):
        super().__init__("Error de autenticación con MercadoPago. Verifica el access token.", 502,
                         "MP_AUTH_ERROR", {"detail": detail})


class GatewayHtmlResponse(GatewayError):
    def __init__(self):
        super().__init__("Error de comunicación con MercadoPago. El servidor respondió con HTML.", 502,
                         "MP_HTML_RESPONSE", {"detail": "Posible problema de autenticación o URL incorrecta"})


class GatewayValidationError(GatewayError):
    def __init__(self, detail: Any):
        super().__init__("Error en los datos enviados a MercadoPago", 400, "MP_VALIDATION_ERROR",
                         {"detail": detail})


class GatewayNotFound(GatewayError):
    def __init__(self, resource: str):
        super().__init__("Pago no encontrado en MercadoPago", 404, "PAYMENT_NOT_FOUND", {"resource": resource})


class GatewayUnavailable(GatewayError):
    def __init__(self, detail: str):
        super().__init__("MercadoPago no está disponible. Intente nuevamente.", 502, "MP_UNAVAILABLE",
                         {"detail": detail})


class MercadoPagoClient:
    """Thin REST client for the preference and payment endpoints."""

    def __init__(self, access_token: str, base_url: str = "https://api.mercadopago.com", timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "MercadoPagoClient":
        return cls(
            config.get("MERCADOPAGO_ACCESS_TOKEN", ""),
            config.get("MERCADOPAGO_API_URL", "https://api.mercadopago.com"),
            float(config.get("MERCADOPAGO_TIMEOUT", 10)),
        )

    def _request(self, method: str, endpoint: str, json: Optional[Dict[str, Any]] = None,
                 params: Optional[Dict[str, Any]] = None, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        if not self.access_token:
            raise GatewayAuthError("MERCADOPAGO_ACCESS_TOKEN no está configurado")
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key

        start = time.time()
        try:
            resp = self.session.request(method, url, headers=headers, json=json, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            logger.error("MercadoPago %s %s timed out after %ss", method, endpoint, self.timeout)
            raise GatewayUnavailable(f"Timeout after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            logger.error("MercadoPago %s %s failed: %s", method, endpoint, e)
            raise GatewayUnavailable(str(e))

        duration_ms = int((time.time() - start) * 1000)
        logger.info("MercadoPago %s %s -> %s in %sms", method, endpoint, resp.status_code, duration_ms)

        if resp.status_code in (401, 403):
            raise GatewayAuthError()
        content_type = resp.headers.get("Content-Type", "")
        if "html" in content_type or resp.text.lstrip().startswith("<"):
            raise GatewayHtmlResponse()
        try:
            data = resp.json()
        except ValueError:
            raise GatewayHtmlResponse()

        if resp.status_code == 404:
            raise GatewayNotFound(endpoint)
        if 400 <= resp.status_code < 500:
            logger.warning("MercadoPago rejected %s %s: %s", method, endpoint, data)
            raise GatewayValidationError(data.get("message") if isinstance(data, dict) else data)
        if resp.status_code >= 500:
            raise GatewayUnavailable(f"HTTP {resp.status_code}")
        return data

    def create_preference(self, body: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", "checkout/preferences", json=body, idempotency_key=idempotency_key)

    def get_payment(self, payment_id: Any) -> Dict[str, Any]:
        return self._request("GET", f"v1/payments/{payment_id}")

    def search_payments(self, external_reference: str) -> List[Dict[str, Any]]:
        data = self._request("GET", "v1/payments/search", params={"external_reference": external_reference})
        return list(data.get("results") or [])


def get_gateway():
    return current_app.extensions["bardo.gateway"]
