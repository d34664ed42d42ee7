from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, Response, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


# -------------------------
# API Error Handling
# -------------------------
@dataclass
class ApiError(Exception):
    message: str
    status: int = 400
    code: str = "BAD_REQUEST"
    details: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        super().__init__(self.message)


class FieldErrors:
    """Collects validation problems so a request reports all of them at once."""

    def __init__(self) -> None:
        self.errors: List[Dict[str, str]] = []

    def add(self, field: str, message: str) -> None:
        self.errors.append({"field": field, "message": message})

    def __bool__(self) -> bool:
        return bool(self.errors)

    def raise_if_any(self, message: str = "Error de validación") -> None:
        if self.errors:
            raise ApiError(message, 400, "VALIDATION_ERROR", {"errors": self.errors})


def ok(payload: Dict[str, Any] | None = None, status: int = 200) -> Tuple[Response, int]:
    data = {"ok": True}
    if payload:
        data.update(payload)
    return jsonify(data), status


def fail(err: ApiError) -> Tuple[Response, int]:
    data = {"ok": False, "error": err.message, "code": err.code}
    if err.details:
        data["details"] = err.details
    return jsonify(data), err.status


def require_json() -> Dict[str, Any]:
    if not request.is_json:
        raise ApiError("La solicitud debe ser JSON.", 415, "UNSUPPORTED_MEDIA_TYPE")
    data = request.get_json(silent=True)
    if data is None:
        raise ApiError("El cuerpo JSON no es válido.", 400, "INVALID_JSON")
    if not isinstance(data, dict):
        raise ApiError("El cuerpo JSON debe ser un objeto.", 400, "INVALID_JSON")
    return data


def is_development() -> bool:
    return current_app.config.get("ENVIRONMENT", "production") == "development"


# -------------------------
# Global Error Handlers
# -------------------------
def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(err: ApiError):
        return fail(err)

    @app.errorhandler(404)
    def handle_404(_):
        return jsonify({"ok": False, "error": "Recurso no encontrado.", "code": "NOT_FOUND"}), 404

    @app.errorhandler(405)
    def handle_405(_):
        return jsonify({"ok": False, "error": "Método no permitido.", "code": "METHOD_NOT_ALLOWED"}), 405

    @app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        code = (e.name or "error").upper().replace(" ", "_")
        return jsonify({"ok": False, "error": e.description or e.name, "code": code}), e.code or 500

    @app.errorhandler(Exception)
    def handle_exception(e: Exception):
        rid = request.environ.get("request_id", "")
        logger.exception("Unhandled error (request_id=%s): %s", rid, e)
        body: Dict[str, Any] = {
            "ok": False,
            "error": "Error interno del servidor.",
            "code": "INTERNAL_ERROR",
            "request_id": rid,
        }
        if is_development():
            body["details"] = {"detail": str(e), "type": type(e).__name__}
        return jsonify(body), 500
