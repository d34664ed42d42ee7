from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import Blueprint, jsonify
from flask_login import LoginManager, UserMixin, current_user, login_required, login_user, logout_user
from pymongo.errors import DuplicateKeyError
from werkzeug.security import check_password_hash, generate_password_hash

from .db import Store, get_store
from .errors import ApiError, ok, require_json
from .utils import EMAIL_RE, iso_now, to_oid

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")

login_manager = LoginManager()
login_manager.session_protection = "strong"


# -------------------------
# Auth (Flask-Login)
# -------------------------
class User(UserMixin):
    def __init__(self, doc: Dict[str, Any]):
        self.doc = doc
        self.id = str(doc["_id"])
        self.email = doc.get("email", "")
        self.role = doc.get("role", ROLE_ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@login_manager.user_loader
def load_user(user_id: str) -> Optional[User]:
    try:
        doc = get_store().users.find_one({"_id": to_oid(user_id)})
    except ApiError:
        return None
    return User(doc) if doc else None


@login_manager.unauthorized_handler
def unauthorized():
    # JSON only
    return jsonify({"ok": False, "error": "Se requiere autenticación.", "code": "UNAUTHORIZED"}), 401


def require_roles(*roles: str):
    def decorator(fn):
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return unauthorized()
            if current_user.role not in roles:
                return jsonify({"ok": False, "error": "Acceso denegado.", "code": "FORBIDDEN"}), 403
            return fn(*args, **kwargs)

        # keep function identity (Flask uses __name__)
        wrapped.__name__ = fn.__name__
        wrapped.__doc__ = fn.__doc__
        return wrapped

    return decorator


admin_required = require_roles(ROLE_ADMIN)


def public_user(u: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": str(u["_id"]), "email": u.get("email", ""), "role": u.get("role", ROLE_ADMIN)}


# -------------------------
# Admin seed
# -------------------------
def create_user(store: Store, email: str, password: str, role: str = ROLE_ADMIN) -> Dict[str, Any]:
    email = (email or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ApiError("Se requiere un email válido.", 400, "VALIDATION_ERROR", {"field": "email"})
    if len(password or "") < 6:
        raise ApiError("La contraseña debe tener al menos 6 caracteres.", 400, "VALIDATION_ERROR", {"field": "password"})
    doc = {
        "email": email,
        "password_hash": generate_password_hash(password),
        "role": role,
        "created_at": iso_now(),
    }
    try:
        res = store.users.insert_one(doc)
    except DuplicateKeyError:
        raise ApiError("El email ya está registrado.", 409, "CONFLICT", {"field": "email"})
    doc["_id"] = res.inserted_id
    return doc


def ensure_default_admin(store: Store, email: str, password: str) -> None:
    try:
        if store.users.find_one({"email": email.strip().lower()}):
            return
        create_user(store, email, password, ROLE_ADMIN)
        logger.info("Default admin created: %s", email)
    except Exception:
        logger.exception("Failed to ensure default admin user")


# -------------------------
# Auth APIs
# -------------------------
@auth_bp.post("/login")
def login():
    data = require_json()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    u = get_store().users.find_one({"email": email})
    if not u or not check_password_hash(u.get("password_hash", ""), password):
        raise ApiError("Credenciales inválidas.", 401, "UNAUTHORIZED")

    login_user(User(u))
    return ok({"user": public_user(u)})


@auth_bp.post("/logout")
@login_required
def logout():
    logout_user()
    return ok({})


@auth_bp.get("/me")
def me():
    if not current_user.is_authenticated:
        return ok({"user": None})
    # Load from db to avoid stale role/email in session
    u = get_store().users.find_one({"_id": to_oid(current_user.id)})
    return ok({"user": public_user(u) if u else None})
