import hashlib
import hmac
import json
import logging
import math
import os
import re
import secrets
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

import bcrypt
import requests
import resend
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, redirect, render_template, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    decode_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
    set_access_cookies,
    unset_access_cookies,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_pymongo import PyMongo
from jwt.exceptions import PyJWTError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

load_dotenv()

STORE_NAME = "MC Electrobike"
API_VERSION = "1.0.0"
CUSTOMER_COOKIE_NAME = "cust_token"
CUSTOMER_SESSION_DAYS = 7
CUSTOMER_VERIFY_TOKEN_HOURS = 24
ADMIN_SESSION_HOURS = 2
ADMIN_CONFIRM_TOKEN_HOURS = 1
ORDER_CURRENCY = "BRL"

access_logger = logging.getLogger("mceletrobike.access")


def env_flag(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


class SlidingWindowRateLimiter:
    """In-memory rate limiter with a sliding window per client key."""

    def __init__(self):
        self._requests: Dict[str, List[float]] = {}

    def is_allowed(self, key: str, limit: int, window_seconds: int) -> bool:
        now = time.time()
        cutoff = now - window_seconds
        stale_keys = [
            other
            for other, stamps in self._requests.items()
            if not stamps or stamps[-1] <= cutoff
        ]
        for stale_key in stale_keys:
            del self._requests[stale_key]

        timestamps = [ts for ts in self._requests.get(key, []) if ts > cutoff]
        self._requests[key] = timestamps

        if len(timestamps) >= limit:
            return False

        timestamps.append(now)
        return True

    def get_retry_after(self, key: str, window_seconds: int) -> Optional[int]:
        timestamps = self._requests.get(key)
        if not timestamps:
            return None
        retry_after = int(timestamps[0] + window_seconds - time.time())
        return max(1, retry_after)


def create_app(test_config: Optional[Dict] = None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Honor proxy headers so the rate limiter and access log see the real client.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["MONGO_URI"] = (
        os.getenv("MONGODB_URI")
        or os.getenv("MONGO_URI")
        or "mongodb://localhost:27017/mceletrobike"
    )
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET", "change-me-in-production")
    app.config["FRONTEND_URL"] = os.getenv("FRONTEND_URL", "http://localhost:5173")
    app.config["BACKEND_URL"] = os.getenv("BACKEND_URL", "http://localhost:4000")
    app.config["MP_ACCESS_TOKEN"] = (os.getenv("MP_ACCESS_TOKEN") or "").strip()
    app.config["MP_WEBHOOK_SECRET"] = (os.getenv("MP_WEBHOOK_SECRET") or "").strip()
    app.config["MP_API_BASE_URL"] = os.getenv(
        "MP_API_BASE_URL", "https://api.mercadopago.com"
    )
    app.config["MP_TIMEOUT_SECONDS"] = env_int("MP_TIMEOUT_SECONDS", 10)
    app.config["EMAIL_FROM"] = (
        os.getenv("EMAIL_FROM") or "no-reply@mceletrobike.com.br"
    ).strip()
    app.config["EMAIL_API_KEY"] = (
        os.getenv("EMAIL_API_KEY") or os.getenv("RESEND_API_KEY") or ""
    ).strip()
    app.config["CORS_ALLOWED_ORIGINS"] = os.getenv("CORS_ALLOWED_ORIGINS", "")
    app.config["COOKIE_SECURE"] = env_flag("COOKIE_SECURE", True)
    app.config["AUTH_RATE_LIMIT"] = env_int("AUTH_RATE_LIMIT", 20)
    app.config["BCRYPT_ROUNDS"] = env_int("BCRYPT_ROUNDS", 10)
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").upper()
    app.config["ACCESS_LOG_FILE"] = os.getenv("ACCESS_LOG_FILE", "")
    app.config["ENVIRONMENT"] = os.getenv("APP_ENV", "development")
    app.config["MAX_CONTENT_LENGTH"] = env_int("MAX_REQUEST_SIZE_MB", 1) * 1024 * 1024

    if test_config:
        app.config.update(test_config)

    app.config["JWT_TOKEN_LOCATION"] = ["headers", "cookies"]
    app.config["JWT_ACCESS_COOKIE_NAME"] = CUSTOMER_COOKIE_NAME
    app.config["JWT_ACCESS_COOKIE_PATH"] = "/"
    app.config["JWT_COOKIE_SECURE"] = app.config["COOKIE_SECURE"]
    app.config["JWT_COOKIE_SAMESITE"] = "None"
    app.config["JWT_COOKIE_CSRF_PROTECT"] = False
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=ADMIN_SESSION_HOURS)

    app.logger.setLevel(app.config["LOG_LEVEL"])
    access_logger.setLevel(logging.INFO)
    if not access_logger.handlers:
        access_logger.addHandler(logging.StreamHandler())
    access_log_file = app.config["ACCESS_LOG_FILE"]
    if access_log_file:
        log_directory = os.path.dirname(os.path.abspath(access_log_file))
        os.makedirs(log_directory, exist_ok=True)
        already_attached = any(
            isinstance(handler, logging.FileHandler)
            and handler.baseFilename == os.path.abspath(access_log_file)
            for handler in access_logger.handlers
        )
        if not already_attached:
            access_logger.addHandler(logging.FileHandler(access_log_file))

    # --- Initialize extensions ---
    allowed_origins = [
        app.config["FRONTEND_URL"].strip().rstrip("/"),
        "http://localhost:5173",
    ]
    cors_extra = app.config["CORS_ALLOWED_ORIGINS"]
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip().rstrip("/")
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins)

    jwt_manager = JWTManager(app)
    mongo = PyMongo(app)
    db = mongo.db
    started_at = time.monotonic()
    rate_limiter = SlidingWindowRateLimiter()

    try:
        db.products.create_index("category")
        db.products.create_index([("name", "text"), ("description", "text")])
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for products: %s", exc)

    try:
        db.customers.create_index("email", unique=True)
        db.users.create_index("email", unique=True)
        db.orders.create_index("orderId", unique=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure unique indexes: %s", exc)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    rate_limited_endpoints = {
        "admin_register",
        "admin_login",
        "customer_register",
        "customer_login",
    }

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def to_number(value, default=None):
        if isinstance(value, bool):
            return default
        if isinstance(value, (int, float)):
            numeric = value
        else:
            try:
                numeric = float(str(value).strip())
            except (TypeError, ValueError):
                return default
        if not math.isfinite(numeric):
            return default
        return numeric

    def safe_positive_int(value, default=1):
        numeric = to_number(value)
        if numeric is None:
            return default
        return max(default, int(numeric))

    def isoformat(value) -> Optional[str]:
        if isinstance(value, datetime):
            return value.isoformat() + "Z"
        return None

    def parse_object_id(value) -> Optional[ObjectId]:
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            return None

    def hash_password(password: str) -> bytes:
        return bcrypt.hashpw(
            password.encode("utf-8"), bcrypt.gensalt(app.config["BCRYPT_ROUNDS"])
        )

    def password_matches(password: str, stored_hash) -> bool:
        if not stored_hash:
            return False
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored_hash)
        except ValueError:
            return False

    def frontend_url(path: str) -> str:
        return f"{app.config['FRONTEND_URL'].rstrip('/')}{path}"

    def backend_url(path: str) -> str:
        return f"{app.config['BACKEND_URL'].rstrip('/')}{path}"

    def product_error(message: str, status: int):
        return jsonify({"status": "erro", "mensagem": message}), status

    def json_object_body() -> Optional[Dict]:
        """Return the JSON body as a dict, {} when absent, None when not an object."""
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        return payload if isinstance(payload, dict) else None

    def send_email_via_resend(payload: Dict[str, object], api_key: str):
        configured_api_key = (api_key or "").strip()
        if not configured_api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = configured_api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def send_store_email(recipient_email: str, subject: str, html_body: str, text_body: str):
        payload: Dict[str, object] = {
            "from": f"{STORE_NAME} <{app.config['EMAIL_FROM']}>",
            "to": [recipient_email],
            "subject": subject,
            "html": html_body,
            "text": text_body,
        }
        sent, error_details = send_email_via_resend(payload, app.config["EMAIL_API_KEY"])
        if not sent:
            app.logger.error(
                "Email delivery to %s failed: %s",
                recipient_email,
                error_details or "Unknown delivery error",
            )
        return sent, error_details

    def send_account_confirmation(recipient_email: str, confirm_link: str):
        html_body = render_template(
            "emails/confirm_account.html",
            confirm_link=confirm_link,
            expiration_hours=ADMIN_CONFIRM_TOKEN_HOURS,
        )
        text_body = f"Confirme sua conta acessando: {confirm_link}"
        return send_store_email(
            recipient_email, "Confirmação de Conta", html_body, text_body
        )

    def send_customer_verification(recipient_email: str, name: str, verify_link: str):
        html_body = render_template(
            "emails/verify_email.html",
            name=name,
            verify_link=verify_link,
            expiration_hours=CUSTOMER_VERIFY_TOKEN_HOURS,
        )
        text_body = f"Olá, {name}! Confirme seu e-mail acessando: {verify_link}"
        return send_store_email(
            recipient_email, "Confirme seu e-mail", html_body, text_body
        )

    def send_order_receipt(order_document: Dict[str, object]):
        recipient_email = normalize_email(order_document.get("email"))
        if not recipient_email:
            return False, "Missing customer email for the order receipt."

        order_identifier = str(order_document.get("orderId") or "")
        items = order_document.get("items") or []
        total_value = round(to_number(order_document.get("total"), 0.0), 2)
        html_body = render_template(
            "emails/order_paid.html",
            order_id=order_identifier,
            items=items,
            shipping=order_document.get("shipping") or 0,
            discount=order_document.get("discount") or 0,
            total=total_value,
            currency=order_document.get("currency") or ORDER_CURRENCY,
        )
        item_lines = ", ".join(
            f"{item.get('title')} x{item.get('quantity')}" for item in items
        )
        text_body = (
            f"Pagamento confirmado para o pedido {order_identifier}.\n"
            f"Itens: {item_lines}.\n"
            f"Total: R$ {total_value:.2f}.\n\n"
            f"Equipe {STORE_NAME}"
        )
        return send_store_email(
            recipient_email, "Pagamento confirmado", html_body, text_body
        )

    # Products

    def serialize_product(product_document) -> Dict[str, object]:
        return {
            "_id": str(product_document.get("_id")),
            "name": product_document.get("name", ""),
            "description": product_document.get("description", ""),
            "price": product_document.get("price", 0),
            "stock": product_document.get("stock", 0),
            "category": product_document.get("category", ""),
            "imageUrl": product_document.get("imageUrl", ""),
            "createdAt": isoformat(product_document.get("createdAt")),
            "updatedAt": isoformat(product_document.get("updatedAt")),
        }

    def normalize_product_fields(payload: Dict, partial: bool = False):
        """Coerce product fields, returning (fields, error message)."""
        fields: Dict[str, object] = {}

        if not partial or payload.get("name") is not None:
            name = str(payload.get("name") or "").strip()[:250]
            if not name:
                return None, "O nome do produto é obrigatório"
            fields["name"] = name

        if not partial or payload.get("description") is not None:
            fields["description"] = str(payload.get("description") or "")[:5000]

        for key in ("price", "stock"):
            if partial and payload.get(key) is None:
                continue
            numeric = to_number(payload.get(key), 0)
            if numeric < 0:
                return None, "Dados do produto inválidos"
            fields[key] = numeric

        for key in ("category", "imageUrl"):
            if not partial or payload.get(key) is not None:
                fields[key] = str(payload.get(key) or "")

        return fields, None

    def fetch_product(product_id: str):
        object_id = parse_object_id(product_id)
        if object_id is None:
            return None, product_error("ID do produto inválido", 400)

        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return None, product_error("Produto não encontrado", 404)

        return product_document, None

    def require_admin():
        claims = get_jwt()
        if claims.get("role") != "admin":
            return jsonify({"message": "Acesso restrito a administradores."}), 403
        return None

    # Customers and carts

    def serialize_customer(customer_document) -> Dict[str, object]:
        return {
            "name": customer_document.get("name", ""),
            "email": customer_document.get("email", ""),
            "marketingOptIn": bool(customer_document.get("marketingOptIn")),
            "emailVerified": bool(customer_document.get("emailVerified")),
        }

    def normalize_cart_item(entry) -> Optional[Dict[str, object]]:
        if not isinstance(entry, dict):
            return None

        product_identifier = entry.get("productId")
        if product_identifier is None:
            return None
        product_id = str(product_identifier).strip()
        if not product_id:
            return None

        added_at = entry.get("addedAt")
        return {
            "productId": product_id,
            "title": str(entry.get("title") or "").strip(),
            "price": to_number(entry.get("price"), 0) or 0,
            "quantity": safe_positive_int(entry.get("quantity"), 1),
            "addedAt": added_at if isinstance(added_at, datetime) else datetime.utcnow(),
        }

    def merge_cart_items(stored_items, guest_items) -> List[Dict[str, object]]:
        """Fold the guest cart into the stored one, summing quantities per product."""
        merged: Dict[str, Dict[str, object]] = {}
        for entry in list(stored_items or []) + list(guest_items or []):
            item = normalize_cart_item(entry)
            if not item:
                continue
            existing = merged.get(item["productId"])
            if existing:
                existing["quantity"] += item["quantity"]
            else:
                merged[item["productId"]] = item
        return list(merged.values())

    def serialize_cart(items) -> List[Dict[str, object]]:
        return [
            {
                "productId": item.get("productId"),
                "title": item.get("title", ""),
                "price": item.get("price", 0),
                "quantity": item.get("quantity", 1),
                "addedAt": isoformat(item.get("addedAt")),
            }
            for item in items or []
        ]

    def issue_customer_session(response, customer_id):
        token = create_access_token(
            identity=str(customer_id),
            additional_claims={"role": "customer"},
            expires_delta=timedelta(days=CUSTOMER_SESSION_DAYS),
        )
        set_access_cookies(
            response, token, max_age=CUSTOMER_SESSION_DAYS * 24 * 60 * 60
        )
        return response

    def decode_claims(token: str) -> Optional[Dict]:
        try:
            return decode_token(token)
        except (PyJWTError, JWTExtendedException):
            return None

    def load_customer_session():
        token = request.cookies.get(CUSTOMER_COOKIE_NAME)
        if not token:
            return None, (jsonify({"error": "Não autenticado"}), 401)

        claims = decode_claims(token)
        customer_id = parse_object_id(claims.get("sub")) if claims else None
        if not claims or claims.get("role") != "customer" or customer_id is None:
            return None, (jsonify({"error": "Sessão inválida/expirada"}), 401)

        customer = db.customers.find_one({"_id": customer_id})
        if not customer:
            return None, (jsonify({"error": "Sessão inválida/expirada"}), 401)

        return customer, None

    def load_optional_customer():
        token = request.cookies.get(CUSTOMER_COOKIE_NAME)
        if not token:
            return None
        claims = decode_claims(token)
        if not claims or claims.get("role") != "customer":
            return None
        customer_id = parse_object_id(claims.get("sub"))
        if customer_id is None:
            return None
        return db.customers.find_one({"_id": customer_id})

    # Payments

    def normalize_checkout_item(entry) -> Optional[Dict[str, object]]:
        if not isinstance(entry, dict):
            return None

        product_identifier = entry.get("id") or entry.get("productId") or entry.get("_id")
        title = entry.get("title") or entry.get("nome") or entry.get("name")
        unit_price = entry.get("unit_price")
        if unit_price is None:
            unit_price = entry.get("preco", entry.get("price"))
        quantity = entry.get("quantity")
        if quantity is None:
            quantity = entry.get("quantidade")

        return {
            "id": str(product_identifier or "").strip(),
            "title": str(title or "").strip()[:250],
            "unit_price": round(to_number(unit_price, 0) or 0, 2),
            "quantity": int(to_number(quantity, 0) or 0),
            "description": str(entry.get("description") or "").strip()[:250],
            "picture_url": str(entry.get("picture_url") or entry.get("imageUrl") or "").strip(),
            "category_id": str(entry.get("category_id") or entry.get("category") or "").strip(),
        }

    def apply_catalogue_prices(items: List[Dict[str, object]]):
        object_ids = [
            object_id
            for object_id in (parse_object_id(item["id"]) for item in items)
            if object_id is not None
        ]
        if not object_ids:
            return
        catalogue = {
            str(document["_id"]): document
            for document in db.products.find({"_id": {"$in": object_ids}})
        }
        for item in items:
            product_document = catalogue.get(item["id"])
            if not product_document:
                continue
            item["title"] = str(product_document.get("name") or item["title"])[:250]
            item["unit_price"] = round(
                to_number(product_document.get("price"), item["unit_price"]), 2
            )

    def is_valid_checkout_item(item: Dict[str, object]) -> bool:
        return bool(
            item["id"]
            and item["title"]
            and item["unit_price"] > 0
            and item["quantity"] > 0
        )

    def build_preference_items(
        items: List[Dict[str, object]], subtotal: float, discount: float, order_id: str
    ) -> List[Dict[str, object]]:
        if discount > 0:
            return [
                {
                    "id": order_id,
                    "title": f"Pedido {STORE_NAME}",
                    "description": f"{len(items)} item(ns) com desconto aplicado",
                    "quantity": 1,
                    "unit_price": max(0.01, round(subtotal - discount, 2)),
                    "currency_id": ORDER_CURRENCY,
                }
            ]

        preference_items = []
        for item in items:
            preference_item = {
                "id": item["id"],
                "title": item["title"],
                "quantity": item["quantity"],
                "unit_price": item["unit_price"],
                "currency_id": ORDER_CURRENCY,
                "description": item["description"] or f"Produto: {item['title']}",
            }
            if item["picture_url"]:
                preference_item["picture_url"] = item["picture_url"]
            if item["category_id"]:
                preference_item["category_id"] = item["category_id"]
            preference_items.append(preference_item)
        return preference_items

    def mercadopago_headers(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        access_token = app.config["MP_ACCESS_TOKEN"]
        if not access_token:
            raise ValueError("Mercado Pago não está configurado.")
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def fetch_mercadopago_payment(payment_id: str):
        base_url = app.config["MP_API_BASE_URL"].rstrip("/")
        try:
            response = requests.get(
                f"{base_url}/v1/payments/{payment_id}",
                headers=mercadopago_headers(),
                timeout=app.config["MP_TIMEOUT_SECONDS"],
            )
        except requests.RequestException as exc:
            app.logger.error("Mercado Pago payment lookup failed: %s", exc)
            return None

        if response.status_code != 200:
            app.logger.error(
                "Mercado Pago payment %s lookup returned %s: %s",
                payment_id,
                response.status_code,
                response.text,
            )
            return None

        return response.json()

    def webhook_signature_is_valid(data_id: str) -> bool:
        secret = app.config["MP_WEBHOOK_SECRET"]
        if not secret:
            return True

        signature_header = request.headers.get("x-signature", "")
        request_id = request.headers.get("x-request-id", "")
        parts: Dict[str, str] = {}
        for chunk in signature_header.split(","):
            key, _, value = chunk.partition("=")
            if key.strip():
                parts[key.strip()] = value.strip()

        timestamp = parts.get("ts")
        received = parts.get("v1")
        if not timestamp or not received:
            return False

        manifest = f"id:{data_id.lower()};request-id:{request_id};ts:{timestamp};"
        expected = hmac.new(
            secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, received)

    def order_status_for_payment(payment_status: str) -> str:
        if payment_status == "approved":
            return "paid"
        if payment_status == "rejected":
            return "failed"
        if payment_status in ("cancelled", "refunded", "charged_back"):
            return "cancelled"
        return "pending"

    def clear_customer_cart(customer_id):
        object_id = parse_object_id(customer_id) if customer_id else None
        if object_id is None:
            return
        db.customers.update_one(
            {"_id": object_id},
            {"$set": {"cart": [], "updatedAt": datetime.utcnow()}},
        )

    # --- Request hooks ---

    @app.before_request
    def enforce_auth_rate_limit():
        if request.method == "OPTIONS" or request.endpoint not in rate_limited_endpoints:
            return None

        limit = int(app.config["AUTH_RATE_LIMIT"])
        if limit <= 0:
            return None

        key = f"{request.endpoint}:{request.remote_addr}"
        if rate_limiter.is_allowed(key, limit=limit, window_seconds=60):
            return None

        retry_after = rate_limiter.get_retry_after(key, window_seconds=60)
        app.logger.warning("Rate limit hit for %s", key)
        response = jsonify(
            {"message": "Muitas tentativas. Aguarde um instante e tente novamente."}
        )
        response.status_code = 429
        if retry_after:
            response.headers["Retry-After"] = str(retry_after)
        return response

    @app.after_request
    def add_security_headers(response):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cross-Origin-Resource-Policy", "same-origin")
        return response

    @app.after_request
    def write_access_log(response):
        access_logger.info(
            json.dumps(
                {
                    "timestamp": datetime.utcnow().isoformat() + "Z",
                    "method": request.method,
                    "url": request.full_path.rstrip("?"),
                    "status": response.status_code,
                    "ip": request.remote_addr,
                    "userAgent": request.headers.get("User-Agent", ""),
                }
            )
        )
        return response

    # --- Error handling ---

    @jwt_manager.unauthorized_loader
    def missing_token_callback(reason):
        return jsonify({"message": "Token de acesso ausente."}), 401

    @jwt_manager.invalid_token_loader
    def invalid_token_callback(reason):
        return jsonify({"message": "Token inválido."}), 401

    @jwt_manager.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({"message": "Token expirado."}), 401

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc):
        return (
            jsonify({"status": "error", "message": exc.description or exc.name}),
            exc.code or 500,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_exception(exc):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"status": "error", "message": "Internal Server Error"}), 500

    # --- ROUTES ---

    @app.route("/api/status", methods=["GET"])
    def service_status():
        try:
            mongo.cx.admin.command("ping")
            db_status = "connected"
        except Exception as exc:
            app.logger.warning("Database ping failed: %s", exc)
            db_status = "disconnected"

        return jsonify(
            {
                "status": "online",
                "environment": app.config["ENVIRONMENT"],
                "version": API_VERSION,
                "dbStatus": db_status,
                "uptime": round(time.monotonic() - started_at, 3),
            }
        )

    # Products
    @app.route("/api/produtos", methods=["GET"])
    def list_products():
        query: Dict[str, object] = {}

        category = request.args.get("category")
        if category:
            query["category"] = category

        min_price = to_number(request.args.get("minPrice"))
        max_price = to_number(request.args.get("maxPrice"))
        if min_price is not None or max_price is not None:
            price_filter: Dict[str, float] = {}
            if min_price is not None:
                price_filter["$gte"] = min_price
            if max_price is not None:
                price_filter["$lte"] = max_price
            query["price"] = price_filter

        search = str(request.args.get("q") or "").strip()
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]

        sort_options = {
            "newest": ("_id", -1),
            "price_asc": ("price", 1),
            "price_desc": ("price", -1),
            "name_az": ("name", 1),
            "name_za": ("name", -1),
        }
        sort_key = sort_options.get(request.args.get("sort", "newest"), sort_options["newest"])
        limit = int(min(1000, max(1, to_number(request.args.get("limit"), 1000))))

        product_docs = db.products.find(query).sort([sort_key]).limit(limit)
        return jsonify([serialize_product(document) for document in product_docs])

    @app.route("/api/produtos/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error
        return jsonify(serialize_product(product_document))

    @app.route("/api/produtos", methods=["POST"])
    @jwt_required(locations=["headers"])
    def create_product():
        permission_error = require_admin()
        if permission_error:
            return permission_error

        payload = json_object_body()
        if payload is None:
            return product_error("Dados do produto inválidos", 400)
        fields, validation_error = normalize_product_fields(payload)
        if validation_error:
            return product_error(validation_error, 400)

        timestamp = datetime.utcnow()
        product_document = {**fields, "createdAt": timestamp, "updatedAt": timestamp}
        result = db.products.insert_one(product_document)
        created_product = db.products.find_one({"_id": result.inserted_id})

        app.logger.info(
            "Product %s created by %s", result.inserted_id, get_jwt_identity()
        )
        return jsonify(serialize_product(created_product)), 201

    @app.route("/api/produtos/<product_id>", methods=["PUT", "PATCH"])
    @jwt_required(locations=["headers"])
    def update_product(product_id: str):
        permission_error = require_admin()
        if permission_error:
            return permission_error

        object_id = parse_object_id(product_id)
        if object_id is None:
            return product_error("ID do produto inválido", 400)

        payload = json_object_body()
        if payload is None:
            return product_error("Erro ao atualizar produto", 400)
        fields, validation_error = normalize_product_fields(payload, partial=True)
        if validation_error:
            return product_error("Erro ao atualizar produto", 400)

        fields["updatedAt"] = datetime.utcnow()
        update_result = db.products.update_one({"_id": object_id}, {"$set": fields})
        if update_result.matched_count == 0:
            return product_error("Produto não encontrado", 404)

        updated_product = db.products.find_one({"_id": object_id})
        return jsonify(serialize_product(updated_product))

    @app.route("/api/produtos/<product_id>", methods=["DELETE"])
    @jwt_required(locations=["headers"])
    def delete_product(product_id: str):
        permission_error = require_admin()
        if permission_error:
            return permission_error

        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error

        db.products.delete_one({"_id": product_document["_id"]})
        app.logger.info(
            "Product %s deleted by %s", product_document["_id"], get_jwt_identity()
        )
        return jsonify(
            {
                "status": "sucesso",
                "mensagem": "Produto deletado com sucesso",
                "data": None,
            }
        )

    # Admin accounts
    @app.route("/api/auth/register", methods=["POST"])
    def admin_register():
        payload = json_object_body()
        if payload is None:
            return jsonify({"message": "Email e senha são obrigatórios"}), 400
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not email or not password:
            return jsonify({"message": "Email e senha são obrigatórios"}), 400

        if db.users.find_one({"email": email}):
            return jsonify({"message": "Email já cadastrado"}), 400

        insert_result = db.users.insert_one(
            {
                "email": email,
                "password": hash_password(password),
                "confirmed": False,
                "createdAt": datetime.utcnow(),
            }
        )

        confirm_token = create_access_token(
            identity=str(insert_result.inserted_id),
            additional_claims={"purpose": "confirm-account"},
            expires_delta=timedelta(hours=ADMIN_CONFIRM_TOKEN_HOURS),
        )
        sent, error_details = send_account_confirmation(
            email, frontend_url(f"/confirmar/{confirm_token}")
        )
        if not sent:
            db.users.delete_one({"_id": insert_result.inserted_id})
            return (
                jsonify(
                    {
                        "message": "Não foi possível enviar o e-mail de confirmação. Tente novamente.",
                        "error": error_details,
                    }
                ),
                502,
            )

        return jsonify({"message": "Usuário criado. Confirme sua conta por e-mail."}), 201

    @app.route("/api/auth/confirm/<token>", methods=["GET"])
    def admin_confirm(token: str):
        claims = decode_claims(token)
        user_id = parse_object_id(claims.get("sub")) if claims else None
        if not claims or claims.get("purpose") != "confirm-account" or user_id is None:
            return jsonify({"message": "Token inválido ou expirado"}), 400

        update_result = db.users.update_one(
            {"_id": user_id}, {"$set": {"confirmed": True}}
        )
        if update_result.matched_count == 0:
            return jsonify({"message": "Token inválido ou expirado"}), 400

        return redirect(frontend_url("/login?confirmado=1"))

    @app.route("/api/auth/login", methods=["POST"])
    def admin_login():
        payload = json_object_body()
        if payload is None:
            return jsonify({"message": "Email e senha são obrigatórios"}), 400
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        user = db.users.find_one({"email": email}) if email else None
        if not user:
            return jsonify({"message": "Usuário não encontrado"}), 401

        if not password_matches(password, user.get("password")):
            return jsonify({"message": "Senha inválida"}), 401

        if not user.get("confirmed"):
            return jsonify({"message": "Confirme seu e-mail antes de entrar."}), 403

        token = create_access_token(
            identity=str(user["_id"]), additional_claims={"role": "admin"}
        )
        return jsonify({"token": token})

    # Customer accounts
    @app.route("/api/customers/register", methods=["POST"])
    def customer_register():
        payload = json_object_body()
        if payload is None:
            return jsonify({"error": "Dados obrigatórios"}), 400
        name = str(payload.get("name") or "").strip()
        email = normalize_email(payload.get("email"))
        phone = str(payload.get("phone") or "").strip()
        password = str(payload.get("password") or "")

        if not name or not email or not password:
            return jsonify({"error": "Dados obrigatórios"}), 400

        if not is_valid_email(email):
            return jsonify({"error": "E-mail inválido"}), 400

        if db.customers.find_one({"email": email}):
            return jsonify({"error": "E-mail já cadastrado"}), 409

        verify_token = secrets.token_hex(32)
        timestamp = datetime.utcnow()
        customer_document = {
            "name": name,
            "email": email,
            "passwordHash": hash_password(password),
            "marketingOptIn": bool(payload.get("marketingOptIn")),
            "emailVerified": False,
            "verifyToken": verify_token,
            "verifyTokenExpires": timestamp + timedelta(hours=CUSTOMER_VERIFY_TOKEN_HOURS),
            "unsubscribeToken": secrets.token_hex(24),
            "cart": [],
            "createdAt": timestamp,
            "updatedAt": timestamp,
        }
        if phone:
            customer_document["phone"] = phone

        insert_result = db.customers.insert_one(customer_document)

        verify_link = backend_url(f"/api/customers/verify-email?token={verify_token}")
        sent, error_details = send_customer_verification(email, name, verify_link)
        if not sent:
            db.customers.delete_one({"_id": insert_result.inserted_id})
            return (
                jsonify(
                    {
                        "error": "Falha ao enviar o e-mail de confirmação",
                        "details": error_details,
                    }
                ),
                502,
            )

        app.logger.info("Customer %s registered", insert_result.inserted_id)
        return jsonify({"ok": True})

    @app.route("/api/customers/verify-email", methods=["GET"])
    def customer_verify_email():
        token = str(request.args.get("token") or "").strip()
        failure_redirect = frontend_url("/entrar?verificado=0")
        if not token:
            return redirect(failure_redirect)

        now = datetime.utcnow()
        customer = db.customers.find_one(
            {"verifyToken": token, "verifyTokenExpires": {"$gt": now}}
        )
        if customer:
            db.customers.update_one(
                {"_id": customer["_id"]},
                {
                    "$set": {"emailVerified": True, "updatedAt": now},
                    "$unset": {"verifyToken": "", "verifyTokenExpires": ""},
                },
            )
            response = redirect(frontend_url("/conta?verificado=1"))
            return issue_customer_session(response, customer["_id"])

        # Tokens minted elsewhere may carry the customer id as a JWT claim.
        # Session and admin tokens carry a role and never prove mailbox access.
        claims = decode_claims(token)
        if not claims or claims.get("role"):
            return redirect(failure_redirect)
        if claims.get("purpose") not in (None, "verify-email"):
            return redirect(failure_redirect)
        customer_id = parse_object_id(
            claims.get("sub") or claims.get("id") or claims.get("userId")
        )
        if customer_id is None:
            return redirect(failure_redirect)

        update_result = db.customers.update_one(
            {"_id": customer_id},
            {
                "$set": {"emailVerified": True, "updatedAt": now},
                "$unset": {"verifyToken": "", "verifyTokenExpires": ""},
            },
        )
        if update_result.matched_count == 0:
            return redirect(failure_redirect)

        return redirect(frontend_url("/entrar?verificado=1"))

    @app.route("/api/customers/login", methods=["POST"])
    def customer_login():
        payload = json_object_body()
        if payload is None:
            return jsonify({"error": "Dados obrigatórios"}), 400
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        guest_cart = payload.get("guestCart")

        customer = db.customers.find_one({"email": email}) if email else None
        if not customer or not password_matches(password, customer.get("passwordHash")):
            return jsonify({"error": "Credenciais inválidas"}), 401

        if isinstance(guest_cart, list) and guest_cart:
            merged_cart = merge_cart_items(customer.get("cart"), guest_cart)
            db.customers.update_one(
                {"_id": customer["_id"]},
                {"$set": {"cart": merged_cart, "updatedAt": datetime.utcnow()}},
            )

        response = jsonify({"ok": True, "user": serialize_customer(customer)})
        return issue_customer_session(response, customer["_id"])

    @app.route("/api/customers/logout", methods=["POST"])
    def customer_logout():
        response = jsonify({"ok": True})
        unset_access_cookies(response)
        return response

    @app.route("/api/customers/me", methods=["GET"])
    def customer_me():
        customer, session_error = load_customer_session()
        if session_error:
            return session_error
        return jsonify(
            {
                "user": serialize_customer(customer),
                "cart": serialize_cart(customer.get("cart")),
            }
        )

    @app.route("/api/customers/unsubscribe", methods=["GET"])
    def customer_unsubscribe():
        token = str(request.args.get("token") or "").strip()
        customer = db.customers.find_one({"unsubscribeToken": token}) if token else None
        if not customer:
            return "Token inválido", 400, {"Content-Type": "text/plain; charset=utf-8"}

        db.customers.update_one(
            {"_id": customer["_id"]},
            {"$set": {"marketingOptIn": False, "updatedAt": datetime.utcnow()}},
        )
        return (
            "Descadastrado com sucesso.",
            200,
            {"Content-Type": "text/plain; charset=utf-8"},
        )

    @app.route("/api/customers/cart", methods=["GET"])
    def get_customer_cart():
        customer, session_error = load_customer_session()
        if session_error:
            return session_error
        return jsonify({"cart": serialize_cart(customer.get("cart"))})

    @app.route("/api/customers/cart", methods=["PUT"])
    def replace_customer_cart():
        customer, session_error = load_customer_session()
        if session_error:
            return session_error

        payload = json_object_body() or {}
        items = payload.get("items")
        if not isinstance(items, list):
            return jsonify({"error": "items inválido"}), 400

        cart_items = [
            normalized
            for normalized in (normalize_cart_item(entry) for entry in items)
            if normalized
        ]
        db.customers.update_one(
            {"_id": customer["_id"]},
            {"$set": {"cart": cart_items, "updatedAt": datetime.utcnow()}},
        )
        return jsonify({"ok": True})

    # Payments
    @app.route("/api/pagamento/create_preference", methods=["POST"])
    def create_payment_preference():
        payload = json_object_body()
        if payload is None:
            return jsonify({"message": "Dados dos itens inválidos"}), 400
        raw_items = payload.get("items")
        if raw_items is None:
            raw_items = payload.get("itens")

        if not isinstance(raw_items, list) or not raw_items:
            return jsonify({"message": "Seu carrinho está vazio"}), 400

        items = [normalize_checkout_item(entry) for entry in raw_items]
        if any(item is None for item in items):
            return jsonify({"message": "Dados dos itens inválidos"}), 400

        apply_catalogue_prices(items)
        if not all(is_valid_checkout_item(item) for item in items):
            return jsonify({"message": "Dados dos itens inválidos"}), 400

        if not app.config["MP_ACCESS_TOKEN"]:
            app.logger.error("MP_ACCESS_TOKEN is not configured")
            return jsonify({"message": "Pagamento indisponível no momento."}), 500

        subtotal = round(sum(item["unit_price"] * item["quantity"] for item in items), 2)
        shipping = round(max(0.0, to_number(payload.get("shipping_cost"), 0)), 2)
        discount = round(min(subtotal, max(0.0, to_number(payload.get("discount_value"), 0))), 2)
        total = round(max(0.01, subtotal - discount) + shipping, 2)
        coupon_code = str(payload.get("coupon_code") or "").strip()

        customer = load_optional_customer()
        buyer = payload.get("payer") or payload.get("comprador") or {}
        if not isinstance(buyer, dict):
            buyer = {}
        payer_email = normalize_email(
            (customer or {}).get("email") or buyer.get("email")
        )
        payer_name = str(
            (customer or {}).get("name") or buyer.get("name") or buyer.get("nome") or ""
        ).strip()

        order_identifier = f"MCE-{uuid4().hex[:10].upper()}"
        preference = {
            "items": build_preference_items(items, subtotal, discount, order_identifier),
            "payer": {"email": payer_email, "name": payer_name},
            "back_urls": {
                "success": frontend_url("/pagamento/sucesso"),
                "failure": frontend_url("/pagamento/erro"),
                "pending": frontend_url("/pagamento/pendente"),
            },
            "auto_return": "approved",
            "notification_url": backend_url("/api/pagamento/webhook"),
            "external_reference": order_identifier,
            "statement_descriptor": "MCELETROBIKE",
            "metadata": {"order_id": order_identifier, "coupon_code": coupon_code},
        }
        if shipping > 0:
            preference["shipments"] = {"cost": shipping, "mode": "not_specified"}

        base_url = app.config["MP_API_BASE_URL"].rstrip("/")
        app.logger.info("Creating Mercado Pago preference for order %s", order_identifier)
        try:
            response = requests.post(
                f"{base_url}/checkout/preferences",
                json=preference,
                headers=mercadopago_headers(
                    {"X-Idempotency-Key": f"mp-{uuid4()}"}
                ),
                timeout=app.config["MP_TIMEOUT_SECONDS"],
            )
        except requests.RequestException as exc:
            app.logger.error("Mercado Pago preference request failed: %s", exc)
            return jsonify({"message": "Falha ao processar pagamento"}), 502

        if response.status_code not in (200, 201):
            app.logger.error(
                "Mercado Pago preference rejected (%s): %s",
                response.status_code,
                response.text,
            )
            return jsonify({"message": "Falha ao processar pagamento"}), 502

        preference_data = response.json()
        timestamp = datetime.utcnow()
        db.orders.insert_one(
            {
                "orderId": order_identifier,
                "preferenceId": preference_data.get("id"),
                "items": [
                    {
                        "productId": item["id"],
                        "title": item["title"],
                        "price": item["unit_price"],
                        "quantity": item["quantity"],
                    }
                    for item in items
                ],
                "subtotal": subtotal,
                "shipping": shipping,
                "discount": discount,
                "total": total,
                "currency": ORDER_CURRENCY,
                "couponCode": coupon_code,
                "status": "pending",
                "customerId": str(customer["_id"]) if customer else "",
                "email": payer_email,
                "createdAt": timestamp,
                "updatedAt": timestamp,
            }
        )

        return jsonify(
            {
                "id": preference_data.get("id"),
                "init_point": preference_data.get("init_point"),
                "sandbox_init_point": preference_data.get("sandbox_init_point"),
                "order_id": order_identifier,
            }
        )

    @app.route("/api/pagamento/webhook", methods=["POST"])
    def payment_webhook():
        event = json_object_body() or {}

        topic = (
            event.get("type")
            or event.get("topic")
            or request.args.get("type")
            or request.args.get("topic")
        )
        event_data = event.get("data") if isinstance(event.get("data"), dict) else {}
        payment_id = str(
            event_data.get("id")
            or request.args.get("data.id")
            or request.args.get("id")
            or ""
        ).strip()

        if topic != "payment" or not payment_id:
            return jsonify({"status": "ignored"}), 200

        if not webhook_signature_is_valid(payment_id):
            app.logger.warning("Mercado Pago webhook signature mismatch for %s", payment_id)
            return jsonify({"message": "Assinatura inválida"}), 401

        try:
            payment = fetch_mercadopago_payment(payment_id)
        except ValueError as exc:
            app.logger.error("Mercado Pago webhook rejected: %s", exc)
            return jsonify({"message": str(exc)}), 500
        if payment is None:
            return jsonify({"message": "Falha ao verificar pagamento"}), 502

        order_identifier = str(payment.get("external_reference") or "").strip()
        order = db.orders.find_one({"orderId": order_identifier}) if order_identifier else None
        if not order:
            app.logger.warning(
                "Mercado Pago webhook: order %s not found", order_identifier or "?"
            )
            return jsonify({"message": "Pedido não encontrado"}), 404

        payment_status = str(payment.get("status") or "")
        order_status = order_status_for_payment(payment_status)
        now = datetime.utcnow()
        update_fields = {
            "status": order_status,
            "paymentId": payment_id,
            "paymentStatus": payment_status,
            "updatedAt": now,
        }
        if order_status == "paid":
            update_fields["paidAt"] = now

        # Retried notifications race each other; only one may settle the order.
        update_result = db.orders.update_one(
            {"_id": order["_id"], "status": {"$ne": "paid"}},
            {"$set": update_fields},
        )
        if update_result.matched_count == 0:
            app.logger.info("Mercado Pago webhook: order %s already paid", order_identifier)
            return jsonify({"status": "already_paid", "order_status": "paid"}), 200

        if order_status == "paid":
            app.logger.info("Mercado Pago webhook: order %s paid", order_identifier)
            clear_customer_cart(order.get("customerId"))
            send_order_receipt({**order, **update_fields})

        return jsonify({"status": "ok", "order_status": order_status}), 200

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 4000))
    app.run(host="0.0.0.0", port=port)
