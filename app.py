import hashlib
import math
import os
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps
from pathlib import Path
from urllib.parse import quote, urlparse

import click
import requests
from flask import Flask, Response, abort, g, jsonify, make_response, request
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from download_tokens import TokenCodec
from downloads import EntitlementRecord, ResourceRecord, TokenIssuanceService, TokenRedemptionService


db = SQLAlchemy()

SESSION_COOKIE = "session_token"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id():
    return str(uuid.uuid4())


def hash_session_token(raw):
    # The raw token lives only in the cookie; rows are keyed by its digest.
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="user")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class Session(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), unique=True, nullable=False, index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    device_info = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(255), nullable=False, index=True)
    author = db.Column(db.String(255), nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)
    file_location = db.Column(db.String(1000), nullable=True)
    content_type = db.Column(db.String(100), nullable=False, default="application/pdf")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class SubscriptionPackage(db.Model):
    __tablename__ = "subscription_packages"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    duration_days = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class UserSubscription(db.Model):
    __tablename__ = "user_subscriptions"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    package_id = db.Column(db.String(36), db.ForeignKey("subscription_packages.id"), nullable=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class DownloadTokenLog(db.Model):
    __tablename__ = "download_token_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    product_id = db.Column(db.String(36), nullable=False, index=True)
    subscription_id = db.Column(db.String(36), nullable=False)
    token_generated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)


class DownloadLog(db.Model):
    __tablename__ = "download_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    product_id = db.Column(db.String(36), nullable=False, index=True)
    subscription_id = db.Column(db.String(36), nullable=False)
    token_fingerprint = db.Column(db.String(32), nullable=False)
    downloaded_at = db.Column(db.DateTime(timezone=True), nullable=False)


class DownloadTokenUse(db.Model):
    __tablename__ = "download_token_uses"

    id = db.Column(db.Integer, primary_key=True)
    token_jti = db.Column(db.String(128), nullable=False, unique=True, index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    used_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


def file_extension_for(product):
    suffix = Path(urlparse(product.file_location or "").path).suffix.lstrip(".").lower()
    if suffix:
        return suffix
    if product.content_type and "/" in product.content_type:
        return product.content_type.split("/", 1)[1].split("+", 1)[0]
    return "pdf"


class SqlEntitlementOracle:
    def __init__(self, clock=time.time):
        self.clock = clock

    def _active_subscriptions(self, subject_id):
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        rows = (
            UserSubscription.query.filter_by(user_id=str(subject_id), is_active=True)
            .order_by(UserSubscription.start_date.desc())
            .all()
        )
        return [
            row
            for row in rows
            if as_utc(row.start_date) <= now and (row.end_date is None or as_utc(row.end_date) > now)
        ]

    def has_active_entitlement(self, subject_id):
        return bool(self._active_subscriptions(subject_id))

    def get_entitlement_record(self, subject_id):
        rows = self._active_subscriptions(subject_id)
        if not rows:
            return None
        row = rows[0]
        return EntitlementRecord(id=row.id, subject_id=row.user_id, ends_at=as_utc(row.end_date))


class SqlResourceCatalog:
    def find_offered_resource(self, resource_id):
        product = Product.query.filter_by(id=str(resource_id), is_active=True).first()
        if not product or not product.file_location:
            return None
        return ResourceRecord(
            id=product.id,
            title=product.title,
            author=product.author,
            file_location=product.file_location,
            content_type=product.content_type or "application/pdf",
            file_extension=file_extension_for(product),
        )


class SqlAuditLog:
    def _write(self, row):
        try:
            db.session.add(row)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def record_issuance(self, entry):
        self._write(
            DownloadTokenLog(
                user_id=entry.subject_id,
                product_id=entry.resource_id,
                subscription_id=entry.entitlement_id,
                token_generated_at=entry.issued_at,
                expires_at=entry.expires_at,
            )
        )

    def record_redemption(self, entry):
        self._write(
            DownloadLog(
                user_id=entry.subject_id,
                product_id=entry.resource_id,
                subscription_id=entry.entitlement_id,
                token_fingerprint=entry.token_fingerprint,
                downloaded_at=entry.redeemed_at,
            )
        )


class SqlRedemptionLedger:
    def mark_redeemed(self, token_id, expires_at):
        db.session.add(DownloadTokenUse(token_jti=token_id, expires_at=expires_at))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return False
        return True


class FileUnavailable(Exception):
    def __init__(self, message, status_code=500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class FileFetcher:
    def __init__(self, storage_root, timeout=20):
        self.storage_root = Path(storage_root).resolve()
        self.timeout = timeout

    def fetch(self, location):
        if location.startswith(("http://", "https://")):
            try:
                response = requests.get(location, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as exc:
                raise FileUnavailable("Failed to fetch file") from exc
            return response.content

        path = (self.storage_root / location).resolve()
        if not path.is_relative_to(self.storage_root) or not path.is_file():
            raise FileUnavailable("File unavailable", status_code=404)
        return path.read_bytes()


def content_disposition(filename):
    safe = filename.replace('"', "'").replace("\r", " ").replace("\n", " ")
    try:
        safe.encode("ascii")
    except UnicodeEncodeError:
        fallback = safe.encode("ascii", "ignore").decode("ascii") or "download"
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(safe)}"
    return f'attachment; filename="{safe}"'


def env_flag(name, default):
    return os.getenv(name, default).lower() == "true"


def create_app(test_config=None, clock=None):
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", "sqlite:///ebook_store.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))
    app.config["DOWNLOAD_JWT_SECRET"] = os.getenv("DOWNLOAD_JWT_SECRET")
    app.config["DOWNLOAD_TOKEN_EXPIRY_MINUTES"] = int(os.getenv("DOWNLOAD_TOKEN_EXPIRY_MINUTES", "15"))
    app.config["DOWNLOAD_TOKEN_SINGLE_USE"] = env_flag("DOWNLOAD_TOKEN_SINGLE_USE", "false")
    app.config["DOWNLOAD_FETCH_TIMEOUT_SECONDS"] = int(os.getenv("DOWNLOAD_FETCH_TIMEOUT_SECONDS", "20"))
    app.config["SESSION_IDLE_MINUTES"] = int(os.getenv("SESSION_IDLE_MINUTES", "30"))
    app.config["SESSION_COOKIE_SECURE"] = env_flag("SESSION_COOKIE_SECURE", "true")
    app.config["PRIVATE_STORAGE_ROOT"] = os.getenv(
        "PRIVATE_STORAGE_ROOT", str(Path(__file__).resolve().parent / "private_storage")
    )
    if test_config:
        app.config.update(test_config)

    clock = clock or time.time
    storage_root = Path(app.config["PRIVATE_STORAGE_ROOT"]).resolve()
    storage_root.mkdir(parents=True, exist_ok=True)

    db.init_app(app)

    with app.app_context():
        db.create_all()

    codec = TokenCodec(
        app.config["DOWNLOAD_JWT_SECRET"] or app.config["SECRET_KEY"],
        ttl_seconds=app.config["DOWNLOAD_TOKEN_EXPIRY_MINUTES"] * 60,
        clock=clock,
    )
    catalog = SqlResourceCatalog()
    entitlements = SqlEntitlementOracle(clock=clock)
    audit = SqlAuditLog()
    issuance = TokenIssuanceService(codec, catalog, entitlements, audit)
    redemption = TokenRedemptionService(
        codec,
        catalog,
        entitlements,
        audit,
        ledger=SqlRedemptionLedger() if app.config["DOWNLOAD_TOKEN_SINGLE_USE"] else None,
    )
    fetcher = FileFetcher(storage_root, timeout=app.config["DOWNLOAD_FETCH_TIMEOUT_SECONDS"])
    app.extensions["download_tokens"] = codec

    idle_window = timedelta(minutes=app.config["SESSION_IDLE_MINUTES"])

    @app.after_request
    def apply_security_headers(response):
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    def clock_now():
        return datetime.fromtimestamp(clock(), tz=timezone.utc)

    def start_session(user):
        raw = secrets.token_urlsafe(32)
        now = utcnow()
        db.session.add(
            Session(
                user_id=user.id,
                token_hash=hash_session_token(raw),
                expires_at=now + idle_window,
                device_info=(request.user_agent.string or "")[:512] or None,
                ip_address=request.access_route[0] if request.access_route else None,
                last_activity_at=now,
            )
        )
        db.session.commit()
        return raw

    def load_session():
        """Return the live session for the request cookie and slide its expiry.

        Expired rows are removed on sight.
        """
        raw = request.cookies.get(SESSION_COOKIE)
        if not raw:
            return None
        row = Session.query.filter_by(token_hash=hash_session_token(raw)).first()
        if row is None:
            return None
        now = utcnow()
        if as_utc(row.expires_at) <= now:
            db.session.delete(row)
            db.session.commit()
            return None
        row.last_activity_at = now
        row.expires_at = now + idle_window
        db.session.commit()
        return row

    def require_auth(role=None):
        def decorator(fn):
            @wraps(fn)
            def wrapped(*args, **kwargs):
                row = load_session()
                user = db.session.get(User, row.user_id) if row else None
                if user is None:
                    return jsonify({"error": "Authentication required"}), 401
                if not user.is_active:
                    return jsonify({"error": "Account deactivated"}), 403
                if role is not None and user.role != role:
                    return jsonify({"error": "Forbidden"}), 403
                g.user, g.session = user, row
                return fn(*args, **kwargs)

            return wrapped

        return decorator

    def token_field(data, key):
        # Strings are trimmed; anything else is handed on untouched for the codec to reject.
        value = data.get(key)
        return value.strip() if isinstance(value, str) else value

    def as_data():
        return request.get_json(silent=True) or request.form

    def product_to_dict(product):
        return {
            "id": product.id,
            "title": product.title,
            "author": product.author,
            "description": product.description,
            "download_available": bool(product.file_location),
            "is_active": product.is_active,
            "created_at": product.created_at.isoformat(),
        }

    def subscription_to_dict(row):
        package = db.session.get(SubscriptionPackage, row.package_id) if row.package_id else None
        return {
            "id": row.id,
            "start_date": as_utc(row.start_date).isoformat(),
            "end_date": as_utc(row.end_date).isoformat() if row.end_date else None,
            "is_active": row.is_active,
            "package": {
                "id": package.id,
                "name": package.name,
                "duration_days": package.duration_days,
            }
            if package
            else None,
        }

    @app.post("/auth/register")
    def register():
        data = as_data()
        email = (data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        if not email or not password:
            return jsonify({"error": "Email and password required"}), 400
        if User.query.filter_by(email=email).first():
            return jsonify({"error": "Email already registered"}), 409
        user = User(email=email, password_hash=generate_password_hash(password), role="user")
        db.session.add(user)
        db.session.commit()
        return jsonify({"message": "User registered", "id": user.id}), 201

    @app.post("/auth/login")
    def login():
        data = as_data()
        email = (data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        if not email or not password:
            return jsonify({"error": "Missing credentials"}), 400

        user = User.query.filter_by(email=email).first()
        if not user or not check_password_hash(user.password_hash, password):
            return jsonify({"error": "Invalid credentials"}), 401
        if not user.is_active:
            return jsonify({"error": "Account deactivated"}), 403

        resp = make_response(jsonify({"message": "Logged in", "role": user.role}))
        resp.set_cookie(
            SESSION_COOKIE,
            start_session(user),
            max_age=int(idle_window.total_seconds()),
            secure=app.config["SESSION_COOKIE_SECURE"],
            httponly=True,
            samesite="Strict",
        )
        return resp

    @app.post("/auth/logout")
    @require_auth()
    def logout():
        db.session.delete(g.session)
        db.session.commit()
        resp = make_response(jsonify({"message": "Logged out"}))
        resp.delete_cookie(SESSION_COOKIE, secure=app.config["SESSION_COOKIE_SECURE"], httponly=True, samesite="Strict")
        return resp

    @app.get("/auth/me")
    @require_auth()
    def me():
        user = g.user
        return jsonify({"id": user.id, "email": user.email, "role": user.role})

    @app.get("/products")
    def list_products():
        products = Product.query.filter_by(is_active=True).order_by(Product.created_at.desc()).all()
        return jsonify([product_to_dict(p) for p in products])

    @app.get("/products/<product_id>")
    def product_detail(product_id):
        product = Product.query.filter_by(id=product_id, is_active=True).first()
        if not product:
            abort(404)
        return jsonify(product_to_dict(product))

    @app.post("/admin/products")
    @require_auth(role="admin")
    def create_product():
        data = as_data()
        title = (data.get("title") or "").strip()
        author = (data.get("author") or "").strip()
        if not title or not author:
            return jsonify({"error": "title and author are required"}), 400
        product = Product(
            title=title,
            author=author,
            description=data.get("description"),
            file_location=(data.get("file_location") or "").strip() or None,
            content_type=(data.get("content_type") or "application/pdf").strip(),
            is_active=True,
        )
        db.session.add(product)
        db.session.commit()
        app.logger.info("admin %s created product %s", g.user.id, product.id)
        return jsonify(product_to_dict(product)), 201

    @app.patch("/admin/products/<product_id>")
    @require_auth(role="admin")
    def update_product(product_id):
        product = db.session.get(Product, product_id)
        if not product:
            abort(404)
        data = as_data()
        if "title" in data:
            product.title = (data.get("title") or product.title).strip()
        if "author" in data:
            product.author = (data.get("author") or product.author).strip()
        if "description" in data:
            product.description = data.get("description")
        if "file_location" in data:
            product.file_location = (data.get("file_location") or "").strip() or None
        if "content_type" in data:
            product.content_type = (data.get("content_type") or "application/pdf").strip()
        if "is_active" in data:
            product.is_active = str(data.get("is_active", "true")).lower() == "true"
        db.session.commit()
        app.logger.info("admin %s updated product %s", g.user.id, product.id)
        return jsonify(product_to_dict(product))

    @app.get("/subscriptions/packages")
    def list_packages():
        packages = SubscriptionPackage.query.filter_by(is_active=True).order_by(SubscriptionPackage.name.asc()).all()
        return jsonify(
            {
                "success": True,
                "packages": [
                    {
                        "id": p.id,
                        "name": p.name,
                        "description": p.description,
                        "duration_days": p.duration_days,
                    }
                    for p in packages
                ],
            }
        )

    @app.get("/subscriptions/status")
    @require_auth()
    def subscription_status():
        user = g.user
        current = (
            UserSubscription.query.filter_by(user_id=user.id, is_active=True)
            .order_by(UserSubscription.start_date.desc())
            .first()
        )
        now = clock_now()
        is_expired = False
        days_remaining = 0
        if current and current.end_date:
            end_date = as_utc(current.end_date)
            is_expired = now > end_date
            if not is_expired:
                days_remaining = math.ceil((end_date - now).total_seconds() / 86400)

        history = (
            UserSubscription.query.filter_by(user_id=user.id)
            .order_by(UserSubscription.created_at.desc())
            .limit(10)
            .all()
        )
        return jsonify(
            {
                "success": True,
                "subscription": subscription_to_dict(current) if current else None,
                "has_active_subscription": entitlements.has_active_entitlement(user.id),
                "is_expired": is_expired,
                "is_lifetime": bool(current and current.end_date is None),
                "days_remaining": days_remaining,
                "history": [subscription_to_dict(row) for row in history],
            }
        )

    @app.post("/admin/subscriptions")
    @require_auth(role="admin")
    def grant_subscription():
        data = as_data()
        user = db.session.get(User, data.get("user_id") or "")
        package = db.session.get(SubscriptionPackage, data.get("package_id") or "")
        if not user or not package:
            return jsonify({"error": "Valid user_id and package_id are required"}), 400
        UserSubscription.query.filter_by(user_id=user.id, is_active=True).update({"is_active": False})
        start = clock_now()
        row = UserSubscription(
            user_id=user.id,
            package_id=package.id,
            start_date=start,
            end_date=start + timedelta(days=package.duration_days) if package.duration_days else None,
            is_active=True,
        )
        db.session.add(row)
        db.session.commit()
        app.logger.info("admin %s granted subscription %s to user %s", g.user.id, row.id, user.id)
        return jsonify(subscription_to_dict(row)), 201

    @app.post("/admin/subscriptions/<subscription_id>/revoke")
    @require_auth(role="admin")
    def revoke_subscription(subscription_id):
        row = db.session.get(UserSubscription, subscription_id)
        if not row:
            abort(404)
        row.is_active = False
        db.session.commit()
        app.logger.info("admin %s revoked subscription %s", g.user.id, row.id)
        return jsonify({"message": "Subscription revoked"})

    @app.post("/issuance")
    @require_auth()
    def generate_download_token():
        data = as_data()
        resource_id = data.get("resourceId") or data.get("productId")
        issued, error = issuance.issue(g.user.id, str(resource_id) if resource_id else None)
        if error:
            return jsonify({"error": error.message}), error.status_code

        return jsonify(
            {
                "success": True,
                "downloadToken": issued.token,
                "expiresIn": issued.expires_in,
                "expiresAt": issued.expires_at.isoformat().replace("+00:00", "Z"),
                "resource": {
                    "id": issued.resource.id,
                    "title": issued.resource.title,
                    "author": issued.resource.author,
                },
            }
        )

    @app.post("/issuance/inspect")
    @require_auth()
    def inspect_download_token():
        token = token_field(as_data(), "downloadToken")
        if not token:
            return jsonify({"error": "Download token required"}), 400
        expires_at = codec.expiration_time(token)
        return jsonify(
            {
                "expiresAt": expires_at.isoformat().replace("+00:00", "Z") if expires_at else None,
                "minutesUntilExpiry": codec.minutes_until_expiry(token),
                "nearExpiry": codec.is_near_expiry(token),
            }
        )

    @app.get("/redemption/<resource_id>")
    def redemption_via_get(resource_id):
        return jsonify({"error": "Use POST method for downloads"}), 405

    @app.post("/redemption/<resource_id>")
    @require_auth()
    def download_file(resource_id):
        data = as_data()
        authorized, error = redemption.redeem(
            token_field(data, "downloadToken"),
            resource_id,
            g.user.id,
        )
        if error:
            body = {"error": error.message, "code": error.value}
            if error.retry_available:
                body["retry_available"] = True
            return jsonify(body), error.status_code

        try:
            content = fetcher.fetch(authorized.file_location)
        except FileUnavailable as exc:
            app.logger.error("download fetch failed for product %s: %s", resource_id, exc.__cause__ or exc)
            # Any single-use ledger entry is already committed; a fresh token is needed to retry.
            return jsonify({"error": exc.message, "retry_available": True}), exc.status_code

        return Response(
            content,
            mimetype=authorized.content_type,
            headers={
                "Content-Disposition": content_disposition(authorized.filename),
                "Content-Length": str(len(content)),
                "Cache-Control": "no-store",
            },
        )

    @app.cli.command("create-admin")
    @click.argument("email")
    @click.argument("password")
    def create_admin(email, password):
        email = email.strip().lower()
        if len(password) < 12 or password.lower() == password or password.upper() == password or not any(
            ch.isdigit() for ch in password
        ):
            raise click.ClickException("Admin password does not meet strength requirements")
        if User.query.filter_by(email=email).first():
            raise click.ClickException("Email already registered")
        db.session.add(User(email=email, password_hash=generate_password_hash(password), role="admin"))
        db.session.commit()
        click.echo(f"Admin created: {email}")

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5000, debug=True)
