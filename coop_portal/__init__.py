import logging
import os
from datetime import timedelta
from functools import wraps

import click
from flask import Flask, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from .db import DB_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .importer import (
    DEFAULT_PASSWORD,
    InvalidDate,
    LedgerSourceError,
    coerce_date,
    ensure_admin,
    import_ledger_csv,
    read_csv_records,
    seed_users,
)
from .ledger import (
    DEFAULT_CURRENCY,
    ROLE_ADMIN,
    find_user_by_email,
    find_user_by_id,
    insert_user,
    list_all_ledger,
    list_ledger,
    list_users,
    resolve_timezone,
    summarize_transactions,
    update_password,
)


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


def user_payload(user):
    return {
        "id": user["id"],
        "fullname": user["fullname"],
        "email": user["email"],
        "role": user["role"],
        "must_change_password": bool(user["must_change_password"]),
    }


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.environ.get("DATABASE") or os.path.join(app.instance_path, "coop_portal.sqlite"),
        DEFAULT_PASSWORD=os.environ.get("DEFAULT_PASSWORD", DEFAULT_PASSWORD),
        DEFAULT_CURRENCY=os.environ.get("DEFAULT_CURRENCY", DEFAULT_CURRENCY),
        IMPORT_VERBOSE=bool(os.environ.get("VERBOSE")),
        LEDGER_CSV=os.environ.get("LEDGER_CSV", "ledger_all_members.csv"),
        USERS_CSV=os.environ.get("USERS_CSV", "users.csv"),
        LEDGER_TIMEZONE=os.environ.get("LEDGER_TIMEZONE") or None,
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=os.environ.get("COOKIE_SECURE") == "true",
        PERMANENT_SESSION_LIFETIME=timedelta(hours=4),
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except (*DB_ERRORS, RuntimeError) as exc:
                message = f"Unable to open database {app.config['DATABASE']}: {exc}"
                app.logger.error("[DB ERROR] %s", message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (*DB_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {app.config['DATABASE']}: {exc}"
            app.logger.error("[DB INIT ERROR] %s", message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    def configure_import_logging():
        if app.config["IMPORT_VERBOSE"]:
            logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.cli.command("seed-users")
    @click.argument("csv_path", required=False)
    def seed_users_command(csv_path=None):
        csv_path = csv_path or app.config["USERS_CSV"]
        try:
            db = get_db()
        except DatabaseInitError as exc:
            print(f"Seeding aborted: {exc}")
            return
        try:
            records = read_csv_records(csv_path)
        except LedgerSourceError as exc:
            print(f"Member roster not loaded: {exc}")
            records = []
        created = seed_users(db, records, default_password=app.config["DEFAULT_PASSWORD"])
        ensure_admin(db, default_password=app.config["DEFAULT_PASSWORD"])
        print(f"Seeded {created} users + admin into {app.config['DATABASE']}")

    @app.cli.command("import-ledger")
    @click.argument("csv_path", required=False)
    def import_ledger_command(csv_path=None):
        configure_import_logging()
        csv_path = csv_path or app.config["LEDGER_CSV"]
        print(f"Reading {csv_path} ...")
        try:
            summary = import_ledger_csv(
                get_db(),
                csv_path,
                default_password=app.config["DEFAULT_PASSWORD"],
                currency=app.config["DEFAULT_CURRENCY"],
                verbose=app.config["IMPORT_VERBOSE"],
            )
        except (LedgerSourceError, DatabaseInitError) as exc:
            print(f"Import aborted: {exc}")
            return

        if not summary.rows:
            print("No rows found in CSV. Nothing to import.")
            return
        for line in summary.report_lines():
            print(line)

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except (*DB_ERRORS, RuntimeError) as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"error": "Not authenticated"}), 401
            return view(**kwargs)

        return wrapped_view

    def admin_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return jsonify({"error": "Not authenticated"}), 401
            if g.user["role"] != ROLE_ADMIN:
                return jsonify({"error": "Require admin"}), 403
            return view(**kwargs)

        return wrapped_view

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR") and request.endpoint != "db_health":
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500

        user_id = session.get("user_id")
        g.user = None
        if user_id is not None:
            g.user = find_user_by_id(get_db(), user_id)

    @app.post("/api/auth/login")
    def login():
        payload = request.get_json(silent=True) or {}
        email = (payload.get("email") or "").strip()
        password = payload.get("password") or ""
        if not email or not password:
            return jsonify({"error": "Email and password required"}), 400

        user = find_user_by_email(get_db(), email)
        if user is None or not user["password_hash"] or not check_password_hash(user["password_hash"], password):
            app.logger.info("Rejected login for %s", email.lower())
            return jsonify({"error": "Invalid credentials"}), 401

        session.clear()
        session.permanent = True
        session["user_id"] = user["id"]
        return jsonify({"ok": True, "must_change_password": bool(user["must_change_password"])})

    @app.post("/api/auth/logout")
    def logout():
        session.clear()
        return jsonify({"ok": True})

    @app.get("/api/me")
    @login_required
    def me():
        return jsonify({"user": user_payload(g.user)})

    @app.get("/api/me/transactions")
    @login_required
    def my_transactions():
        to = (request.args.get("to") or "").strip()
        upper_bound = None
        if to:
            try:
                upper_bound = coerce_date(to)
            except InvalidDate:
                return jsonify({"error": f"Invalid date: {to}"}), 400

        rows = summarize_transactions(
            get_db(),
            g.user["id"],
            upper_bound=upper_bound,
            zone=resolve_timezone(app.config["LEDGER_TIMEZONE"]),
        )
        return jsonify({"transactions": rows})

    @app.get("/api/ledger")
    @login_required
    def my_ledger():
        return jsonify({"ledger": list_ledger(get_db(), g.user["id"])})

    @app.post("/api/me/password")
    @login_required
    def change_password():
        payload = request.get_json(silent=True) or {}
        current_password = payload.get("currentPassword") or ""
        new_password = payload.get("newPassword") or ""
        if not new_password:
            return jsonify({"error": "New password required"}), 400

        db = get_db()
        user = find_user_by_email(db, g.user["email"])
        if user is None:
            return jsonify({"error": "User not found"}), 404
        if not user["password_hash"] or not check_password_hash(user["password_hash"], current_password):
            return jsonify({"error": "Current password incorrect"}), 403

        update_password(db, user["id"], generate_password_hash(new_password))
        app.logger.info("Password changed for user_id=%s", user["id"])
        return jsonify({"ok": True})

    @app.get("/api/admin/ledger")
    @admin_required
    def admin_ledger():
        return jsonify({"ledger": list_all_ledger(get_db())})

    @app.get("/api/admin/users")
    @admin_required
    def admin_users():
        return jsonify({"users": list_users(get_db())})

    @app.post("/api/admin/add-user")
    @admin_required
    def admin_add_user():
        payload = request.get_json(silent=True) or {}
        fullname = (payload.get("fullname") or "").strip()
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or app.config["DEFAULT_PASSWORD"]
        if not fullname or not email:
            return jsonify({"error": "Missing fields"}), 400

        db = get_db()
        if find_user_by_email(db, email) is not None:
            return jsonify({"error": "User already exists"}), 409
        try:
            user_id = insert_user(db, fullname, email, generate_password_hash(password))
            db.commit()
        except DB_ERRORS as exc:
            db.rollback()
            app.logger.warning("Adding member %s failed: %s", email, exc)
            return jsonify({"error": "Error adding member"}), 500

        app.logger.info("Admin user_id=%s added member user_id=%s", g.user["id"], user_id)
        return jsonify({"message": "Member added successfully", "id": user_id})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
