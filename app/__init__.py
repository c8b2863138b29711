from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS

from config import Config
from db import Base, SessionLocal, init_engine
from utils import SimpleRateLimiter, err, iso_utc_now, now_monotonic


_ROLE_NAMES = {
    "ADMIN": "Administrator",
    "HR": "Human Resources",
    "HRBP": "HR Business Partner",
    "DIRECTOR": "Director",
    "FINANCE": "Finance",
    "MANAGER": "Manager",
    "EMPLOYEE": "Employee",
}


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_roles_and_permissions(db):
    from models import Permission, Role

    from auth import STATIC_RBAC_PERMISSIONS

    now = iso_utc_now()
    actor = "SYSTEM_INIT"

    existing_roles = {r.roleCode.upper() for r in db.query(Role).all()}  # type: ignore[attr-defined]
    for rc, name in _ROLE_NAMES.items():
        if rc in existing_roles:
            continue
        db.add(Role(roleCode=rc, roleName=name, status="ACTIVE", createdAt=now, createdBy=actor, updatedAt=now, updatedBy=actor))

    # Only inserts missing keys so custom RBAC rows survive restarts.
    existing_perm = {
        (str(p.permType or "").upper().strip(), str(p.permKey or "").upper().strip())
        for p in db.query(Permission).all()  # type: ignore[attr-defined]
    }
    for action, roles in STATIC_RBAC_PERMISSIONS.items():
        key = action.upper()
        if ("ACTION", key) in existing_perm:
            continue
        db.add(
            Permission(
                permType="ACTION",
                permKey=key,
                rolesCsv=",".join(roles),
                enabled=True,
                updatedAt=now,
                updatedBy=actor,
            )
        )


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(
        cfg.DATABASE_URL,
        pool_size=cfg.DB_POOL_SIZE,
        max_overflow=cfg.DB_MAX_OVERFLOW,
        pool_recycle=cfg.DB_POOL_RECYCLE_SEC,
    )

    import models  # noqa: F401  registers tables on Base

    Base.metadata.create_all(bind=engine)

    from schema import ensure_schema

    ensure_schema(engine)

    # Registers the post-commit task hand-off on SessionLocal.
    from app.tasks import dispatch as _task_dispatch  # noqa: F401

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["JSON_SORT_KEYS"] = False
    app.extensions["rate_limiter"] = SimpleRateLimiter()

    CORS(
        app,
        origins=cfg.ALLOWED_ORIGINS,
        supports_credentials=False,
        allow_headers=["Content-Type", "Authorization", "X-Session-Token", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    from app.routes.api import api_bp
    from app.routes.core import core_bp
    from app.routes.rest import rest_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(api_bp)
    app.register_blueprint(rest_bp)

    from cache_layer import invalidate_rbac
    from services.promotion_workflow import seed_default_workflows

    db0 = SessionLocal()
    try:
        _seed_roles_and_permissions(db0)
        seed_default_workflows(db0)
        db0.commit()
    finally:
        db0.close()
    invalidate_rbac()

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}. Use POST /api for actions.", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed", http_status=405)

    logging.getLogger("api").info("app ready env=%s version=%s", cfg.ENV, cfg.APP_VERSION)
    return app
