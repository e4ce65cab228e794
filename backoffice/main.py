# ruff: noqa: I001

import logging
import os
from pathlib import Path

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from backoffice import models
from backoffice.api.deps import enforce_auditor_readonly
from backoffice.api.router import api_router
from backoffice.config import settings
from backoffice.core.errors import BackofficeError
from backoffice.core.observability import (
    backoffice_exception_handler,
    global_exception_handler,
    request_logging_middleware,
    uptime_seconds,
    utc_now_iso,
)
from backoffice.core.security import hash_password
from backoffice.database import POOL_CONFIG, SessionLocal, engine
from backoffice.services.rule_catalog import seed_rule_catalog

api_prefix = (
    settings.api_prefix
    if settings.api_prefix.startswith("/")
    else f"/{settings.api_prefix}"
    if settings.api_prefix
    else ""
)

logger = logging.getLogger("backoffice")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.enable_docs else None,
    redoc_url="/redoc" if settings.enable_docs else None,
    openapi_url=(f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
    if settings.enable_docs
    else None,
    dependencies=[Depends(enforce_auditor_readonly)],
)

# Expose logger for middleware without creating circular imports.
app.state.logger = logger

# Domain errors map to 400/404/409/503; anything else is a structured 500.
app.add_exception_handler(BackofficeError, backoffice_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Request-level logging + request correlation id.
app.middleware("http")(request_logging_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=api_prefix)


def _is_test_env() -> bool:
    return (settings.environment or "").lower() == "test"


def _run_migrations_if_configured() -> None:
    if not bool(getattr(settings, "run_migrations_on_start", False)):
        return

    # Avoid running migrations during tests.
    if _is_test_env():
        return

    # Import lazily to keep import graph light for non-migration startups.
    from alembic import command
    from alembic.config import Config
    from sqlalchemy import create_engine, text
    from sqlalchemy.engine.url import make_url

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))

    # Log the DB target without leaking credentials.
    try:
        url_obj = make_url(str(settings.database_url))
        logger.info(
            "migrations_db_target driver=%s host=%s port=%s db=%s has_password=%s",
            url_obj.drivername,
            url_obj.host,
            url_obj.port,
            url_obj.database,
            bool(url_obj.password),
        )
    except Exception as e:
        logger.warning("migrations_db_target_parse_failed error=%s", str(e))

    try:
        db_engine = create_engine(settings.database_url, future=True)
        with db_engine.connect() as connection:
            dialect = str(connection.dialect.name or "").lower()

            # Avoid concurrent migrations across multiple instances.
            lock_acquired = True
            if dialect == "postgresql":
                try:
                    lock_acquired = bool(
                        connection.execute(
                            text("select pg_try_advisory_lock(:k)"), {"k": 71530219}
                        ).scalar()
                    )
                except SQLAlchemyError as e:
                    logger.warning("migrations_lock_failed", extra={"error": str(e)})

            if not lock_acquired:
                logger.info("migrations_skipped_lock_not_acquired")
                return

            try:
                # Reused inside alembic/env.py via config.attributes['connection'].
                alembic_cfg.attributes["connection"] = connection
                command.upgrade(alembic_cfg, "head")
                logger.info("migrations_applied")
            finally:
                if dialect == "postgresql":
                    try:
                        connection.execute(text("select pg_advisory_unlock(:k)"), {"k": 71530219})
                        connection.commit()
                    except SQLAlchemyError as e:
                        logger.warning("migrations_unlock_failed", extra={"error": str(e)})
    except Exception as e:
        # Don't crash the API if migrations fail; endpoints that need the DB return 503.
        logger.error("migrations_failed error=%s", str(e))


def _seed_dev_users() -> None:
    env = str(settings.environment or "dev").lower()
    if env in {"prod", "production", "test"}:
        return

    db = SessionLocal()
    try:
        for role_name in models.RoleName:
            role = db.query(models.Role).filter(models.Role.name == role_name).first()
            if not role:
                db.add(models.Role(name=role_name, description=str(role_name.value)))

        db.flush()

        def ensure_user(email: str, name: str, role_name: models.RoleName) -> None:
            existing = db.query(models.User).filter(models.User.email == email).first()
            if existing:
                return
            role = db.query(models.Role).filter(models.Role.name == role_name).first()
            if not role:
                return
            db.add(
                models.User(
                    email=email,
                    name=name,
                    hashed_password=hash_password("123"),
                    role_id=role.id,
                    active=True,
                )
            )

        ensure_user("admin@backoffice.local", "Admin", models.RoleName.admin)
        ensure_user("compliance@backoffice.dev", "Compliance", models.RoleName.compliance)
        ensure_user("operations@backoffice.dev", "Operations", models.RoleName.operations)
        ensure_user("finance@backoffice.dev", "Finance", models.RoleName.finance)
        ensure_user("auditor@backoffice.dev", "Auditor", models.RoleName.auditor)

        db.commit()
    except OperationalError as e:
        # Database not ready yet (e.g., missing tables) - don't block startup.
        logger.warning("dev_user_seed_failed", extra={"error": str(e)})
        db.rollback()
    finally:
        db.close()


def _seed_rule_catalog() -> None:
    if not settings.seed_rule_catalog or _is_test_env():
        return

    db = SessionLocal()
    try:
        created = seed_rule_catalog(db)
        db.commit()
        logger.info(
            "rule_catalog_startup_seed",
            extra={"rules_created": created, "catalog_version": settings.rule_catalog_version},
        )
    except SQLAlchemyError as e:
        logger.warning("rule_catalog_seed_failed", extra={"error": str(e)})
        db.rollback()
    finally:
        db.close()


@app.on_event("startup")
def _startup():
    pool_status = None
    try:
        pool_status = engine.pool.status()
    except AttributeError:
        pool_status = None

    logger.info(
        "runtime_config",
        extra={
            "pid": os.getpid(),
            "web_concurrency": os.getenv("WEB_CONCURRENCY"),
            "db_pool": POOL_CONFIG,
            "db_pool_status": pool_status,
            "rule_catalog_version": settings.rule_catalog_version,
            "readiness_weights_version": settings.readiness_weights_version,
        },
    )
    _run_migrations_if_configured()
    _seed_dev_users()
    _seed_rule_catalog()


@app.get("/", tags=["meta"])
def root():
    docs_path = (
        (f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
        if settings.enable_docs
        else None
    )
    return {"message": "Commodity Back-Office API", "docs": docs_path}


@app.get("/healthz", tags=["meta"])
def healthz():
    """Liveness check outside the API prefix."""

    return {
        "status": "ok",
        "service": settings.app_name,
        "time": utc_now_iso(),
        "uptime_seconds": round(uptime_seconds(), 2),
    }
