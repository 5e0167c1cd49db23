import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from pos_settlement.api import orders, reconciliation, terminals
from pos_settlement.config import settings
from pos_settlement.db_init import init_db
from pos_settlement.dependencies import get_channel_registry, get_gateway_client, get_reconciliation_engine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("pos_settlement.startup")


def _validate_database_url_for_runtime(database_url: str) -> None:
    parsed = urlparse(database_url)
    scheme = parsed.scheme
    postgres_schemes = {"postgres", "postgresql", "postgresql+psycopg"}

    if not scheme:
        raise RuntimeError("DATABASE_URL is missing URL scheme (expected postgresql:// or sqlite://).")
    if scheme == "sqlite":
        return
    if scheme not in postgres_schemes:
        raise RuntimeError(
            f"DATABASE_URL has unsupported scheme '{scheme}' "
            "(expected postgresql://, postgresql+psycopg:// or sqlite://)."
        )
    if not parsed.hostname:
        raise RuntimeError("DATABASE_URL is missing host.")
    if not parsed.path.lstrip("/"):
        raise RuntimeError("DATABASE_URL is missing database name in path.")


def _db_url_diagnostics(database_url: str) -> str:
    parsed = urlparse(database_url)
    return (
        f"scheme={parsed.scheme or '<missing>'}, host={parsed.hostname or '<missing>'}, "
        f"port={parsed.port or '<missing>'}, database={parsed.path.lstrip('/') or '<missing>'}"
    )


def _log_channel_configuration() -> None:
    for name, config in get_channel_registry().items():
        if config.enabled:
            logger.info("Terminal channel %s enabled (default terminal: %s)", name, config.default_terminal_ref)
        else:
            logger.info("Terminal channel %s not configured", name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database_url = "<unavailable>"
    logger.info("Application startup initiated.")
    try:
        database_url = settings.DATABASE_URL
        _validate_database_url_for_runtime(database_url)
        init_db()
    except Exception as exc:
        diagnostics = (
            _db_url_diagnostics(database_url)
            if database_url != "<unavailable>"
            else "DATABASE_URL unavailable (missing or unreadable)."
        )
        logger.exception(
            "Database initialization failed: %s. DATABASE_URL diagnostics: %s",
            str(exc),
            diagnostics,
        )
        raise
    _log_channel_configuration()

    engine = None
    if not settings.RECONCILE_ENABLED:
        logger.info("Reconciliation worker disabled (RECONCILE_ENABLED=false)")
    elif not get_gateway_client().configured:
        logger.warning("Reconciliation worker not started: gateway credentials are not configured")
    else:
        engine = get_reconciliation_engine()
        engine.start()
    logger.info("Application startup completed successfully.")
    yield
    if engine is not None:
        engine.stop()


app = FastAPI(
    title="POS Settlement API",
    description=(
        "Card-present payments for POS lanes: orders with invoice numbers, socket / cloud / "
        "gateway-routed terminals, void and refund, and background reconciliation against the gateway."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Orders", "description": "Create orders, read payment status, void and refund."},
        {"name": "Terminals", "description": "Start, check and poll terminal payments."},
        {"name": "Reconciliation", "description": "Manual trigger for the gateway reconciliation cycle."},
    ],
)

app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(terminals.router, prefix="/api/terminals", tags=["Terminals"])
app.include_router(reconciliation.router, prefix="/api/reconciliation", tags=["Reconciliation"])


@app.get("/")
def root():
    return {"status": "ok", "service": "POS Settlement API"}


@app.get("/health")
def health():
    return {"status": "ok"}
