import logging
from contextlib import asynccontextmanager
from typing import Any, Dict
from fastapi import Body, FastAPI, status
from order_outbox.core.db import init_db, close_db
from order_outbox.core.log import configure_logging
from order_outbox.api.v1.orders import router as orders_router
from order_outbox.core.config import PROJECT_NAME, VERSION
from order_outbox.core.exception_handlers import setup_exception_handlers

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    configure_logging()
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db() # Connect to DB and generate schemas
    yield
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    # Configure API documentation and paths
    docs_url="/docs",
    redoc_url="/redoc"
)

# The API only writes orders + outbox rows; publishing is the dispatcher's job
app.include_router(orders_router, prefix="/api/v1/orders", tags=["Order Management"])

setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME}

@app.post("/echo", status_code=status.HTTP_200_OK)
async def echo(body: Dict[str, Any] = Body(...)):
    """Returns the request body unchanged; handy for wiring checks."""
    return {"received": body}
