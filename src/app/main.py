from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime
import logging
import uvicorn

from core.config import settings
from core.factory import ServiceFactory
from core.middleware import setup_exception_handlers
from core.scheduler import initialize_scheduler, cleanup_scheduler
from core.responses import success_response
from routers import dodo_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Services are built lazily on the first webhook; the sweep needs them up front.
    if settings.EXPIRY_SWEEP_ENABLED:
        try:
            services = ServiceFactory.get_services()
            await initialize_scheduler(
                services.subscription_service,
                settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
            )
        except Exception as e:
            logger.error(f"background scheduler initialization failed: {e}")

    yield

    try:
        await cleanup_scheduler()
    except Exception as e:
        logger.error(f"background scheduler shutdown failed: {e}")


app = FastAPI(
    title="UPSC Prep Credit Ledger",
    description="Dodo Payments webhook receiver maintaining subscriptions and credit balances",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.DEBUG
)

setup_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return success_response(data={"message": "credit ledger webhook server"})


@app.get("/health")
async def health_check():
    # static status only, the store is not probed
    return success_response(
        data={
            "database": {"checked": False},
            "timestamp": datetime.now().isoformat(),
            "version": "1.0.0",
            "environment": "development" if settings.DEBUG else "production"
        }
    )


app.include_router(dodo_router.router)
app.include_router(dodo_router.legacy_router)

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.DEBUG
    )
