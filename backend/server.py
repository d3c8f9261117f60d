from coaching.routes import ALL_ROUTERS
from coaching.processor import StripeProcessor
from coaching.store import LedgerStore
from coaching.dependencies import CoachingServices
from coaching.db_init import ensure_indexes
from coaching import __version__
from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(services: Optional[CoachingServices] = None) -> FastAPI:
    """
    Build the API. Passing `services` skips the database and Stripe wiring
    done at startup.
    """
    app = FastAPI(title="Coaching Payments API", version=__version__)
    app.state.coaching = services

    api_router = APIRouter(prefix="/api")

    @api_router.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "services_ready": app.state.coaching is not None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    for router in ALL_ROUTERS:
        api_router.include_router(router)

    app.include_router(api_router)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=[origin.strip() for origin in os.environ.get(
            'CORS_ORIGINS', 'http://localhost:3000').split(',')],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup():
        if app.state.coaching is not None:
            return

        # Fail fast if database is unavailable
        from database import check_db_connection, get_database
        db_ok, db_error = await check_db_connection()
        if not db_ok:
            logger.critical(f"Database connection failed on startup: {db_error}")
            raise RuntimeError(f"Cannot start application - database connection failed: {db_error}")

        db = get_database()
        await ensure_indexes(db)

        processor = StripeProcessor()
        if not processor.is_configured:
            logger.warning("STRIPE_SECRET_KEY not set; payment endpoints will fail")

        app.state.coaching = CoachingServices(LedgerStore(db), processor)
        logger.info("Coaching services started")

    @app.on_event("shutdown")
    async def shutdown_db_client():
        from database import close_client
        close_client()

    return app


app = create_app()
