# main.py
import os
from contextlib import asynccontextmanager

from config.logging_config import configure_logging

configure_logging()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from jobs.scheduler import shutdown_scheduler, start_scheduler
from middleware.error_handlers import register_error_handlers
from middleware.rate_limit import limiter
from middleware.request_logging import RequestLoggingMiddleware
from routers.accounts_routes import router as accounts_router
from routers.health_routes import router as health_router
from routers.market_routes import router as market_router
from routers.persons_routes import router as persons_router
from routers.portfolio_routes import router as portfolio_router
from routers.sync_routes import router as sync_router

# db startup
from database import Base, engine
import models  # this triggers models/__init__.py which imports all tables

Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_scheduler()
    yield
    shutdown_scheduler()


app = FastAPI(title="Questrade Portfolio API", lifespan=lifespan)

origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials="*" not in origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(RequestLoggingMiddleware)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_error_handlers(app)

# Include routers
app.include_router(health_router)
app.include_router(persons_router, prefix="/api/persons")
app.include_router(accounts_router, prefix="/api/accounts")
app.include_router(portfolio_router, prefix="/api/portfolio")
app.include_router(sync_router, prefix="/api/sync")
app.include_router(market_router, prefix="/api/market")
