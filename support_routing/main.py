import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from support_routing.api.router import api_router
from support_routing.core.app_logging import configure_logging
from support_routing.core.config import get_settings
from support_routing.core.db import (
    close_engine,
    get_session_factory,
    init_engine,
    initialize_database,
)
from support_routing.infra.db.store import SqlAlchemyRoutingStore
from support_routing.infra.realtime import InMemoryRealtimeHub, RealtimeNotifier
from support_routing.services.agent_service import AgentPresenceService
from support_routing.services.dispatch_service import DispatchEngine
from support_routing.services.flow_service import InboundFlowService
from support_routing.services.greeting_gate import GreetingClaimGate
from support_routing.services.sweeper import EscalationSweeper

settings = get_settings()
settings.validate_production_settings()
configure_logging(settings)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = init_engine()
    await initialize_database(engine)

    store = SqlAlchemyRoutingStore(
        get_session_factory(), max_attempts=settings.serializable_max_attempts
    )
    hub = InMemoryRealtimeHub()
    notifier = RealtimeNotifier(hub)
    dispatch = DispatchEngine(store, notifier, settings)
    gate = GreetingClaimGate(store)
    presence = AgentPresenceService(store, dispatch, notifier, settings)
    sweeper = EscalationSweeper(dispatch, presence, settings.sweeper_interval_seconds)

    app.state.db_engine = engine
    app.state.realtime_hub = hub
    app.state.dispatch_engine = dispatch
    app.state.flow_service = InboundFlowService(store, dispatch, gate, notifier, settings)
    app.state.presence_service = presence
    app.state.sweeper = sweeper

    if settings.sweeper_enabled:
        sweeper.start()
    else:
        logger.warning("Escalation sweeper disabled; deadlines will not be enforced")

    yield

    await sweeper.stop()
    await close_engine(engine)


app = FastAPI(
    title="Support Routing API",
    version="0.1.0",
    docs_url="/docs" if settings.app_env != "production" else None,
    redoc_url="/redoc" if settings.app_env != "production" else None,
    lifespan=lifespan,
)

if settings.trusted_hosts:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.trusted_hosts,
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


app.include_router(api_router, prefix="/api")


@app.get("/", tags=["meta"])
async def root() -> dict[str, str]:
    return {"service": "support-routing", "status": "ok"}
