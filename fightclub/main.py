"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fightclub.config import settings
from fightclub.database import build_engine, create_db_and_tables
from fightclub.engine.scheduler import SettlementScheduler
from fightclub.engine.settlement import SettlementOrchestrator
from fightclub.services.anti_cheat import AntiCheatService
from fightclub.services.exchange_client import ExchangeClient
from fightclub.services.stake_limit import StakeLimitValidator
from fightclub.services.trade_recorder import TradeRecorder
from fightclub.utils.logging import setup_logging
from fightclub.api import admin, internal, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    engine = getattr(app.state, "engine", None) or build_engine()
    create_db_and_tables(engine)

    exchange = ExchangeClient()
    anti_cheat = AntiCheatService(engine)
    orchestrator = SettlementOrchestrator(engine, anti_cheat)
    scheduler = SettlementScheduler(engine, orchestrator)

    app.state.engine = engine
    app.state.exchange = exchange
    app.state.anti_cheat = anti_cheat
    app.state.stake_validator = StakeLimitValidator(engine, exchange)
    app.state.trade_recorder = TradeRecorder(engine)
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler

    if settings.scheduler_enabled:
        scheduler.start()

    yield

    scheduler.stop()
    await exchange.close()


app = FastAPI(
    title="Trade Fight Club",
    description="Fight settlement, stake limits and anti-cheat",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(system.router)
app.include_router(internal.router)
app.include_router(admin.router)
