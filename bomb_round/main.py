from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from bomb_round.authentication.cron_authentication import CronAuthentication
from bomb_round.chain_client import ChainClient
from bomb_round.converter import DataConverter
from bomb_round.db import Session
from bomb_round.domain.errors import RoundError
from bomb_round.load_secrets import (
    chain_id,
    cron_secret,
    game_address,
    game_id,
    game_signer_private_key,
    prune_interval_minutes,
    receipt_poll_seconds,
    receipt_timeout_seconds,
    redis_url,
    rpc_timeout_seconds,
    rpc_url,
    session_idle_minutes,
    session_ttl_hours,
    store_timeout_seconds,
    wager_vault_address,
    xp_registry_address,
    xp_signer_private_key,
)
from bomb_round.redis_publisher import RoundEventPublisher
from bomb_round.routers import restapi
from bomb_round.routers import round as round_routes
from bomb_round.services.round_engine import RoundEngine
from bomb_round.services.session_store import (
    BackendSelector,
    MemorySessionBackend,
    SessionStore,
    SqlSessionBackend,
)
from bomb_round.services.settlement import AttestationSigner, SettlementIssuer

logging.basicConfig(level=logging.INFO)


def build_round_engine() -> RoundEngine:
    """Wire the engine from the environment: SQL store with in-process fallback, chain, signer."""
    selector = BackendSelector(SqlSessionBackend(Session), MemorySessionBackend())
    store = SessionStore(
        selector,
        ttl=timedelta(hours=session_ttl_hours),
        idle_window=timedelta(minutes=session_idle_minutes),
        timeout=store_timeout_seconds,
    )
    publisher = RoundEventPublisher.from_url(redis_url)
    chain = ChainClient(
        rpc_url,
        wager_vault_address,
        xp_registry_address,
        timeout=rpc_timeout_seconds,
        receipt_timeout=receipt_timeout_seconds,
        receipt_poll=receipt_poll_seconds,
    )
    signer = None
    if game_signer_private_key and game_address and xp_registry_address:
        signer = AttestationSigner(
            game_signer_private_key,
            chain_id,
            game_address,
            xp_registry_address,
            xp_private_key=xp_signer_private_key,
        )
    else:
        logging.warning("Settlement signer is not configured; /round/sign will answer ONCHAIN_UNAVAILABLE")
    settlement = SettlementIssuer(store, chain, signer, game_id, publisher=publisher)
    return RoundEngine(store, settlement, publisher, DataConverter(), chain_id=chain_id)


def create_app(round_engine: RoundEngine | None = None, cron_token: str | None = cron_secret) -> FastAPI:
    """Build the FastAPI app

    Args:
        round_engine (RoundEngine | None): Injected engine, built from the environment when None
        cron_token (str | None): Bearer token required by /maintenance/cleanup
    """
    round_engine = round_engine or build_round_engine()
    scheduler = AsyncIOScheduler()

    @asynccontextmanager
    async def lifespan(app):
        """Create the game_sessions table and schedule pruning.
        This function is called to start the server.
        """
        selector = round_engine.store.selector
        if isinstance(selector.primary, SqlSessionBackend) and not selector.fallback_mode:
            try:
                await selector.primary.create_table()
            except (SQLAlchemyError, OSError) as e:
                selector.trip(e)

        # Abandoned pending/active sessions age out here
        scheduler.add_job(round_engine.prune, "interval", minutes=prune_interval_minutes)
        scheduler.start()
        try:
            yield
        finally:
            scheduler.shutdown()
            await round_engine.publisher.close()
            logging.info("Stop Server")

    app = FastAPI(lifespan=lifespan)
    app.state.round_engine = round_engine
    app.state.cron_authentication = CronAuthentication(cron_token)
    app.include_router(round_routes.round_router)
    app.include_router(restapi.rest_router)

    @app.exception_handler(RoundError)
    async def round_error_handler(request: Request, exc: RoundError):
        if exc.status_code >= 500:
            logging.error(f"{request.url.path} failed with {exc.code}: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.code})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logging.info(f"Rejected malformed request to {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"success": False, "error": "INVALID_REQUEST"})

    return app


app = create_app()
