import logging

from fastapi import APIRouter, Depends, Path, Query

from bomb_round.authentication.cron_authentication import require_cron_token
from bomb_round.models.dc_models import (
    HistoryResponse,
    SessionRecordModel,
    StatsResponse,
    VerifyModel,
    VerifyResponse,
)
from bomb_round.routers.round import get_round_engine, run_round_call
from bomb_round.services.round_engine import MAX_HISTORY_LIMIT, RoundEngine

rest_router = APIRouter()


class AuditAPI:
    @staticmethod
    @rest_router.post("/round/verify", response_model=VerifyResponse)
    async def verify(body: VerifyModel, engine: RoundEngine = Depends(get_round_engine)):
        """Recompute every claimed bomb position from the revealed seeds. No state is read."""
        return engine.verify(body)

    @staticmethod
    @rest_router.get("/round/session/{session_id}", response_model=SessionRecordModel)
    async def get_session(
        session_id: str = Path(..., pattern=r"^\d+$"), engine: RoundEngine = Depends(get_round_engine)
    ):
        return await run_round_call("SESSION_READ_FAILED", engine.read_session_record(session_id))

    @staticmethod
    @rest_router.get("/round/history", response_model=HistoryResponse)
    async def get_history(
        user_address: str = Query(..., alias="userAddress"),
        limit: int = Query(20, ge=1, le=MAX_HISTORY_LIMIT),
        offset: int = Query(0, ge=0),
        status: str | None = Query(None),
        sort_by: str = Query("createdAt", alias="sortBy"),
        sort_order: str = Query("desc", alias="sortOrder"),
        engine: RoundEngine = Depends(get_round_engine),
    ):
        return await run_round_call(
            "HISTORY_FAILED",
            engine.history(
                user_address, limit=limit, offset=offset, status=status, sort_by=sort_by, sort_order=sort_order
            ),
        )

    @staticmethod
    @rest_router.get("/round/stats", response_model=StatsResponse)
    async def get_stats(
        user_address: str = Query(..., alias="userAddress"), engine: RoundEngine = Depends(get_round_engine)
    ):
        return await run_round_call("STATS_FAILED", engine.stats(user_address))


class MaintenanceAPI:
    @staticmethod
    @rest_router.get("/maintenance/cleanup", dependencies=[Depends(require_cron_token)])
    async def cleanup(engine: RoundEngine = Depends(get_round_engine)):
        pruned = await run_round_call("CLEANUP_FAILED", engine.prune())
        logging.info(f"Maintenance cleanup removed {pruned} sessions")
        return {"success": True, "pruned": pruned}

    @staticmethod
    @rest_router.get("/health")
    async def health(engine: RoundEngine = Depends(get_round_engine)):
        return {
            "status": "ok",
            "store": "fallback" if engine.store.fallback_mode else "primary",
        }
