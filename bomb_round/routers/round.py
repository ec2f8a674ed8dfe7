import logging

from fastapi import APIRouter, Depends, Request

from bomb_round.domain.errors import RoundError
from bomb_round.models.dc_models import (
    ActionResponse,
    ClearResponse,
    RestoreResponse,
    RevealResponse,
    RoundActionModel,
    SessionIdModel,
    SignModel,
    SignResponse,
    StartRoundModel,
    StartRoundResponse,
    UserAddressModel,
)
from bomb_round.services.round_engine import RoundEngine

round_router = APIRouter(prefix="/round")


def get_round_engine(request: Request) -> RoundEngine:
    return request.app.state.round_engine


async def run_round_call(failure_code: str, awaitable):
    """Await an engine call; unexpected errors are logged and reported as ``failure_code``."""
    try:
        return await awaitable
    except RoundError:
        raise
    except Exception as e:
        logging.error(f"{failure_code}: {type(e).__name__}: {e}")
        raise RoundError(failure_code, str(e)) from e


class RoundAPI:
    @staticmethod
    @round_router.post("/start", response_model=StartRoundResponse)
    async def start_round(body: StartRoundModel, engine: RoundEngine = Depends(get_round_engine)):
        tile_range = (body.tile_range.min, body.tile_range.max) if body.tile_range else None
        return await run_round_call(
            "FAILED_TO_CREATE_SESSION",
            engine.start_round(
                body.address,
                wager_wei=body.wager_wei,
                tile_range=tile_range,
                locked_tile_counts=body.locked_tile_counts,
                client_seed=body.client_seed,
            ),
        )

    @staticmethod
    @round_router.post("/action", response_model=ActionResponse, response_model_exclude_none=True)
    async def round_action(body: RoundActionModel, engine: RoundEngine = Depends(get_round_engine)):
        return await run_round_call(
            "ACTION_FAILED",
            engine.handle_action(
                body.session_id,
                body.action,
                body.address,
                column=body.column,
                row_index=body.row_index,
                wager_wei=body.wager_wei,
                tx_hash=body.tx_hash,
            ),
        )

    @staticmethod
    @round_router.post("/reveal", response_model=RevealResponse)
    async def reveal(body: SessionIdModel, engine: RoundEngine = Depends(get_round_engine)):
        return await run_round_call("REVEAL_FAILED", engine.reveal(body.session_id))

    @staticmethod
    @round_router.post("/sign", response_model=SignResponse)
    async def sign(body: SignModel, engine: RoundEngine = Depends(get_round_engine)):
        return await run_round_call(
            "SIGNING_FAILED",
            engine.sign(
                body.session_id,
                body.user,
                body.wager_wei,
                deadline=body.deadline,
                xp_deadline=body.xp_deadline,
            ),
        )


class SessionAPI:
    @staticmethod
    @round_router.post("/restore", response_model=RestoreResponse)
    async def restore(body: UserAddressModel, engine: RoundEngine = Depends(get_round_engine)):
        return await run_round_call("RESTORE_FAILED", engine.restore(body.user_address))

    @staticmethod
    @round_router.post("/clear", response_model=ClearResponse)
    async def clear(body: UserAddressModel, engine: RoundEngine = Depends(get_round_engine)):
        return await run_round_call("CLEAR_FAILED", engine.clear(body.user_address))
