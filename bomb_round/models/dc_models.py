from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from enum import Enum
from typing import Optional, List
from datetime import datetime

from bomb_round.domain.round_rules import (
    BOMBS_PER_ROW,
    MAX_GENERATED_ROWS,
    MAX_TILE_OPTION,
    SessionStatus,
)


class CamelModel(BaseModel):
    """Wire models: snake_case in Python, camelCase on the HTTP surface."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class ActionName(str, Enum):
    select_tile = "selectTile"
    register_wager = "registerWager"
    cash_out = "cashOut"


# ==============================================================================
# ==== Requests ================================================================
# ==============================================================================


class TileRangeModel(CamelModel):
    min: Optional[int] = None
    max: Optional[int] = None


class StartRoundModel(CamelModel):
    address: str
    wager_wei: Optional[str] = None
    tile_range: Optional[TileRangeModel] = None
    locked_tile_counts: Optional[List[int]] = None
    client_seed: Optional[str] = Field(default=None, max_length=100)


class RoundActionModel(CamelModel):
    session_id: str
    action: str
    address: Optional[str] = None
    column: Optional[int] = None
    row_index: Optional[int] = None
    wager_wei: Optional[str] = None
    tx_hash: Optional[str] = None


class SessionIdModel(CamelModel):
    session_id: str


class SignModel(CamelModel):
    session_id: str
    user: str
    wager_wei: str
    deadline: Optional[int] = None
    xp_deadline: Optional[int] = None


class UserAddressModel(CamelModel):
    user_address: str


class VerifyRowInputModel(CamelModel):
    row_index: Optional[int] = Field(default=None, ge=0)
    tile_count: int = Field(gt=0, le=MAX_TILE_OPTION)
    claimed_bomb_index: int


class VerifyModel(CamelModel):
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce_base: int
    bombs_per_row: int = Field(default=BOMBS_PER_ROW, ge=1, lt=MAX_TILE_OPTION)
    rows: List[VerifyRowInputModel] = Field(max_length=MAX_GENERATED_ROWS)


# ==============================================================================
# ==== Responses ===============================================================
# ==============================================================================


class ProbabilityModel(CamelModel):
    tile_index: int
    bomb: float
    safe: float


class RowLayoutModel(CamelModel):
    """Public view of a row. The bomb position is never part of it."""

    row_index: int
    tile_count: int
    row_multiplier: float
    nonce: int
    game_hash: str
    bombs_per_row: int
    selected_column: Optional[int] = None
    is_completed: bool = False
    crashed: bool = False


class RevealedRowModel(RowLayoutModel):
    bomb_index: int
    bomb_indices: List[int]
    probabilities: List[ProbabilityModel]


class RoundSummaryModel(CamelModel):
    xp: int
    kills: int
    time_alive: int
    score: int
    multiplier: float
    completed_rows: int


class StartRoundResponse(CamelModel):
    success: bool = True
    session_id: str
    server_seed_hash: str
    nonce_base: int
    chain_id: int
    rows: List[RowLayoutModel]
    locked_tile_counts: List[int]


class ActionResponse(CamelModel):
    success: bool = True
    session_id: str
    status: SessionStatus
    chain_id: int
    result: Optional[str] = None
    row_index: Optional[int] = None
    selected_column: Optional[int] = None
    bomb_column: Optional[int] = None
    next_row_index: Optional[int] = None
    current_multiplier: Optional[float] = None
    completed_rows: Optional[int] = None
    summary: Optional[RoundSummaryModel] = None
    wager_wei: Optional[str] = None


class RevealResponse(CamelModel):
    success: bool = True
    session_id: str
    status: SessionStatus
    server_seed: str
    client_seed: str
    server_seed_hash: str
    nonce_base: int
    round_summary: Optional[RoundSummaryModel] = None
    rows: List[RevealedRowModel]


class SignResponse(CamelModel):
    success: bool = True
    result_signature: str
    xp_signature: str
    nonce: str
    deadline: str
    xp_deadline: str


class RestoredSessionModel(CamelModel):
    id: str
    server_seed_hash: str
    client_seed: str
    nonce_base: int
    status: SessionStatus
    current_row: int
    current_multiplier: float
    completed_rows: int
    rows: List[RowLayoutModel]
    wager_wei: Optional[str] = None
    locked_tile_counts: List[int]


class RestoreResponse(CamelModel):
    session: Optional[RestoredSessionModel] = None
    restored: bool


class ClearResponse(CamelModel):
    success: bool = True
    cleared_count: int


class SessionRecordModel(CamelModel):
    """Audit view of a persisted, terminal session."""

    id: str
    user_address: Optional[str] = None
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce_base: int
    status: SessionStatus
    rows: List[RevealedRowModel]
    locked_tile_counts: List[int]
    completed_rows: int
    current_multiplier: float
    wager_wei: Optional[str] = None
    round_summary: Optional[RoundSummaryModel] = None
    settlement_references: dict
    created_at: datetime
    finalized_at: Optional[datetime] = None
    is_active: bool


class VerifyRowResultModel(CamelModel):
    row_index: int
    nonce: int
    valid: bool
    recomputed_bomb_index: int
    recomputed_hash: str


class VerifyResponse(CamelModel):
    success: bool = True
    valid: bool
    hash_matches: bool
    rows: List[VerifyRowResultModel]


class HistoryItemModel(CamelModel):
    id: str
    created_at: datetime
    finalized_at: Optional[datetime] = None
    status: SessionStatus
    wager_wei: Optional[str] = None
    result: str
    multiplier: float
    rows: int
    server_seed_hash: str
    server_seed: Optional[str] = None
    can_verify: bool


class PaginationModel(CamelModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class HistoryResponse(CamelModel):
    items: List[HistoryItemModel]
    pagination: PaginationModel


class StatsResponse(CamelModel):
    games_played: int
    games_won: int
    games_lost: int
    win_rate: float
    total_wagered_wei: str
    total_payout_wei: str
    net_profit_wei: str
    highest_payout_wei: str
    max_multiplier: float
    avg_multiplier: float
    longest_streak: int
    current_streak: int
