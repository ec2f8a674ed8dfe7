from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from bomb_round.domain.round_rules import SessionStatus


class ProbabilitySchema(BaseModel):
    tile_index: int
    bomb: float
    safe: float


class RowSchema(BaseModel):
    row_index: int
    nonce: int
    game_hash: str
    tile_count: int
    bombs_per_row: int
    bomb_index: int
    bomb_indices: List[int] = Field(default_factory=list)
    row_multiplier: float
    probabilities: List[ProbabilitySchema] = Field(default_factory=list)
    selected_column: int | None = None
    crashed: bool = False
    is_completed: bool = False

    def hits_bomb(self, column: int) -> bool:
        return column in (self.bomb_indices or [self.bomb_index])


class RoundSummarySchema(BaseModel):
    xp: int
    kills: int
    time_alive: int
    score: int
    multiplier: float
    completed_rows: int


class GameSessionSchema(BaseModel):
    id: str
    user_address: str | None
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce_base: int
    wager_wei: str | None = None
    status: SessionStatus
    rows: List[RowSchema] = Field(default_factory=list)
    current_row: int = 0
    current_multiplier: float = 1.0
    completed_rows: int = 0
    locked_tile_counts: List[int] = Field(default_factory=list)
    round_summary: Optional[RoundSummarySchema] = None
    settlement_references: dict = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    finalized_at: datetime | None = None
    is_active: bool = True

    class Config:
        from_attributes = True
