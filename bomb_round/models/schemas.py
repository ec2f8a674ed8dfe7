from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.schema import Column, Index
from sqlalchemy.types import JSON, Boolean, DateTime, Float, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime

JsonColumnType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class GameSessionTable(Base):
    __tablename__ = "game_sessions"
    id = Column(String(32), primary_key=True)
    user_address = Column(String(42), index=True)
    server_seed = Column(String(100), nullable=False)
    server_seed_hash = Column(String(100), nullable=False)
    client_seed = Column(String(100), nullable=False)
    nonce_base = Column(Integer, nullable=False)
    wager_wei = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False)
    rows = Column(JsonColumnType, nullable=False, default=list)
    current_row = Column(Integer, nullable=False, default=0)
    current_multiplier = Column(Float, nullable=False, default=1.0)
    completed_rows = Column(Integer, nullable=False, default=0)
    locked_tile_counts = Column(JsonColumnType, nullable=False, default=list)
    round_summary = Column(JsonColumnType, nullable=True)
    settlement_references = Column(JsonColumnType, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now)
    expires_at = Column(DateTime, nullable=False)
    finalized_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_game_sessions_user_status", "user_address", "status"),
        Index("ix_game_sessions_status_expires", "status", "expires_at"),
    )
