from typing import List

from bomb_round.domain.round_rules import TERMINAL_STATUSES, SessionStatus
from bomb_round.models.dc_models import (
    HistoryItemModel,
    RestoredSessionModel,
    RevealedRowModel,
    RoundSummaryModel,
    RowLayoutModel,
    SessionRecordModel,
)
from bomb_round.models.schema_models import GameSessionSchema, RoundSummarySchema, RowSchema


class DataConverter:
    """This class is used to convert stored sessions into client models."""

    def convert_rows_to_layout(self, rows: List[RowSchema]) -> List[RowLayoutModel]:
        """Public row layout. Bomb positions and probabilities are left out.

        Args:
            rows (List[RowSchema]): Stored rows of a session
        Returns:
            List[RowLayoutModel]: Rows safe to send before the round is terminal
        """
        return [RowLayoutModel.model_validate(row) for row in rows]

    def convert_rows_to_revealed(self, rows: List[RowSchema]) -> List[RevealedRowModel]:
        return [RevealedRowModel.model_validate(row) for row in rows]

    def convert_summary(self, summary: RoundSummarySchema | dict | None) -> RoundSummaryModel | None:
        if summary is None:
            return None
        if isinstance(summary, dict):
            return RoundSummaryModel(**summary)
        return RoundSummaryModel.model_validate(summary)

    def convert_session_to_restored(self, session: GameSessionSchema) -> RestoredSessionModel:
        return RestoredSessionModel(
            id=session.id,
            server_seed_hash=session.server_seed_hash,
            client_seed=session.client_seed,
            nonce_base=session.nonce_base,
            status=session.status,
            current_row=session.current_row,
            current_multiplier=session.current_multiplier,
            completed_rows=session.completed_rows,
            rows=self.convert_rows_to_layout(session.rows),
            wager_wei=session.wager_wei,
            locked_tile_counts=session.locked_tile_counts,
        )

    def convert_session_to_record(self, session: GameSessionSchema) -> SessionRecordModel:
        """Full audit view, only built for terminal sessions."""
        return SessionRecordModel(
            id=session.id,
            user_address=session.user_address,
            server_seed=session.server_seed,
            server_seed_hash=session.server_seed_hash,
            client_seed=session.client_seed,
            nonce_base=session.nonce_base,
            status=session.status,
            rows=self.convert_rows_to_revealed(session.rows),
            locked_tile_counts=session.locked_tile_counts,
            completed_rows=session.completed_rows,
            current_multiplier=session.current_multiplier,
            wager_wei=session.wager_wei,
            round_summary=self.convert_summary(session.round_summary),
            settlement_references=session.settlement_references,
            created_at=session.created_at,
            finalized_at=session.finalized_at,
            is_active=session.is_active,
        )

    def convert_session_to_history_item(self, session: GameSessionSchema) -> HistoryItemModel:
        if session.status == SessionStatus.completed:
            result = "win"
        elif session.status == SessionStatus.lost:
            result = "loss"
        else:
            result = "active"
        # The server seed stays secret while the round can still be played.
        disclosed = session.status in TERMINAL_STATUSES
        return HistoryItemModel(
            id=session.id,
            created_at=session.created_at,
            finalized_at=session.finalized_at,
            status=session.status,
            wager_wei=session.wager_wei,
            result=result,
            multiplier=session.current_multiplier,
            rows=session.completed_rows,
            server_seed_hash=session.server_seed_hash,
            server_seed=session.server_seed if disclosed else None,
            can_verify=disclosed,
        )
