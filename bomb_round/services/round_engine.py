"""Round lifecycle: start, tile selection, wager binding, cash out and reveal.

Every write goes through ``SessionStore.update`` with a guard that re-checks
the preconditions against the freshly read record, so a request that lost a
race gets a conflict instead of overwriting the winner.
"""

import logging
from typing import List

from bomb_round.converter import DataConverter
from bomb_round.domain.commitment import generate_seeds, new_session_id
from bomb_round.domain.errors import (
    InfrastructureError,
    RoundAuthorizationError,
    RoundConflictError,
    RoundNotFoundError,
    RoundValidationError,
)
from bomb_round.domain.fairness import build_fair_rows, compute_dynamic_row_count, verify_round
from bomb_round.domain.round_rules import (
    BOMBS_PER_ROW,
    HOUSE_EDGE,
    MAX_GENERATED_ROWS,
    MAX_TOTAL_MULTIPLIER,
    PRUNABLE_STATUSES,
    SessionStatus,
    build_round_summary,
    clamp_tile,
    ensure_transition,
    normalize_address,
    normalize_tile_range,
    parse_wager,
    reveal_status,
)
from bomb_round.models.dc_models import (
    ActionName,
    ActionResponse,
    ClearResponse,
    HistoryResponse,
    PaginationModel,
    RestoreResponse,
    RevealResponse,
    RoundSummaryModel,
    SessionRecordModel,
    SignResponse,
    StartRoundResponse,
    StatsResponse,
    VerifyModel,
    VerifyResponse,
    VerifyRowResultModel,
)
from bomb_round.models.schema_models import GameSessionSchema
from bomb_round.redis_publisher import RoundEventPublisher
from bomb_round.services.session_store import SessionStore
from bomb_round.services.settlement import SettlementIssuer
from bomb_round.services.stats import summarize_sessions

MAX_HISTORY_LIMIT = 100
SORT_COLUMNS = {"createdAt": "created_at", "created_at": "created_at", "finalizedAt": "finalized_at", "finalized_at": "finalized_at"}


def requester_address(player_address: str | None) -> str:
    if not isinstance(player_address, str) or not player_address:
        raise RoundAuthorizationError("UNAUTHORIZED")
    return player_address.lower()


def check_action_access(record: GameSessionSchema, requester: str) -> None:
    """Checks shared by every player action."""
    if record.user_address and record.user_address != requester:
        raise RoundAuthorizationError("UNAUTHORIZED")
    if record.status == SessionStatus.submitted:
        raise RoundConflictError("SESSION_ALREADY_SUBMITTED")
    if not record.rows:
        raise RoundConflictError("SESSION_NOT_INITIALISED")
    if not record.user_address:
        raise RoundConflictError("SESSION_UNBOUND")


def check_tile_selection(record: GameSessionSchema, column: int, row_index: int | None = None) -> None:
    """Raise unless ``column`` may be picked on the current row of ``record``."""
    if record.status != SessionStatus.active:
        raise RoundConflictError("SESSION_NOT_ACTIVE")
    if not 0 <= record.current_row < len(record.rows):
        raise RoundConflictError("ROUND_FINISHED")
    if row_index is not None and row_index != record.current_row:
        raise RoundConflictError("ROW_NOT_CURRENT")
    row = record.rows[record.current_row]
    if row.selected_column is not None or row.crashed:
        raise RoundConflictError("ROW_ALREADY_REVEALED")
    if column >= row.tile_count:
        raise RoundValidationError("INVALID_COLUMN")


def check_same_progress(current: GameSessionSchema, seen: GameSessionSchema) -> None:
    if current.current_row != seen.current_row or current.completed_rows != seen.completed_rows:
        raise RoundConflictError("ROW_ALREADY_REVEALED")


class RoundEngine:
    """Drives a game session from creation to reveal.

    Args:
        store (SessionStore): Session persistence
        settlement (SettlementIssuer | None): Escrow checks and attestations,
            None when no chain is configured
        chain_id (int): Echoed in responses so the client signs on the right chain
    """

    def __init__(
        self,
        store: SessionStore,
        settlement: SettlementIssuer | None = None,
        publisher: RoundEventPublisher | None = None,
        converter: DataConverter | None = None,
        chain_id: int = 84532,
        house_edge: float = HOUSE_EDGE,
        bombs_per_row: int = BOMBS_PER_ROW,
        max_total_multiplier: float = MAX_TOTAL_MULTIPLIER,
    ):
        self.store = store
        self.settlement = settlement
        self.publisher = publisher or RoundEventPublisher()
        self.converter = converter or DataConverter()
        self.chain_id = chain_id
        self.house_edge = house_edge
        self.bombs_per_row = bombs_per_row
        self.max_total_multiplier = max_total_multiplier

    async def _load_for_action(self, session_id: str, player_address: str | None) -> tuple[GameSessionSchema, str]:
        if not session_id:
            raise RoundValidationError("INVALID_REQUEST")
        record = await self.store.get(session_id)
        if record is None:
            raise RoundNotFoundError("SESSION_NOT_FOUND")
        requester = requester_address(player_address)
        check_action_access(record, requester)
        return record, requester

    async def _commit(self, session_id: str, changes: dict, guard) -> GameSessionSchema:
        updated = await self.store.update(session_id, changes, guard=guard)
        if updated is None:
            raise RoundNotFoundError("SESSION_NOT_FOUND")
        if "status" in changes:
            await self.publisher.publish(session_id, updated.status.value)
        return updated

    async def start_round(
        self,
        player_address: str | None,
        wager_wei: str | None = None,
        tile_range: tuple[int | None, int | None] | None = None,
        locked_tile_counts: List[int] | None = None,
        client_seed: str | None = None,
    ) -> StartRoundResponse:
        """Create a session, generate its rows and make it active

        Args:
            player_address (str | None): Player the session is bound to
            wager_wei (str | None): Intended wager. It is only bound to the
                session by registerWager after the escrow check.
            tile_range (tuple | None): Requested (min, max) tiles per row
            locked_tile_counts (List[int] | None): Explicit tile count per row
            client_seed (str | None): Player supplied seed, random when omitted

        Returns:
            StartRoundResponse: Commitment hash and row layout without bombs
        """
        user_address = normalize_address(player_address)
        requested_wager = str(parse_wager(wager_wei)) if wager_wei is not None else None
        minimum, maximum = tile_range if tile_range is not None else (None, None)
        min_tiles, max_tiles = normalize_tile_range(minimum, maximum)
        locked = [clamp_tile(value) for value in locked_tile_counts or []][:MAX_GENERATED_ROWS]

        commitment = generate_seeds(client_seed)
        record = self.store.new_record(
            id=new_session_id(),
            user_address=user_address,
            server_seed=commitment.server_seed,
            server_seed_hash=commitment.server_seed_hash,
            client_seed=commitment.client_seed,
            nonce_base=commitment.nonce_base,
            locked_tile_counts=locked,
            settlement_references={"requested_wager_wei": requested_wager} if requested_wager else {},
        )
        await self.store.create(record)

        row_count = len(locked) or compute_dynamic_row_count(
            max_tiles, self.bombs_per_row, self.house_edge, self.max_total_multiplier
        )
        rows = build_fair_rows(
            server_seed=commitment.server_seed,
            client_seed=commitment.client_seed,
            row_count=row_count,
            nonce_base=commitment.nonce_base,
            min_tiles=min_tiles,
            max_tiles=max_tiles,
            bombs_per_row=self.bombs_per_row,
            house_edge=self.house_edge,
            max_total_multiplier=self.max_total_multiplier,
            explicit_tile_counts=locked or None,
        )

        updated = await self._commit(
            record.id,
            {
                "status": SessionStatus.active,
                "rows": rows,
                "current_row": 0,
                "current_multiplier": 1.0,
                "completed_rows": 0,
                "locked_tile_counts": [row["tile_count"] for row in rows],
            },
            guard=lambda current: ensure_transition(current.status, SessionStatus.active),
        )
        logging.info(f"Started session {record.id} for {user_address} with {len(rows)} rows")

        return StartRoundResponse(
            session_id=updated.id,
            server_seed_hash=updated.server_seed_hash,
            nonce_base=updated.nonce_base,
            chain_id=self.chain_id,
            rows=self.converter.convert_rows_to_layout(updated.rows),
            locked_tile_counts=updated.locked_tile_counts,
        )

    async def handle_action(
        self,
        session_id: str,
        action: str,
        player_address: str | None,
        column: int | None = None,
        row_index: int | None = None,
        wager_wei: str | None = None,
        tx_hash: str | None = None,
    ) -> ActionResponse:
        if not session_id or not action:
            raise RoundValidationError("INVALID_REQUEST")
        try:
            action_name = ActionName(action)
        except ValueError:
            raise RoundValidationError("UNKNOWN_ACTION")

        if action_name == ActionName.select_tile:
            return await self.select_tile(session_id, player_address, column, row_index)
        if action_name == ActionName.register_wager:
            return await self.register_wager(session_id, player_address, wager_wei, tx_hash)
        return await self.cash_out(session_id, player_address)

    async def select_tile(
        self, session_id: str, player_address: str | None, column: int | None, row_index: int | None = None
    ) -> ActionResponse:
        """Reveal one tile of the current row

        A safe tile completes the row and multiplies the running multiplier;
        the bomb ends the round as ``lost`` with a summary of the progress
        made before the pick.
        """
        record, requester = await self._load_for_action(session_id, player_address)
        if record.status != SessionStatus.active:
            raise RoundConflictError("SESSION_NOT_ACTIVE")
        if not isinstance(column, int) or isinstance(column, bool) or column < 0:
            raise RoundValidationError("INVALID_COLUMN")
        check_tile_selection(record, column, row_index)

        def guard(current: GameSessionSchema) -> None:
            check_action_access(current, requester)
            check_tile_selection(current, column, row_index)
            check_same_progress(current, record)

        current_index = record.current_row
        row = record.rows[current_index]
        hit_bomb = row.hits_bomb(column)
        rows = [stored.model_dump() for stored in record.rows]
        rows[current_index].update(selected_column=column, crashed=hit_bomb, is_completed=not hit_bomb)

        if hit_bomb:
            summary = build_round_summary(record.completed_rows, record.current_multiplier)
            updated = await self._commit(
                session_id,
                {
                    "rows": rows,
                    "status": SessionStatus.lost,
                    "current_row": current_index,
                    "round_summary": summary,
                    "finalized_at": self.store.clock(),
                },
                guard=guard,
            )
            logging.info(f"Session {session_id} hit the bomb on row {current_index}")
            return ActionResponse(
                session_id=session_id,
                status=updated.status,
                chain_id=self.chain_id,
                result="bomb",
                row_index=current_index,
                bomb_column=row.bomb_index,
                current_multiplier=updated.current_multiplier,
                completed_rows=updated.completed_rows,
                summary=RoundSummaryModel(**summary),
            )

        completed_rows = record.completed_rows + 1
        multiplier = record.current_multiplier * row.row_multiplier
        summary = build_round_summary(completed_rows, multiplier)
        next_index = current_index + 1
        has_more_rows = next_index < len(rows)
        next_status = SessionStatus.active if has_more_rows else SessionStatus.completed

        def safe_guard(current: GameSessionSchema) -> None:
            guard(current)
            ensure_transition(current.status, next_status)

        updated = await self._commit(
            session_id,
            {
                "rows": rows,
                "status": next_status,
                "current_row": next_index if has_more_rows else len(rows),
                "current_multiplier": multiplier,
                "completed_rows": completed_rows,
                "round_summary": summary,
                "finalized_at": None if has_more_rows else self.store.clock(),
            },
            guard=safe_guard,
        )
        return ActionResponse(
            session_id=session_id,
            status=updated.status,
            chain_id=self.chain_id,
            result="safe",
            row_index=current_index,
            selected_column=column,
            next_row_index=next_index if has_more_rows else -1,
            current_multiplier=updated.current_multiplier,
            completed_rows=updated.completed_rows,
            summary=RoundSummaryModel(**summary),
        )

    async def register_wager(
        self, session_id: str, player_address: str | None, wager_wei: str | None, tx_hash: str | None = None
    ) -> ActionResponse:
        """Bind the escrowed wager to the session, exactly once

        Registering the same amount again succeeds without touching the chain;
        a different amount is a conflict.
        """
        record, requester = await self._load_for_action(session_id, player_address)
        if wager_wei is None:
            raise RoundValidationError("INVALID_WAGER")
        normalized_wager = str(parse_wager(wager_wei))

        if record.wager_wei:
            if record.wager_wei == normalized_wager:
                return ActionResponse(
                    session_id=session_id, status=record.status, chain_id=self.chain_id, wager_wei=normalized_wager
                )
            raise RoundConflictError("WAGER_ALREADY_REGISTERED")

        if self.settlement is None:
            raise InfrastructureError("ONCHAIN_UNAVAILABLE", status_code=503)
        await self.settlement.verify_escrow(record, int(normalized_wager), tx_hash)

        def guard(current: GameSessionSchema) -> None:
            check_action_access(current, requester)
            if current.wager_wei is not None and current.wager_wei != normalized_wager:
                raise RoundConflictError("WAGER_ALREADY_REGISTERED")

        references = dict(record.settlement_references)
        if tx_hash:
            references["wager_tx_hash"] = tx_hash
        updated = await self._commit(
            session_id, {"wager_wei": normalized_wager, "settlement_references": references}, guard=guard
        )
        logging.info(f"Registered wager {normalized_wager} wei for session {session_id}")
        return ActionResponse(
            session_id=session_id, status=updated.status, chain_id=self.chain_id, wager_wei=updated.wager_wei
        )

    async def cash_out(self, session_id: str, player_address: str | None) -> ActionResponse:
        record, requester = await self._load_for_action(session_id, player_address)
        if record.status != SessionStatus.active:
            raise RoundConflictError("SESSION_NOT_ACTIVE")

        def guard(current: GameSessionSchema) -> None:
            check_action_access(current, requester)
            if current.status != SessionStatus.active:
                raise RoundConflictError("SESSION_NOT_ACTIVE")
            check_same_progress(current, record)
            ensure_transition(current.status, SessionStatus.cashout)

        summary = build_round_summary(record.completed_rows, record.current_multiplier)
        updated = await self._commit(
            session_id,
            {
                "status": SessionStatus.cashout,
                "current_row": min(record.current_row, len(record.rows)),
                "round_summary": summary,
                "finalized_at": self.store.clock(),
            },
            guard=guard,
        )
        logging.info(f"Session {session_id} cashed out at x{updated.current_multiplier:.4f}")
        return ActionResponse(
            session_id=session_id,
            status=updated.status,
            chain_id=self.chain_id,
            result="cashout",
            current_multiplier=updated.current_multiplier,
            completed_rows=updated.completed_rows,
            summary=RoundSummaryModel(**summary),
        )

    async def reveal(self, session_id: str) -> RevealResponse:
        """Disclose the seeds and bomb positions of a terminal session

        ``lost`` keeps its status, other final statuses become ``revealed``.
        Submitted or archived sessions are disclosed as stored.
        """
        if not session_id:
            raise RoundValidationError("INVALID_REQUEST")
        record = await self.store.get(session_id, include_archived=True)
        if record is None:
            raise RoundNotFoundError("SESSION_NOT_FOUND")
        if not record.rows:
            raise RoundConflictError("SESSION_NOT_INITIALISED")
        target_status = reveal_status(record.status)

        if record.status != SessionStatus.submitted and record.is_active:

            def guard(current: GameSessionSchema) -> None:
                ensure_transition(current.status, reveal_status(current.status))

            record = await self._commit(
                session_id,
                {
                    "status": target_status,
                    "round_summary": build_round_summary(record.completed_rows, record.current_multiplier),
                    "finalized_at": record.finalized_at or self.store.clock(),
                },
                guard=guard,
            )

        return RevealResponse(
            session_id=session_id,
            status=record.status,
            server_seed=record.server_seed,
            client_seed=record.client_seed,
            server_seed_hash=record.server_seed_hash,
            nonce_base=record.nonce_base,
            round_summary=self.converter.convert_summary(record.round_summary),
            rows=self.converter.convert_rows_to_revealed(record.rows),
        )

    async def sign(
        self,
        session_id: str,
        user: str,
        wager_wei: str,
        deadline: int | None = None,
        xp_deadline: int | None = None,
    ) -> SignResponse:
        if self.settlement is None:
            raise InfrastructureError("ONCHAIN_UNAVAILABLE", status_code=503)
        return await self.settlement.sign(session_id, user, wager_wei, deadline, xp_deadline)

    async def restore(self, user_address: str | None) -> RestoreResponse:
        address = normalize_address(user_address)
        record = await self.store.restore_latest(address)
        if record is None:
            return RestoreResponse(session=None, restored=False)
        return RestoreResponse(session=self.converter.convert_session_to_restored(record), restored=True)

    async def clear(self, user_address: str | None) -> ClearResponse:
        address = normalize_address(user_address)
        cleared = await self.store.archive_user_sessions(address)
        logging.info(f"Archived {cleared} live sessions of {address}")
        return ClearResponse(cleared_count=cleared)

    async def read_session_record(self, session_id: str) -> SessionRecordModel:
        """Audit read of a persisted session. Sessions still in play are refused."""
        record = await self.store.get(session_id, include_archived=True)
        if record is None:
            raise RoundNotFoundError("SESSION_NOT_FOUND")
        if record.status in PRUNABLE_STATUSES:
            raise RoundConflictError("SESSION_NOT_FINAL")
        return self.converter.convert_session_to_record(record)

    async def history(
        self,
        user_address: str | None,
        limit: int = 20,
        offset: int = 0,
        status: str | None = None,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> HistoryResponse:
        address = normalize_address(user_address)
        if status is not None:
            try:
                status = SessionStatus(status).value
            except ValueError:
                raise RoundValidationError("INVALID_STATUS")
        if sort_by not in SORT_COLUMNS or sort_order not in ("asc", "desc"):
            raise RoundValidationError("INVALID_SORT")
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        offset = max(0, int(offset))

        sessions = await self.store.list_user_sessions(
            address,
            status=status,
            limit=limit,
            offset=offset,
            sort_by=SORT_COLUMNS[sort_by],
            descending=sort_order == "desc",
        )
        total = await self.store.count_user_sessions(address, status=status)
        return HistoryResponse(
            items=[self.converter.convert_session_to_history_item(session) for session in sessions],
            pagination=PaginationModel(total=total, limit=limit, offset=offset, has_more=offset + limit < total),
        )

    async def stats(self, user_address: str | None) -> StatsResponse:
        address = normalize_address(user_address)
        total = await self.store.count_user_sessions(address)
        sessions = await self.store.list_user_sessions(
            address, limit=max(total, 1), offset=0, sort_by="created_at", descending=False
        )
        return summarize_sessions([session for session in sessions if session.finalized_at is not None])

    def verify(self, payload: VerifyModel) -> VerifyResponse:
        result = verify_round(
            payload.server_seed,
            payload.server_seed_hash,
            payload.client_seed,
            payload.nonce_base,
            [row.model_dump() for row in payload.rows],
            payload.bombs_per_row,
        )
        return VerifyResponse(
            valid=result["valid"],
            hash_matches=result["hash_matches"],
            rows=[VerifyRowResultModel(**row) for row in result["rows"]],
        )

    async def prune(self) -> int:
        pruned = await self.store.prune_expired()
        logging.info(f"Pruned {pruned} expired sessions")
        return pruned
