"""Round state machine over an in-process store."""

import unittest
from unittest.mock import AsyncMock, patch

from bomb_round.domain.commitment import sha256_hex
from bomb_round.domain.errors import (
    InfrastructureError,
    RoundAuthorizationError,
    RoundConflictError,
    RoundNotFoundError,
    RoundValidationError,
)
from bomb_round.domain.round_rules import SessionStatus
from bomb_round.models.dc_models import VerifyModel
from bomb_round.services.round_engine import RoundEngine
from bomb_round.services.settlement import AttestationSigner, SettlementIssuer, derive_session_key
from tests.helpers import (
    GAME_ADDRESS,
    OTHER_PLAYER,
    PLAYER,
    SIGNER_KEY,
    XP_REGISTRY_ADDRESS,
    FakeChain,
    FakeClock,
    memory_store,
)

GAME_ID = 1
WAGER = "1000000000000000"


class RoundEngineTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = memory_store(self.clock)
        self.chain = FakeChain()
        signer = AttestationSigner(SIGNER_KEY, 84532, GAME_ADDRESS, XP_REGISTRY_ADDRESS)
        self.settlement = SettlementIssuer(self.store, self.chain, signer, GAME_ID, clock=lambda: 1_700_000_000)
        self.engine = RoundEngine(self.store, self.settlement, chain_id=84532)

    async def start_three_tile_round(self, **kwargs):
        return await self.engine.start_round(PLAYER, tile_range=(3, 3), **kwargs)

    async def current_row(self, session_id):
        record = await self.store.get(session_id, include_archived=True)
        return record.rows[record.current_row]

    async def safe_column(self, session_id):
        row = await self.current_row(session_id)
        return next(column for column in range(row.tile_count) if not row.hits_bomb(column))

    async def bomb_column(self, session_id):
        return (await self.current_row(session_id)).bomb_index

    def escrow(self, session_id, amount=WAGER):
        self.chain.escrow[derive_session_key(PLAYER, GAME_ID, session_id)] = int(amount)


# ============================================================
# Start
# ============================================================


class TestStartRound(RoundEngineTestCase):
    async def test_start_creates_active_session_without_bombs(self):
        response = await self.start_three_tile_round()
        record = await self.store.get(response.session_id)

        self.assertEqual(record.status, SessionStatus.active)
        self.assertEqual(record.user_address, PLAYER)
        self.assertEqual(record.current_row, 0)
        self.assertEqual(record.current_multiplier, 1.0)
        self.assertEqual(response.server_seed_hash, sha256_hex(record.server_seed))
        self.assertEqual(response.locked_tile_counts, [3] * len(response.rows))
        self.assertGreaterEqual(len(response.rows), 3)

        payload = response.model_dump(by_alias=True)
        self.assertNotIn("serverSeed", payload)
        for row in payload["rows"]:
            self.assertNotIn("bombIndex", row)
            self.assertNotIn("bombIndices", row)

    async def test_locked_tile_counts_define_rows(self):
        response = await self.engine.start_round(PLAYER, locked_tile_counts=[2, 9, 4])
        self.assertEqual([row.tile_count for row in response.rows], [2, 7, 4])
        self.assertEqual(response.locked_tile_counts, [2, 7, 4])

    async def test_requested_wager_is_not_bound(self):
        response = await self.start_three_tile_round(wager_wei=WAGER)
        record = await self.store.get(response.session_id)
        self.assertIsNone(record.wager_wei)
        self.assertEqual(record.settlement_references["requested_wager_wei"], WAGER)

    async def test_invalid_address_is_rejected(self):
        with self.assertRaises(RoundValidationError) as ctx:
            await self.engine.start_round("not-an-address")
        self.assertEqual(ctx.exception.code, "ADDRESS_REQUIRED")


# ============================================================
# Tile selection
# ============================================================


class TestSelectTile(RoundEngineTestCase):
    async def test_scenario_two_safe_rows_then_bomb(self):
        """3 tiles per row: 1.425 per row, bomb on the third row ends at score 2031."""
        session_id = (await self.start_three_tile_round()).session_id

        first = await self.engine.select_tile(session_id, PLAYER, await self.safe_column(session_id))
        self.assertEqual(first.result, "safe")
        self.assertAlmostEqual(first.current_multiplier, 1.425)
        self.assertEqual(first.next_row_index, 1)

        second = await self.engine.select_tile(session_id, PLAYER, await self.safe_column(session_id))
        self.assertAlmostEqual(second.current_multiplier, 2.030625)

        bomb = await self.bomb_column(session_id)
        lost = await self.engine.select_tile(session_id, PLAYER, bomb)
        self.assertEqual(lost.result, "bomb")
        self.assertEqual(lost.status, SessionStatus.lost)
        self.assertEqual(lost.bomb_column, bomb)
        self.assertEqual(lost.completed_rows, 2)
        self.assertEqual(lost.summary.score, 2031)

        record = await self.store.get(session_id)
        self.assertTrue(record.rows[2].crashed)
        self.assertEqual(record.current_row, 2)
        self.assertIsNotNone(record.finalized_at)

    async def test_clearing_every_row_completes_the_round(self):
        session_id = (await self.engine.start_round(PLAYER, locked_tile_counts=[2, 2])).session_id
        await self.engine.select_tile(session_id, PLAYER, await self.safe_column(session_id))
        last = await self.engine.select_tile(session_id, PLAYER, await self.safe_column(session_id))

        self.assertEqual(last.status, SessionStatus.completed)
        self.assertEqual(last.next_row_index, -1)
        record = await self.store.get(session_id)
        self.assertEqual(record.current_row, 2)
        self.assertAlmostEqual(record.current_multiplier, 1.9**2)
        self.assertEqual(record.round_summary.completed_rows, 2)

    async def test_rejected_picks_do_not_touch_rows(self):
        session_id = (await self.start_three_tile_round()).session_id
        before = await self.store.get(session_id)

        for column, row_index, error in (
            (3, None, RoundValidationError),
            (-1, None, RoundValidationError),
            (None, None, RoundValidationError),
            (0, 1, RoundConflictError),
        ):
            with self.assertRaises(error):
                await self.engine.select_tile(session_id, PLAYER, column, row_index)

        with self.assertRaises(RoundAuthorizationError):
            await self.engine.select_tile(session_id, OTHER_PLAYER, 0)

        after = await self.store.get(session_id)
        self.assertEqual(after.rows, before.rows)
        self.assertEqual(after.current_row, 0)

    async def test_stale_read_loses_the_race(self):
        session_id = (await self.start_three_tile_round()).session_id
        stale = await self.store.get(session_id)
        column = await self.safe_column(session_id)
        await self.engine.select_tile(session_id, PLAYER, column)

        with patch.object(self.store, "get", AsyncMock(return_value=stale)):
            with self.assertRaises(RoundConflictError):
                await self.engine.select_tile(session_id, PLAYER, column)

        record = await self.store.get(session_id)
        self.assertEqual(record.completed_rows, 1)
        self.assertEqual(record.current_row, 1)

    async def test_no_pick_after_loss(self):
        session_id = (await self.start_three_tile_round()).session_id
        await self.engine.select_tile(session_id, PLAYER, await self.bomb_column(session_id))
        with self.assertRaises(RoundConflictError) as ctx:
            await self.engine.select_tile(session_id, PLAYER, 0)
        self.assertEqual(ctx.exception.code, "SESSION_NOT_ACTIVE")

    async def test_unknown_session_and_action(self):
        with self.assertRaises(RoundNotFoundError):
            await self.engine.select_tile("12345", PLAYER, 0)
        with self.assertRaises(RoundValidationError) as ctx:
            await self.engine.handle_action("12345", "jump", PLAYER)
        self.assertEqual(ctx.exception.code, "UNKNOWN_ACTION")


# ============================================================
# Wager registration
# ============================================================


class TestRegisterWager(RoundEngineTestCase):
    async def test_registration_is_idempotent(self):
        session_id = (await self.start_three_tile_round()).session_id
        self.escrow(session_id)

        first = await self.engine.register_wager(session_id, PLAYER, WAGER)
        self.assertEqual(first.wager_wei, WAGER)
        reads = self.chain.escrow_reads

        again = await self.engine.register_wager(session_id, PLAYER, WAGER)
        self.assertEqual(again.wager_wei, WAGER)
        self.assertEqual(self.chain.escrow_reads, reads)

        with self.assertRaises(RoundConflictError) as ctx:
            await self.engine.register_wager(session_id, PLAYER, "5")
        self.assertEqual(ctx.exception.code, "WAGER_ALREADY_REGISTERED")
        self.assertEqual((await self.store.get(session_id)).wager_wei, WAGER)

    async def test_missing_escrow_without_transaction(self):
        session_id = (await self.start_three_tile_round()).session_id
        with self.assertRaises(RoundConflictError) as ctx:
            await self.engine.register_wager(session_id, PLAYER, WAGER)
        self.assertEqual(ctx.exception.code, "WAGER_NOT_FOUND_ONCHAIN")
        self.assertIsNone((await self.store.get(session_id)).wager_wei)

    async def test_chain_failure_leaves_session_untouched(self):
        session_id = (await self.start_three_tile_round()).session_id
        before = await self.store.get(session_id)
        self.chain.failure = TimeoutError("rpc timeout")

        with self.assertRaises(InfrastructureError) as ctx:
            await self.engine.register_wager(session_id, PLAYER, WAGER)
        self.assertEqual(ctx.exception.code, "WAGER_VERIFICATION_FAILED")
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(await self.store.get(session_id), before)

    async def test_invalid_wager(self):
        session_id = (await self.start_three_tile_round()).session_id
        for bad in (None, "0", "abc"):
            with self.assertRaises(RoundValidationError):
                await self.engine.register_wager(session_id, PLAYER, bad)


# ============================================================
# Cash out, reveal and audit reads
# ============================================================


class TestFinishAndReveal(RoundEngineTestCase):
    async def test_reveal_only_after_cash_out(self):
        """Reveal of an active session is a conflict; after cash out the seed matches the commitment."""
        start = await self.start_three_tile_round()
        session_id = start.session_id
        await self.engine.select_tile(session_id, PLAYER, await self.safe_column(session_id))

        with self.assertRaises(RoundConflictError) as ctx:
            await self.engine.reveal(session_id)
        self.assertEqual(ctx.exception.code, "SESSION_NOT_FINAL")

        cashed = await self.engine.cash_out(session_id, PLAYER)
        self.assertEqual(cashed.status, SessionStatus.cashout)
        self.assertAlmostEqual(cashed.summary.multiplier, 1.425)
        self.assertEqual(cashed.summary.score, 1425)

        revealed = await self.engine.reveal(session_id)
        self.assertEqual(revealed.status, SessionStatus.revealed)
        self.assertEqual(sha256_hex(revealed.server_seed), start.server_seed_hash)
        self.assertEqual(len(revealed.rows), len(start.rows))
        self.assertEqual(revealed.round_summary.completed_rows, 1)

        verification = self.engine.verify(
            VerifyModel(
                server_seed=revealed.server_seed,
                server_seed_hash=start.server_seed_hash,
                client_seed=revealed.client_seed,
                nonce_base=revealed.nonce_base,
                rows=[
                    {"row_index": row.row_index, "tile_count": row.tile_count, "claimed_bomb_index": row.bomb_index}
                    for row in revealed.rows
                ],
            )
        )
        self.assertTrue(verification.valid)

    async def test_reveal_keeps_lost_status(self):
        session_id = (await self.start_three_tile_round()).session_id
        await self.engine.select_tile(session_id, PLAYER, await self.bomb_column(session_id))
        revealed = await self.engine.reveal(session_id)
        self.assertEqual(revealed.status, SessionStatus.lost)
        self.assertEqual((await self.store.get(session_id)).status, SessionStatus.lost)

    async def test_cash_out_requires_active_session(self):
        session_id = (await self.start_three_tile_round()).session_id
        await self.engine.cash_out(session_id, PLAYER)
        with self.assertRaises(RoundConflictError):
            await self.engine.cash_out(session_id, PLAYER)

    async def test_session_record_refuses_live_sessions(self):
        session_id = (await self.start_three_tile_round()).session_id
        with self.assertRaises(RoundConflictError):
            await self.engine.read_session_record(session_id)
        await self.engine.cash_out(session_id, PLAYER)
        record = await self.engine.read_session_record(session_id)
        self.assertEqual(record.status, SessionStatus.cashout)
        self.assertEqual(record.rows[0].bomb_index, (await self.current_row(session_id)).bomb_index)


# ============================================================
# Restore, clear, history, stats
# ============================================================


class TestPlayerSessions(RoundEngineTestCase):
    async def test_restore_and_clear(self):
        session_id = (await self.start_three_tile_round()).session_id
        restored = await self.engine.restore(PLAYER)
        self.assertTrue(restored.restored)
        self.assertEqual(restored.session.id, session_id)
        self.assertNotIn("bombIndex", restored.model_dump(by_alias=True)["session"]["rows"][0])

        cleared = await self.engine.clear(PLAYER)
        self.assertEqual(cleared.cleared_count, 1)
        self.assertFalse((await self.engine.restore(PLAYER)).restored)

    async def test_history_and_stats(self):
        lost_id = (await self.start_three_tile_round()).session_id
        await self.engine.select_tile(lost_id, PLAYER, await self.bomb_column(lost_id))
        self.clock.advance(seconds=1)

        won_id = (await self.engine.start_round(PLAYER, locked_tile_counts=[2])).session_id
        self.escrow(won_id)
        await self.engine.register_wager(won_id, PLAYER, WAGER)
        await self.engine.select_tile(won_id, PLAYER, await self.safe_column(won_id))
        self.clock.advance(seconds=1)

        active_id = (await self.start_three_tile_round()).session_id

        history = await self.engine.history(PLAYER, limit=10)
        self.assertEqual(history.pagination.total, 3)
        self.assertFalse(history.pagination.has_more)
        by_id = {item.id: item for item in history.items}
        self.assertEqual(by_id[won_id].result, "win")
        self.assertEqual(by_id[lost_id].result, "loss")
        self.assertEqual(by_id[active_id].result, "active")
        self.assertIsNone(by_id[active_id].server_seed)
        self.assertFalse(by_id[active_id].can_verify)
        self.assertTrue(by_id[lost_id].can_verify)

        stats = await self.engine.stats(PLAYER)
        self.assertEqual(stats.games_played, 2)
        self.assertEqual(stats.games_won, 1)
        self.assertEqual(stats.games_lost, 1)
        self.assertEqual(stats.total_wagered_wei, WAGER)
        self.assertEqual(stats.total_payout_wei, str(int(WAGER) * 190 // 100))
        self.assertEqual(stats.current_streak, 1)

    async def test_history_rejects_unknown_status(self):
        with self.assertRaises(RoundValidationError):
            await self.engine.history(PLAYER, status="paused")

    async def test_prune_removes_abandoned_round(self):
        session_id = (await self.start_three_tile_round()).session_id
        self.clock.advance(minutes=16)
        self.assertEqual(await self.engine.prune(), 1)
        self.assertIsNone(await self.store.get(session_id))


if __name__ == "__main__":
    unittest.main()
