"""Round rules, summary math and seed commitments."""

import re
import time
import unittest

from bomb_round.domain.commitment import (
    commitment_matches,
    generate_seeds,
    new_session_id,
    sha256_hex,
)
from bomb_round.domain.errors import RoundConflictError, RoundValidationError
from bomb_round.domain.round_rules import (
    FINAL_STATUSES,
    PRUNABLE_STATUSES,
    STATUS_TRANSITIONS,
    SessionStatus,
    build_round_summary,
    ensure_transition,
    normalize_address,
    normalize_tile_range,
    parse_wager,
    reveal_status,
)


# ============================================================
# Status transitions
# ============================================================


class TestStatusTransitions(unittest.TestCase):
    def test_table_covers_every_status(self):
        self.assertEqual(set(STATUS_TRANSITIONS), set(SessionStatus))

    def test_submitted_is_final(self):
        self.assertEqual(STATUS_TRANSITIONS[SessionStatus.submitted], frozenset())
        for target in SessionStatus:
            with self.assertRaises(RoundConflictError):
                ensure_transition(SessionStatus.submitted, target)

    def test_lifecycle_path_is_allowed(self):
        path = [
            SessionStatus.pending,
            SessionStatus.active,
            SessionStatus.active,
            SessionStatus.cashout,
            SessionStatus.revealed,
            SessionStatus.submitted,
        ]
        for current, target in zip(path, path[1:]):
            ensure_transition(current, target)

    def test_pending_cannot_finish_directly(self):
        with self.assertRaises(RoundConflictError) as ctx:
            ensure_transition(SessionStatus.pending, SessionStatus.cashout)
        self.assertEqual(ctx.exception.code, "INVALID_TRANSITION")

    def test_unknown_status_string_is_rejected(self):
        with self.assertRaises(ValueError):
            ensure_transition("paused", SessionStatus.active)

    def test_reveal_keeps_lost_and_submitted(self):
        self.assertEqual(reveal_status(SessionStatus.lost), SessionStatus.lost)
        self.assertEqual(reveal_status(SessionStatus.submitted), SessionStatus.submitted)
        for status in (SessionStatus.cashout, SessionStatus.completed, SessionStatus.revealed):
            self.assertEqual(reveal_status(status), SessionStatus.revealed)

    def test_reveal_refuses_live_sessions(self):
        for status in PRUNABLE_STATUSES:
            with self.assertRaises(RoundConflictError) as ctx:
                reveal_status(status)
            self.assertEqual(ctx.exception.code, "SESSION_NOT_FINAL")

    def test_final_statuses_can_be_submitted(self):
        for status in FINAL_STATUSES:
            ensure_transition(status, SessionStatus.submitted)


# ============================================================
# Summary and input normalisation
# ============================================================


class TestRoundSummary(unittest.TestCase):
    def test_summary_of_two_rows(self):
        summary = build_round_summary(2, 1.425 * 1.425)
        self.assertEqual(summary["xp"], 200)
        self.assertEqual(summary["kills"], 2)
        self.assertEqual(summary["time_alive"], 60)
        self.assertEqual(summary["score"], 2031)
        self.assertEqual(summary["completed_rows"], 2)

    def test_summary_floors(self):
        summary = build_round_summary(0, 1.0)
        self.assertEqual(summary["xp"], 10)
        self.assertEqual(summary["time_alive"], 1)
        self.assertEqual(summary["score"], 1000)

    def test_invalid_multiplier_defaults_to_one(self):
        self.assertEqual(build_round_summary(1, float("nan"))["multiplier"], 1.0)
        self.assertEqual(build_round_summary(1, -3)["multiplier"], 1.0)


class TestInputNormalisation(unittest.TestCase):
    def test_tile_range_is_clamped(self):
        self.assertEqual(normalize_tile_range(None, None), (2, 7))
        self.assertEqual(normalize_tile_range(0, 99), (2, 7))
        self.assertEqual(normalize_tile_range(5, 3), (5, 5))

    def test_address(self):
        address = "0x" + "AB" * 20
        self.assertEqual(normalize_address(address), address.lower())
        for bad in (None, "", "0x123", "ab" * 21):
            with self.assertRaises(RoundValidationError):
                normalize_address(bad)

    def test_wager(self):
        self.assertEqual(parse_wager("1000000000000000000"), 10**18)
        self.assertEqual(parse_wager(5), 5)
        for bad in ("0", "-1", "abc", "1.5", None, True):
            with self.assertRaises(RoundValidationError):
                parse_wager(bad)


# ============================================================
# Commitment
# ============================================================


class TestCommitment(unittest.TestCase):
    def test_hash_binds_server_seed(self):
        commitment = generate_seeds()
        self.assertEqual(len(commitment.server_seed), 64)
        self.assertEqual(commitment.server_seed_hash, sha256_hex(commitment.server_seed))
        self.assertTrue(commitment_matches(commitment.server_seed, commitment.server_seed_hash))
        self.assertFalse(commitment_matches(commitment.server_seed + "0", commitment.server_seed_hash))
        self.assertTrue(0 <= commitment.nonce_base < 1_000_000)

    def test_client_seed_survives_reroll(self):
        first = generate_seeds()
        second = generate_seeds(first.client_seed)
        self.assertEqual(second.client_seed, first.client_seed)
        self.assertNotEqual(second.server_seed, first.server_seed)

    def test_session_ids_are_uint64_and_ordered(self):
        first = new_session_id()
        time.sleep(0.002)
        second = new_session_id()
        self.assertRegex(first, re.compile(r"^\d+$"))
        self.assertLess(int(first), 2**64)
        self.assertLess(int(first), int(second))


if __name__ == "__main__":
    unittest.main()
