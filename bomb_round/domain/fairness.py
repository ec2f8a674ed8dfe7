"""Provably fair row generation and verification.

Every outcome is derived from ``HMAC-SHA256(server_seed, f"{client_seed}:{nonce}:{salt}")``.
The hex digest is read as big-endian 32-bit words; a word is used for
``pick_below(n)`` only when it falls under the largest multiple of ``n``
(rejection sampling), so no tile is favoured by modulo bias. When a digest
runs out of words the stream continues with the ``extra-{k}`` salts.

The generator and the verifiers below share ``HashWordStream`` so the audit
path can never drift from the generation path. Client-side verifiers must
reimplement exactly this procedure.
"""

import hashlib
import hmac
import math

from bomb_round.domain.commitment import commitment_matches
from bomb_round.domain.round_rules import (
    BOMBS_PER_ROW,
    DEFAULT_ROW_COUNT,
    MAX_GENERATED_ROWS,
    MAX_TILE_OPTION,
    MIN_TILE_OPTION,
    ROW_SAFETY_MARGIN,
)

WORD_SPACE = 1 << 32
TILE_COUNT_SALT = "tile-count"


def keyed_hash(server_seed: str, client_seed: str, nonce: int, salt: str = "") -> str:
    message = f"{client_seed}:{nonce}:{salt}".encode()
    return hmac.new(server_seed.encode(), message, hashlib.sha256).hexdigest()


def hash_to_words(digest: str) -> list[int]:
    return [int(digest[i : i + 8], 16) for i in range(0, len(digest) - 7, 8)]


class HashWordStream:
    """Unbounded stream of 32-bit words derived from one (seeds, nonce) triple."""

    def __init__(self, server_seed: str, client_seed: str, nonce: int, salt: str = ""):
        self.server_seed = server_seed
        self.client_seed = client_seed
        self.nonce = nonce
        self.salt = salt
        self.primary_hash = keyed_hash(server_seed, client_seed, nonce, salt)
        self._words = hash_to_words(self.primary_hash)
        self._pointer = 0
        self._extensions = 0

    def next_word(self) -> int:
        if self._pointer >= len(self._words):
            extra_salt = f"{self.salt}extra-{self._extensions}"
            self._extensions += 1
            self._words.extend(
                hash_to_words(keyed_hash(self.server_seed, self.client_seed, self.nonce, extra_salt))
            )
        word = self._words[self._pointer]
        self._pointer += 1
        return word

    def pick_below(self, n: int) -> int:
        """Uniform integer in ``[0, n)``."""
        if n <= 0:
            raise ValueError("n must be > 0")
        if n > WORD_SPACE:
            raise ValueError("n must fit in one 32-bit word")
        limit = WORD_SPACE - (WORD_SPACE % n)
        while True:
            word = self.next_word()
            if word < limit:
                return word % n


def select_bomb_indices(stream: HashWordStream, tile_count: int, bombs_per_row: int) -> list[int]:
    """Sample bomb positions without replacement."""
    available = list(range(tile_count))
    picks = []
    for _ in range(min(bombs_per_row, tile_count)):
        picks.append(available.pop(stream.pick_below(len(available))))
    return picks


def calculate_row_multiplier(tile_count: int, bombs_per_row: int = BOMBS_PER_ROW, house_edge: float = 0.0) -> float:
    """Inverse survival probability of one row, discounted by the house edge."""
    total_tiles = max(0, int(tile_count))
    bombs = max(0, int(bombs_per_row))
    if total_tiles < 2 or bombs >= total_tiles:
        return 0.0
    edge = house_edge if math.isfinite(house_edge) else 0.0
    edge = max(0.0, min(0.99, edge))
    multiplier = total_tiles / (total_tiles - bombs) * (1 - edge)
    if not math.isfinite(multiplier) or multiplier <= 0:
        return 0.0
    return multiplier


def cumulative_multiplier(
    tile_counts: list[int], upto: int, bombs_per_row: int = BOMBS_PER_ROW, house_edge: float = 0.0
) -> float:
    total = 1.0
    for tile_count in tile_counts[: max(0, min(upto, len(tile_counts)))]:
        total *= calculate_row_multiplier(tile_count, bombs_per_row, house_edge)
    return total


def live_total(
    done_tile_counts: list[int],
    current_tile_count: int,
    bombs_per_row: int = BOMBS_PER_ROW,
    house_edge: float = 0.0,
) -> dict:
    """Multiplier carried into the current row and the total if it is cleared."""
    carry_in = cumulative_multiplier(done_tile_counts, len(done_tile_counts), bombs_per_row, house_edge)
    row_preview = calculate_row_multiplier(current_tile_count, bombs_per_row, house_edge)
    return {
        "carry_in": carry_in,
        "row_preview": row_preview,
        "total_preview": carry_in * row_preview,
    }


def compute_dynamic_row_count(
    max_tiles: int,
    bombs_per_row: int,
    house_edge: float,
    max_total_multiplier: float,
    *,
    default_row_count: int = DEFAULT_ROW_COUNT,
    max_generated_rows: int = MAX_GENERATED_ROWS,
    safety_margin: int = ROW_SAFETY_MARGIN,
) -> int:
    """Rows needed for the worst-case cumulative multiplier to reach the cap."""
    worst_row_multiplier = calculate_row_multiplier(max_tiles, bombs_per_row, house_edge)
    if worst_row_multiplier <= 1.0001 or max_total_multiplier <= 1:
        return default_row_count
    estimated = math.ceil(math.log(max_total_multiplier) / math.log(worst_row_multiplier))
    return max(default_row_count, min(max_generated_rows, estimated + safety_margin))


def derive_tile_count(
    server_seed: str, client_seed: str, nonce: int, min_tiles: int, max_tiles: int
) -> int:
    span = max(1, max_tiles - min_tiles + 1)
    return min_tiles + HashWordStream(server_seed, client_seed, nonce, TILE_COUNT_SALT).pick_below(span)


def build_fair_rows(
    *,
    server_seed: str,
    client_seed: str,
    row_count: int,
    nonce_base: int = 0,
    min_tiles: int,
    max_tiles: int,
    bombs_per_row: int = BOMBS_PER_ROW,
    house_edge: float = 0.0,
    max_total_multiplier: float | None = None,
    explicit_tile_counts: list[int] | None = None,
) -> list[dict]:
    """Generate the rows of one round.

    Explicit (locked) tile counts take precedence over the range for the rows
    they cover; they are clamped to the supported tile options.
    Generation stops right after the row whose running multiplier meets or
    exceeds ``max_total_multiplier``.

    Returns:
        list[dict]: rows compatible with RowSchema (without play state)
    """
    rows = []
    running_multiplier = 1.0
    row_count = max(1, min(row_count, MAX_GENERATED_ROWS))

    for row_index in range(row_count):
        nonce = nonce_base + row_index
        explicit = explicit_tile_counts[row_index] if explicit_tile_counts and row_index < len(explicit_tile_counts) else None
        if explicit is not None:
            tile_count = min(max(int(explicit), MIN_TILE_OPTION), MAX_TILE_OPTION)
        else:
            tile_count = derive_tile_count(server_seed, client_seed, nonce, min_tiles, max_tiles)

        stream = HashWordStream(server_seed, client_seed, nonce)
        bomb_indices = select_bomb_indices(stream, tile_count, bombs_per_row)
        row_multiplier = calculate_row_multiplier(tile_count, bombs_per_row, house_edge)
        bomb_share = bombs_per_row / tile_count

        rows.append(
            {
                "row_index": row_index,
                "nonce": nonce,
                "game_hash": stream.primary_hash,
                "tile_count": tile_count,
                "bombs_per_row": bombs_per_row,
                "bomb_index": bomb_indices[0],
                "bomb_indices": bomb_indices,
                "row_multiplier": row_multiplier,
                "probabilities": [
                    {"tile_index": tile_index, "bomb": bomb_share, "safe": 1 - bomb_share}
                    for tile_index in range(tile_count)
                ],
            }
        )

        running_multiplier *= row_multiplier
        if max_total_multiplier and running_multiplier >= max_total_multiplier:
            break

    return rows


def verify_row(
    server_seed: str,
    client_seed: str,
    nonce: int,
    tile_count: int,
    claimed_bomb_index: int,
    bombs_per_row: int = BOMBS_PER_ROW,
) -> dict:
    """Recompute one row from a revealed server seed."""
    if tile_count < 1:
        raise ValueError("tile_count must be >= 1")
    stream = HashWordStream(server_seed, client_seed, nonce)
    bomb_indices = select_bomb_indices(stream, tile_count, bombs_per_row)
    recomputed_bomb_index = bomb_indices[0]
    return {
        "valid": recomputed_bomb_index == claimed_bomb_index,
        "recomputed_bomb_index": recomputed_bomb_index,
        "recomputed_hash": stream.primary_hash,
    }


def verify_round(
    server_seed: str,
    server_seed_hash: str,
    client_seed: str,
    nonce_base: int,
    rows: list[dict],
    bombs_per_row: int = BOMBS_PER_ROW,
) -> dict:
    """Check the commitment and every claimed bomb position of a round.

    Args:
        rows (list[dict]): ``tile_count``, ``claimed_bomb_index`` and optionally
            ``row_index`` (defaults to the position in the list)
    """
    hash_matches = commitment_matches(server_seed, server_seed_hash)
    row_results = []
    for position, row in enumerate(rows):
        row_index = row.get("row_index")
        row_index = position if row_index is None else row_index
        nonce = nonce_base + row_index
        result = verify_row(
            server_seed,
            client_seed,
            nonce,
            row["tile_count"],
            row["claimed_bomb_index"],
            bombs_per_row,
        )
        row_results.append({"row_index": row_index, "nonce": nonce, **result})

    return {
        "hash_matches": hash_matches,
        "valid": hash_matches and all(result["valid"] for result in row_results),
        "rows": row_results,
    }
