from datetime import datetime, timedelta

from bomb_round.domain.commitment import generate_seeds, new_session_id
from bomb_round.services.session_store import BackendSelector, MemorySessionBackend, SessionStore

PLAYER = "0x" + "ab" * 20
OTHER_PLAYER = "0x" + "cd" * 20
SIGNER_KEY = "0x" + "11" * 32
XP_SIGNER_KEY = "0x" + "44" * 32
GAME_ADDRESS = "0x" + "22" * 20
XP_REGISTRY_ADDRESS = "0x" + "33" * 20


class FakeClock:
    """Settable clock shared by a store and its tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def memory_store(clock: FakeClock | None = None) -> SessionStore:
    return SessionStore(BackendSelector(None, MemorySessionBackend()), clock=clock or FakeClock())


def new_session(store: SessionStore, user_address: str = PLAYER, **fields):
    commitment = generate_seeds()
    return store.new_record(
        id=new_session_id(),
        user_address=user_address,
        server_seed=commitment.server_seed,
        server_seed_hash=commitment.server_seed_hash,
        client_seed=commitment.client_seed,
        nonce_base=commitment.nonce_base,
        **fields,
    )


class FakeChain:
    """Stands in for ChainClient: escrow balances keyed by session key, canned receipts."""

    def __init__(self, escrow: dict | None = None, nonce: int = 7, wager_vault_ready: bool = True):
        self.escrow = escrow or {}
        self.escrow_at_block = {}
        self.receipts = {}
        self.nonce = nonce
        self.wager_vault_ready = wager_vault_ready
        self.xp_registry_ready = True
        self.failure: Exception | None = None
        self.escrow_reads = 0

    async def read_escrow(self, session_key: bytes, block_number: int | None = None) -> int:
        self.escrow_reads += 1
        if self.failure is not None:
            raise self.failure
        if block_number is not None and (session_key, block_number) in self.escrow_at_block:
            return self.escrow_at_block[(session_key, block_number)]
        return self.escrow.get(session_key, 0)

    async def wait_for_receipt(self, tx_hash: str) -> dict:
        if tx_hash not in self.receipts:
            raise TimeoutError(f"receipt of {tx_hash} not found")
        return self.receipts[tx_hash]

    def bet_placed_events(self, receipt: dict) -> list:
        return receipt.get("events", [])

    async def read_xp_nonce(self, user_address: str, game_id: int) -> int:
        if self.failure is not None:
            raise self.failure
        return self.nonce
