import asyncio
import logging
from typing import List

from web3 import AsyncWeb3, Web3
from web3.logs import DISCARD

WAGER_VAULT_ABI = [
    {
        "type": "function",
        "name": "escrow",
        "inputs": [{"name": "sessionKey", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "event",
        "name": "BetPlaced",
        "anonymous": False,
        "inputs": [
            {"name": "bettor", "type": "address", "indexed": True},
            {"name": "sessionKey", "type": "bytes32", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
]

XP_REGISTRY_ABI = [
    {
        "type": "function",
        "name": "getNonce",
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "gameId", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]


class ChainClient:
    """Read-only access to the wager vault and the XP registry.

    Every call is bounded by ``timeout``; a timeout raises like any other
    RPC failure and is never treated as success.
    """

    def __init__(
        self,
        rpc_url: str,
        wager_vault_address: str | None,
        xp_registry_address: str | None,
        timeout: float = 10.0,
        receipt_timeout: float = 30.0,
        receipt_poll: float = 1.5,
    ):
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.timeout = timeout
        self.receipt_timeout = receipt_timeout
        self.receipt_poll = receipt_poll
        self.wager_vault = (
            self.w3.eth.contract(address=Web3.to_checksum_address(wager_vault_address), abi=WAGER_VAULT_ABI)
            if wager_vault_address
            else None
        )
        self.xp_registry = (
            self.w3.eth.contract(address=Web3.to_checksum_address(xp_registry_address), abi=XP_REGISTRY_ABI)
            if xp_registry_address
            else None
        )

    @property
    def wager_vault_ready(self) -> bool:
        return self.wager_vault is not None

    @property
    def xp_registry_ready(self) -> bool:
        return self.xp_registry is not None

    async def read_escrow(self, session_key: bytes, block_number: int | None = None) -> int:
        """Escrowed amount (wei) for a session key, optionally at a past block."""
        call = self.wager_vault.functions.escrow(session_key)
        block_identifier = block_number if block_number is not None else "latest"
        return int(await asyncio.wait_for(call.call(block_identifier=block_identifier), self.timeout))

    async def wait_for_receipt(self, tx_hash: str) -> dict:
        logging.info(f"Waiting for wager transaction {tx_hash}")
        return await asyncio.wait_for(
            self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout, poll_latency=self.receipt_poll
            ),
            self.receipt_timeout + self.timeout,
        )

    def bet_placed_events(self, receipt: dict) -> List[dict]:
        """Decoded BetPlaced logs of a receipt as ``{bettor, session_key, amount}``.

        Logs emitted by any other contract are ignored, even with a matching signature.
        """
        events = self.wager_vault.events.BetPlaced().process_receipt(receipt, errors=DISCARD)
        vault_address = self.wager_vault.address.lower()
        return [
            {
                "bettor": event["args"]["bettor"],
                "session_key": bytes(event["args"]["sessionKey"]),
                "amount": int(event["args"]["amount"]),
            }
            for event in events
            if str(event["address"]).lower() == vault_address
        ]

    async def read_xp_nonce(self, user_address: str, game_id: int) -> int:
        call = self.xp_registry.functions.getNonce(Web3.to_checksum_address(user_address), game_id)
        return int(await asyncio.wait_for(call.call(), self.timeout))
