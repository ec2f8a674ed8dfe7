"""Escrow verification and EIP-712 settlement attestations.

The issuer only reads chain state; the player submits the signed payloads
to the game contract and the XP registry on their own.
"""

import logging
import time
from typing import Callable

from eth_abi import encode
from eth_account import Account
from web3 import Web3

from bomb_round.chain_client import ChainClient
from bomb_round.domain.errors import (
    InfrastructureError,
    RoundAuthorizationError,
    RoundConflictError,
    RoundNotFoundError,
)
from bomb_round.domain.round_rules import (
    FINAL_STATUSES,
    SessionStatus,
    ensure_transition,
    normalize_address,
    parse_wager,
    round_half_up,
)
from bomb_round.models.dc_models import SignResponse
from bomb_round.models.schema_models import GameSessionSchema
from bomb_round.redis_publisher import RoundEventPublisher
from bomb_round.services.session_store import SessionStore

RESULT_DEADLINE_SECONDS = 600
XP_DEADLINE_SECONDS = 900
UINT32_MAX = 2**32 - 1

RESULT_TYPES = {
    "Result": [
        {"name": "user", "type": "address"},
        {"name": "gameId", "type": "uint256"},
        {"name": "sessionId", "type": "uint64"},
        {"name": "score", "type": "uint32"},
        {"name": "kills", "type": "uint32"},
        {"name": "timeAlive", "type": "uint32"},
        {"name": "wager", "type": "uint256"},
        {"name": "multiplierX100", "type": "uint256"},
        {"name": "xp", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ]
}

XP_ADD_TYPES = {
    "XPAdd": [
        {"name": "user", "type": "address"},
        {"name": "gameId", "type": "uint256"},
        {"name": "amount", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ]
}


def derive_session_key(user_address: str, game_id: int, session_id: str) -> bytes:
    """keccak256(abi.encode(address, uint256, uint64)) as used by the wager vault."""
    encoded = encode(
        ["address", "uint256", "uint64"],
        [Web3.to_checksum_address(user_address), int(game_id), int(session_id)],
    )
    return bytes(Web3.keccak(encoded))


def to_uint32(value) -> int:
    return max(0, min(UINT32_MAX, int(value)))


def check_settleable(record: GameSessionSchema, user_address: str, wager_value: int) -> None:
    """Raise unless ``record`` may receive settlement attestations for this user and wager."""
    if record.user_address and record.user_address != user_address:
        raise RoundAuthorizationError("UNAUTHORIZED")
    if record.status == SessionStatus.submitted:
        raise RoundConflictError("SESSION_ALREADY_SUBMITTED")
    if record.status not in FINAL_STATUSES:
        raise RoundConflictError("SESSION_NOT_FINALISED")
    if record.round_summary is None:
        raise RoundConflictError("ROUND_SUMMARY_UNAVAILABLE")
    if record.wager_wei is None:
        raise RoundConflictError("WAGER_NOT_REGISTERED")
    if int(record.wager_wei) != wager_value:
        raise RoundConflictError("WAGER_MISMATCH")


class AttestationSigner:
    """Signs Result and XPAdd typed data with the configured keys.

    Args:
        game_private_key (str): Key the game contract trusts for results
        xp_private_key (str): Key the XP registry trusts, the game key when omitted
    """

    def __init__(
        self,
        game_private_key: str,
        chain_id: int,
        game_address: str,
        xp_registry_address: str,
        xp_private_key: str | None = None,
    ):
        self.game_private_key = game_private_key
        self.xp_private_key = xp_private_key or game_private_key
        self.result_domain = {
            "name": "Degenshoot",
            "version": "1",
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(game_address),
        }
        self.xp_domain = {
            "name": "XPRegistry",
            "version": "1",
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(xp_registry_address),
        }

    @property
    def game_signer_address(self) -> str:
        return Account.from_key(self.game_private_key).address

    @property
    def xp_signer_address(self) -> str:
        return Account.from_key(self.xp_private_key).address

    def sign_result(self, message: dict) -> str:
        signed = Account.sign_typed_data(
            self.game_private_key,
            domain_data=self.result_domain,
            message_types=RESULT_TYPES,
            message_data=message,
        )
        return Web3.to_hex(signed.signature)

    def sign_xp(self, message: dict) -> str:
        signed = Account.sign_typed_data(
            self.xp_private_key,
            domain_data=self.xp_domain,
            message_types=XP_ADD_TYPES,
            message_data=message,
        )
        return Web3.to_hex(signed.signature)


class SettlementIssuer:
    def __init__(
        self,
        store: SessionStore,
        chain: ChainClient | None,
        signer: AttestationSigner | None,
        game_id: int,
        publisher: RoundEventPublisher | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.chain = chain
        self.signer = signer
        self.game_id = game_id
        self.publisher = publisher or RoundEventPublisher()
        self.clock = clock

    async def _chain_call(self, code: str, awaitable):
        """Await a chain read. Any failure, timeouts included, becomes ``code``."""
        try:
            return await awaitable
        except Exception as e:
            logging.error(f"Chain call failed with {code}: {type(e).__name__}: {e}")
            raise InfrastructureError(code, str(e)) from e

    def session_key(self, user_address: str, session_id: str) -> bytes:
        return derive_session_key(user_address, self.game_id, session_id)

    async def verify_escrow(self, record: GameSessionSchema, wager_value: int, tx_hash: str | None) -> None:
        """Make sure the vault holds exactly ``wager_value`` for this session.

        The current escrow is read first. When it does not match, the wager
        transaction receipt must carry a BetPlaced log for the player and
        session key, and the escrow at the receipt block must equal the wager.

        Raises:
            InfrastructureError: Chain unavailable or the RPC failed
            RoundConflictError: Escrow missing or different from the wager
        """
        if self.chain is None or not self.chain.wager_vault_ready:
            raise InfrastructureError("ONCHAIN_UNAVAILABLE", status_code=503)

        session_key = self.session_key(record.user_address, record.id)
        escrow = await self._chain_call("WAGER_VERIFICATION_FAILED", self.chain.read_escrow(session_key))
        if escrow == wager_value:
            return

        if not tx_hash or not tx_hash.startswith("0x"):
            raise RoundConflictError("WAGER_NOT_FOUND_ONCHAIN")

        receipt = await self._chain_call("WAGER_VERIFICATION_FAILED", self.chain.wait_for_receipt(tx_hash))
        if receipt.get("status") != 1:
            raise InfrastructureError("WAGER_VERIFICATION_FAILED", "wager transaction reverted")

        try:
            events = self.chain.bet_placed_events(receipt)
        except Exception as e:
            logging.error(f"Failed to decode BetPlaced logs of {tx_hash}: {e}")
            raise InfrastructureError("WAGER_VERIFICATION_FAILED", str(e)) from e

        event = next(
            (
                event
                for event in events
                if event["bettor"].lower() == record.user_address and event["session_key"] == session_key
            ),
            None,
        )
        if event is None:
            raise RoundConflictError("BET_EVENT_NOT_FOUND")

        escrow_at_block = await self._chain_call(
            "WAGER_VERIFICATION_FAILED",
            self.chain.read_escrow(session_key, receipt.get("blockNumber")),
        )
        if escrow_at_block == 0:
            raise RoundConflictError("WAGER_NOT_FOUND_ONCHAIN")
        if escrow_at_block != wager_value or event["amount"] != wager_value:
            raise RoundConflictError("WAGER_MISMATCH_ONCHAIN")
        logging.info(f"Escrow of session {record.id} confirmed by {tx_hash}")

    def build_result_message(self, record: GameSessionSchema, user_address: str, wager_value: int, deadline: int) -> dict:
        summary = record.round_summary
        return {
            "user": Web3.to_checksum_address(user_address),
            "gameId": self.game_id,
            "sessionId": int(record.id),
            "score": to_uint32(summary.score),
            "kills": to_uint32(summary.kills),
            "timeAlive": to_uint32(summary.time_alive),
            "wager": wager_value,
            "multiplierX100": max(1, round_half_up(summary.multiplier * 100)),
            "xp": max(0, int(summary.xp)),
            "deadline": deadline,
        }

    async def sign(
        self,
        session_id: str,
        user: str,
        wager_wei: str,
        deadline: int | None = None,
        xp_deadline: int | None = None,
    ) -> SignResponse:
        """Issue the Result and XPAdd attestations of a finished session.

        On success the session becomes ``submitted`` and leaves the live store.

        Args:
            session_id (str): Finished session
            user (str): Player address, must own the session
            wager_wei (str): Wager the player registered, in wei
            deadline (int | None): Unix deadline of the Result signature
            xp_deadline (int | None): Unix deadline of the XPAdd signature

        Returns:
            SignResponse: Both signatures, the XP nonce and the deadlines
        """
        user_address = normalize_address(user)
        wager_value = parse_wager(wager_wei)
        if self.signer is None or self.chain is None or not self.chain.xp_registry_ready:
            raise InfrastructureError("ONCHAIN_UNAVAILABLE", status_code=503)

        record = await self.store.get(session_id)
        if record is None:
            raise RoundNotFoundError("SESSION_NOT_FOUND")
        check_settleable(record, user_address, wager_value)

        nonce = await self._chain_call(
            "NONCE_READ_FAILED", self.chain.read_xp_nonce(user_address, self.game_id)
        )

        now = int(self.clock())
        result_deadline = deadline or now + RESULT_DEADLINE_SECONDS
        xp_deadline = xp_deadline or now + XP_DEADLINE_SECONDS

        result_message = self.build_result_message(record, user_address, wager_value, result_deadline)
        xp_message = {
            "user": Web3.to_checksum_address(user_address),
            "gameId": self.game_id,
            "amount": result_message["xp"],
            "nonce": nonce,
            "deadline": xp_deadline,
        }
        result_signature = self.signer.sign_result(result_message)
        xp_signature = self.signer.sign_xp(xp_message)

        references = {
            **record.settlement_references,
            "result_signature": result_signature,
            "xp_signature": xp_signature,
            "xp_nonce": str(nonce),
            "deadline": str(result_deadline),
            "xp_deadline": str(xp_deadline),
        }

        def guard(current: GameSessionSchema) -> None:
            check_settleable(current, user_address, wager_value)
            ensure_transition(current.status, SessionStatus.submitted)

        updated = await self.store.update(
            session_id,
            {
                "status": SessionStatus.submitted,
                "settlement_references": references,
                "finalized_at": record.finalized_at or self.store.clock(),
            },
            guard=guard,
        )
        if updated is None:
            raise RoundNotFoundError("SESSION_NOT_FOUND")
        await self.store.archive(session_id)
        await self.publisher.publish(session_id, SessionStatus.submitted.value)
        logging.info(f"Issued settlement attestations for session {session_id}")

        return SignResponse(
            result_signature=result_signature,
            xp_signature=xp_signature,
            nonce=str(nonce),
            deadline=str(result_deadline),
            xp_deadline=str(xp_deadline),
        )
