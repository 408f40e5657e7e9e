import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from solana.rpc.api import Client as SolanaClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from errors import ChainError

LAMPORTS_PER_SOL = 1_000_000_000
SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"

logger = logging.getLogger("cryptocards.chain")


@dataclass(frozen=True)
class TokenHolding:
    mint: str
    amount: int  # smallest-unit amount
    decimals: int
    ui_amount: float


@dataclass(frozen=True)
class SentTransfer:
    signature: str
    # the transaction can no longer land once the cluster passes this height
    last_valid_block_height: int


def to_pubkey(value: str) -> Pubkey:
    return Pubkey.from_string(value)


def is_valid_address(value: Optional[str]) -> bool:
    if not value or not isinstance(value, str):
        return False
    try:
        Pubkey.from_string(value.strip())
    except ValueError:
        return False
    return True


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def deposit_keypair_from_secret(secret: str) -> Keypair:
    """Deposit wallets are seeded from sha256(secret) so the stored secret can re-derive the signer."""
    seed = hashlib.sha256(str(secret).encode()).digest()[:32]
    return Keypair.from_seed(seed)


def new_deposit_account() -> Tuple[str, str]:
    secret = secrets.token_hex(32)
    return secret, str(deposit_keypair_from_secret(secret).pubkey())


def build_system_transfer_ix(sender: Pubkey, recipient: Pubkey, lamports: int) -> Instruction:
    # SystemProgram transfer: instruction = 2 (u32 LE) + lamports (u64 LE)
    data = (2).to_bytes(4, "little") + lamports.to_bytes(8, "little")
    accounts = [
        AccountMeta(pubkey=sender, is_signer=True, is_writable=True),
        AccountMeta(pubkey=recipient, is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=SYS_PROGRAM_ID, data=data, accounts=accounts)


def build_signed_transfer(
    signer: Keypair, transfers: Sequence[Tuple[str, int]], blockhash: str
) -> VersionedTransaction:
    """Compile every (recipient, lamports) pair into one transaction paid for and signed by `signer`."""
    payer = signer.pubkey()
    ixs: List[Instruction] = [
        build_system_transfer_ix(payer, to_pubkey(recipient), int(lamports))
        for recipient, lamports in transfers
        if lamports > 0
    ]
    if not ixs:
        raise ValueError("no transfer with a positive amount")
    message = MessageV0.try_compile(payer, ixs, [], Hash.from_string(blockhash))
    return VersionedTransaction(message, [signer])


def parse_token_account(parsed: dict) -> Optional[TokenHolding]:
    info = (parsed or {}).get("info") or {}
    token_amount = info.get("tokenAmount") or {}
    mint = info.get("mint")
    if not mint:
        return None
    try:
        amount = int(token_amount.get("amount") or 0)
        decimals = int(token_amount.get("decimals") or 0)
    except (TypeError, ValueError):
        return None
    ui_amount = token_amount.get("uiAmount")
    if ui_amount is None:
        ui_amount = amount / (10 ** decimals) if decimals else float(amount)
    return TokenHolding(mint=mint, amount=amount, decimals=decimals, ui_amount=float(ui_amount))


class ChainClient:
    """Solana RPC collaborator. Every RPC failure surfaces as ChainError."""

    def __init__(self, rpc_url: str, timeout: float = 10.0):
        self.rpc_url = rpc_url
        self.client = SolanaClient(rpc_url, commitment=Confirmed, timeout=timeout)

    def get_balance(self, address: str) -> int:
        try:
            return int(self.client.get_balance(to_pubkey(address)).value)
        except Exception as exc:  # noqa: BLE001
            logger.warning("chain_get_balance_failed address=%s error=%s", address, exc)
            raise ChainError("Failed to read deposit balance") from exc

    def get_token_holdings(self, address: str) -> List[TokenHolding]:
        owner = to_pubkey(address)
        holdings: List[TokenHolding] = []
        for program_id in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            try:
                resp = self.client.get_token_accounts_by_owner_json_parsed(
                    owner, TokenAccountOpts(program_id=program_id)
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("chain_token_accounts_failed address=%s program=%s error=%s", address, program_id, exc)
                raise ChainError("Failed to read token accounts") from exc
            for keyed in resp.value or []:
                holding = parse_token_account(getattr(keyed.account.data, "parsed", None))
                if holding:
                    holdings.append(holding)
        return holdings

    def latest_blockhash(self) -> Tuple[str, int]:
        """Return (blockhash, last_valid_block_height)."""
        try:
            value = self.client.get_latest_blockhash().value
        except Exception as exc:  # noqa: BLE001
            raise ChainError("Failed to fetch blockhash") from exc
        return str(value.blockhash), int(value.last_valid_block_height)

    def block_height(self) -> int:
        try:
            return int(self.client.get_block_height().value)
        except Exception as exc:  # noqa: BLE001
            logger.warning("chain_block_height_failed error=%s", exc)
            raise ChainError("Failed to read block height") from exc

    def send_transfers(self, secret: str, transfers: Sequence[Tuple[str, int]]) -> SentTransfer:
        signer = deposit_keypair_from_secret(secret)
        blockhash, last_valid_block_height = self.latest_blockhash()
        tx = build_signed_transfer(signer, transfers, blockhash)
        try:
            resp = self.client.send_raw_transaction(
                bytes(tx), opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("chain_send_failed payer=%s error=%s", signer.pubkey(), exc)
            raise ChainError("Failed to submit transfer") from exc
        return SentTransfer(signature=str(resp.value), last_valid_block_height=last_valid_block_height)

    def signature_status(self, signature: str) -> str:
        """
        Return "confirmed", "failed" or "unknown" for a submitted signature.

        "unknown" means the cluster answered without a confirmed status. A failed
        lookup raises ChainError instead, so callers never mistake an RPC outage
        for a transaction that did not land.
        """
        try:
            resp = self.client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("chain_signature_status_failed signature=%s error=%s", signature, exc)
            raise ChainError("Failed to read transaction status") from exc
        status = resp.value[0] if resp.value else None
        if status is None:
            return "unknown"
        if status.err is not None:
            return "failed"
        if status.confirmation_status in (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized):
            return "confirmed"
        # processed transactions can still be dropped on a fork
        return "unknown"

    def confirm(self, signature: str, timeout_sec: float = 30) -> str:
        start = time.time()
        while time.time() - start < timeout_sec:
            try:
                outcome = self.signature_status(signature)
            except ChainError:
                outcome = "unknown"
            if outcome != "unknown":
                return outcome
            time.sleep(0.8)
        return "unknown"
