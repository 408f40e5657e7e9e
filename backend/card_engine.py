"""
Card lifecycle rules: which transitions are legal for a card and what
accompanies them (balance reconciliation, protocol tax, transfers).

The engine owns no globals. Store, chain, price and notifier collaborators are
passed in, and the HTTP layer only translates the errors raised here.

    CREATED --sync(balance>0)--> FUNDED --lock--> LOCKED --claim--> CLAIMED
    CREATED --lock--> LOCKED (unless lock_requires_funding)
    expired, unclaimed --refund--> REFUNDED
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from card_store import Card, CardBalance, CardStore, DuplicateCardError
from chain_client import TokenHolding, is_valid_address, lamports_to_sol, new_deposit_account
from errors import (
    AlreadyClaimedError,
    AlreadyRefundedError,
    CardError,
    ChainError,
    ClaimPendingError,
    ConfigurationError,
    InvalidCvvError,
    InvalidDestinationError,
    NoBalanceError,
    NotAuthenticatedError,
    NotFoundError,
    NotLockedError,
    StateConflictError,
    StorageError,
    ValidationError,
)
from notifier import mask_identifier

logger = logging.getLogger("cryptocards.engine")

# No 0/O or 1/I so ids survive being read aloud or copied by hand.
PUBLIC_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BPS_DENOMINATOR = 10_000
EDITABLE_FIELDS = ("message", "currency", "amount_fiat", "token_mint", "expires_at", "template_url", "refund_wallet")


@dataclass
class EngineConfig:
    tax_bps: int = 150
    fee_reserve_lamports: int = 5000
    cvv_length: int = 6
    public_id_length: int = 8
    id_generation_attempts: int = 5
    lock_requires_funding: bool = False
    treasury_wallet: Optional[str] = None
    claim_confirm_timeout_seconds: float = 30
    pending_transfer_timeout_seconds: float = 120


def generate_public_id(length: int = 8) -> str:
    return "".join(secrets.choice(PUBLIC_ID_ALPHABET) for _ in range(length))


def generate_cvv(length: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def hash_cvv(cvv: str) -> str:
    return hashlib.sha256(str(cvv).encode()).hexdigest()


def cvv_matches(submitted: Optional[str], stored_hash: Optional[str]) -> bool:
    return hmac.compare_digest(hash_cvv(str(submitted or "").strip()), stored_hash or "")


def iso_ts(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class TokenValuation:
    mint: str
    amount: int
    decimals: int
    ui_amount: float
    price_sol: Optional[float] = None

    @property
    def value_sol(self) -> Optional[float]:
        if self.price_sol is None:
            return None
        return self.ui_amount * self.price_sol

    def as_dict(self) -> dict:
        return {
            "mint": self.mint,
            "amount": self.amount,
            "decimals": self.decimals,
            "ui_amount": self.ui_amount,
            "price_sol": self.price_sol,
            "value_sol": self.value_sol,
        }


@dataclass(frozen=True)
class FundingSnapshot:
    lamports: int
    sol_native: float
    tokens: Tuple[TokenValuation, ...]
    tokens_total_value_sol: float
    total_value_sol: float
    display_amount: float
    display_asset: Optional[str]
    display_value_sol: Optional[float]
    funded_observed: bool

    def as_dict(self) -> dict:
        return {
            "lamports": self.lamports,
            "sol": self.sol_native,
            "tokens": [t.as_dict() for t in self.tokens],
            "tokens_total_value_sol": self.tokens_total_value_sol,
            "total_value_sol": self.total_value_sol,
            "token_amount": self.display_amount,
            "sol_amount": self.display_value_sol,
            "display_asset": self.display_asset,
        }


def reconcile_funding(
    lamports: int,
    holdings: Sequence[TokenHolding],
    price_lookup: Callable[[str], Optional[float]],
) -> FundingSnapshot:
    """
    Value a deposit address from a fresh chain read.

    The displayed amount is the held token with the greatest SOL value when any
    token is priced (first enumerated wins ties), otherwise the SOL total when
    positive, otherwise the raw amount of the first unpriced token, with no SOL value.
    """
    sol_native = lamports_to_sol(lamports)
    tokens: List[TokenValuation] = []
    for holding in holdings:
        price = price_lookup(holding.mint) if holding.amount > 0 else None
        tokens.append(
            TokenValuation(
                mint=holding.mint,
                amount=holding.amount,
                decimals=holding.decimals,
                ui_amount=holding.ui_amount,
                price_sol=price,
            )
        )
    held = [t for t in tokens if t.amount > 0]
    priced = [t for t in held if t.price_sol is not None]
    unpriced = [t for t in held if t.price_sol is None]
    tokens_total_value_sol = sum(t.value_sol for t in priced)
    total_value_sol = sol_native + tokens_total_value_sol

    if priced:
        best = priced[0]
        for candidate in priced[1:]:
            if candidate.value_sol > best.value_sol:
                best = candidate
        display_amount, display_asset, display_value = best.ui_amount, best.mint, total_value_sol
    elif total_value_sol > 0:
        display_amount, display_asset, display_value = total_value_sol, "SOL", total_value_sol
    elif unpriced:
        display_amount, display_asset, display_value = unpriced[0].ui_amount, unpriced[0].mint, None
    else:
        display_amount, display_asset, display_value = 0.0, None, 0.0

    return FundingSnapshot(
        lamports=lamports,
        sol_native=sol_native,
        tokens=tuple(tokens),
        tokens_total_value_sol=tokens_total_value_sol,
        total_value_sol=total_value_sol,
        display_amount=display_amount,
        display_asset=display_asset,
        display_value_sol=display_value,
        funded_observed=total_value_sol > 0 or bool(unpriced),
    )


def compute_tax(lamports: int, tax_bps: int) -> int:
    return lamports * tax_bps // BPS_DENOMINATOR


def split_claim(lamports: int, tax_bps: int, fee_reserve: int) -> Tuple[int, int]:
    """
    Return (tax, payout) in lamports for a native SOL balance.

    Only native SOL is transferred on claim, so the tax base is the native
    lamport balance rather than the SOL-equivalent value of held tokens. The
    network fee is paid by the deposit wallet out of the payout side.
    """
    tax = compute_tax(lamports, tax_bps)
    return tax, lamports - tax - fee_reserve


def can_edit_metadata(card: Card) -> bool:
    return not card.locked


def refund_eligible(card: Card, now_ts: float) -> bool:
    return (
        card.expires_at is not None
        and card.expires_at < now_ts
        and not card.claimed
        and not card.refunded
        and card.transfer_lock is None
    )


@dataclass
class TransferResult:
    public_id: str
    kind: str
    signature: str
    destination: str
    amount_sol: float
    tax_sol: float = 0.0

    def as_claim_response(self) -> dict:
        return {
            "success": True,
            "public_id": self.public_id,
            "signature": self.signature,
            "amount_sol": self.amount_sol,
            "tax_sol": self.tax_sol,
            "destination_wallet": self.destination,
        }

    def as_refund_response(self) -> dict:
        return {
            "success": True,
            "status": "refunded",
            "public_id": self.public_id,
            "signature": self.signature,
            "amount_sol": self.amount_sol,
            "refund_wallet": self.destination,
        }


def _clean_optional_str(value, name: str, max_len: int) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{name} must be at most {max_len} characters")
    return value or None


class CardEngine:
    def __init__(
        self,
        store: CardStore,
        chain,
        prices,
        notifier,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.chain = chain
        self.prices = prices
        self.notifier = notifier
        self.config = config or EngineConfig()
        self.clock = clock

    # --- helpers ---

    def _notify(self, text: str):
        try:
            self.notifier.notify(text)
        except Exception as exc:  # noqa: BLE001
            logger.warning("notify_failed error=%s", exc)

    def _record_event(self, public_id: str, kind: str, amount_sol: Optional[float] = None):
        try:
            self.store.record_event(public_id, kind, amount_sol, self.clock())
        except StorageError:
            logger.warning("card_event_write_failed public_id=%s kind=%s", public_id, kind, exc_info=True)

    def _price_token(self, mint: str) -> Optional[float]:
        try:
            return self.prices.token_price_sol(mint)
        except Exception as exc:  # noqa: BLE001
            logger.warning("token_price_lookup_failed mint=%s error=%s", mint, exc)
            return None

    def _validate_metadata(self, values: dict) -> dict:
        cleaned: dict = {}
        if "message" in values:
            cleaned["message"] = _clean_optional_str(values["message"], "message", 500)
        if "currency" in values:
            currency = _clean_optional_str(values["currency"], "currency", 10)
            if not currency:
                raise ValidationError("currency is required")
            cleaned["currency"] = currency.upper()
        if "amount_fiat" in values:
            amount = values["amount_fiat"]
            if amount is not None:
                try:
                    amount = float(amount)
                except (TypeError, ValueError):
                    raise ValidationError("amount_fiat must be a number")
                if amount < 0:
                    raise ValidationError("amount_fiat must not be negative")
            cleaned["amount_fiat"] = amount
        for key in ("token_mint", "refund_wallet"):
            if key in values:
                addr = _clean_optional_str(values[key], key, 64)
                if addr and not is_valid_address(addr):
                    raise ValidationError(f"{key} is not a valid Solana address")
                cleaned[key] = addr
        if "template_url" in values:
            cleaned["template_url"] = _clean_optional_str(values["template_url"], "template_url", 2048)
        if "expires_at" in values:
            expires_at = values["expires_at"]
            if expires_at is not None:
                try:
                    expires_at = float(expires_at)
                except (TypeError, ValueError):
                    raise ValidationError("expires_at must be a timestamp")
                if expires_at <= self.clock():
                    raise ValidationError("expires_at must be in the future")
            cleaned["expires_at"] = expires_at
        return cleaned

    def get_card(self, public_id: str) -> Card:
        card = self.store.get_card((public_id or "").strip().upper())
        if card is None:
            raise NotFoundError()
        return card

    # --- create ---

    def create_card(
        self,
        currency: Optional[str],
        message: Optional[str] = None,
        amount_fiat: Optional[float] = None,
        token_mint: Optional[str] = None,
        expires_at: Optional[float] = None,
        template_url: Optional[str] = None,
        refund_wallet: Optional[str] = None,
        user_id: Optional[str] = None,
        creator_email: Optional[str] = None,
    ) -> Tuple[Card, str]:
        """Create a card with every status flag false. Returns the stored card and the clear CVV."""
        values = self._validate_metadata(
            {
                "currency": currency,
                "message": message,
                "amount_fiat": amount_fiat,
                "token_mint": token_mint,
                "expires_at": expires_at,
                "template_url": template_url,
                "refund_wallet": refund_wallet,
            }
        )
        card: Optional[Card] = None
        cvv = generate_cvv(self.config.cvv_length)
        for attempt in range(1, self.config.id_generation_attempts + 1):
            secret, address = new_deposit_account()
            now = self.clock()
            candidate = Card(
                public_id=generate_public_id(self.config.public_id_length),
                cvv_hash=hash_cvv(cvv),
                deposit_address=address,
                deposit_secret=secret,
                user_id=user_id,
                creator_email=creator_email,
                created_at=now,
                updated_at=now,
                **values,
            )
            try:
                card = self.store.insert_card(candidate)
                break
            except DuplicateCardError:
                logger.warning("card_id_collision attempt=%s public_id=%s", attempt, candidate.public_id)
        if card is None:
            raise StorageError("Could not allocate a unique card id")

        logger.info("card_created public_id=%s user_id=%s currency=%s", card.public_id, user_id, card.currency)
        self._record_event(card.public_id, "created")
        lines = [
            "*New CRYPTOCARD Created*",
            "",
            f"*Card ID:* `{card.public_id}`",
            f"*Creator:* {mask_identifier(creator_email or user_id) or 'anonymous'}",
            "",
            f"*Currency:* {card.currency}",
        ]
        if card.amount_fiat is not None:
            lines.append(f"*Fiat Amount:* {card.amount_fiat}")
        self._notify("\n".join(lines))
        return card, cvv

    # --- metadata ---

    def update_metadata(self, public_id: str, user_id: Optional[str], values: dict) -> Card:
        card = self.get_card(public_id)
        if not user_id or card.user_id != user_id:
            raise NotAuthenticatedError("Only the card's creator can edit it")
        if not can_edit_metadata(card):
            raise StateConflictError("Card is locked; its details can no longer be changed")
        unknown = set(values) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
        cleaned = self._validate_metadata(values)
        if not cleaned:
            return card
        if not self.store.update_metadata(card.public_id, cleaned, self.clock()):
            raise StateConflictError("Card is locked; its details can no longer be changed")
        return self.get_card(card.public_id)

    # --- funding ---

    def _reconcile_and_store(self, card: Card) -> Tuple[FundingSnapshot, bool]:
        lamports = self.chain.get_balance(card.deposit_address)
        holdings = self.chain.get_token_holdings(card.deposit_address)
        snapshot = reconcile_funding(lamports, holdings, self._price_token)
        became_funded = self.store.save_funding(card.public_id, card.deposit_address, snapshot, self.clock())
        if became_funded:
            logger.info("card_funded public_id=%s total_value_sol=%s", card.public_id, snapshot.total_value_sol)
            self._record_event(card.public_id, "funded", snapshot.total_value_sol)
            self._notify(
                "\n".join(
                    [
                        "*CRYPTOCARD Funded*",
                        "",
                        f"*Card ID:* `{card.public_id}`",
                        f"*Value:* {snapshot.total_value_sol:.6f} SOL",
                    ]
                )
            )
        return snapshot, card.funded or snapshot.funded_observed

    def sync_funding(self, public_id: str) -> dict:
        card = self.get_card(public_id)
        if card.claimed:
            raise AlreadyClaimedError()
        if card.refunded:
            raise AlreadyRefundedError()
        if not card.deposit_address:
            raise ValidationError("Card has no deposit address")
        snapshot, funded = self._reconcile_and_store(card)
        return {
            "public_id": card.public_id,
            "deposit_address": card.deposit_address,
            **snapshot.as_dict(),
            "funded": funded,
        }

    # --- lock ---

    def lock_card(self, public_id: str) -> dict:
        card = self.get_card(public_id)
        if card.locked:
            return {"success": True, "public_id": card.public_id, "already_locked": True}
        if card.refunded:
            raise AlreadyRefundedError()
        if self.config.lock_requires_funding and not card.funded:
            raise NoBalanceError("Card must be funded before it can be locked")
        won = self.store.mark_locked(card.public_id, self.clock())
        if won:
            logger.info("card_locked public_id=%s funded=%s", card.public_id, card.funded)
            self._record_event(card.public_id, "locked")
            self._notify("\n".join(["*CRYPTOCARD Locked*", "", f"*Card ID:* `{card.public_id}`"]))
        return {"success": True, "public_id": card.public_id, "already_locked": not won}

    # --- transfers (claim / refund) ---

    def _claim_result(self, card: Card) -> TransferResult:
        return TransferResult(
            public_id=card.public_id,
            kind="claim",
            signature=card.claim_signature,
            destination=card.claim_destination,
            amount_sol=card.claimed_amount_sol or 0.0,
            tax_sol=card.tax_amount_sol or 0.0,
        )

    def _refund_result(self, card: Card) -> TransferResult:
        return TransferResult(
            public_id=card.public_id,
            kind="refund",
            signature=card.refund_signature,
            destination=card.refund_wallet,
            amount_sol=card.refunded_amount_sol or 0.0,
        )

    def _finalize(self, card: Card, kind: str, signature: str) -> Card:
        now = self.clock()
        amount_sol = lamports_to_sol(card.transfer_amount_lamports or 0)
        tax_sol = lamports_to_sol(card.transfer_tax_lamports or 0)
        if kind == "claim":
            won = self.store.finalize_claim(
                card.public_id, signature, card.transfer_destination, amount_sol, tax_sol, now
            )
        else:
            won = self.store.finalize_refund(card.public_id, signature, amount_sol, now)
        latest = self.get_card(card.public_id)
        if not won:
            return latest
        logger.info("card_%sed public_id=%s signature=%s amount_sol=%s", kind, card.public_id, signature, amount_sol)
        if kind == "claim":
            self._record_event(card.public_id, "claimed", amount_sol)
            self._notify(
                "\n".join(
                    [
                        "*CRYPTOCARD Claimed*",
                        "",
                        f"*Card ID:* `{card.public_id}`",
                        f"*Amount:* {amount_sol:.6f} SOL",
                        f"*Tax:* {tax_sol:.6f} SOL",
                        f"*To:* `{mask_identifier(card.transfer_destination)}`",
                        "",
                        f"[Solscan](https://solscan.io/tx/{signature})",
                    ]
                )
            )
        else:
            self._record_event(card.public_id, "refunded", amount_sol)
            self._notify(
                "\n".join(
                    [
                        "*CRYPTOCARD Refunded*",
                        "",
                        f"*Card ID:* `{card.public_id}`",
                        f"*Amount:* {amount_sol:.6f} SOL",
                        "",
                        f"[Solscan](https://solscan.io/tx/{signature})",
                    ]
                )
            )
        return latest

    def _release(self, card: Card, reason: str) -> Card:
        """Release the reservation `card` was read with. Raises ClaimPendingError if another request now holds one."""
        kind = card.transfer_lock
        logger.warning(
            "pending_transfer_released public_id=%s kind=%s signature=%s reason=%s",
            card.public_id,
            kind,
            card.transfer_signature,
            reason,
        )
        if not self.store.release_transfer_lock(card.public_id, kind, card.transfer_lock_at):
            latest = self.get_card(card.public_id)
            if latest.transfer_lock:
                raise ClaimPendingError()
            return latest
        return self.get_card(card.public_id)

    def _blockhash_expired(self, card: Card) -> bool:
        if card.transfer_last_valid_block_height is None:
            age = self.clock() - (card.transfer_lock_at or 0)
            return age >= self.config.pending_transfer_timeout_seconds
        return self.chain.block_height() > card.transfer_last_valid_block_height

    def _resume_transfer(self, card: Card) -> Card:
        """
        Settle a transfer left in flight by an earlier request.

        Finalizes it when the recorded signature landed and releases it when it
        failed. An unknown signature is released only once its blockhash has
        expired, so it can no longer land. Anything else raises ClaimPendingError,
        and chain lookup failures propagate with the reservation kept.
        """
        kind = card.transfer_lock
        signature = card.transfer_signature
        if not signature:
            # reserved but the send never reported back
            age = self.clock() - (card.transfer_lock_at or 0)
            if age < self.config.pending_transfer_timeout_seconds:
                raise ClaimPendingError()
            return self._release(card, "unsent")

        outcome = self.chain.signature_status(signature)
        if outcome == "confirmed":
            return self._finalize(card, kind, signature)
        if outcome == "failed":
            return self._release(card, "failed")
        if not self._blockhash_expired(card):
            raise ClaimPendingError()
        return self._release(card, "expired")

    def _execute_transfer(
        self,
        card: Card,
        kind: str,
        destination: str,
        payout: int,
        tax: int,
    ) -> Card:
        lock_at = self.clock()
        if not self.store.acquire_transfer_lock(card.public_id, kind, lock_at, destination, payout, tax):
            latest = self.get_card(card.public_id)
            if latest.claimed:
                raise AlreadyClaimedError()
            if latest.refunded:
                raise AlreadyRefundedError()
            raise ClaimPendingError()
        transfers: List[Tuple[str, int]] = [(destination, payout)]
        if tax > 0:
            transfers.append((self.config.treasury_wallet, tax))
        try:
            sent = self.chain.send_transfers(card.deposit_secret, transfers)
        except Exception as exc:  # noqa: BLE001
            self.store.release_transfer_lock(card.public_id, kind, lock_at)
            logger.warning("transfer_submit_failed public_id=%s kind=%s error=%s", card.public_id, kind, exc)
            if isinstance(exc, CardError):
                raise
            raise ChainError("Failed to submit transfer") from exc
        signature = sent.signature
        self.store.record_transfer_signature(card.public_id, kind, lock_at, signature, sent.last_valid_block_height)
        logger.info("transfer_submitted public_id=%s kind=%s signature=%s payout=%s tax=%s", card.public_id, kind, signature, payout, tax)

        outcome = self.chain.confirm(signature, self.config.claim_confirm_timeout_seconds)
        if outcome == "confirmed":
            return self._finalize(self.get_card(card.public_id), kind, signature)
        if outcome == "failed":
            self.store.release_transfer_lock(card.public_id, kind, lock_at)
            logger.warning("transfer_failed_onchain public_id=%s kind=%s signature=%s", card.public_id, kind, signature)
            raise ChainError("Transfer failed on-chain; the card is still claimable")
        logger.warning("transfer_unconfirmed public_id=%s kind=%s signature=%s", card.public_id, kind, signature)
        raise ClaimPendingError()

    # --- claim ---

    def claim_card(self, public_id: str, cvv: str, destination_wallet: str) -> TransferResult:
        card = self.get_card(public_id)
        if not cvv_matches(cvv, card.cvv_hash):
            raise InvalidCvvError()
        if not card.locked:
            raise NotLockedError()
        if card.transfer_lock:
            pending_signature = card.transfer_signature
            card = self._resume_transfer(card)
            if card.claimed and pending_signature and card.claim_signature == pending_signature:
                return self._claim_result(card)
        if card.claimed:
            raise AlreadyClaimedError()
        if card.refunded:
            raise AlreadyRefundedError()
        if not card.deposit_address or not card.deposit_secret:
            raise NoBalanceError("Card has no deposit wallet configured")

        snapshot, funded = self._reconcile_and_store(card)
        if not funded or snapshot.lamports <= 0:
            raise NoBalanceError()
        tax, payout = split_claim(snapshot.lamports, self.config.tax_bps, self.config.fee_reserve_lamports)
        if payout <= 0:
            raise NoBalanceError("Balance is too low to claim after fees")

        destination = (destination_wallet or "").strip()
        if not is_valid_address(destination) or destination == card.deposit_address:
            raise InvalidDestinationError()
        if tax > 0 and not is_valid_address(self.config.treasury_wallet):
            raise ConfigurationError("Treasury wallet not configured")

        claimed = self._execute_transfer(card, "claim", destination, payout, tax)
        return self._claim_result(claimed)

    # --- refund ---

    def refund_card(self, public_id: str) -> dict:
        card = self.get_card(public_id)
        if card.transfer_lock:
            pending_signature = card.transfer_signature
            card = self._resume_transfer(card)
            if card.refunded and pending_signature and card.refund_signature == pending_signature:
                return self._refund_result(card).as_refund_response()
        if card.claimed:
            raise AlreadyClaimedError()
        if card.refunded:
            raise AlreadyRefundedError()
        if not refund_eligible(card, self.clock()):
            raise StateConflictError("Card has not expired")
        if not card.deposit_address or not card.deposit_secret:
            raise NoBalanceError("Card has no deposit wallet configured")

        snapshot, _ = self._reconcile_and_store(card)
        payout = snapshot.lamports - self.config.fee_reserve_lamports
        if payout <= 0:
            raise NoBalanceError("Card has no balance to refund")

        if not is_valid_address(card.refund_wallet):
            if self.store.flag_manual_refund(card.public_id, self.clock()):
                logger.warning("refund_needs_operator public_id=%s lamports=%s", card.public_id, snapshot.lamports)
                self._record_event(card.public_id, "refund_flagged", snapshot.sol_native)
                self._notify(
                    "\n".join(
                        [
                            "*CRYPTOCARD Refund Needs Operator*",
                            "",
                            f"*Card ID:* `{card.public_id}`",
                            f"*Balance:* {snapshot.sol_native:.6f} SOL",
                            "No refund wallet on file.",
                        ]
                    )
                )
            return {"success": False, "status": "manual_review", "public_id": card.public_id}

        refunded = self._execute_transfer(card, "refund", card.refund_wallet, payout, 0)
        return self._refund_result(refunded).as_refund_response()

    def sweep_expired_cards(self, limit: int = 50) -> Dict[str, int]:
        counts = {"refunded": 0, "manual_review": 0, "skipped": 0, "failed": 0}
        candidates = self.store.expired_candidates(self.clock(), limit, min_lamports=self.config.fee_reserve_lamports)
        for card in candidates:
            try:
                result = self.refund_card(card.public_id)
            except (NoBalanceError, StateConflictError):
                counts["skipped"] += 1
                continue
            except CardError as exc:
                counts["failed"] += 1
                logger.warning("refund_sweep_card_failed public_id=%s error=%s", card.public_id, exc.message)
                continue
            counts[result["status"]] += 1
        return counts

    # --- queries ---

    def card_view(self, card: Card) -> dict:
        return {
            "public_id": card.public_id,
            "message": card.message,
            "currency": card.currency,
            "amount_fiat": card.amount_fiat,
            "token_mint": card.token_mint,
            "expires_at": iso_ts(card.expires_at),
            "template_url": card.template_url,
            "deposit_address": card.deposit_address,
            "funded": card.funded,
            "locked": card.locked,
            "claimed": card.claimed,
            "refunded": card.refunded,
            "token_amount": card.token_amount,
            "sol_amount": card.sol_amount,
            "display_asset": card.display_asset,
            "claim_signature": card.claim_signature,
            "refund_signature": card.refund_signature,
            "needs_manual_refund": card.needs_manual_refund,
            "transfer_pending": card.transfer_lock is not None,
            "created_at": iso_ts(card.created_at),
            "updated_at": iso_ts(card.updated_at),
        }

    def balance_view(self, card: Card, balance: Optional[CardBalance]) -> dict:
        if balance is None:
            return {
                "public_id": card.public_id,
                "deposit_address": card.deposit_address,
                "lamports": 0,
                "sol": 0.0,
                "tokens": [],
                "tokens_total_value_sol": 0.0,
                "total_value_sol": 0.0,
                "synced_at": None,
            }
        return {
            "public_id": card.public_id,
            "deposit_address": balance.deposit_address,
            "lamports": balance.lamports,
            "sol": balance.sol,
            "tokens": balance.tokens(),
            "tokens_total_value_sol": balance.tokens_total_value_sol,
            "total_value_sol": balance.total_value_sol,
            "synced_at": iso_ts(balance.synced_at),
        }

    def card_balance(self, public_id: str) -> dict:
        card = self.get_card(public_id)
        if not card.deposit_address:
            raise ValidationError("Card has no deposit address")
        return self.balance_view(card, self.store.get_balance(card.public_id))

    def card_status(self, public_id: str) -> dict:
        card = self.get_card(public_id)
        balance = self.store.get_balance(card.public_id)
        return {
            "public_id": card.public_id,
            "funded": card.funded,
            "locked": card.locked,
            "claimed": card.claimed,
            "refunded": card.refunded,
            "needs_manual_refund": card.needs_manual_refund,
            "transfer_pending": card.transfer_lock is not None,
            "can_edit": can_edit_metadata(card),
            "expires_at": iso_ts(card.expires_at),
            "token_amount": card.token_amount,
            "sol_amount": card.sol_amount,
            "display_asset": card.display_asset,
            "balance": self.balance_view(card, balance) if balance else None,
        }

    def list_user_cards(self, user_id: str) -> List[dict]:
        return [self.card_view(card) for card in self.store.list_user_cards(user_id)]

    def hide_card(self, user_id: str, public_id: str) -> dict:
        card = self.get_card(public_id)
        if card.user_id != user_id:
            raise NotFoundError()
        self.store.hide_for_owner(card.public_id, user_id, self.clock())
        return {"success": True, "public_id": card.public_id}

    def public_metrics(self) -> dict:
        metrics = self.store.metrics()
        sol_usd = self.prices.sol_usd()
        return {
            "total_cards": metrics["total_cards"],
            "funded_cards": metrics["funded_cards"],
            "locked_cards": metrics["locked_cards"],
            "claimed_cards": metrics["claimed_cards"],
            "refunded_cards": metrics["refunded_cards"],
            "value_held_sol": metrics["value_held_sol"],
            "value_held_usd": metrics["value_held_sol"] * sol_usd,
            "claimed_sol": metrics["claimed_sol"],
            "tax_collected_sol": metrics["tax_collected_sol"],
            "sol_usd": sol_usd,
        }

    def stats(self) -> dict:
        metrics = self.store.metrics()
        return {"total_funded": metrics["fiat_total"], "total_burned": metrics["fiat_refunded"]}

    def public_activity(self, limit: int = 20) -> List[dict]:
        limit = max(1, min(int(limit), 100))
        return [
            {
                "kind": event.kind,
                "card": mask_identifier(event.public_id),
                "amount_sol": event.amount_sol,
                "created_at": iso_ts(event.created_at),
            }
            for event in self.store.recent_events(limit)
        ]
