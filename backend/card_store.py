"""
Persistence for cards, their cached chain balances and the public activity feed.

Every state flip that two requests could race on (lock, transfer reservation,
claim/refund finalization) is a conditional UPDATE; the caller reads the
rowcount to learn whether it won.
"""

from __future__ import annotations

import json
import time
from typing import Dict, List, Optional

from sqlalchemy import CheckConstraint, Index, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, select

from errors import StorageError


_CLEARED_TRANSFER = {
    "transfer_lock": None,
    "transfer_lock_at": None,
    "transfer_signature": None,
    "transfer_destination": None,
    "transfer_amount_lamports": None,
    "transfer_tax_lamports": None,
    "transfer_last_valid_block_height": None,
}


class DuplicateCardError(Exception):
    """public_id or deposit_address collided with an existing row."""


class Card(SQLModel, table=True):
    __tablename__ = "cards"
    __table_args__ = (
        CheckConstraint("NOT (claimed AND refunded)", name="ck_cards_claimed_xor_refunded"),
        Index("idx_cards_user_created", "user_id", "created_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: str = Field(index=True, unique=True)
    cvv_hash: str
    deposit_address: Optional[str] = Field(default=None, unique=True)
    deposit_secret: Optional[str] = None
    message: Optional[str] = None
    currency: str
    amount_fiat: Optional[float] = None
    token_mint: Optional[str] = None
    expires_at: Optional[float] = None
    template_url: Optional[str] = None
    refund_wallet: Optional[str] = None
    user_id: Optional[str] = Field(default=None, index=True)
    creator_email: Optional[str] = None
    funded: bool = Field(default=False)
    locked: bool = Field(default=False)
    claimed: bool = Field(default=False)
    refunded: bool = Field(default=False)
    token_amount: Optional[float] = None
    sol_amount: Optional[float] = None
    display_asset: Optional[str] = None
    claim_destination: Optional[str] = None
    claim_signature: Optional[str] = None
    claimed_amount_sol: Optional[float] = None
    tax_amount_sol: Optional[float] = None
    refund_signature: Optional[str] = None
    refunded_amount_sol: Optional[float] = None
    needs_manual_refund: bool = Field(default=False)
    transfer_lock: Optional[str] = None  # "claim" | "refund" while a transfer is in flight
    transfer_lock_at: Optional[float] = None
    transfer_signature: Optional[str] = None
    transfer_destination: Optional[str] = None
    transfer_amount_lamports: Optional[int] = None
    transfer_tax_lamports: Optional[int] = None
    transfer_last_valid_block_height: Optional[int] = None
    hidden_by_owner: bool = Field(default=False)
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())
    locked_at: Optional[float] = None
    claimed_at: Optional[float] = None
    refunded_at: Optional[float] = None


class CardBalance(SQLModel, table=True):
    __tablename__ = "card_balances"

    public_id: str = Field(primary_key=True)
    deposit_address: str
    lamports: int = Field(default=0)
    sol: float = Field(default=0)
    tokens_json: str = Field(default="[]")
    tokens_total_value_sol: float = Field(default=0)
    total_value_sol: float = Field(default=0)
    synced_at: float = Field(default_factory=lambda: time.time())

    def tokens(self) -> List[dict]:
        try:
            return json.loads(self.tokens_json or "[]")
        except ValueError:
            return []


class CardEvent(SQLModel, table=True):
    __tablename__ = "card_events"
    __table_args__ = (Index("idx_card_events_created", "created_at"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: str = Field(index=True)
    kind: str
    amount_sol: Optional[float] = None
    created_at: float = Field(default_factory=lambda: time.time())


class CardStore:
    def __init__(self, engine):
        self.engine = engine

    def init_schema(self):
        SQLModel.metadata.create_all(self.engine)

    def _conditional_update(self, public_id: str, conditions: list, values: dict) -> bool:
        stmt = update(Card).where(Card.public_id == public_id, *conditions).values(**values)
        try:
            with Session(self.engine) as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    # --- reads ---

    def get_card(self, public_id: str) -> Optional[Card]:
        try:
            with Session(self.engine) as session:
                return session.exec(select(Card).where(Card.public_id == public_id)).first()
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    def get_balance(self, public_id: str) -> Optional[CardBalance]:
        try:
            with Session(self.engine) as session:
                return session.get(CardBalance, public_id)
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    def list_user_cards(self, user_id: str) -> List[Card]:
        stmt = (
            select(Card)
            .where(Card.user_id == user_id)
            .where(Card.hidden_by_owner == False)  # noqa: E712
            .order_by(Card.created_at.desc())
        )
        try:
            with Session(self.engine) as session:
                return list(session.exec(stmt).all())
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    def expired_candidates(self, now_ts: float, limit: int = 50, min_lamports: int = 0) -> List[Card]:
        """Expired, unsettled cards whose last synced balance exceeds `min_lamports`."""
        stmt = (
            select(Card)
            .join(CardBalance, CardBalance.public_id == Card.public_id)
            .where(CardBalance.lamports > min_lamports)
            .where(Card.expires_at.is_not(None))
            .where(Card.expires_at < now_ts)
            .where(Card.funded == True)  # noqa: E712
            .where(Card.claimed == False)  # noqa: E712
            .where(Card.refunded == False)  # noqa: E712
            .where(Card.needs_manual_refund == False)  # noqa: E712
            .where(Card.transfer_lock.is_(None))
            .order_by(Card.expires_at)
            .limit(limit)
        )
        try:
            with Session(self.engine) as session:
                return list(session.exec(stmt).all())
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    def recent_events(self, limit: int = 20) -> List[CardEvent]:
        stmt = select(CardEvent).order_by(CardEvent.created_at.desc(), CardEvent.id.desc()).limit(limit)
        try:
            with Session(self.engine) as session:
                return list(session.exec(stmt).all())
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    def metrics(self) -> Dict[str, float]:
        try:
            with Session(self.engine) as session:
                total = session.exec(select(func.count(Card.id))).one()
                funded = session.exec(select(func.count(Card.id)).where(Card.funded == True)).one()  # noqa: E712
                locked = session.exec(select(func.count(Card.id)).where(Card.locked == True)).one()  # noqa: E712
                claimed = session.exec(select(func.count(Card.id)).where(Card.claimed == True)).one()  # noqa: E712
                refunded = session.exec(select(func.count(Card.id)).where(Card.refunded == True)).one()  # noqa: E712
                value_held = session.exec(
                    select(func.coalesce(func.sum(Card.sol_amount), 0.0))
                    .where(Card.funded == True)  # noqa: E712
                    .where(Card.claimed == False)  # noqa: E712
                    .where(Card.refunded == False)  # noqa: E712
                ).one()
                claimed_sol = session.exec(select(func.coalesce(func.sum(Card.claimed_amount_sol), 0.0))).one()
                tax_sol = session.exec(select(func.coalesce(func.sum(Card.tax_amount_sol), 0.0))).one()
                fiat_total = session.exec(select(func.coalesce(func.sum(Card.amount_fiat), 0.0))).one()
                fiat_refunded = session.exec(
                    select(func.coalesce(func.sum(Card.amount_fiat), 0.0)).where(Card.refunded == True)  # noqa: E712
                ).one()
        except SQLAlchemyError as exc:
            raise StorageError() from exc
        return {
            "total_cards": int(total),
            "funded_cards": int(funded),
            "locked_cards": int(locked),
            "claimed_cards": int(claimed),
            "refunded_cards": int(refunded),
            "value_held_sol": float(value_held),
            "claimed_sol": float(claimed_sol),
            "tax_collected_sol": float(tax_sol),
            "fiat_total": float(fiat_total),
            "fiat_refunded": float(fiat_refunded),
        }

    # --- writes ---

    def insert_card(self, card: Card) -> Card:
        try:
            with Session(self.engine) as session:
                session.add(card)
                session.commit()
                session.refresh(card)
                return card
        except IntegrityError as exc:
            raise DuplicateCardError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    def record_event(self, public_id: str, kind: str, amount_sol: Optional[float] = None, now_ts: Optional[float] = None):
        event = CardEvent(public_id=public_id, kind=kind, amount_sol=amount_sol, created_at=now_ts or time.time())
        try:
            with Session(self.engine) as session:
                session.add(event)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    def mark_locked(self, public_id: str, now_ts: float) -> bool:
        return self._conditional_update(
            public_id,
            [Card.locked == False],  # noqa: E712
            {"locked": True, "locked_at": now_ts, "updated_at": now_ts},
        )

    def update_metadata(self, public_id: str, values: dict, now_ts: float) -> bool:
        return self._conditional_update(
            public_id,
            [Card.locked == False],  # noqa: E712
            {**values, "updated_at": now_ts},
        )

    def hide_for_owner(self, public_id: str, user_id: str, now_ts: float) -> bool:
        return self._conditional_update(
            public_id,
            [Card.user_id == user_id],
            {"hidden_by_owner": True, "updated_at": now_ts},
        )

    def save_funding(self, public_id: str, deposit_address: str, snapshot, now_ts: float) -> bool:
        """
        Write a reconciliation snapshot. `funded` is only ever raised here, so a
        transient zero read can never clear it. Returns True on the false -> true edge.
        """
        values = {
            "token_amount": snapshot.display_amount,
            "sol_amount": snapshot.display_value_sol,
            "display_asset": snapshot.display_asset,
            "updated_at": now_ts,
        }
        try:
            with Session(self.engine) as session:
                became_funded = False
                if snapshot.funded_observed:
                    flip = session.execute(
                        update(Card)
                        .where(Card.public_id == public_id, Card.funded == False)  # noqa: E712
                        .values(funded=True)
                    )
                    became_funded = flip.rowcount == 1
                session.execute(update(Card).where(Card.public_id == public_id).values(**values))
                balance = session.get(CardBalance, public_id) or CardBalance(
                    public_id=public_id, deposit_address=deposit_address
                )
                balance.deposit_address = deposit_address
                balance.lamports = snapshot.lamports
                balance.sol = snapshot.sol_native
                balance.tokens_json = json.dumps([t.as_dict() for t in snapshot.tokens])
                balance.tokens_total_value_sol = snapshot.tokens_total_value_sol
                balance.total_value_sol = snapshot.total_value_sol
                balance.synced_at = now_ts
                session.add(balance)
                session.commit()
                return became_funded
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    def acquire_transfer_lock(
        self,
        public_id: str,
        kind: str,
        now_ts: float,
        destination: str,
        amount_lamports: int,
        tax_lamports: int = 0,
    ) -> bool:
        return self._conditional_update(
            public_id,
            [
                Card.claimed == False,  # noqa: E712
                Card.refunded == False,  # noqa: E712
                Card.transfer_lock.is_(None),
            ],
            {
                "transfer_lock": kind,
                "transfer_lock_at": now_ts,
                "transfer_signature": None,
                "transfer_destination": destination,
                "transfer_amount_lamports": amount_lamports,
                "transfer_tax_lamports": tax_lamports,
            },
        )

    def record_transfer_signature(
        self,
        public_id: str,
        kind: str,
        lock_at: float,
        signature: str,
        last_valid_block_height: Optional[int] = None,
    ) -> bool:
        return self._conditional_update(
            public_id,
            [Card.transfer_lock == kind, Card.transfer_lock_at == lock_at],
            {"transfer_signature": signature, "transfer_last_valid_block_height": last_valid_block_height},
        )

    def release_transfer_lock(self, public_id: str, kind: str, lock_at: Optional[float]) -> bool:
        """Clear a reservation, but only the one taken at `lock_at`; a newer reservation is left alone."""
        return self._conditional_update(
            public_id,
            [Card.transfer_lock == kind, Card.transfer_lock_at == lock_at],
            dict(_CLEARED_TRANSFER),
        )

    def finalize_claim(
        self,
        public_id: str,
        signature: str,
        destination: str,
        amount_sol: float,
        tax_sol: float,
        now_ts: float,
    ) -> bool:
        return self._conditional_update(
            public_id,
            [
                Card.transfer_lock == "claim",
                Card.transfer_signature == signature,
                Card.claimed == False,  # noqa: E712
                Card.refunded == False,  # noqa: E712
            ],
            {
                "claimed": True,
                "claim_signature": signature,
                "claim_destination": destination,
                "claimed_amount_sol": amount_sol,
                "tax_amount_sol": tax_sol,
                "claimed_at": now_ts,
                "updated_at": now_ts,
                **_CLEARED_TRANSFER,
            },
        )

    def finalize_refund(self, public_id: str, signature: str, amount_sol: float, now_ts: float) -> bool:
        return self._conditional_update(
            public_id,
            [
                Card.transfer_lock == "refund",
                Card.transfer_signature == signature,
                Card.claimed == False,  # noqa: E712
                Card.refunded == False,  # noqa: E712
            ],
            {
                "refunded": True,
                "refund_signature": signature,
                "refunded_amount_sol": amount_sol,
                "refunded_at": now_ts,
                "updated_at": now_ts,
                "needs_manual_refund": False,
                **_CLEARED_TRANSFER,
            },
        )

    def flag_manual_refund(self, public_id: str, now_ts: float) -> bool:
        return self._conditional_update(
            public_id,
            [
                Card.claimed == False,  # noqa: E712
                Card.refunded == False,  # noqa: E712
                Card.needs_manual_refund == False,  # noqa: E712
            ],
            {"needs_manual_refund": True, "updated_at": now_ts},
        )
