from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from solders.keypair import Keypair
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from card_engine import CardEngine, EngineConfig
from card_store import CardStore
from chain_client import SentTransfer
from errors import ChainError, NotAuthenticatedError
from main import Settings, create_app

START_TS = 1_700_000_000.0


def new_address() -> str:
    return str(Keypair().pubkey())


class FakeClock:
    def __init__(self, now: float = START_TS):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeChain:
    """In-memory chain: balances per address, recorded transfers, scripted confirmations."""

    def __init__(self):
        self.balances: Dict[str, int] = {}
        self.tokens: Dict[str, list] = {}
        self.sent: List[tuple] = []
        self.statuses: Dict[str, str] = {}
        self.confirm_outcome = "confirmed"
        self.fail_reads = False
        self.fail_send = False
        self.fail_status = False
        self.height = 1_000
        # called once, with the signature, at the start of the next status lookup
        self.on_status = None

    def get_balance(self, address: str) -> int:
        if self.fail_reads:
            raise ChainError("rpc unavailable")
        return self.balances.get(address, 0)

    def get_token_holdings(self, address: str) -> list:
        if self.fail_reads:
            raise ChainError("rpc unavailable")
        return list(self.tokens.get(address, []))

    def send_transfers(self, secret: str, transfers) -> SentTransfer:
        if self.fail_send:
            raise ChainError("send failed")
        self.sent.append((secret, list(transfers)))
        return SentTransfer(signature=f"sig{len(self.sent)}", last_valid_block_height=self.height + 150)

    def confirm(self, signature: str, timeout_sec: float = 30) -> str:
        self.statuses.setdefault(signature, self.confirm_outcome)
        return self.confirm_outcome

    def signature_status(self, signature: str) -> str:
        hook, self.on_status = self.on_status, None
        if hook:
            hook(signature)
        if self.fail_status:
            raise ChainError("rpc unavailable")
        return self.statuses.get(signature, "unknown")

    def block_height(self) -> int:
        if self.fail_status:
            raise ChainError("rpc unavailable")
        return self.height


class FakePrices:
    def __init__(self, sol_usd: float = 150.0):
        self.sol_usd_value = sol_usd
        self.quotes: Dict[str, float] = {}

    def sol_usd(self) -> float:
        return self.sol_usd_value

    def token_price_sol(self, mint: str) -> Optional[float]:
        return self.quotes.get(mint)


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.messages: List[str] = []
        self.fail = fail

    def notify(self, text: str):
        if self.fail:
            raise RuntimeError("telegram down")
        self.messages.append(text)


class FakeAuth:
    configured = True

    def __init__(self):
        self.users_by_token: Dict[str, dict] = {}
        self.passwords: Dict[str, str] = {}
        self.email_changes: List[tuple] = []
        self.resets: List[str] = []
        self.created: List[dict] = []

    def add_user(self, token: str, user_id: str, email: str, username: Optional[str] = None, password: str = "pw") -> dict:
        user = {"id": user_id, "email": email, "user_metadata": {"username": username or user_id}}
        self.users_by_token[token] = user
        self.passwords[email] = password
        return user

    def get_user(self, token: str) -> Optional[dict]:
        return self.users_by_token.get(token)

    def require_user(self, token: Optional[str]) -> dict:
        user = self.get_user(token or "")
        if not user:
            raise NotAuthenticatedError()
        return user

    def list_users(self, page: int = 1, per_page: int = 1000) -> List[dict]:
        return list(self.users_by_token.values()) + self.created

    def update_user_metadata(self, user_id: str, metadata: dict) -> dict:
        for user in self.list_users():
            if user["id"] == user_id:
                user["user_metadata"] = metadata
                return user
        raise NotAuthenticatedError()

    def sign_in(self, email: str, password: str) -> dict:
        if self.passwords.get(email) != password:
            raise NotAuthenticatedError("Invalid login credentials")
        user = next(u for u in self.list_users() if u["email"] == email)
        return {"access_token": "fresh-token", "refresh_token": "refresh", "user": user}

    def sign_up(self, email: str, password: str, metadata: dict, redirect_to: Optional[str] = None) -> dict:
        user = {"id": f"user-{len(self.created) + 1}", "email": email, "user_metadata": metadata}
        self.created.append(user)
        return {"user": user}

    def create_user(self, email: str, password: str, metadata: dict) -> dict:
        user = {"id": f"user-{len(self.created) + 1}", "email": email, "user_metadata": metadata}
        self.created.append(user)
        return user

    def request_email_change(self, token: str, new_email: str, redirect_to: Optional[str] = None) -> dict:
        self.email_changes.append((token, new_email, redirect_to))
        return {}

    def send_password_reset(self, email: str, redirect_to: Optional[str] = None):
        self.resets.append(email)


@pytest.fixture
def store():
    db_engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    card_store = CardStore(db_engine)
    card_store.init_schema()
    return card_store


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def prices():
    return FakePrices()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth():
    fake = FakeAuth()
    fake.add_user("tok-alice", "user-alice", "alice@example.com", username="alice")
    fake.add_user("tok-bob", "user-bob", "bob@example.com", username="bob")
    return fake


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def treasury():
    return new_address()


@pytest.fixture
def engine(store, chain, prices, notifier, treasury, clock):
    return CardEngine(store, chain, prices, notifier, EngineConfig(treasury_wallet=treasury), clock=clock)


@pytest.fixture
def settings(treasury):
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        treasury_wallet=treasury,
        operator_api_key="op-key",
        frontend_dist=None,
        telegram_bot_token=None,
        telegram_chat_id=None,
    )


@pytest.fixture
def client(settings, store, chain, prices, notifier, auth):
    app = create_app(settings=settings, store=store, chain=chain, prices=prices, notifier=notifier, auth=auth)
    return TestClient(app)


@pytest.fixture
def funded_locked_card(engine, chain):
    """A locked card holding exactly 1 SOL, already synced."""
    card, cvv = engine.create_card(currency="USD", message="Happy birthday", amount_fiat=150)
    chain.balances[card.deposit_address] = 1_000_000_000
    engine.sync_funding(card.public_id)
    engine.lock_card(card.public_id)
    return engine.get_card(card.public_id), cvv
