import base64
import hashlib
import os
import secrets
from datetime import datetime, timedelta
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from minio.error import S3Error
from sqlmodel import SQLModel, Session, create_engine
from stellar_sdk import Keypair

ADMIN_KEYPAIR = Keypair.random()

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("CHAIN_CONFIRM_MODE", "inline")
os.environ.setdefault("CHAIN_CONFIRM_ATTEMPTS", "3")
os.environ.setdefault("CHAIN_POLL_INTERVAL", "0")
os.environ["ADMIN_WALLETS"] = ADMIN_KEYPAIR.public_key

from cotravel_api.main import app  # noqa: E402
from cotravel_api import chain as chain_module  # noqa: E402
from cotravel_api import db as db_module  # noqa: E402
from cotravel_api.db import get_session  # noqa: E402
from cotravel_api import storage as storage_module  # noqa: E402
from cotravel_api.chain import CONFIRMED, FAILED, PENDING, SubmittedTx, TxStatus  # noqa: E402
from cotravel_api.errors import ChainError  # noqa: E402
from cotravel_api.routers import businesses as businesses_router  # noqa: E402
from cotravel_api.utils import STROOPS_PER_XLM  # noqa: E402


class FakeChain:
    """In-memory stand-in for the Soroban RPC / Horizon client.

    Signed envelopes are plain strings of the form ``<source wallet>:<label>``.
    """

    def __init__(self):
        self.balances: Dict[str, int] = {}
        self.default_balance = 100_000 * STROOPS_PER_XLM
        self.pending = set()
        self.failed = set()
        self.submitted = []
        self.hold = False
        self.fail_next = False
        self.status_calls = 0
        self.calls = []

    def parse_signed(self, signed_xdr: str, expected_source=None, call=None):
        if ":" not in signed_xdr:
            raise ChainError("could not decode transaction")
        source = signed_xdr.split(":", 1)[0]
        if expected_source and source != expected_source:
            raise ChainError("transaction source does not match the signing wallet")
        if call is not None:
            self.calls.append(call)
        return signed_xdr

    def submit(self, signed_xdr: str) -> SubmittedTx:
        self.parse_signed(signed_xdr)
        tx_hash = hashlib.sha256(signed_xdr.encode()).hexdigest()
        self.submitted.append(tx_hash)
        if self.hold:
            self.pending.add(tx_hash)
        if self.fail_next:
            self.failed.add(tx_hash)
            self.fail_next = False
        return SubmittedTx(hash=tx_hash)

    def get_status(self, tx_hash: str) -> TxStatus:
        self.status_calls += 1
        if tx_hash in self.pending:
            return TxStatus(hash=tx_hash, status=PENDING)
        if tx_hash in self.failed:
            return TxStatus(hash=tx_hash, status=FAILED, ledger=90, error=f"Transaction {tx_hash} failed")
        return TxStatus(hash=tx_hash, status=CONFIRMED, ledger=100 + len(self.submitted),
                        return_value=self.submitted.index(tx_hash) + 1)

    def get_balance(self, wallet: str) -> int:
        return self.balances.get(wallet, self.default_balance)


def signed(keypair: Keypair, label: str = "tx") -> str:
    return f"{keypair.public_key}:{label}:{secrets.token_hex(4)}"


def sign_challenge(keypair: Keypair, message: str) -> str:
    digest = hashlib.sha256(b"Stellar Signed Message:\n" + message.encode("utf-8")).digest()
    return base64.b64encode(keypair.sign(digest)).decode()


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
        store[key] = bytes(data)

    def fake_get_bytes(key: str) -> bytes:
        if key not in store:
            raise S3Error("NoSuchKey", "missing", f"/{key}", "test-request", "test-host")
        return store[key]

    def fake_delete_object(key: str):
        store.pop(key, None)

    for target in (storage_module, businesses_router):
        monkeypatch.setattr(target, "put_bytes", fake_put_bytes)
        monkeypatch.setattr(target, "get_bytes", fake_get_bytes)
        monkeypatch.setattr(target, "delete_object", fake_delete_object)
    return store


@pytest.fixture
def fake_chain(monkeypatch) -> FakeChain:
    fake = FakeChain()
    monkeypatch.setattr(chain_module, "_client", fake)
    return fake


@pytest.fixture
def client(test_engine, setup_db, mock_storage, fake_chain):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def login(client):
    def _login(keypair: Keypair = None):
        keypair = keypair or Keypair.random()
        challenge = client.get(f"/api/auth/challenge?wallet={keypair.public_key}")
        assert challenge.status_code == 200
        message = challenge.json()["challenge"]
        resp = client.post(
            "/api/auth/login",
            json={"wallet": keypair.public_key, "signature": sign_challenge(keypair, message)},
        )
        assert resp.status_code == 200, resp.text
        return keypair, {"Authorization": f"Bearer {resp.json()['token']}"}

    return _login


@pytest.fixture
def admin(login):
    return login(ADMIN_KEYPAIR)


@pytest.fixture
def make_invoice(client):
    def _make(headers, total=1000, link_as=None, auto_release=False, items=None, recipients=None):
        recipient = Keypair.random().public_key
        payload = {
            "name": "Lisbon Trip",
            "description": "Flights and hotel",
            "deadline": (datetime.utcnow() + timedelta(days=7)).isoformat(),
            "recipients": recipients if recipients is not None else [recipient],
            "items": items if items is not None else [{"description": "Hotel", "amount": total}],
            "auto_release": auto_release,
        }
        resp = client.post("/api/invoices", json=payload, headers=headers)
        assert resp.status_code == 201, resp.text
        invoice = resp.json()
        if link_as is not None:
            linked = client.post(
                f"/api/invoices/{invoice['id']}/link-contract",
                json={"signed_xdr": signed(link_as, "create")},
                headers=headers,
            )
            assert linked.status_code == 200, linked.text
            invoice = linked.json()["invoice"]
        return invoice

    return _make
