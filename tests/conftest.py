# tests/conftest.py

import asyncio

import pytest
from nacl.public import PrivateKey

from chat_node.conversation import ChatContext
from chat_node.database import connect
from chat_node.identity import WalletSigner
from chat_node.ledger import LocalLedger
from chat_node.storage import LocalStorage


@pytest.fixture(autouse=True)
def temp_chat_dir(tmp_path, monkeypatch):
    """
    Point all chat data dirs to a fresh temp directory per test.
    """
    base = tmp_path / "chat_data"
    monkeypatch.setenv("CHAT_BASE_DIR", str(base))

    import chat_node.config as cfg
    monkeypatch.setattr(cfg, "BASE_DIR", base)
    monkeypatch.setattr(cfg, "KEYS_DIR", base / "keys")
    monkeypatch.setattr(cfg, "LEDGER_DB_PATH", base / "ledger.db")
    monkeypatch.setattr(cfg, "BLOB_DIR", base / "blobs")
    monkeypatch.setattr(cfg, "STORAGE_BACKEND", "local")

    (base / "keys").mkdir(parents=True, exist_ok=True)
    (base / "blobs").mkdir(parents=True, exist_ok=True)

    # Reset cached identity between tests (paths bind at import time)
    import chat_node.identity as ident
    monkeypatch.setattr(ident, "_cached_identity", None)
    monkeypatch.setattr(ident, "KEYS_DIR", base / "keys")
    monkeypatch.setattr(ident, "WALLET_KEY_PATH", base / "keys" / "wallet.bin")

    # Reset DB connection between tests (close old connection first)
    import chat_node.database as db_mod
    if db_mod._conn is not None:
        try:
            db_mod._conn.close()
        except Exception:
            pass
    monkeypatch.setattr(db_mod, "_conn", None)
    monkeypatch.setattr(db_mod, "LEDGER_DB_PATH", base / "ledger.db")

    import chat_node.main as main_mod
    monkeypatch.setattr(main_mod, "_context", None)

    yield tmp_path


class FakeClock:
    """Ledger clock the test moves by hand."""

    def __init__(self, now: int = 100):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return LocalLedger(connect(":memory:"), clock=clock)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "blobs")


@pytest.fixture
def alice():
    return WalletSigner.generate()


@pytest.fixture
def bob():
    return WalletSigner.generate()


@pytest.fixture
def carol():
    return WalletSigner.generate()


def make_context(signer, ledger, storage):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(ChatContext.connect(signer, ledger, storage))
    finally:
        loop.close()


@pytest.fixture
def alice_ctx(alice, ledger, storage):
    return make_context(alice, ledger, storage)


@pytest.fixture
def bob_ctx(bob, ledger, storage):
    return make_context(bob, ledger, storage)


@pytest.fixture
def test_keypair():
    """Generate a fresh Curve25519 keypair for tests."""
    sk = PrivateKey.generate()
    return sk, sk.public_key


@pytest.fixture
def second_keypair():
    """A second independent keypair."""
    sk = PrivateKey.generate()
    return sk, sk.public_key
