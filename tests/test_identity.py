# tests/test_identity.py

import base58
import pytest
from nacl.signing import SigningKey

from chat_node.errors import IdentityUnavailable, InvalidKeyMaterial
from chat_node.identity import (
    WalletSigner,
    derive_encryption_keypair,
    encryption_keypair_from_signature,
    get_identity,
    load_wallet,
)


class FailingSigner:
    public_key = "bridge"

    async def sign(self, message: bytes) -> bytes:
        raise ValueError("wallet bridge closed")


class StubSigner:
    def __init__(self, signature):
        self.public_key = "stub"
        self._signature = signature

    async def sign(self, message: bytes) -> bytes:
        return self._signature


@pytest.mark.asyncio
class TestKeyDerivation:
    async def test_same_wallet_same_keypair(self):
        seed = b"\x07" * 32
        kp1 = await derive_encryption_keypair(WalletSigner.from_seed(seed))
        kp2 = await derive_encryption_keypair(WalletSigner.from_seed(seed))
        assert kp1.public_bytes == kp2.public_bytes
        assert kp1.private_key.encode() == kp2.private_key.encode()

    async def test_different_wallets_differ(self, alice, bob):
        kp_a = await derive_encryption_keypair(alice)
        kp_b = await derive_encryption_keypair(bob)
        assert kp_a.public_bytes != kp_b.public_bytes

    async def test_different_message_differs(self, alice):
        kp1 = await derive_encryption_keypair(alice)
        kp2 = await derive_encryption_keypair(alice, message="another application")
        assert kp1.public_bytes != kp2.public_bytes

    async def test_key_sizes(self, alice):
        kp = await derive_encryption_keypair(alice)
        assert len(kp.public_bytes) == 32
        assert len(kp.private_key.encode()) == 32

    async def test_revoked_signer(self, alice):
        alice.revoke()
        with pytest.raises(IdentityUnavailable):
            await derive_encryption_keypair(alice)

    async def test_missing_signer(self):
        with pytest.raises(IdentityUnavailable):
            await derive_encryption_keypair(None)

    async def test_signer_returning_nothing(self):
        with pytest.raises(IdentityUnavailable):
            await derive_encryption_keypair(StubSigner(None))

    async def test_signer_error_is_identity_unavailable(self):
        with pytest.raises(IdentityUnavailable):
            await derive_encryption_keypair(FailingSigner())

    async def test_short_signature(self):
        with pytest.raises(IdentityUnavailable):
            await derive_encryption_keypair(StubSigner(b"\x00" * 10))

    async def test_matches_signature_hash(self, alice):
        kp = await derive_encryption_keypair(alice, message="m")
        signature = await alice.sign(b"m")
        assert encryption_keypair_from_signature(signature).public_bytes == kp.public_bytes


class TestWalletSigner:
    def test_address_is_base58_verify_key(self):
        sk = SigningKey.generate()
        signer = WalletSigner(sk)
        assert base58.b58decode(signer.public_key) == bytes(sk.verify_key)

    def test_from_base58_accepts_keypair_export(self):
        sk = SigningKey.generate()
        exported = base58.b58encode(bytes(sk) + bytes(sk.verify_key)).decode()
        signer = WalletSigner.from_base58(exported)
        assert signer.seed == bytes(sk)

    def test_from_base58_rejects_bad_length(self):
        with pytest.raises(InvalidKeyMaterial):
            WalletSigner.from_base58(base58.b58encode(b"\x01" * 20).decode())

    def test_from_base58_rejects_garbage(self):
        with pytest.raises(InvalidKeyMaterial):
            WalletSigner.from_base58("0OIl")


class TestNodeWallet:
    def test_load_wallet_persists(self, temp_chat_dir):
        w1 = load_wallet()
        w2 = load_wallet()
        assert w1.public_key == w2.public_key
        assert (temp_chat_dir / "chat_data" / "keys" / "wallet.bin").read_bytes() == w1.seed

    @pytest.mark.asyncio
    async def test_get_identity_caches(self):
        first = await get_identity()
        second = await get_identity()
        assert first is second
        signer, keypair = first
        assert keypair.public_bytes == (await derive_encryption_keypair(signer)).public_bytes
