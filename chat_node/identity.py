# chat_node/identity.py

import hashlib
import logging
from dataclasses import dataclass
from typing import Protocol

import base58
from nacl.public import PrivateKey, PublicKey
from nacl.signing import SigningKey

from chat_node.config import KEYS_DIR, KEY_DERIVATION_MESSAGE, ensure_directories
from chat_node.errors import IdentityUnavailable, InvalidKeyMaterial

logger = logging.getLogger(__name__)

WALLET_KEY_PATH = KEYS_DIR / "wallet.bin"
SIGNATURE_SIZE = 64

# Cached identity tuple: (signer, encryption_keypair)
_cached_identity = None


class Signer(Protocol):
    """The only thing we need from a wallet: its address and a way to sign."""

    @property
    def public_key(self) -> str: ...

    async def sign(self, message: bytes) -> bytes: ...


@dataclass(frozen=True)
class EncryptionKeypair:
    private_key: PrivateKey
    public_key: PublicKey

    @property
    def public_bytes(self) -> bytes:
        return self.public_key.encode()


class WalletSigner:
    """
    Ed25519 wallet held in-process. Addresses are base58 public keys.
    """

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key
        self._revoked = False
        self.public_key = base58.b58encode(bytes(signing_key.verify_key)).decode()

    @classmethod
    def generate(cls) -> "WalletSigner":
        return cls(SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "WalletSigner":
        if len(seed) != 32:
            raise InvalidKeyMaterial(f"wallet seed must be 32 bytes, got {len(seed)}")
        return cls(SigningKey(seed))

    @classmethod
    def from_base58(cls, secret_b58: str) -> "WalletSigner":
        """
        Accept either a 32-byte seed or a 64-byte seed||pubkey keypair,
        the usual wallet export formats.
        """
        try:
            raw = base58.b58decode(secret_b58)
        except ValueError as exc:
            raise InvalidKeyMaterial("wallet secret is not valid base58") from exc
        if len(raw) not in (32, 64):
            raise InvalidKeyMaterial(f"wallet secret must be 32 or 64 bytes, got {len(raw)}")
        return cls.from_seed(raw[:32])

    @property
    def seed(self) -> bytes:
        return bytes(self._signing_key)

    def revoke(self):
        self._revoked = True

    async def sign(self, message: bytes) -> bytes:
        if self._revoked:
            raise IdentityUnavailable(f"signer for {self.public_key} was revoked")
        return self._signing_key.sign(message).signature


# -----------------------------------------------------------
# Key derivation
# -----------------------------------------------------------

def encryption_keypair_from_signature(signature: bytes) -> EncryptionKeypair:
    """
    SHA-256(signature) is the X25519 private key.
    """
    if len(signature) < SIGNATURE_SIZE:
        raise IdentityUnavailable(f"signature too short ({len(signature)} bytes)")

    seed = hashlib.sha256(signature).digest()
    sk = PrivateKey(seed)
    return EncryptionKeypair(private_key=sk, public_key=sk.public_key)


async def derive_encryption_keypair(signer: Signer, message: str = KEY_DERIVATION_MESSAGE) -> EncryptionKeypair:
    """
    Have the wallet sign the application message and turn the signature into
    an encryption keypair. Ed25519 signatures are deterministic, so the same
    wallet derives the same keypair on every device.
    """
    if signer is None:
        raise IdentityUnavailable("no wallet connected")

    try:
        signature = await signer.sign(message.encode("utf-8"))
    except IdentityUnavailable:
        raise
    except Exception as exc:
        raise IdentityUnavailable(f"wallet refused to sign: {exc}") from exc

    if not isinstance(signature, (bytes, bytearray)):
        raise IdentityUnavailable("wallet returned no signature")

    keypair = encryption_keypair_from_signature(bytes(signature))
    logger.debug("Derived encryption key for wallet %s", signer.public_key)
    return keypair


# -----------------------------------------------------------
# Node wallet (persisted seed)
# -----------------------------------------------------------

def _write_wallet_seed(signer: WalletSigner):
    KEYS_DIR.mkdir(parents=True, exist_ok=True)
    WALLET_KEY_PATH.write_bytes(signer.seed)


def _read_wallet_seed() -> bytes:
    raw = WALLET_KEY_PATH.read_bytes()
    if len(raw) != 32:
        raise IdentityUnavailable(f"wallet.bin is {len(raw)} bytes, expected 32.")
    return raw


def load_wallet() -> WalletSigner:
    """
    Load the node wallet from disk, creating one on first start.
    """
    ensure_directories()

    if WALLET_KEY_PATH.exists():
        return WalletSigner.from_seed(_read_wallet_seed())

    signer = WalletSigner.generate()
    _write_wallet_seed(signer)
    logger.info(f"Wallet bootstrapped: {signer.public_key}")
    return signer


async def get_identity():
    """
    Returns the cached (signer, encryption_keypair) tuple.
    Derived on first call, then cached in memory.
    """
    global _cached_identity
    if _cached_identity is None:
        signer = load_wallet()
        keypair = await derive_encryption_keypair(signer)
        _cached_identity = (signer, keypair)
        logger.info("Identity loaded and cached")
    return _cached_identity
