# chat_node/crypto.py
"""
Message ciphers.

Two schemes share the wire format of the web client:

  passphrase  AES-256-GCM, key = PBKDF2-HMAC-SHA256(passphrase, fixed salt)
              {"nonce": b64(12 bytes), "content": b64(ciphertext || tag)}

  box         NaCl box (X25519 + XSalsa20-Poly1305)
              {"nonce": b64(24 bytes), "content": b64(ciphertext),
               "senderPublicKey": b64(32 bytes)}
"""

import base64
import binascii
import logging
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.utils import random as nacl_random
from pydantic import BaseModel, ConfigDict, Field

from chat_node.config import PASSPHRASE_SALT, PBKDF2_ITERATIONS, MIN_PBKDF2_ITERATIONS
from chat_node.errors import DecryptionFailed, InvalidKeyMaterial

logger = logging.getLogger(__name__)

AES_KEY_SIZE = 32
AES_NONCE_SIZE = 12
BOX_KEY_SIZE = PublicKey.SIZE
BOX_NONCE_SIZE = Box.NONCE_SIZE


class PassphraseEnvelope(BaseModel):
    nonce: str
    content: str


class BoxEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    nonce: str
    content: str
    sender_public_key: str = Field(alias="senderPublicKey")


# -----------------------------------------------------------
# Encoding helpers
# -----------------------------------------------------------

def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise InvalidKeyMaterial(f"{what} is not valid base64") from exc


def _key_bytes(key, what: str) -> bytes:
    """
    Accept raw bytes or a nacl key object and return the 32 raw key bytes.
    """
    if isinstance(key, (PrivateKey, PublicKey)):
        raw = key.encode()
    elif isinstance(key, (bytes, bytearray)):
        raw = bytes(key)
    else:
        raise InvalidKeyMaterial(f"{what} must be bytes, got {type(key).__name__}")

    if len(raw) != BOX_KEY_SIZE:
        raise InvalidKeyMaterial(f"{what} must be {BOX_KEY_SIZE} bytes, got {len(raw)}")
    return raw


# -----------------------------------------------------------
# Shared-passphrase scheme
# -----------------------------------------------------------

@lru_cache(maxsize=16)
def derive_passphrase_key(passphrase: str, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    PBKDF2-HMAC-SHA256 over the passphrase with the application salt.
    Returns a 256-bit AES key.
    """
    if not passphrase:
        raise ValueError("Missing passphrase")
    if iterations < MIN_PBKDF2_ITERATIONS:
        raise ValueError(f"PBKDF2 needs at least {MIN_PBKDF2_ITERATIONS} iterations")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=AES_KEY_SIZE,
        salt=PASSPHRASE_SALT,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_with_passphrase(message: str, passphrase: str) -> PassphraseEnvelope:
    if not message or not passphrase:
        raise ValueError("Missing message or passphrase")

    key = derive_passphrase_key(passphrase)
    nonce = nacl_random(AES_NONCE_SIZE)
    content = AESGCM(key).encrypt(nonce, message.encode("utf-8"), None)
    return PassphraseEnvelope(nonce=b64encode(nonce), content=b64encode(content))


def decrypt_with_passphrase(envelope: PassphraseEnvelope, passphrase: str) -> str:
    if not envelope.nonce or not envelope.content or not passphrase:
        raise DecryptionFailed("Failed to decrypt message: missing data or passphrase")

    nonce = b64decode(envelope.nonce, "nonce")
    if len(nonce) != AES_NONCE_SIZE:
        raise InvalidKeyMaterial(f"AES-GCM nonce must be {AES_NONCE_SIZE} bytes, got {len(nonce)}")

    try:
        content = base64.b64decode(envelope.content, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionFailed("ciphertext is not valid base64") from exc

    key = derive_passphrase_key(passphrase)
    try:
        plaintext = AESGCM(key).decrypt(nonce, content, None)
    except InvalidTag as exc:
        raise DecryptionFailed("Failed to decrypt message") from exc

    return _decode_plaintext(plaintext)


# -----------------------------------------------------------
# Public-key (box) scheme
# -----------------------------------------------------------

def encrypt_for_recipient(message: str, sender_private, recipient_public, sender_public) -> BoxEnvelope:
    """
    Encrypt with our private key and the recipient's public key.
    Our public key travels inside the envelope so the recipient needs no lookup.
    """
    if not message:
        raise ValueError("Missing message")

    sk = PrivateKey(_key_bytes(sender_private, "sender private key"))
    recipient_pk = PublicKey(_key_bytes(recipient_public, "recipient public key"))
    sender_pk = _key_bytes(sender_public, "sender public key")

    if sk.public_key.encode() != sender_pk:
        raise InvalidKeyMaterial("sender public key does not belong to the sender private key")

    try:
        box = Box(sk, recipient_pk)
    except CryptoError as exc:
        raise InvalidKeyMaterial("recipient public key is not usable for key agreement") from exc

    nonce = nacl_random(BOX_NONCE_SIZE)
    encrypted = box.encrypt(message.encode("utf-8"), nonce)

    return BoxEnvelope(
        nonce=b64encode(nonce),
        content=b64encode(encrypted.ciphertext),
        sender_public_key=b64encode(sender_pk),
    )


def decrypt_from_sender(envelope: BoxEnvelope, recipient_private) -> str:
    """
    Open a received box with our private key and the embedded sender key.
    """
    sender_pk = b64decode(envelope.sender_public_key, "sender public key")
    return _open_box(envelope, recipient_private, sender_pk)


def decrypt_own_message(envelope: BoxEnvelope, sender_private, recipient_public) -> str:
    """
    Re-open a box we sent. The box key is symmetric, so our private key plus
    the recipient's public key recovers the same shared secret.
    """
    return _open_box(envelope, sender_private, recipient_public)


def _open_box(envelope: BoxEnvelope, private_key, peer_public) -> str:
    nonce = b64decode(envelope.nonce, "nonce")
    if len(nonce) != BOX_NONCE_SIZE:
        raise InvalidKeyMaterial(f"box nonce must be {BOX_NONCE_SIZE} bytes, got {len(nonce)}")

    sk = PrivateKey(_key_bytes(private_key, "private key"))
    peer_pk = PublicKey(_key_bytes(peer_public, "peer public key"))

    try:
        content = base64.b64decode(envelope.content, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionFailed("ciphertext is not valid base64") from exc
    if not content:
        raise DecryptionFailed("empty ciphertext")

    try:
        plaintext = Box(sk, peer_pk).decrypt(content, nonce)
    except CryptoError as exc:
        raise DecryptionFailed("Failed to decrypt: invalid keys or corrupted data") from exc

    return _decode_plaintext(plaintext)


def _decode_plaintext(plaintext: bytes) -> str:
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionFailed("plaintext is not UTF-8") from exc
