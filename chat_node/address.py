# chat_node/address.py
"""
Deterministic ledger addresses.

Accounts live at program-derived addresses: sha256 over the seeds, a bump
byte, the program id and a fixed marker, taking the first bump (255 down to 1)
whose digest is NOT a point on the Ed25519 curve, so no private key can exist
for it.

  mailbox  seeds = ["chat", first, second]   (participants sorted by base58)
  profile  seeds = ["profile", wallet]
"""

import hashlib
import logging
from functools import lru_cache

import base58

from chat_node.config import CHAT_PROGRAM_ID, CHAT_SEED, PROFILE_SEED
from chat_node.errors import InvalidKeyMaterial

logger = logging.getLogger(__name__)

ADDRESS_SIZE = 32
MAX_SEED_LENGTH = 32
MAX_SEEDS = 16
PDA_MARKER = b"ProgramDerivedAddress"

# Ed25519 field prime and curve constant d = -121665/121666
_P = 2 ** 255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


# -----------------------------------------------------------
# Encoding
# -----------------------------------------------------------

def decode_address(value) -> bytes:
    """
    base58 string (or raw bytes) -> 32 address bytes.
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        try:
            raw = base58.b58decode(value.strip())
        except ValueError as exc:
            raise InvalidKeyMaterial(f"not a base58 address: {value!r}") from exc
    else:
        raise InvalidKeyMaterial(f"address must be str or bytes, got {type(value).__name__}")

    if len(raw) != ADDRESS_SIZE:
        raise InvalidKeyMaterial(f"address must be {ADDRESS_SIZE} bytes, got {len(raw)}")
    return raw


def encode_address(raw: bytes) -> str:
    return base58.b58encode(raw).decode()


def canonical_address(value) -> str:
    """Normalise any accepted address form to its base58 string."""
    return encode_address(decode_address(value))


# -----------------------------------------------------------
# Program-derived addresses
# -----------------------------------------------------------

def is_on_curve(raw: bytes) -> bool:
    """
    True if the 32 bytes decompress to an Ed25519 point, i.e. x^2 =
    (y^2 - 1) / (d*y^2 + 1) has a solution mod p.
    """
    y = (int.from_bytes(raw, "little") & ((1 << 255) - 1)) % _P
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    x2 = u * pow(v, _P - 2, _P) % _P
    if x2 == 0:
        return True
    return pow(x2, (_P - 1) // 2, _P) == 1


def create_program_address(seeds: list[bytes], program_id: str = CHAT_PROGRAM_ID) -> bytes:
    if len(seeds) > MAX_SEEDS:
        raise ValueError(f"at most {MAX_SEEDS} seeds allowed")
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise ValueError(f"seed longer than {MAX_SEED_LENGTH} bytes")

    h = hashlib.sha256()
    for seed in seeds:
        h.update(seed)
    h.update(decode_address(program_id))
    h.update(PDA_MARKER)
    digest = h.digest()

    if is_on_curve(digest):
        raise ValueError("derived address lies on the curve")
    return digest


@lru_cache(maxsize=1024)
def _find_program_address(seeds: tuple[bytes, ...], program_id: str) -> tuple[str, int]:
    for bump in range(255, 0, -1):
        try:
            raw = create_program_address([*seeds, bytes([bump])], program_id)
        except ValueError:
            continue
        return encode_address(raw), bump
    raise InvalidKeyMaterial("unable to find a viable program address bump")


def find_program_address(seeds: list[bytes], program_id: str = CHAT_PROGRAM_ID) -> tuple[str, int]:
    """
    Returns (address_base58, bump).
    """
    return _find_program_address(tuple(bytes(s) for s in seeds), program_id)


# -----------------------------------------------------------
# Chat addresses
# -----------------------------------------------------------

def sort_participants(a, b) -> tuple[str, str]:
    """
    Order two wallets by their base58 strings, smaller first. Both sides run
    this independently and must land on the same pair.
    """
    a_str = canonical_address(a)
    b_str = canonical_address(b)
    return (a_str, b_str) if a_str < b_str else (b_str, a_str)


def find_mailbox(a, b, program_id: str = CHAT_PROGRAM_ID) -> tuple[str, int]:
    first, second = sort_participants(a, b)
    return find_program_address(
        [CHAT_SEED, decode_address(first), decode_address(second)],
        program_id,
    )


def mailbox_id(a, b, program_id: str = CHAT_PROGRAM_ID) -> str:
    address, _bump = find_mailbox(a, b, program_id)
    return address


def find_profile(wallet, program_id: str = CHAT_PROGRAM_ID) -> tuple[str, int]:
    return find_program_address([PROFILE_SEED, decode_address(wallet)], program_id)


def profile_address(wallet, program_id: str = CHAT_PROGRAM_ID) -> str:
    address, _bump = find_profile(wallet, program_id)
    return address
