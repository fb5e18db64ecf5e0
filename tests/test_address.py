# tests/test_address.py

import hashlib

import base58
import pytest
from nacl.signing import SigningKey

from chat_node.address import (
    PDA_MARKER,
    create_program_address,
    decode_address,
    find_mailbox,
    find_program_address,
    is_on_curve,
    mailbox_id,
    profile_address,
    sort_participants,
)
from chat_node.config import CHAT_PROGRAM_ID, CHAT_SEED
from chat_node.errors import InvalidKeyMaterial


def _wallet() -> str:
    return base58.b58encode(bytes(SigningKey.generate().verify_key)).decode()


class TestMailboxId:
    def test_order_independent(self):
        for _ in range(20):
            a, b = _wallet(), _wallet()
            assert mailbox_id(a, b) == mailbox_id(b, a)

    def test_distinct_pairs_distinct_mailboxes(self):
        a, b, c = _wallet(), _wallet(), _wallet()
        assert mailbox_id(a, b) != mailbox_id(a, c)

    def test_accepts_raw_bytes(self):
        a, b = _wallet(), _wallet()
        assert mailbox_id(base58.b58decode(a), b) == mailbox_id(a, b)

    def test_uses_sorted_seeds(self):
        a, b = _wallet(), _wallet()
        first, second = sort_participants(a, b)
        expected = find_program_address([CHAT_SEED, decode_address(first), decode_address(second)])
        assert find_mailbox(b, a) == expected

    def test_self_chat_allowed(self):
        a = _wallet()
        assert mailbox_id(a, a) == mailbox_id(a, a)

    def test_profile_differs_from_mailbox(self):
        a, b = _wallet(), _wallet()
        assert profile_address(a) != mailbox_id(a, b)
        assert profile_address(a) != profile_address(b)

    def test_invalid_address(self):
        with pytest.raises(InvalidKeyMaterial):
            mailbox_id("not-base58-0OIl", _wallet())
        with pytest.raises(InvalidKeyMaterial):
            mailbox_id(base58.b58encode(b"\x01" * 16).decode(), _wallet())


class TestSortParticipants:
    def test_smaller_first(self):
        a, b = _wallet(), _wallet()
        first, second = sort_participants(a, b)
        assert first <= second
        assert {first, second} == {a, b}
        assert sort_participants(b, a) == (first, second)


class TestProgramAddress:
    def test_result_is_off_curve(self):
        address, bump = find_program_address([b"chat", b"x" * 32])
        assert 1 <= bump <= 255
        assert not is_on_curve(decode_address(address))

    def test_matches_hash_construction(self):
        seeds = [b"profile", decode_address(_wallet())]
        address, bump = find_program_address(seeds)
        digest = hashlib.sha256(
            b"".join(seeds) + bytes([bump]) + base58.b58decode(CHAT_PROGRAM_ID) + PDA_MARKER
        ).digest()
        assert decode_address(address) == digest

    def test_first_viable_bump(self):
        seeds = [b"chat", b"y" * 32]
        _address, bump = find_program_address(seeds)
        for higher in range(bump + 1, 256):
            with pytest.raises(ValueError):
                create_program_address([*seeds, bytes([higher])])

    def test_public_keys_are_on_curve(self):
        for _ in range(10):
            assert is_on_curve(bytes(SigningKey.generate().verify_key))

    def test_seed_too_long(self):
        with pytest.raises(ValueError):
            create_program_address([b"z" * 33])

    def test_program_id_changes_address(self):
        other_program = _wallet()
        seeds = [b"chat", b"q" * 32]
        assert find_program_address(seeds) != find_program_address(seeds, other_program)
