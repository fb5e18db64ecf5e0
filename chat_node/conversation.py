# chat_node/conversation.py

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from chat_node.address import canonical_address, mailbox_id
from chat_node.config import CHAT_PASSPHRASE
from chat_node.errors import AddressNotFound, ChatError, InvalidPayloadFormat, StorageUnavailable
from chat_node.identity import EncryptionKeypair, Signer, derive_encryption_keypair
from chat_node.ledger import Ledger, MessagePointer
from chat_node.packages import DecryptionKeys, Scheme, pack_message, unpack
from chat_node.storage import Storage

logger = logging.getLogger(__name__)

FETCH_FAILED_TEXT = "[Failed to fetch message]"
INVALID_FORMAT_TEXT = "[Invalid message format]"
PROCESSING_FAILED_TEXT = "[Processing Failed]"


@dataclass
class ChatContext:
    """
    Everything an operation needs, passed explicitly: who we are and which
    ledger and storage we talk to.
    """
    signer: Signer
    ledger: Ledger
    storage: Storage
    keypair: Optional[EncryptionKeypair] = None
    passphrase: str = CHAT_PASSPHRASE

    @property
    def wallet(self) -> str:
        return self.signer.public_key

    @classmethod
    async def connect(cls, signer: Signer, ledger: Ledger, storage: Storage, passphrase: str = CHAT_PASSPHRASE):
        keypair = await derive_encryption_keypair(signer)
        return cls(signer=signer, ledger=ledger, storage=storage, keypair=keypair, passphrase=passphrase)


@dataclass(frozen=True)
class ConversationEntry:
    text: str
    sender: str
    timestamp: int
    is_sender: bool
    index: int
    image: Optional[str] = None
    scheme: Optional[str] = None
    failed: bool = False


@dataclass(frozen=True)
class SentMessage:
    mailbox: str
    payload_ref: str
    signature: str


# -----------------------------------------------------------
# Sending
# -----------------------------------------------------------

async def send_chat_message(
    ctx: ChatContext,
    peer: str,
    text: str,
    attachment: bytes | None = None,
    *,
    scheme: Scheme = "plain",
    peer_public: bytes | None = None,
) -> SentMessage:
    """
    Package the message into storage and append its pointer to the mailbox.
    """
    me = ctx.wallet
    peer = canonical_address(peer)

    payload_ref = await pack_message(
        ctx.storage,
        me,
        peer,
        text,
        attachment,
        scheme=scheme,
        passphrase=ctx.passphrase,
        keypair=ctx.keypair,
        recipient_public=peer_public,
    )
    signature = await ctx.ledger.send_message(me, peer, payload_ref)
    return SentMessage(mailbox=mailbox_id(me, peer), payload_ref=payload_ref, signature=signature)


# -----------------------------------------------------------
# Loading
# -----------------------------------------------------------

def split_by_direction(pointers: list[MessagePointer], me: str, peer: str):
    """
    One mailbox holds both directions; the sender field tells them apart.
    Returns (sent_by_me, sent_by_peer).
    """
    mine, theirs = [], []
    for p in pointers:
        if p.sender == me:
            mine.append(p)
        elif p.sender == peer:
            theirs.append(p)
        else:
            logger.warning("Ignoring pointer %d from non-participant %s", p.index, p.sender)
    return mine, theirs


def merge_entries(sent: list[ConversationEntry], received: list[ConversationEntry]) -> list[ConversationEntry]:
    """
    Oldest first; equal timestamps keep ledger order.
    """
    return sorted([*sent, *received], key=lambda e: (e.timestamp, e.index))


def _placeholder(pointer: MessagePointer, is_sender: bool, text: str) -> ConversationEntry:
    return ConversationEntry(
        text=text,
        sender=pointer.sender,
        timestamp=pointer.timestamp,
        is_sender=is_sender,
        index=pointer.index,
        failed=True,
    )


async def resolve_pointer(
    storage: Storage,
    pointer: MessagePointer,
    is_sender: bool,
    keys: DecryptionKeys,
) -> ConversationEntry:
    """
    Turn one pointer into a conversation entry. Never raises for a bad
    payload: the entry becomes a placeholder instead.
    """
    try:
        msg = await unpack(storage, pointer.payload_ref, keys)
    except StorageUnavailable as exc:
        logger.error("IPFS fetch error for %s: %s", pointer.payload_ref, exc)
        return _placeholder(pointer, is_sender, FETCH_FAILED_TEXT)
    except InvalidPayloadFormat as exc:
        logger.error("Invalid message format for %s: %s", pointer.payload_ref, exc)
        return _placeholder(pointer, is_sender, INVALID_FORMAT_TEXT)
    except (ChatError, ValueError) as exc:
        logger.error("Message processing error for %s: %s", pointer.payload_ref, exc)
        return _placeholder(pointer, is_sender, PROCESSING_FAILED_TEXT)

    return ConversationEntry(
        text=msg.text,
        sender=pointer.sender,
        timestamp=pointer.timestamp,
        is_sender=is_sender,
        index=pointer.index,
        image=msg.image,
        scheme=msg.scheme,
    )


async def load_conversation(
    ctx: ChatContext,
    peer: str,
    peer_public: bytes | None = None,
) -> list[ConversationEntry]:
    """
    Read the pair's mailbox once, resolve every pointer concurrently and
    return the merged timeline. No mailbox yet means no messages.
    """
    me = ctx.wallet
    peer = canonical_address(peer)
    mailbox = mailbox_id(me, peer)

    pointers = await ctx.ledger.list_pointers(mailbox)
    mine, theirs = split_by_direction(pointers, me, peer)
    keys = DecryptionKeys(passphrase=ctx.passphrase, keypair=ctx.keypair, peer_public=peer_public)

    sent, received = await asyncio.gather(
        asyncio.gather(*(resolve_pointer(ctx.storage, p, True, keys) for p in mine)),
        asyncio.gather(*(resolve_pointer(ctx.storage, p, False, keys) for p in theirs)),
    )

    entries = merge_entries(list(sent), list(received))
    logger.debug("Loaded %d messages from mailbox %s", len(entries), mailbox)
    return entries


# -----------------------------------------------------------
# Session
# -----------------------------------------------------------

class SessionState(str, Enum):
    UNADDRESSED = "unaddressed"
    ADDRESSED = "addressed"
    LOADED = "loaded"
    STALE = "stale"


@dataclass
class ConversationSession:
    """
    The view of one conversation. Each refresh rebuilds the whole timeline;
    when refreshes overlap, the one started last wins.
    """
    ctx: ChatContext
    peer: Optional[str] = None
    peer_public: Optional[bytes] = None
    state: SessionState = SessionState.UNADDRESSED
    mailbox: Optional[str] = None
    entries: list[ConversationEntry] = field(default_factory=list)
    _started: int = 0
    _applied: int = 0

    def __post_init__(self):
        if self.peer is not None:
            self.address(self.peer, self.peer_public)

    def address(self, peer: str, peer_public: bytes | None = None):
        self.peer = canonical_address(peer)
        self.peer_public = peer_public
        self.mailbox = mailbox_id(self.ctx.wallet, self.peer)
        self.entries = []
        self.state = SessionState.ADDRESSED
        # anything still loading belongs to the previous peer
        self._applied = self._started

    async def refresh(self) -> list[ConversationEntry]:
        if self.state == SessionState.UNADDRESSED:
            raise AddressNotFound("no conversation peer selected")

        self._started += 1
        generation = self._started
        peer = self.peer

        entries = await load_conversation(self.ctx, peer, self.peer_public)

        if generation > self._applied and peer == self.peer:
            self.entries = entries
            self._applied = generation
            self.state = SessionState.LOADED
        else:
            logger.debug("Discarding superseded load %d for %s", generation, peer)
        return self.entries

    def mark_stale(self):
        if self.state == SessionState.LOADED:
            self.state = SessionState.STALE

    async def send(self, text: str, attachment: bytes | None = None, *, scheme: Scheme = "plain") -> SentMessage:
        if self.state == SessionState.UNADDRESSED:
            raise AddressNotFound("no conversation peer selected")
        sent = await send_chat_message(
            self.ctx, self.peer, text, attachment, scheme=scheme, peer_public=self.peer_public
        )
        self.mark_stale()
        return sent
