# chat_node/packages.py

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from chat_node.config import CHAT_PASSPHRASE
from chat_node.crypto import (
    BoxEnvelope,
    PassphraseEnvelope,
    b64decode,
    b64encode,
    decrypt_from_sender,
    decrypt_own_message,
    decrypt_with_passphrase,
    encrypt_for_recipient,
    encrypt_with_passphrase,
)
from chat_node.errors import IdentityUnavailable, InvalidKeyMaterial, InvalidPayloadFormat
from chat_node.identity import EncryptionKeypair
from chat_node.storage import Storage, dumps_json, normalize_ref

logger = logging.getLogger(__name__)

Scheme = Literal["plain", "passphrase", "box"]

ATTACHMENT_ONLY_TEXT = "File attachment"
EMPTY_MESSAGE_TEXT = "Empty message"


# -----------------------------------------------------------
# Package shapes
# -----------------------------------------------------------

class _PackageBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Legacy packages may lack these, so they stay optional on read.
    sender: Optional[str] = None
    receiver: Optional[str] = None
    image: Optional[str] = None
    timestamp: Optional[str] = None


class PlainPackage(_PackageBase):
    kind: Literal["plain"] = "plain"
    message: str


class PassphrasePackage(_PackageBase):
    kind: Literal["passphrase"] = "passphrase"
    nonce: str
    content: str

    def envelope(self) -> PassphraseEnvelope:
        return PassphraseEnvelope(nonce=self.nonce, content=self.content)


class BoxPackage(_PackageBase):
    kind: Literal["box"] = "box"
    nonce: str
    content: str
    sender_public_key: str = Field(alias="senderPublicKey")
    # lets the sender reopen its own message without a key lookup
    recipient_public_key: Optional[str] = Field(default=None, alias="recipientPublicKey")

    def envelope(self) -> BoxEnvelope:
        return BoxEnvelope(nonce=self.nonce, content=self.content, sender_public_key=self.sender_public_key)


MessagePackage = Annotated[
    Union[PlainPackage, PassphrasePackage, BoxPackage],
    Field(discriminator="kind"),
]
_package_adapter = TypeAdapter(MessagePackage)


@dataclass(frozen=True)
class DecryptionKeys:
    passphrase: str = CHAT_PASSPHRASE
    keypair: Optional[EncryptionKeypair] = None
    # the other party's encryption key, for boxes we sent that lack recipientPublicKey
    peer_public: Optional[bytes] = None


@dataclass(frozen=True)
class UnpackedMessage:
    text: str
    scheme: Scheme
    image: Optional[str] = None
    sender: Optional[str] = None
    timestamp: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# -----------------------------------------------------------
# Parsing
# -----------------------------------------------------------

def _legacy_kind(obj: dict) -> Scheme:
    """
    Packages written before the "kind" tag existed: infer from fields.
    """
    if obj.get("nonce") and obj.get("content"):
        return "box" if obj.get("senderPublicKey") else "passphrase"
    if obj.get("message"):
        return "plain"
    raise InvalidPayloadFormat(f"unrecognised package fields: {sorted(obj.keys())}")


def parse_package(raw: bytes):
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPayloadFormat(f"package is not JSON: {exc}") from exc

    if not isinstance(obj, dict):
        raise InvalidPayloadFormat(f"package must be a JSON object, got {type(obj).__name__}")

    if "kind" not in obj:
        obj = {**obj, "kind": _legacy_kind(obj)}

    try:
        return _package_adapter.validate_python(obj)
    except ValidationError as exc:
        raise InvalidPayloadFormat(f"invalid {obj.get('kind')!r} package: {exc}") from exc


# -----------------------------------------------------------
# Pack / unpack
# -----------------------------------------------------------

async def pack_message(
    storage: Storage,
    sender: str,
    receiver: str,
    message: str,
    attachment: bytes | None = None,
    *,
    scheme: Scheme = "plain",
    passphrase: str = CHAT_PASSPHRASE,
    keypair: EncryptionKeypair | None = None,
    recipient_public: bytes | None = None,
) -> str:
    """
    Upload the optional attachment, then the message package.
    Returns the package reference to be written to the ledger.
    """
    text = (message or "").strip()

    image_ref = None
    if attachment is not None:
        image_ref = await storage.put(attachment)
        logger.debug("Attachment stored: %s", image_ref)

    if not text and image_ref is None:
        text, scheme = EMPTY_MESSAGE_TEXT, "passphrase"
    elif not text:
        text = ATTACHMENT_ONLY_TEXT

    common = {"sender": sender, "receiver": receiver, "image": image_ref, "timestamp": _now_iso()}

    if scheme == "plain":
        package = PlainPackage(message=text, **common)
    elif scheme == "passphrase":
        env = encrypt_with_passphrase(text, passphrase)
        package = PassphrasePackage(nonce=env.nonce, content=env.content, **common)
    elif scheme == "box":
        if keypair is None:
            raise IdentityUnavailable("box messages need the sender's encryption keypair")
        if recipient_public is None:
            raise InvalidKeyMaterial("box messages need the recipient's encryption public key")
        env = encrypt_for_recipient(text, keypair.private_key, recipient_public, keypair.public_key)
        package = BoxPackage(
            nonce=env.nonce,
            content=env.content,
            sender_public_key=env.sender_public_key,
            recipient_public_key=b64encode(bytes(recipient_public)),
            **common,
        )
    else:
        raise ValueError(f"Invalid scheme: {scheme}")

    ref = await storage.put(dumps_json(package.model_dump(by_alias=True, exclude_none=True)))
    logger.info("Packed %s message %s -> %s", scheme, sender, ref)
    return ref


def open_package(package, keys: DecryptionKeys) -> UnpackedMessage:
    if isinstance(package, PlainPackage):
        text = package.message
    elif isinstance(package, PassphrasePackage):
        text = decrypt_with_passphrase(package.envelope(), keys.passphrase)
    else:
        text = _open_box_package(package, keys)

    return UnpackedMessage(
        text=text,
        scheme=package.kind,
        image=package.image,
        sender=package.sender,
        timestamp=package.timestamp,
    )


def _open_box_package(package: BoxPackage, keys: DecryptionKeys) -> str:
    if keys.keypair is None:
        raise IdentityUnavailable("no encryption keypair to open box message")

    sender_pk = b64decode(package.sender_public_key, "sender public key")
    if sender_pk != keys.keypair.public_bytes:
        return decrypt_from_sender(package.envelope(), keys.keypair.private_key)

    # our own message
    if package.recipient_public_key:
        recipient_pk = b64decode(package.recipient_public_key, "recipient public key")
    elif keys.peer_public is not None:
        recipient_pk = keys.peer_public
    else:
        raise InvalidKeyMaterial("recipient public key unknown for own box message")
    return decrypt_own_message(package.envelope(), keys.keypair.private_key, recipient_pk)


async def unpack(storage: Storage, ref: str, keys: DecryptionKeys | None = None) -> UnpackedMessage:
    """
    Fetch a package and return its readable content.
    Raises StorageUnavailable, InvalidPayloadFormat or DecryptionFailed.
    """
    raw = await storage.get(normalize_ref(ref))
    package = parse_package(raw)
    return open_package(package, keys or DecryptionKeys())


async def fetch_attachment(storage: Storage, ref: str) -> bytes:
    return await storage.get(normalize_ref(ref))
