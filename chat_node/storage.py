# chat_node/storage.py

import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Protocol

from chat_node import config
from chat_node.errors import StorageUnavailable

logger = logging.getLogger(__name__)

_LOCAL_REF = re.compile(r"^[0-9a-f]{64}$")


class Storage(Protocol):
    """Content-addressed blob store: put returns a reference, get resolves it."""

    async def put(self, data: bytes) -> str: ...

    async def get(self, ref: str) -> bytes: ...


def normalize_ref(ref: str) -> str:
    """
    Strip the URI forms a reference may have been stored with:
    "ipfs://<cid>", "/ipfs/<cid>" or a full gateway URL.
    """
    ref = (ref or "").strip()
    if ref.startswith("ipfs://"):
        ref = ref[len("ipfs://"):]
    if "/ipfs/" in ref:
        ref = ref.split("/ipfs/", 1)[1]
    return ref.strip("/")


# -----------------------------------------------------------
# File helpers
# -----------------------------------------------------------

def write_file(path: Path, data: bytes):
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
    except OSError as exc:
        logger.error("Failed to write file %s: %s", path, exc)
        raise


def read_file(path: Path) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError:
        logger.error("File not found: %s", path)
        raise
    except OSError as exc:
        logger.error("Failed to read file %s: %s", path, exc)
        raise


def dumps_json(obj: dict) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


# -----------------------------------------------------------
# Local content-addressed store
# -----------------------------------------------------------

class LocalStorage:
    """
    Blobs on disk named by their SHA-256. Writing the same bytes twice yields
    the same reference and leaves the existing file alone.
    """

    def __init__(self, root: Path | None = None):
        self.root = Path(root) if root is not None else config.BLOB_DIR

    def _path(self, ref: str) -> Path:
        ref = normalize_ref(ref)
        if not _LOCAL_REF.match(ref):
            raise StorageUnavailable(f"not a local blob reference: {ref!r}")
        return self.root / ref[:2] / ref

    async def put(self, data: bytes) -> str:
        ref = hashlib.sha256(data).hexdigest()
        path = self._path(ref)
        if not path.exists():
            try:
                write_file(path, data)
            except OSError as exc:
                raise StorageUnavailable(f"could not store blob {ref}: {exc}") from exc
        logger.debug("Stored blob %s (%d bytes)", ref, len(data))
        return ref

    async def get(self, ref: str) -> bytes:
        path = self._path(ref)
        try:
            return read_file(path)
        except OSError as exc:
            raise StorageUnavailable(f"blob {ref} unavailable: {exc}") from exc


def get_storage() -> Storage:
    """
    Storage backend selected by STORAGE_BACKEND ("local" or "ipfs").
    """
    if config.STORAGE_BACKEND == "ipfs":
        from chat_node.ipfs_client import IPFSStorage
        return IPFSStorage()
    if config.STORAGE_BACKEND != "local":
        raise ValueError(f"Unknown STORAGE_BACKEND: {config.STORAGE_BACKEND}")
    return LocalStorage()

