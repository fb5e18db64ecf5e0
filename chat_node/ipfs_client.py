# chat_node/ipfs_client.py

import asyncio
import logging
import time

import requests

from chat_node.config import IPFS_API, IPFS_GATEWAY, IPFS_TIMEOUT, IPFS_MAX_RETRIES
from chat_node.errors import StorageUnavailable
from chat_node.storage import normalize_ref

logger = logging.getLogger(__name__)


class IPFSError(StorageUnavailable):
    """Raised when an IPFS operation fails after all retries."""
    pass


def _with_retry(func):
    """
    Execute *func* with exponential-backoff retry on transient errors.
    Non-transient HTTP errors (4xx) are raised immediately.
    """
    last_exc = None
    for attempt in range(IPFS_MAX_RETRIES):
        try:
            return func()
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            last_exc = exc
            if attempt < IPFS_MAX_RETRIES - 1:
                wait = 2 ** attempt
                logger.warning(
                    "IPFS retry %d/%d in %ds: %s", attempt + 1, IPFS_MAX_RETRIES, wait, exc
                )
                time.sleep(wait)
        except requests.exceptions.RequestException as exc:
            raise IPFSError(f"IPFS request error: {exc}") from exc

    raise IPFSError(
        f"IPFS failed after {IPFS_MAX_RETRIES} attempts: {last_exc}"
    ) from last_exc


def ipfs_add_bytes(data: bytes, filename: str = "blob.bin") -> str:
    """
    Upload raw binary content to IPFS (pinned).
    Returns the CID (string).
    """
    def _post():
        r = requests.post(
            f"{IPFS_API}/api/v0/add",
            params={"pin": "true", "cid-version": "1"},
            files={"file": (filename, data)},
            timeout=IPFS_TIMEOUT,
        )
        r.raise_for_status()
        cid = r.json()["Hash"]
        logger.debug("IPFS add OK: %s (%d bytes)", cid, len(data))
        return cid

    return _with_retry(_post)


def ipfs_get_bytes(cid: str) -> bytes:
    """
    Fetch raw binary data from the local IPFS node.
    """
    cid = normalize_ref(cid)

    def _post():
        r = requests.post(
            f"{IPFS_API}/api/v0/cat",
            params={"arg": cid},
            timeout=IPFS_TIMEOUT,
        )
        r.raise_for_status()
        logger.debug("IPFS cat OK: %s (%d bytes)", cid, len(r.content))
        return r.content

    return _with_retry(_post)


def gateway_get_bytes(cid: str, gateway: str = IPFS_GATEWAY) -> bytes:
    """
    Fetch through a public HTTP gateway. Used when the local node is not
    reachable or does not have the content.
    """
    cid = normalize_ref(cid)

    def _get():
        r = requests.get(f"{gateway.rstrip('/')}/{cid}", timeout=IPFS_TIMEOUT)
        r.raise_for_status()
        logger.debug("Gateway fetch OK: %s (%d bytes)", cid, len(r.content))
        return r.content

    return _with_retry(_get)


def gateway_url(cid: str, gateway: str = IPFS_GATEWAY) -> str:
    return f"{gateway.rstrip('/')}/{normalize_ref(cid)}"


# ---------------------------------------------------------------------------
# Async storage adapter
# ---------------------------------------------------------------------------

class IPFSStorage:
    """
    Storage backed by an IPFS node's HTTP API. The blocking requests calls
    run in a worker thread so fetches for different messages can overlap.
    """

    def __init__(self, use_gateway_fallback: bool = True):
        self.use_gateway_fallback = use_gateway_fallback

    async def put(self, data: bytes) -> str:
        return await asyncio.to_thread(ipfs_add_bytes, data)

    async def get(self, ref: str) -> bytes:
        try:
            return await asyncio.to_thread(ipfs_get_bytes, ref)
        except IPFSError as exc:
            if not self.use_gateway_fallback:
                raise
            logger.warning("IPFS node fetch failed for %s, trying gateway: %s", ref, exc)
            return await asyncio.to_thread(gateway_get_bytes, ref)
