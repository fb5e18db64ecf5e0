from fastapi import FastAPI, UploadFile, File, Form, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response
from pydantic import BaseModel
from dataclasses import asdict
import logging

from chat_node.config import ensure_directories, MAX_UPLOAD_SIZE, CORS_ORIGINS
from chat_node.address import find_mailbox, profile_address, sort_participants
from chat_node.conversation import ChatContext, load_conversation, send_chat_message
from chat_node.crypto import b64decode, b64encode
from chat_node.database import get_db
from chat_node.errors import (
    AddressNotFound,
    ChatError,
    DecryptionFailed,
    IdentityUnavailable,
    InvalidKeyMaterial,
    InvalidPayloadFormat,
    LedgerWriteFailed,
    StorageUnavailable,
)
from chat_node.identity import get_identity
from chat_node.ledger import LocalLedger
from chat_node.packages import fetch_attachment
from chat_node.storage import get_storage

logger = logging.getLogger(__name__)

_ERROR_STATUS = [
    (IdentityUnavailable, 503),
    (InvalidKeyMaterial, 400),
    (AddressNotFound, 404),
    (DecryptionFailed, 422),
    (InvalidPayloadFormat, 422),
    (LedgerWriteFailed, 409),
    (StorageUnavailable, 502),
]

_context = None


class NicknameRequest(BaseModel):
    wallet: str
    nickname: str


app = FastAPI(title="Ledger Chat Node", version="1.0.0")

# --------------------------------------------
# CORS
# --------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------------------------------------------
# Middleware: upload size limit
# --------------------------------------------
@app.middleware("http")
async def limit_upload_size(request: Request, call_next):
    if request.url.path == "/messages":
        cl = request.headers.get("content-length")
        if cl is not None and cl.isdigit() and int(cl) > MAX_UPLOAD_SIZE:
            return JSONResponse(
                status_code=413,
                content={"error": f"Request too large (max {MAX_UPLOAD_SIZE} bytes)"}
            )
    return await call_next(request)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    content = {"error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, LedgerWriteFailed) and exc.code is not None:
        content["code"] = exc.code
    return JSONResponse(status_code=status, content=content)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": str(exc), "type": "ValueError"})


async def get_context() -> ChatContext:
    """
    The node's chat context, built once from the persisted wallet.
    """
    global _context
    if _context is None:
        signer, keypair = await get_identity()
        _context = ChatContext(
            signer=signer,
            ledger=LocalLedger(),
            storage=get_storage(),
            keypair=keypair,
        )
    return _context


def _peer_key(value: str | None) -> bytes | None:
    if not value:
        return None
    return b64decode(value, "peer public key")


@app.on_event("startup")
async def startup():
    ensure_directories()
    get_db()
    ctx = await get_context()
    logger.info(f"Chat node ready: wallet={ctx.wallet}")


# ---------------------------------------------------------
# IDENTITY / ADDRESSES
# ---------------------------------------------------------
@app.get("/identity")
async def api_identity(ctx: ChatContext = Depends(get_context)):
    return {
        "wallet": ctx.wallet,
        "encryption_public_key": b64encode(ctx.keypair.public_bytes),
        "profile": profile_address(ctx.wallet),
    }


@app.get("/mailbox/{peer}")
async def api_mailbox(peer: str, ctx: ChatContext = Depends(get_context)):
    mailbox, bump = find_mailbox(ctx.wallet, peer)
    return {
        "mailbox": mailbox,
        "bump": bump,
        "participants": list(sort_participants(ctx.wallet, peer)),
        "exists": await ctx.ledger.account_exists(mailbox),
    }


# ---------------------------------------------------------
# MESSAGES
# ---------------------------------------------------------
@app.post("/messages")
async def api_send_message(
    receiver: str = Form(...),
    message: str = Form(""),
    scheme: str = Form("plain"),
    peer_public_key: str | None = Form(None),
    file: UploadFile | None = File(None),
    ctx: ChatContext = Depends(get_context),
):
    if scheme not in ("plain", "passphrase", "box"):
        raise ValueError(f"Invalid scheme: {scheme}")

    attachment = await file.read() if file is not None else None
    sent = await send_chat_message(
        ctx,
        receiver,
        message,
        attachment,
        scheme=scheme,
        peer_public=_peer_key(peer_public_key),
    )
    return {"status": "ok", **asdict(sent)}


@app.get("/conversations/{peer}")
async def api_conversation(
    peer: str,
    peer_public_key: str | None = None,
    ctx: ChatContext = Depends(get_context),
):
    entries = await load_conversation(ctx, peer, _peer_key(peer_public_key))
    return {"peer": peer, "messages": [asdict(e) for e in entries]}


@app.get("/attachments/{ref}")
async def api_attachment(ref: str, ctx: ChatContext = Depends(get_context)):
    data = await fetch_attachment(ctx.storage, ref)
    return Response(content=data, media_type="application/octet-stream")


# ---------------------------------------------------------
# PROFILE / NICKNAMES
# ---------------------------------------------------------
@app.post("/profile")
async def api_init_profile(ctx: ChatContext = Depends(get_context)):
    signature = await ctx.ledger.init_user_profile(ctx.wallet)
    return {"status": "ok", "profile": profile_address(ctx.wallet), "signature": signature}


@app.post("/nicknames")
async def api_set_nickname(req: NicknameRequest, ctx: ChatContext = Depends(get_context)):
    signature = await ctx.ledger.set_nickname(ctx.wallet, req.wallet, req.nickname)
    return {"status": "ok", "signature": signature}


@app.get("/nicknames")
async def api_nicknames(ctx: ChatContext = Depends(get_context)):
    entries = await ctx.ledger.fetch_nicknames(ctx.wallet)
    return {"nicknames": [asdict(e) for e in entries]}


@app.get("/history")
async def api_history(ctx: ChatContext = Depends(get_context)):
    return {"history": await ctx.ledger.fetch_history(ctx.wallet)}
