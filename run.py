import logging

import uvicorn

from chat_node.config import CHAT_PORT, CHAT_HOST, LOG_LEVEL, ensure_directories
from chat_node.identity import load_wallet

logger = logging.getLogger(__name__)


if __name__ == "__main__":
    ensure_directories()
    wallet = load_wallet()
    logger.info(f"Starting chat node for wallet {wallet.public_key} on {CHAT_HOST}:{CHAT_PORT}")

    uvicorn.run(
        "chat_node.main:app",
        port=CHAT_PORT,
        host=CHAT_HOST,
        reload=False,
        log_level=LOG_LEVEL.lower(),
    )
