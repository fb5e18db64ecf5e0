import os
import logging
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
BASE_DIR = Path(os.getenv("CHAT_BASE_DIR", "./chat_data"))
KEYS_DIR = BASE_DIR / "keys"
LEDGER_DB_PATH = BASE_DIR / "ledger.db"
BLOB_DIR = BASE_DIR / "blobs"

# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------
CHAT_PROGRAM_ID = os.getenv("CHAT_PROGRAM_ID", "7cKXCHc1T8Tk6TPrMVwd8dgqqek3G1kuBLnHFhBhHkUU")
CHAT_SEED = b"chat"
PROFILE_SEED = b"profile"

# Message the wallet signs to derive its encryption keypair. Changing it
# changes every derived key.
KEY_DERIVATION_MESSAGE = os.getenv(
    "KEY_DERIVATION_MESSAGE",
    "ledger-chat: sign to derive your message encryption keys",
)

# Shared-passphrase scheme
CHAT_PASSPHRASE = os.getenv("CHAT_PASSPHRASE", "chat-secret")
PASSPHRASE_SALT = os.getenv("PASSPHRASE_SALT", "chat-app-salt").encode("utf-8")
MIN_PBKDF2_ITERATIONS = 100_000
PBKDF2_ITERATIONS = max(int(os.getenv("PBKDF2_ITERATIONS", "100000")), MIN_PBKDF2_ITERATIONS)

# ---------------------------------------------------------------------------
# Ledger program limits
# ---------------------------------------------------------------------------
MAX_MESSAGES = 80
MAX_IPFS_HASH_LENGTH = 64
MAX_NICKNAME_LENGTH = 32
MAX_PROFILE_ENTRIES = 50

LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "5"))
LEDGER_COMMITMENT = os.getenv("LEDGER_COMMITMENT", "confirmed")

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").lower()
IPFS_API = os.getenv("IPFS_API_URL", "http://127.0.0.1:5001")
IPFS_GATEWAY = os.getenv("IPFS_GATEWAY_URL", "https://ipfs.io/ipfs/")
IPFS_TIMEOUT = int(os.getenv("IPFS_TIMEOUT", "30"))
IPFS_MAX_RETRIES = int(os.getenv("IPFS_MAX_RETRIES", "3"))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
CHAT_PORT = int(os.getenv("CHAT_PORT", "8080"))
CHAT_HOST = os.getenv("CHAT_HOST", "127.0.0.1")
MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", str(10 * 1024 * 1024)))  # 10 MB
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s  %(name)-28s  %(levelname)-7s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def ensure_directories():
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    KEYS_DIR.mkdir(parents=True, exist_ok=True)
    BLOB_DIR.mkdir(parents=True, exist_ok=True)
