# chat_node/errors.py


class ChatError(Exception):
    """Base class for every failure raised by the chat node."""
    pass


class IdentityUnavailable(ChatError):
    """The wallet signer is missing, revoked, or refused to sign."""
    pass


class InvalidKeyMaterial(ChatError):
    """A key, nonce or address has the wrong length or encoding."""
    pass


class DecryptionFailed(ChatError):
    """Authentication failed: wrong key, wrong passphrase or corrupted data."""
    pass


class InvalidPayloadFormat(ChatError):
    """A stored package does not match any known message shape."""
    pass


class AddressNotFound(ChatError):
    """A mailbox or profile account has not been initialised on the ledger."""
    pass


class StorageUnavailable(ChatError):
    """Content-addressed storage could not store or return a blob."""
    pass


class LedgerWriteFailed(ChatError):
    """A ledger transaction was rejected or confirmed with an error."""

    code: int | None = None

    def __init__(self, message: str, *, code: int | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


# ---------------------------------------------------------------------------
# Program errors (codes match the on-chain program)
# ---------------------------------------------------------------------------

class HashTooLong(LedgerWriteFailed):
    code = 6000

    def __init__(self, message: str = "IPFS hash is too long."):
        super().__init__(message)


class NicknameTooLong(LedgerWriteFailed):
    code = 6001

    def __init__(self, message: str = "Nickname is too long."):
        super().__init__(message)


class Unauthorized(LedgerWriteFailed):
    code = 6002

    def __init__(self, message: str = "Unauthorized access to chat."):
        super().__init__(message)
