"""Error taxonomy for the ingestion pipeline."""


class CodepulseError(Exception):
    """Base class for all pipeline errors."""

    retryable = False


class CredentialError(CodepulseError):
    """Credential could not be resolved to a user."""


class InvalidCredential(CredentialError):
    pass


class ExpiredCredential(CredentialError):
    pass


class VerifierUnavailable(CredentialError):
    """Verifier timed out or failed; the credential itself may be fine."""

    retryable = True


class ValidationError(CodepulseError):
    """Batch or heartbeat failed boundary validation."""


class StorageError(CodepulseError):
    """Storage operation failed."""

    def __init__(self, message, retryable=False):
        super().__init__(message)
        self.retryable = retryable


class TransientStorageError(StorageError):
    def __init__(self, message):
        super().__init__(message, retryable=True)


class PersistentStorageError(StorageError):
    def __init__(self, message):
        super().__init__(message, retryable=False)


class AlreadyConsumed(CodepulseError):
    """Heartbeats were claimed by another reconstruction run first."""
