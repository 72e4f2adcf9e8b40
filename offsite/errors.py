"""
Error kinds raised by the backup and restore pipeline.

Every stage raises its own subclass of OffsiteError. Only the CLI turns
these into process exit codes.
"""


class OffsiteError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigError(OffsiteError):
    """Raised when configuration is missing or invalid."""
    pass


class DumpError(OffsiteError):
    """Raised when the database dump cannot be produced."""
    pass


class ArchiveError(OffsiteError):
    """Raised when archive creation or extraction fails."""
    pass


class CryptoError(OffsiteError):
    """
    Raised when encryption or decryption fails.

    The reason attribute tells apart the failure modes that share this type:
    'bad-format', 'bad-passphrase', 'corrupt' and 'io'.
    """

    def __init__(self, message: str, reason: str = 'io'):
        super().__init__(message)
        self.reason = reason


class TransportError(OffsiteError):
    """Raised when a remote storage operation fails."""
    pass


class NotFoundError(OffsiteError):
    """Raised when there is no remote backup to restore."""
    pass


class RestoreError(OffsiteError):
    """Raised when restoring the database or a directory fails."""
    pass


class LockError(OffsiteError):
    """Raised when another run already holds the run lock."""
    pass
