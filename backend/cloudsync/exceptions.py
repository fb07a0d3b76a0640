"""Error types raised by the cloud sync engine.

Every public entry point of the engine raises one of these. The worker turns
any of them into a ``failed`` job with the message stored in ``last_error``,
so the host process never crashes because of a sync problem.
"""


class CloudSyncError(RuntimeError):
    """Base class for all cloud sync failures."""


class DecryptionError(CloudSyncError):
    """Stored ciphertext could not be authenticated or decoded."""


class RemoteConnectionError(CloudSyncError):
    """The remote database could not be reached."""


class SyncLockError(CloudSyncError):
    """The remote advisory lock is held by another sync.

    Nothing was changed and no lock was acquired, so the job can simply be
    retried later.
    """

    retryable = True

    def __init__(self, message: str = "Unable to acquire advisory lock on remote DB - another sync may be in progress"):
        super().__init__(message)


class ConnectionNotFoundError(CloudSyncError):
    """No usable stored connection for the requested id."""


class JobNotFoundError(CloudSyncError):
    pass


class JobStateError(CloudSyncError):
    """A job transition was requested from a status that does not allow it."""


class ExportError(CloudSyncError):
    pass


class RemoteSchemaError(CloudSyncError):
    """A remote table cannot be written by the exporter (for example it has no id column)."""


class SyncImportError(CloudSyncError):
    pass


class VerificationError(CloudSyncError):
    pass


class BackupNotFoundError(CloudSyncError):
    pass


class RestoreError(CloudSyncError):
    pass
