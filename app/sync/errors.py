"""Exceptions raised where a caller has to branch on the failure"""


class SyncError(Exception):
    """Base class for sync pipeline errors"""


class ConnectionNotFoundError(SyncError):
    pass


class SyncAlreadyRunningError(SyncError):
    """A quick sync or bulk import is already active for this connection"""


class QuickSyncError(SyncError):
    """Permanent failure during the synchronous quick-sync stage"""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class BulkSubmitError(SyncError):
    """The vendor refused to start a bulk export"""


class ConnectionGoneError(SyncError):
    """The connection was deleted or revoked while work was in flight"""


class InvalidTransitionError(SyncError):
    pass
