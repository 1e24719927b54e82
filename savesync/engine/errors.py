class SyncError(Exception):
    """Base class for reconciliation failures."""


class HashError(SyncError):
    """A file could not be read for hashing."""


class BackupError(SyncError):
    """Copying a file into the backup area failed."""


class MetadataError(SyncError):
    pass


class MetadataLoadError(MetadataError):
    """The metadata document is unreadable or has an unexpected shape."""


class MetadataPersistError(MetadataError):
    """Publishing the metadata document failed; on-disk state may disagree with it."""
