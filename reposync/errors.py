"""Error taxonomy for reposync.

Selection and discovery errors end a run before anything is mutated. The
remaining errors are raised inside a single item or target and are turned
into an ``ItemResult`` at the item boundary by the apply/revert engines.
"""


class SyncError(Exception):
    """Base class for every reposync error."""


class SelectionError(SyncError):
    """Operator input is invalid: bad index, unknown commit, malformed range."""


class DiscoveryError(SyncError):
    """Nothing to work on: no repositories, no changes, no targets."""


class EmptyChangeSet(DiscoveryError):
    """The source has no qualifying changes. Terminal, but not a failure."""


class NotARepository(DiscoveryError):
    """A path that should be a git working tree is not (or no longer) one."""


class PathError(SyncError):
    """A source file is missing or a destination directory cannot be used."""

    def __init__(self, message: str, reason: str = "NoPath"):
        super().__init__(message)
        self.reason = reason


class ConflictError(SyncError):
    """The target diverges locally or the patch does not apply cleanly."""

    def __init__(self, message: str, reason: str = "Conflict"):
        super().__init__(message)
        self.reason = reason


class MutationError(SyncError):
    """The copy or apply step itself failed."""

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message)
        self.detail = detail


class BackupError(SyncError):
    """A pre-mutation snapshot could not be written."""


class SessionError(SyncError):
    """A session is unknown, malformed, or already closed."""
