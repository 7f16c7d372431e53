"""Error taxonomy for procscope."""


class ProcscopeError(Exception):
    """Base class for procscope errors."""


class CollaboratorUnavailable(ProcscopeError):
    """A collaborator call (listing, usage, host stats) failed or timed out."""

    def __init__(self, name: str, cause: BaseException | None = None) -> None:
        self.name = name
        self.cause = cause
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"collaborator {name!r} unavailable{detail}")


class InvalidFeatureError(ProcscopeError, ValueError):
    """A feature value is non-numeric or infinite."""


class StoreWriteConflict(ProcscopeError):
    """The snapshot store could not acquire its write lock."""


class ViewerSendFailure(ProcscopeError):
    """A push to a single viewer failed."""
