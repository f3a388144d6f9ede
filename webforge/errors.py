class WebforgeError(Exception):
    """Base class for errors that are shown to the user."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class PathValidationError(WebforgeError):
    """A file path from the model is empty or points outside the project."""


class NoPackageManagerError(WebforgeError):
    pass


class ModelError(WebforgeError):
    """The inference backend failed or could not be reached."""


class ModelCancelled(ModelError):
    pass


class ModelTimeout(ModelCancelled):
    pass


class NoChangesError(WebforgeError):
    pass


def describe_error(exc: BaseException) -> dict:
    """Short message + optional detail blob, safe to hand to the UI."""
    if isinstance(exc, WebforgeError):
        return {"message": exc.message, "detail": exc.detail}
    return {"message": f"{type(exc).__name__}: {exc}", "detail": None}
