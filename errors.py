class ShelfError(Exception):
    """Base class for failures surfaced to the API caller."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ShelfError):
    pass


class ForbiddenError(ShelfError):
    """Acting reader does not own the row."""


class ConflictError(ShelfError):
    pass


class InvalidUpdateError(ShelfError):
    """Rejected before any state change."""
