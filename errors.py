class NotFoundError(ValueError):
    """Missing record, or one the caller does not own.

    Both cases read the same so a caller cannot probe for other owners' ids.
    """


class StorageError(RuntimeError):
    """The backing store failed; carries no partial result."""
