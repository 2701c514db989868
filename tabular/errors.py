"""Error taxonomy for list mutations."""


class TabularError(Exception):
    """Base class for all tabular errors."""

    kind = "error"


class ValidationError(TabularError):
    """Malformed input: empty name, non-numeric ids, bad event payload."""

    kind = "validation"


class NotFoundError(TabularError):
    """The referenced item id does not exist."""

    kind = "not_found"

    def __init__(self, item_id: int):
        super().__init__(f"No item with id {item_id}")
        self.item_id = item_id


class StorageError(TabularError):
    """The persistence layer failed. Retryable."""

    kind = "storage"


class TransportError(TabularError):
    """Broadcast channel or network failure."""

    kind = "transport"
