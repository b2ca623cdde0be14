"""
Exception types raised by the inventory core.

Business errors (missing items, duplicate names, undecodable images)
propagate to the caller. Ledger and vision-provider errors are contained
by the components that produce them.
"""


class InventoryError(Exception):
    """Base class for all inventory core errors."""


class ImageDecodeError(InventoryError, ValueError):
    """Image bytes could not be decoded as PNG, JPEG or WEBP."""


class NotFoundError(InventoryError):
    """Requested stock item or shade does not exist."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} with ID {identifier} not found")


class DuplicateNameError(InventoryError):
    """Product name already used by another stock item (case-insensitive)."""

    def __init__(self, product: str):
        self.product = product
        super().__init__(f"A stock item with product name '{product}' already exists")


class LedgerWriteFailure(InventoryError):
    """A ledger entry could not be persisted.

    Carried as a value inside ``LedgerResult``; the ledger never raises it.
    """


class LedgerImmutableError(InventoryError):
    """Attempt to modify or delete a persisted ledger entry."""


class ProviderUnavailable(InventoryError):
    """Cloud vision provider is not configured."""


class VisionProviderError(InventoryError):
    """Cloud vision provider call failed."""
