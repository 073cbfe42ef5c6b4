from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from services import ImportResult


class LedgerError(ValueError):
    """Base class for expected domain failures."""


class NotFoundError(LedgerError):
    pass


class ConflictError(LedgerError):
    pass


class HasTransactionsError(ConflictError):
    pass


class HasChildrenError(ConflictError):
    pass


class CategoryInUseError(ConflictError):
    """Category has transactions and no replacement decision was supplied."""


class InvalidInputError(LedgerError):
    pass


class StorageError(RuntimeError):
    """The underlying store failed; multi-statement work was rolled back."""


class ImportAbortedError(StorageError):
    def __init__(self, message: str, result: "ImportResult") -> None:
        super().__init__(message)
        self.result = result
