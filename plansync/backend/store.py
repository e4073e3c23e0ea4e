# plansync/backend/store.py
"""
Backing store protocol definition.

The backing store owns the authoritative rows. The sync engine consumes it as
an opaque CRUD + subscribe API; InMemoryBackingStore and SQLiteBackingStore
implement it.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from plansync.models.tables import get_table

if TYPE_CHECKING:
    from plansync.backend.feed import Subscription
    from plansync.backend.presence import PresenceChannel


class BackendError(Exception):
    """
    A backing-store operation failed.

    Attributes:
        retryable: True for transient failures (network, timeouts) that a
            read may retry; mutations are never retried automatically
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class EntityNotFoundError(BackendError):
    """The addressed row does not exist."""

    def __init__(self, table: str, row_id: str) -> None:
        super().__init__(f"{table} row {row_id} not found", retryable=False)
        self.table = table
        self.row_id = row_id


def generate_id() -> str:
    """
    Generate a server-side row ID.

    Returns:
        32-character hex string (UUID4)
    """
    return uuid4().hex


def check_columns(table: str, fields: dict[str, Any]) -> None:
    """
    Reject writes naming columns the table doesn't have.

    Raises:
        BackendError: Non-retryable, on unknown columns
    """
    unknown = set(fields) - get_table(table).fields
    if unknown:
        raise BackendError(
            f"Unknown column(s) for {table}: {sorted(unknown)}", retryable=False
        )


class BackingStore(ABC):
    """
    Abstract base class for backing stores.

    All row values are JSON-compatible dicts keyed by column name.
    """

    supports_transactions: bool = False

    @abstractmethod
    async def read(
        self, table: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """
        Read rows matching every column=value pair in filters.

        Returns:
            Rows in the table's read order
        """

    @abstractmethod
    async def write(self, table: str, row_id: str, fields: dict[str, Any]) -> None:
        """
        Update fields on one row.

        Raises:
            EntityNotFoundError: If the row doesn't exist
            BackendError: On any other failure
        """

    async def write_many(
        self, table: str, updates: list[tuple[str, dict[str, Any]]]
    ) -> None:
        """
        Apply several row updates in a single transaction.

        Only available when supports_transactions is True.

        Raises:
            NotImplementedError: If the store has no multi-row transactions
            BackendError: If the transaction failed (nothing was applied)
        """
        raise NotImplementedError(f"{type(self).__name__} has no multi-row transactions")

    @abstractmethod
    async def create(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a row. The store assigns the id.

        Returns:
            The stored row including its id
        """

    @abstractmethod
    async def delete(self, table: str, row_id: str) -> None:
        """
        Delete a row and cascade to its children.

        Raises:
            EntityNotFoundError: If the row doesn't exist
        """

    @abstractmethod
    def subscribe(self, table: str) -> "Subscription":
        """
        Open a change stream for one table.

        Registration is immediate; delivery is at-least-once.
        """

    @abstractmethod
    def presence_channel(self, name: str) -> "PresenceChannel":
        """Open an ephemeral presence channel."""

    async def close(self) -> None:
        """Release store resources."""
