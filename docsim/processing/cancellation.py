"""Cooperative cancellation token threaded through the pipeline."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from docsim.core.exceptions import ProcessingCancelled

logger = logging.getLogger(__name__)

# Returns True when the stored document says it has been cancelled
CancellationLookup = Callable[[], Awaitable[bool]]


class CancellationToken:
    """
    `cancel()` flips an in-memory flag; `check()` also consults the optional
    lookup (normally the stored status) so a cancel issued through the API is
    seen by the worker at its next checkpoint.
    """

    def __init__(self, document_id: Any, lookup: CancellationLookup | None = None) -> None:
        self.document_id = document_id
        self._lookup = lookup
        self._cancelled = False
        self._reason = "cancelled"

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            logger.info("Cancellation requested | doc=%s reason=%s", self.document_id, reason)
        self._cancelled = True
        self._reason = reason

    async def check(self, checkpoint: str = "") -> None:
        if not self._cancelled and self._lookup is not None and await self._lookup():
            self.cancel("status")
        if self._cancelled:
            logger.info(
                "Cancellation observed | doc=%s checkpoint=%s", self.document_id, checkpoint or "-",
            )
            raise ProcessingCancelled(self.document_id, self._reason)


def status_lookup(repository, document_id: Any) -> CancellationLookup:
    """Lookup that treats a `cancelled` or vanished document as cancelled."""

    async def _lookup() -> bool:
        status = await repository.get_status(document_id)
        return status is None or status == "cancelled"

    return _lookup
