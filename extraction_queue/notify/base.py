from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from extraction_queue.workers.aggregator import EmailCompletion


class Notifier(Protocol):
    """Fire-and-forget consumer of a completed email; reports its own failures."""

    def notify(self, completion: EmailCompletion) -> None:
        ...
