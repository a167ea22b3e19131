"""Transport contract for crmflow's three message streams.

``EVENTS_TOPIC`` carries inbound CRM domain events consumed by the worker,
``LIFECYCLE_TOPIC`` carries execution and rule lifecycle notifications, and
``ACTIONS_TOPIC`` carries rule actions (``set_field``, ``send_email``...) for
the CRUD layer to apply.
"""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import EngineMessage

RawMessageT = TypeVar("RawMessageT")

EVENTS_TOPIC = "events"
LIFECYCLE_TOPIC = "lifecycle"
ACTIONS_TOPIC = "actions"


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Moves ``EngineMessage`` envelopes between the engine and the outside.

    ``RawMessageT`` is whatever handle the backend needs to settle a
    delivery later with ``ack`` or ``nack``.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: EngineMessage) -> None:
        """Append ``message`` to ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, EngineMessage]]:
        """Yield ``(delivery handle, envelope)`` pairs from ``topic``.

        Args:
            topic: One of the crmflow topics.
            lifespan: Stop yielding after this many seconds; ``None`` runs forever.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery as handled."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a delivery. Backends without redelivery just settle it."""
        await self.ack(raw_message)
