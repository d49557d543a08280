"""Transport interface for the opsflow command bus."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import OpsflowMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Durable per-topic queue of :class:`OpsflowMessage` commands.

    Delivery is at-least-once: a handler that fails before ``ack`` may see
    the same message again, so handlers must be idempotent.
    """

    async def connect(self) -> None:
        """Open the broker connection; transports without one do nothing."""

    async def disconnect(self) -> None:
        """Release the broker connection, if any."""

    @abc.abstractmethod
    async def publish(self, topic: str, message: OpsflowMessage) -> None:
        """Append ``message`` to the queue for ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, OpsflowMessage]]:
        """Yield ``(raw, parsed)`` pairs from ``topic``.

        The raw message is the handle later passed to :meth:`ack` or
        :meth:`nack`. With ``lifespan`` set the iterator ends after that many
        seconds; without it, it runs until cancelled.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark the message handled so it is never redelivered."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject the message; brokers without redelivery treat this as ack."""
        await self.ack(raw_message)
