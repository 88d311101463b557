"""Transport contract consumed by the connection session."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterator


class Channel(ABC):
    """An open byte link to one paired device."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def chunks(self) -> Iterator[bytes]:
        """Yield received byte chunks in arrival order.

        The iterator ends when the channel is closed, from either side.

        Raises:
            TransportError: If the link fails while reading.
        """

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Send ``data`` and return once it has been flushed.

        Raises:
            TransportError: If the write fails.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the link. Safe to call more than once."""


class Transport(ABC):
    """Opens channels to devices by address or port name."""

    @abstractmethod
    def open(self, target: str) -> Channel:
        """Open a channel to ``target``. May block for several seconds.

        Raises:
            TransportError: If the device cannot be reached.
        """
