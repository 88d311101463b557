"""Radio links to the meter: the channel contract and its serial backends."""

from .base import Channel, Transport
from .serial_connection import SerialTransport
