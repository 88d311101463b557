"""Protocol layer: line framing, message classification, and command encoding."""

from .framing import LineFramer
from .commands import Command, CommandRequest, encode
from .parser import classify
