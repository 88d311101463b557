"""Client for Bluetooth serial water meters, exposed over MCP."""

__version__ = "0.1.0"
