"""Record TCP traffic on one port and flag connections whose payload matches a pattern."""

__version__ = "0.1.0"
