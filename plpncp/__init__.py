"""Serial framing, link layer and print-service client for Psion handhelds."""

__version__ = "1.0.25"