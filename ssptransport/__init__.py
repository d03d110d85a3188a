"""State-synchronisation transport over UDP: compression, fragments, packets, connection, sender and transport."""

__version__ = "0.1.0"

__all__ = ["compressor", "state", "fragment", "packet", "connection", "sender", "transport"]