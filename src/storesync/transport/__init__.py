"""Transport contract and the in-process loopback transport."""

from .base import LoopbackNetwork, LoopbackTransport, Transport, TransportAck

__all__ = ["LoopbackNetwork", "LoopbackTransport", "Transport", "TransportAck"]
