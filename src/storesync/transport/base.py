"""Transport contract and an in-process loopback implementation.

The engine only needs three capabilities from a transport: send a batch
and get the peer's acknowledgement, receive batches the peer pushed, and
deliver late acknowledgements (for example after a manual resolution).
Failures are raised as TransientSyncError or PermanentSyncError.
"""

import threading
from collections import deque
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from ..batches.envelope import BatchEnvelope, parse_envelope
from ..batches.schemas import RecordResult
from ..db.schemas import SyncBatchStatus
from ..errors import TransientSyncError

if TYPE_CHECKING:
    from ..engine.engine import SyncEngine


class TransportAck(BaseModel):
    """Peer acknowledgement of a batch with per-record outcomes."""

    batch_uid: str
    store_id: int
    status: SyncBatchStatus
    outcomes: list[RecordResult] = Field(default_factory=list)


@runtime_checkable
class Transport(Protocol):
    """What the engine needs from the network."""

    def send(self, envelope: BatchEnvelope) -> TransportAck:
        ...

    def receive(self) -> Optional[BatchEnvelope]:
        ...

    def acknowledge(self, ack: TransportAck) -> None:
        ...


class LoopbackNetwork:
    """Connects one HQ engine and any number of store engines in-process."""

    def __init__(self) -> None:
        self.hq: Optional["SyncEngine"] = None
        self.stores: dict[int, "SyncEngine"] = {}
        self._transports: dict[Optional[int], "LoopbackTransport"] = {}

    def transport_for_hq(self) -> "LoopbackTransport":
        return self._transport(None)

    def transport_for_store(self, store_id: int) -> "LoopbackTransport":
        return self._transport(store_id)

    def attach_hq(self, engine: "SyncEngine") -> None:
        self.hq = engine

    def attach_store(self, store_id: int, engine: "SyncEngine") -> None:
        self.stores[store_id] = engine

    def peer_of(self, transport: "LoopbackTransport", store_id: int) -> "SyncEngine":
        """Engine on the other side of a transport for a store."""
        if transport.store_id is None:
            peer = self.stores.get(store_id)
        else:
            peer = self.hq
        if peer is None:
            raise TransientSyncError(f"No peer attached for store {store_id}")
        return peer

    def _transport(self, store_id: Optional[int]) -> "LoopbackTransport":
        if store_id not in self._transports:
            self._transports[store_id] = LoopbackTransport(self, store_id)
        return self._transports[store_id]


class LoopbackTransport:
    """One node's end of a LoopbackNetwork.

    store_id is None for the HQ end. Sends go straight to the peer engine's
    receive_batch. Batches pushed with deliver() wait in an inbox until
    receive() drains them. Set online to False or queue exceptions with
    inject() to simulate an unreliable link.
    """

    def __init__(self, network: LoopbackNetwork, store_id: Optional[int] = None):
        self.network = network
        self.store_id = store_id
        self.online = True
        self.sent: list[BatchEnvelope] = []
        self._inbox: deque[BatchEnvelope] = deque()
        self._faults: deque[Exception] = deque()
        self._lock = threading.Lock()

    def inject(self, *errors: Exception) -> None:
        """Fail the next sends with these errors, in order."""
        with self._lock:
            self._faults.extend(errors)

    def deliver(self, envelope: BatchEnvelope) -> None:
        """Put a batch in this end's inbox."""
        with self._lock:
            self._inbox.append(envelope)

    def send(self, envelope: BatchEnvelope) -> TransportAck:
        self._check_link()
        with self._lock:
            if self._faults:
                raise self._faults.popleft()
            self.sent.append(envelope)
        # Serialize across the boundary like a real wire would.
        wire = envelope.to_json()
        peer = self.network.peer_of(self, envelope.store_id)
        return peer.receive_batch(parse_envelope(wire))

    def receive(self) -> Optional[BatchEnvelope]:
        with self._lock:
            return self._inbox.popleft() if self._inbox else None

    def acknowledge(self, ack: TransportAck) -> None:
        self._check_link()
        peer = self.network.peer_of(self, ack.store_id)
        peer.handle_ack(TransportAck.model_validate_json(ack.model_dump_json()))

    def _check_link(self) -> None:
        if not self.online:
            raise TransientSyncError("Loopback link is offline")
