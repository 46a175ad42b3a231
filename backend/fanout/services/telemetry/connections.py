from __future__ import annotations

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ...core import metrics
from ...core.observability import EventKind, Observability
from ...shared.schemas import ConnectionState, DropReason, OverflowPolicy
from .errors import TransportFailure
from .models import Connection, OutboundQueue, Transport
from .subscriptions import SubscriptionManager

logger = structlog.get_logger(__name__)


class ConnectionLifecycleController:
    """Owns every viewer connection and drives connecting -> active -> draining -> closed.

    Each connection gets one writer task that sends a single message at a
    time, so the transport never holds more than one in-flight message.
    """

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        observability: Observability,
        *,
        queue_capacity: int = 64,
        overflow_policy: OverflowPolicy = OverflowPolicy.drop_oldest,
        drain_timeout: float = 2.0,
        send_timeout: float = 5.0,
    ) -> None:
        self._subscriptions = subscriptions
        self._observability = observability
        self._queue_capacity = queue_capacity
        self._overflow_policy = overflow_policy
        self._drain_timeout = drain_timeout
        self._send_timeout = send_timeout
        self._connections: Dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    async def open(
        self,
        transport: Transport,
        *,
        handshake: Optional[Callable[[], Awaitable[Any]]] = None,
        connection_id: Optional[str] = None,
    ) -> Connection:
        connection = Connection(
            id=connection_id or uuid.uuid4().hex,
            transport=transport,
            queue=OutboundQueue(self._queue_capacity, self._overflow_policy),
        )
        metrics.connections_gauge(ConnectionState.connecting.value).inc()
        try:
            if handshake is not None:
                await handshake()
        except Exception as exc:
            connection.state = ConnectionState.closed
            metrics.connections_gauge(ConnectionState.connecting.value).dec()
            logger.warning("connection_handshake_failed", connection=connection.id, error=str(exc))
            raise TransportFailure(connection.id, f"handshake failed: {exc}") from exc
        self._transition(connection, ConnectionState.active)
        self._connections[connection.id] = connection
        self._subscriptions.attach(connection)
        connection.writer = asyncio.create_task(self._run_writer(connection), name=f"writer-{connection.id}")
        self._observability.emit(EventKind.connection_opened, connection=connection.id)
        return connection

    def request_flush(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None or connection.state is ConnectionState.closed:
            return
        connection.wakeup.set()

    def send_control(self, connection_id: str, message: Dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.accepting:
            return False
        connection.control.append(message)
        connection.wakeup.set()
        return True

    async def close(self, connection_id: str, *, reason: str = "close_requested") -> None:
        """Graceful close: stop accepting samples, flush what is queued, then release."""
        connection = self._connections.get(connection_id)
        if connection is None or connection.state is not ConnectionState.active:
            return
        self._transition(connection, ConnectionState.draining)
        connection.wakeup.set()
        writer = connection.writer
        if writer is not None and not writer.done() and writer is not asyncio.current_task():
            done, _ = await asyncio.wait({writer}, timeout=self._drain_timeout)
            if not done and connection.state is ConnectionState.draining:
                self._drop_remaining(connection)
        await self._finalize(connection, reason=reason)

    async def abort(self, connection_id: str, *, reason: str = "transport_failure") -> None:
        """Hard failure: skip the drain and release immediately."""
        connection = self._connections.get(connection_id)
        if connection is None or connection.state is ConnectionState.closed:
            return
        await self._finalize(connection, reason=reason)

    async def close_all(self, *, reason: str = "shutdown") -> None:
        await asyncio.gather(
            *(self.close(connection_id, reason=reason) for connection_id in list(self._connections)),
        )

    async def _run_writer(self, connection: Connection) -> None:
        try:
            while connection.state in (ConnectionState.active, ConnectionState.draining):
                outbound = connection.next_outbound()
                if outbound is None:
                    if connection.state is ConnectionState.draining:
                        return
                    connection.wakeup.clear()
                    await connection.wakeup.wait()
                    continue
                message, sample = outbound
                connection.in_flight = sample
                await self._send(connection, message)
                connection.in_flight = None
                if sample is not None:
                    connection.delivered += 1
                    metrics.samples_delivered_counter(sample.channel).inc()
        except TransportFailure as exc:
            logger.info("connection_transport_failure", connection=connection.id, reason=exc.reason)
            await self.abort(connection.id, reason="transport_failure")

    async def _send(self, connection: Connection, message: Dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(connection.transport.send(message), timeout=self._send_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportFailure(connection.id, "send timed out") from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TransportFailure(connection.id, str(exc) or type(exc).__name__) from exc

    def _drop_remaining(self, connection: Connection) -> None:
        pending = list(connection.queue)
        if connection.in_flight is not None:
            pending.insert(0, connection.in_flight)
            connection.in_flight = None
        connection.queue.clear()
        connection.control.clear()
        if not pending:
            return
        connection.queue.dropped += len(pending)
        counts: Dict[str, int] = {}
        for sample in pending:
            counts[sample.channel] = counts.get(sample.channel, 0) + 1
        for channel, count in counts.items():
            self._observability.emit(
                EventKind.sample_dropped,
                connection=connection.id,
                channel=channel,
                reason=DropReason.drain_timeout.value,
                count=count,
            )

    async def _finalize(self, connection: Connection, *, reason: str) -> None:
        if connection.state is ConnectionState.closed:
            return
        self._transition(connection, ConnectionState.closed)
        # Unsubscribe before releasing anything else so dispatch stops routing here.
        channels = self._subscriptions.detach(connection.id)
        self._connections.pop(connection.id, None)
        writer = connection.writer
        if writer is not None and not writer.done() and writer is not asyncio.current_task():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
        connection.writer = None
        connection.wakeup.set()
        try:
            await connection.transport.close()
        except Exception as exc:
            logger.debug("connection_transport_close_failed", connection=connection.id, error=str(exc))
        self._observability.emit(
            EventKind.connection_closed,
            connection=connection.id,
            reason=reason,
            channels=channels,
            delivered=connection.delivered,
            dropped=connection.dropped,
        )

    def _transition(self, connection: Connection, state: ConnectionState) -> None:
        previous = connection.state
        connection.state = state
        metrics.connections_gauge(previous.value).dec()
        if state is not ConnectionState.closed:
            metrics.connections_gauge(state.value).inc()
        logger.debug("connection_state", connection=connection.id, previous=previous.value, state=state.value)
