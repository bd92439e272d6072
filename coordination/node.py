"""
Node Runtime - the skeleton shared by both protocols.

Features:
- FastAPI inbound endpoint with one POST route per message kind
- Mailbox + single dispatcher thread that runs every protocol handler
- One lock (a Condition) guarding all protocol state
- One single-worker outbox per destination: fire-and-forget, FIFO per peer
- /health and /state for inspection

    ┌──────────┐  POST /<kind>   ┌────────┐  decode   ┌─────────┐  one thread  ┌─────────┐
    │   peer   │ ──────────────> │ FastAPI│ ────────> │ mailbox │ ───────────> │ handler │
    └──────────┘   (always ack)  └────────┘           └─────────┘              └─────────┘
                                                                                    │
                            per-peer outboxes <── send_to / broadcast ──────────────┘

Two messages handed to send_to for the same peer are delivered to that
peer's mailbox in the same order.
"""

import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from starlette.concurrency import run_in_threadpool

from coordination.config import NodeAddress
from coordination.event_log import EventLogger, NodeLog, quiet_access_log
from coordination.messages import ENDPOINTS, Message, MessageDecodeError, decode
from coordination.transport import TransportError

_STOP = object()


class NodeRuntime:
    """
    Base class for protocol nodes.

    Subclasses register one handler per message kind they understand with
    ``register_handler`` and keep their state under ``self.state_lock``,
    calling ``self.state_lock.notify_all()`` after every mutation so that
    waits in the driving thread re-check their condition.

    Usage:
        node = LamportNode(address, peers, transport, event_log)
        node.start()
        node.enter_critical_section("A")
    """

    def __init__(
        self,
        address: NodeAddress,
        peers: List[NodeAddress],
        transport,
        event_log: EventLogger,
    ):
        """
        Args:
            address: This node's id, host and port
            peers: Every other node (self is filtered out)
            transport: Anything with send(address, message), e.g. HttpTransport
            event_log: Shared event sink for the run
        """
        self.address = address
        self.node_id = address.node_id
        self.peers = [p for p in peers if p.node_id != self.node_id]
        self.peer_ids = frozenset(p.node_id for p in self.peers)
        self.transport = transport
        self.log = NodeLog(event_log, self.node_id)

        self.state_lock = threading.Condition()
        self.stopping = False

        self.handlers: Dict[str, Callable[[Message], None]] = {}
        self.mailbox: "queue.Queue[Any]" = queue.Queue()
        self.dispatcher: Optional[threading.Thread] = None

        self.outbox_lock = threading.Lock()
        self.outboxes: Dict[int, ThreadPoolExecutor] = {}
        self.outbox_closed = False

        self.server: Optional[uvicorn.Server] = None
        self.server_thread: Optional[threading.Thread] = None

        self.app = FastAPI(title=f"Coordination Node {self.node_id}")
        self._add_routes(self.app)

    # ========================
    # Lifecycle
    # ========================

    def start(self, serve_http: bool = True, startup_timeout: float = 5.0):
        """Start the dispatcher and (optionally) the HTTP endpoint."""
        self.dispatcher = threading.Thread(
            target=self._dispatch_loop, name=f"node-{self.node_id}-mailbox", daemon=True
        )
        self.dispatcher.start()

        if serve_http:
            quiet_access_log()
            config = uvicorn.Config(
                self.app, host=self.address.host, port=self.address.port, log_level="warning"
            )
            self.server = uvicorn.Server(config)
            self.server_thread = threading.Thread(
                target=self.server.run, name=f"node-{self.node_id}-http", daemon=True
            )
            self.server_thread.start()

            deadline = time.time() + startup_timeout
            while not self.server.started and time.time() < deadline:
                time.sleep(0.05)
            if not self.server.started:
                self.log(f"HTTP server failed to start on {self.address.url}")
            else:
                self.log(f"HTTP server listening on {self.address.url}")

    def stop(self):
        """Stop serving, drain the dispatcher and wake any blocked waits."""
        with self.state_lock:
            self.stopping = True
            self.state_lock.notify_all()
        if self.server is not None:
            self.server.should_exit = True
        self.mailbox.put(_STOP)
        if self.dispatcher is not None:
            self.dispatcher.join(timeout=5)
        if self.server_thread is not None:
            self.server_thread.join(timeout=5)
        self.close_outbox()

    # ========================
    # Inbound
    # ========================

    def register_handler(self, kind: str, handler: Callable[[Message], None]):
        self.handlers[kind] = handler

    def deliver(self, kind: str, payload) -> bool:
        """
        Decode a payload received for ``kind`` and queue it for its handler.

        Malformed payloads are logged and dropped; returns False for them.
        The caller acknowledges either way.
        """
        try:
            message = decode(kind, payload)
        except MessageDecodeError as e:
            self.log(f"Bad {kind} payload: {_preview(payload)} ({e})")
            return False
        if kind not in self.handlers:
            self.log(f"Ignoring {kind.upper()} from {message.sender}: not handled by this node")
            return False
        self.mailbox.put(message)
        return True

    def _dispatch_loop(self):
        """Run handlers one message at a time, in arrival order."""
        while True:
            message = self.mailbox.get()
            if message is _STOP:
                break
            self.log(f"Received {message.kind.upper()} {message.describe()}")
            try:
                self.handlers[message.kind](message)
            except Exception as e:
                self.log(f"Handler for {message.kind.upper()} failed: {e!r}")

    # ========================
    # Outbound
    # ========================

    def send_to(self, peer: NodeAddress, message: Message):
        """Fire-and-forget: failures are logged, never raised or retried."""
        try:
            self._outbox_for(peer.node_id).submit(self._send, peer, message)
        except RuntimeError:
            # outbox already shut down
            self.log(f"Dropping {message.kind.upper()} to {peer.node_id}: node stopped")

    def _outbox_for(self, node_id: int) -> ThreadPoolExecutor:
        with self.outbox_lock:
            if self.outbox_closed:
                raise RuntimeError("outbox closed")
            outbox = self.outboxes.get(node_id)
            if outbox is None:
                outbox = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"node-{self.node_id}-to-{node_id}"
                )
                self.outboxes[node_id] = outbox
            return outbox

    def close_outbox(self):
        """Refuse new sends and wait for the queued ones to finish."""
        with self.outbox_lock:
            self.outbox_closed = True
            outboxes = list(self.outboxes.values())
        for outbox in outboxes:
            outbox.shutdown(wait=True)

    def broadcast(self, message: Message):
        for peer in self.peers:
            self.send_to(peer, message)

    def peer(self, node_id: int) -> Optional[NodeAddress]:
        for p in self.peers:
            if p.node_id == node_id:
                return p
        return None

    def _from_peer(self, message: Message) -> bool:
        """False (and logged) when the sender is not in this node's topology."""
        if message.sender in self.peer_ids:
            return True
        self.log(f"{message.kind.upper()} from unknown node {message.sender}; ignoring")
        return False

    def _send(self, peer: NodeAddress, message: Message):
        try:
            self.transport.send(peer, message)
        except TransportError as e:
            self.log(f"Error sending {message.kind.upper()} to {peer.node_id}: {e}")

    # ========================
    # API Endpoints
    # ========================

    def _add_routes(self, app: FastAPI):
        """Protocol endpoints plus /health and /state. Subclasses extend this."""
        for kind, path in ENDPOINTS.items():
            app.add_api_route(path, self._endpoint_for(kind), methods=["POST"])

        @app.get("/health")
        def health():
            return {"status": "ok", "node_id": self.node_id}

        @app.get("/state")
        def state():
            return self.snapshot()

    def _endpoint_for(self, kind: str):
        async def receive(request: Request):
            body = await request.body()
            await run_in_threadpool(self.deliver, kind, body)
            return {"status": "ok", "node_id": self.node_id}

        receive.__name__ = f"receive_{kind}"
        return receive

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready view of this node's protocol state."""
        return {"node_id": self.node_id, "peers": [p.node_id for p in self.peers]}


def _preview(payload, limit: int = 120) -> str:
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    text = str(payload)
    return text if len(text) <= limit else text[:limit] + "..."
