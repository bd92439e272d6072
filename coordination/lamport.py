"""
Lamport Mutual Exclusion - logical clocks and a per-resource request queue.

Every request is stamped with the requester's Lamport clock. All nodes order
pending requests by (timestamp, node_id), so concurrent requesters see the
same global order. A node enters the critical section for a resource once its
own request heads its queue and every peer has replied to that request.

    IDLE ──broadcast_request──> REQUESTING ──can_enter──> IN_CRITICAL_SECTION ──exit──> IDLE
                                     │
                                     └──admission deadline──> TIMED_OUT

Replies are sent immediately, even when the replier has an earlier pending
request of its own. This is safe because sends to one peer are FIFO and a
REQUEST is handed to the outboxes before the lock is released: a REPLY from
node i always arrives after any earlier REQUEST of i.

A timed-out request stays in every queue. Replies still owed to it are
discarded when they arrive so they cannot count towards a later request.
"""

import heapq
import time
from collections import Counter
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from fastapi import FastAPI

from coordination.messages import ReleaseMessage, ReplyMessage, RequestMessage
from coordination.node import NodeRuntime

Entry = Tuple[int, int]  # (timestamp, node_id)


class LamportClock:
    """Logical clock: tick() for local events, update() on receive."""

    def __init__(self, value: int = 0):
        self.value = value

    def tick(self) -> int:
        self.value += 1
        return self.value

    def update(self, received: int) -> int:
        """clock = max(clock, received) + 1"""
        self.value = max(self.value, received) + 1
        return self.value


class RequestQueue:
    """Min-heap of (timestamp, node_id); node_id breaks timestamp ties."""

    def __init__(self):
        self.heap: List[Entry] = []

    def push(self, entry: Entry):
        heapq.heappush(self.heap, entry)

    def peek(self) -> Optional[Entry]:
        return self.heap[0] if self.heap else None

    def pop(self) -> Entry:
        return heapq.heappop(self.heap)

    def remove(self, node_id: int) -> int:
        """Drop every entry of ``node_id`` wherever it sits; returns how many."""
        kept = [entry for entry in self.heap if entry[1] != node_id]
        removed = len(self.heap) - len(kept)
        if removed:
            heapq.heapify(kept)
            self.heap = kept
        return removed

    def entries(self) -> List[Entry]:
        """Entries in priority order."""
        return sorted(self.heap)

    def __len__(self):
        return len(self.heap)


class LamportPhase(Enum):
    IDLE = "IDLE"
    REQUESTING = "REQUESTING"
    IN_CRITICAL_SECTION = "IN_CRITICAL_SECTION"
    TIMED_OUT = "TIMED_OUT"


class LamportNode(NodeRuntime):
    def __init__(
        self,
        *args,
        admission_timeout: float = 6.0,
        critical_section_duration: float = 0.5,
        broadcast_release: bool = False,
        **kwargs,
    ):
        self.admission_timeout = admission_timeout
        self.critical_section_duration = critical_section_duration
        self.broadcast_release = broadcast_release

        self.clock = LamportClock()
        self.request_queues: Dict[str, RequestQueue] = {}
        self.reply_sets: Dict[str, Set[int]] = {}
        self.phases: Dict[str, LamportPhase] = {}
        # replies still owed to timed-out requests, per resource and sender
        self.late_replies: Dict[str, Counter] = {}

        super().__init__(*args, **kwargs)
        self.register_handler(RequestMessage.kind, self.on_request)
        self.register_handler(ReplyMessage.kind, self.on_reply)
        self.register_handler(ReleaseMessage.kind, self.on_release)

    # Callers hold state_lock for the helpers below.

    def _queue(self, resource: str) -> RequestQueue:
        return self.request_queues.setdefault(resource, RequestQueue())

    def _replies(self, resource: str) -> Set[int]:
        return self.reply_sets.setdefault(resource, set())

    def _can_enter(self, resource: str) -> bool:
        head = self._queue(resource).peek()
        if head is None or head[1] != self.node_id:
            return False
        return self.peer_ids <= self._replies(resource)

    # ========================
    # Requesting
    # ========================

    def broadcast_request(self, resource: str) -> int:
        """Queue our own request for ``resource`` and send it to every peer."""
        with self.state_lock:
            ts = self.clock.tick()
            queue = self._queue(resource)
            # a previous timed-out request of ours must not stand in for this one
            queue.remove(self.node_id)
            queue.push((ts, self.node_id))
            self._replies(resource).clear()
            self.phases[resource] = LamportPhase.REQUESTING

            self.log(f"Broadcasting REQUEST ts={ts} for resource={resource}")
            self.broadcast(RequestMessage(sender=self.node_id, timestamp=ts, resource=resource))
            self.state_lock.notify_all()
        return ts

    def can_enter(self, resource: str) -> bool:
        with self.state_lock:
            return self._can_enter(resource)

    def enter_critical_section(
        self,
        resource: str,
        timeout: Optional[float] = None,
        work: Optional[Callable[[], None]] = None,
    ) -> bool:
        """
        Request ``resource``, wait for admission, run the critical section.

        Args:
            resource: Resource name
            timeout: Admission deadline in seconds (default: admission_timeout)
            work: Runs inside the critical section; defaults to holding it
                  for critical_section_duration

        Returns True if the critical section ran, False on admission timeout.
        """
        timeout = self.admission_timeout if timeout is None else timeout
        self.broadcast_request(resource)

        with self.state_lock:
            admitted = self.state_lock.wait_for(
                lambda: self.stopping or self._can_enter(resource), timeout=timeout
            )
            admitted = admitted and not self.stopping and self._can_enter(resource)
            if admitted:
                self.phases[resource] = LamportPhase.IN_CRITICAL_SECTION
            else:
                self.phases[resource] = LamportPhase.TIMED_OUT
                replied = self._replies(resource)
                replies = len(replied)
                self.late_replies.setdefault(resource, Counter()).update(self.peer_ids - replied)

        if not admitted:
            self.log(f"Timeout waiting for replies for resource={resource} "
                     f"({replies}/{len(self.peers)} replies)", echo=False)
            return False

        self.log(f"Entering Critical Section for resource={resource}")
        try:
            if work is not None:
                work()
            else:
                time.sleep(self.critical_section_duration)
        finally:
            self.log(f"Exiting Critical Section for resource={resource}")
            self._exit_critical_section(resource)
        return True

    def _exit_critical_section(self, resource: str):
        with self.state_lock:
            queue = self._queue(resource)
            head = queue.peek()
            if head is not None and head[1] == self.node_id:
                queue.pop()
            else:
                queue.remove(self.node_id)
            self._replies(resource).clear()
            self.phases[resource] = LamportPhase.IDLE
            if self.broadcast_release:
                ts = self.clock.tick()
                self.broadcast(ReleaseMessage(sender=self.node_id, timestamp=ts, resource=resource))
            self.state_lock.notify_all()

    # ========================
    # Handlers
    # ========================

    def on_request(self, msg: RequestMessage):
        if not self._from_peer(msg):
            return
        with self.state_lock:
            self.clock.update(msg.timestamp)
            self._queue(msg.resource).push((msg.timestamp, msg.sender))
            self.state_lock.notify_all()
        self.send_to(self.peer(msg.sender), ReplyMessage(sender=self.node_id, resource=msg.resource))

    def on_reply(self, msg: ReplyMessage):
        if not self._from_peer(msg):
            return
        with self.state_lock:
            owed = self.late_replies.get(msg.resource)
            if owed and owed[msg.sender]:
                owed[msg.sender] -= 1
                return
            self._replies(msg.resource).add(msg.sender)
            self.state_lock.notify_all()

    def on_release(self, msg: ReleaseMessage):
        if not self._from_peer(msg):
            return
        with self.state_lock:
            self.clock.update(msg.timestamp)
            self._queue(msg.resource).remove(msg.sender)
            self.state_lock.notify_all()

    # ========================
    # API Endpoints
    # ========================

    def _add_routes(self, app: FastAPI):
        super()._add_routes(app)

        @app.post("/critical-section/{resource}")
        def critical_section(resource: str):
            entered = self.enter_critical_section(resource)
            return {"node_id": self.node_id, "resource": resource, "entered": entered}

    def snapshot(self):
        with self.state_lock:
            return {
                "node_id": self.node_id,
                "peers": [p.node_id for p in self.peers],
                "clock": self.clock.value,
                "queues": {r: q.entries() for r, q in self.request_queues.items()},
                "replies": {r: sorted(s) for r, s in self.reply_sets.items()},
                "phases": {r: p.value for r, p in self.phases.items()},
            }
