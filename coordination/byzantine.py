"""
Byzantine Agreement - one round of Oral Messages, tolerating one faulty node.

    commander ──ORDER──> every lieutenant
    lieutenant ──FORWARD──> every other node (one relay, no relay of relays)
    lieutenant: decide() = majority(commander's order + every forwarded value)

A faulty node relays the inverse of what it received (ATTACK <-> RETREAT)
but never lies about who it is.

With 3 nodes (commander 0, honest 1, faulty 2) and the commander sending
ATTACK, node 1 tallies {ATTACK: 2, RETREAT: 1} and decides ATTACK.
"""

from collections import Counter
from enum import Enum
from typing import Dict, Mapping, Optional

from fastapi import FastAPI
from pydantic import BaseModel

from coordination.messages import ATTACK, RETREAT, Command, ForwardMessage, OrderMessage
from coordination.node import NodeRuntime

DEFAULT_ORDER = RETREAT


class ByzantinePhase(Enum):
    IDLE = "IDLE"
    AWAITING_ORDER = "AWAITING_ORDER"
    FORWARDING = "FORWARDING"
    DECIDING = "DECIDING"
    DECIDED = "DECIDED"


def invert(value: str) -> str:
    """The value a faulty node relays instead of ``value``."""
    return RETREAT if value == ATTACK else ATTACK


def majority(counts: Mapping[str, int], preferred: Optional[str] = None) -> Optional[str]:
    """
    Value with the highest count.

    Ties go to ``preferred`` (the commander's order) when it is among the
    tied values, then to the lexicographically smallest label.
    """
    if not counts:
        return None
    return min(counts, key=lambda value: (-counts[value], value != preferred, value))


class CommandPayload(BaseModel):
    value: Optional[Command] = None
    orders: Optional[Dict[int, Command]] = None


class ByzantineNode(NodeRuntime):
    def __init__(self, *args, is_faulty: bool = False, decision_timeout: float = 1.5, **kwargs):
        self.is_faulty = is_faulty
        self.decision_timeout = decision_timeout

        self.phase = ByzantinePhase.IDLE
        self.commander_order: Optional[str] = None
        self.commander_id: Optional[int] = None
        self.forwarded: Dict[int, str] = {}
        self.decided: Optional[str] = None

        super().__init__(*args, **kwargs)
        self.register_handler(OrderMessage.kind, self.on_order)
        self.register_handler(ForwardMessage.kind, self.on_forward)

    def start(self, *args, **kwargs):
        super().start(*args, **kwargs)
        with self.state_lock:
            if self.phase == ByzantinePhase.IDLE:
                self.phase = ByzantinePhase.AWAITING_ORDER

    # ========================
    # Commander
    # ========================

    def commander_send(self, order_map: Mapping[int, str]):
        """Send each peer its order (RETREAT for peers missing from the map)."""
        for peer in self.peers:
            value = order_map.get(peer.node_id, DEFAULT_ORDER)
            self.log(f"Sending ORDER {value} to {peer.node_id}")
            self.send_to(peer, OrderMessage(sender=self.node_id, value=value))

    # ========================
    # Lieutenant
    # ========================

    def on_order(self, msg: OrderMessage):
        if not self._from_peer(msg):
            return
        with self.state_lock:
            self.commander_order = msg.value
            self.commander_id = msg.sender
            self.phase = ByzantinePhase.FORWARDING
            self.state_lock.notify_all()
        self.forward_order(msg.value)

    def forward_order(self, value: str):
        to_send = invert(value) if self.is_faulty else value
        with self.state_lock:
            self.forwarded[self.node_id] = to_send
            self.state_lock.notify_all()

        if to_send != value:
            self.log(f"Faulty: relaying {to_send} instead of {value}")
        message = ForwardMessage(sender=self.node_id, value=to_send)
        for peer in self.peers:
            self.log(f"Forwarding {to_send} to {peer.node_id}")
            self.send_to(peer, message)

    def on_forward(self, msg: ForwardMessage):
        if not self._from_peer(msg):
            return
        with self.state_lock:
            self.forwarded[msg.sender] = msg.value
            self.state_lock.notify_all()

    # ========================
    # Decision
    # ========================

    def _round_complete(self) -> bool:
        if self.stopping:
            return True
        if self.commander_order is None:
            return False
        expected = {self.node_id}
        expected.update(p.node_id for p in self.peers if p.node_id != self.commander_id)
        return expected.issubset(self.forwarded)

    def tally(self) -> Counter:
        """One vote for the commander's order plus one per forwarded value."""
        with self.state_lock:
            return self._tally()

    def _tally(self) -> Counter:
        counts = Counter()
        if self.commander_order is not None:
            counts[self.commander_order] += 1
        counts.update(self.forwarded.values())
        return counts

    def decide(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Wait for the round to settle, then return the majority value.

        Returns when every expected relay has arrived or after ``timeout``
        (default: decision_timeout). Without a commander order there is
        nothing to decide: logs it and returns None.
        """
        timeout = self.decision_timeout if timeout is None else timeout
        with self.state_lock:
            if self.phase != ByzantinePhase.DECIDED:
                self.phase = ByzantinePhase.DECIDING
            self.state_lock.wait_for(self._round_complete, timeout=timeout)

            if self.commander_order is None:
                self.phase = ByzantinePhase.AWAITING_ORDER
                counts = None
                decision = None
            else:
                counts = self._tally()
                decision = majority(counts, preferred=self.commander_order)
                self.decided = decision
                self.phase = ByzantinePhase.DECIDED

        if counts is None:
            self.log("No commander order received; cannot decide")
            return None
        self.log(f"FINAL DECISION = {decision} (tally {dict(sorted(counts.items()))})")
        return decision

    # ========================
    # API Endpoints
    # ========================

    def _add_routes(self, app: FastAPI):
        super()._add_routes(app)

        @app.post("/command")
        def command(payload: CommandPayload):
            """Commander: send ``value`` to everyone, or per-node ``orders``."""
            if payload.orders is not None:
                order_map = payload.orders
            else:
                value = payload.value or DEFAULT_ORDER
                order_map = {p.node_id: value for p in self.peers}
            self.commander_send(order_map)
            return {"status": "sent", "node_id": self.node_id, "orders": order_map}

        @app.get("/decision")
        def decision():
            value = self.decide()
            return {"node_id": self.node_id, "decision": value, "tally": dict(self.tally())}

    def snapshot(self):
        with self.state_lock:
            return {
                "node_id": self.node_id,
                "peers": [p.node_id for p in self.peers],
                "is_faulty": self.is_faulty,
                "phase": self.phase.value,
                "commander_order": self.commander_order,
                "forwarded": dict(self.forwarded),
                "decided": self.decided,
            }
