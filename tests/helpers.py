import threading
import time
from typing import List

from coordination.config import NodeAddress
from coordination.event_log import EventLogger
from coordination.transport import TransportError


class RecordingTransport:
    """Keeps every sent message instead of delivering it."""

    def __init__(self, fail_for=()):
        self.lock = threading.Lock()
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, address, message):
        if address.node_id in self.fail_for:
            raise TransportError(f"node {address.node_id} refused connection")
        with self.lock:
            self.sent.append((address.node_id, message))

    def messages(self, kind=None, to=None):
        with self.lock:
            return [
                msg for dest, msg in self.sent
                if (kind is None or msg.kind == kind) and (to is None or dest == to)
            ]


def addresses(count: int, base_port: int = 9100) -> List[NodeAddress]:
    return [NodeAddress(i, "127.0.0.1", base_port + i) for i in range(count)]


def quiet_log() -> EventLogger:
    return EventLogger(echo=False, keep_records=True)


def log_texts(event_log: EventLogger, node_id=None) -> List[str]:
    return [r.text for r in event_log.snapshot() if node_id is None or r.node_id == node_id]


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
