"""
Event Log - the append-only, timestamped sink shared by every node in a run.

One line per event:

    [1760650000.123] [Node 1] Received ORDER from commander 0: ATTACK

Lines go to stdout and, when a path is configured, to the shared log file.
"""

import logging
import re
import sys
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

# ========================
# Logging Configuration
# ========================

class EndpointFilter(logging.Filter):
    """Filter to suppress uvicorn access logs for protocol and internal endpoints."""

    HIDDEN = ("POST /order", "POST /forward", "POST /request", "POST /reply",
              "POST /release", "GET /health", "GET /state")

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not any(endpoint in msg for endpoint in self.HIDDEN)


def quiet_access_log():
    """Apply EndpointFilter to the uvicorn access logger (idempotent)."""
    access_logger = logging.getLogger("uvicorn.access")
    if not any(isinstance(f, EndpointFilter) for f in access_logger.filters):
        access_logger.addFilter(EndpointFilter())


# ========================
# Event Logger
# ========================

LINE_PATTERN = re.compile(r"^\[(?P<time>[0-9.]+)\] \[Node (?P<node>\d+)\] (?P<text>.*)$")


@dataclass(frozen=True)
class LogRecord:
    time: float
    node_id: int
    text: str

    def format(self) -> str:
        return f"[{self.time:.3f}] [Node {self.node_id}] {self.text}"

    @classmethod
    def parse(cls, line: str) -> Optional["LogRecord"]:
        """Parse one log line; returns None for lines not in the event format."""
        match = LINE_PATTERN.match(line.rstrip("\n"))
        if not match:
            return None
        return cls(float(match["time"]), int(match["node"]), match["text"])


class EventLogger:
    """
    Thread-safe event sink shared by all nodes of a run.

    Args:
        path: Shared log file to append to, if any
        echo: Print lines to stdout
        keep_records: Also keep every record in memory for ``snapshot()``;
                      scenario runs need this, long-running nodes do not
    """

    def __init__(self, path: Optional[str] = None, echo: bool = True, keep_records: bool = False):
        self.path = path
        self.echo = echo
        self.keep_records = keep_records
        self.lock = threading.Lock()
        self.records: List[LogRecord] = []

    def log(self, node_id: int, text: str, echo: bool = True) -> LogRecord:
        """Append one event for ``node_id``; ``echo=False`` keeps it off stdout."""
        with self.lock:
            record = LogRecord(time.time(), node_id, text)
            if self.keep_records:
                self.records.append(record)
            line = record.format()
            if self.echo and echo:
                print(line)
                sys.stdout.flush()
            if self.path:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            return record

    def snapshot(self) -> List[LogRecord]:
        """Records kept so far (always empty unless keep_records is set)."""
        with self.lock:
            return list(self.records)

    @staticmethod
    def read(path: str) -> List[LogRecord]:
        """Load the event records from a log file written by EventLogger."""
        with open(path, "r", encoding="utf-8") as f:
            parsed = (LogRecord.parse(line) for line in f)
            return [record for record in parsed if record is not None]


class NodeLog:
    """An EventLogger bound to one node id."""

    def __init__(self, event_log: EventLogger, node_id: int):
        self.event_log = event_log
        self.node_id = node_id

    def __call__(self, text: str, echo: bool = True) -> LogRecord:
        return self.event_log.log(self.node_id, text, echo=echo)
