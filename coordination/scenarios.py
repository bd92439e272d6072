"""
Scenario Driver - builds a fixed cluster and issues the top-level calls.

Scenario A (Byzantine): commander 0 sends ATTACK to lieutenants 1 and 2,
node 2 is faulty. Every lieutenant then decides.

Scenario B (Lamport): four nodes start staggered and each enters the
critical section for resource A, then for resource B. The shared event log
is checked afterwards: at no point may two nodes hold the same resource.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from coordination.byzantine import ByzantineNode
from coordination.config import ClusterConfig
from coordination.event_log import EventLogger, LogRecord
from coordination.lamport import LamportNode
from coordination.messages import ATTACK
from coordination.transport import HttpTransport, LocalTransport

ENTER_PREFIX = "Entering Critical Section for resource="
EXIT_PREFIX = "Exiting Critical Section for resource="


# ========================
# Cluster Setup
# ========================

def make_transport(config: ClusterConfig, local: bool):
    return LocalTransport() if local else HttpTransport(timeout=config.timings.send_timeout)


def start_cluster(config: ClusterConfig, node_cls, event_log: EventLogger, local: bool = False,
                  node_kwargs: Optional[Dict[int, dict]] = None) -> Dict[int, object]:
    """Construct one node per topology entry and start them all."""
    transport = make_transport(config, local)
    nodes = {}
    for address in config.nodes:
        node = node_cls(
            address,
            config.peers_of(address.node_id),
            transport,
            event_log,
            **(node_kwargs or {}).get(address.node_id, {}),
        )
        if local:
            transport.register(node)
        nodes[address.node_id] = node

    for node in nodes.values():
        node.start(serve_http=not local)
    return nodes


def stop_cluster(nodes: Dict[int, object]):
    for node in nodes.values():
        node.stop()


# ========================
# Scenario A: Byzantine Agreement
# ========================

@dataclass
class ByzantineResult:
    decisions: Dict[int, Optional[str]]
    tallies: Dict[int, Dict[str, int]]


def run_byzantine(config: ClusterConfig, value: str = ATTACK, local: bool = False,
                  event_log: Optional[EventLogger] = None) -> ByzantineResult:
    config.check_byzantine()
    event_log = event_log or EventLogger(config.log_path, keep_records=True)
    timings = config.timings
    node_kwargs = {
        node_id: {
            "is_faulty": node_id in config.faulty,
            "decision_timeout": timings.decision_timeout,
        }
        for node_id in config.node_ids
    }
    nodes = start_cluster(config, ByzantineNode, event_log, local=local, node_kwargs=node_kwargs)
    try:
        time.sleep(timings.startup_delay)

        commander = nodes[config.commander]
        commander.commander_send({node_id: value for node_id in config.node_ids})

        decisions, tallies = {}, {}
        for node_id, node in nodes.items():
            if node_id == config.commander:
                continue
            decisions[node_id] = node.decide()
            tallies[node_id] = dict(node.tally())
        return ByzantineResult(decisions, tallies)
    finally:
        stop_cluster(nodes)


# ========================
# Scenario B: Lamport Mutual Exclusion
# ========================

@dataclass
class Interval:
    resource: str
    node_id: int
    entered: float
    exited: Optional[float] = None


@dataclass
class LamportResult:
    admitted: Dict[int, Dict[str, bool]]
    intervals: List[Interval] = field(default_factory=list)
    violations: List[Tuple[Interval, Interval]] = field(default_factory=list)


def run_lamport(config: ClusterConfig, local: bool = False,
                event_log: Optional[EventLogger] = None) -> LamportResult:
    event_log = event_log or EventLogger(config.log_path, keep_records=True)
    timings = config.timings
    node_kwargs = {
        node_id: {
            "admission_timeout": timings.admission_timeout,
            "critical_section_duration": timings.critical_section_duration,
            "broadcast_release": config.broadcast_release,
        }
        for node_id in config.node_ids
    }
    nodes = start_cluster(config, LamportNode, event_log, local=local, node_kwargs=node_kwargs)
    admitted: Dict[int, Dict[str, bool]] = {node_id: {} for node_id in nodes}

    def drive(index: int, node: LamportNode):
        time.sleep(timings.start_delay + timings.stagger * index)
        for i, resource in enumerate(config.resources):
            if i:
                time.sleep(timings.pause + timings.pause_step * index)
            admitted[node.node_id][resource] = node.enter_critical_section(resource)

    threads = [
        threading.Thread(target=drive, args=(index, node), name=f"driver-{node.node_id}")
        for index, node in enumerate(nodes.values())
    ]
    try:
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        time.sleep(timings.settle)
    finally:
        stop_cluster(nodes)

    records = event_log.snapshot()
    return LamportResult(admitted, critical_section_intervals(records), check_mutual_exclusion(records))


# ========================
# Log Analysis
# ========================

def critical_section_intervals(records: List[LogRecord]) -> List[Interval]:
    """Entry/exit intervals found in the log, in entry order."""
    intervals: List[Interval] = []
    open_by_node: Dict[Tuple[int, str], Interval] = {}
    for record in records:
        if record.text.startswith(ENTER_PREFIX):
            resource = record.text[len(ENTER_PREFIX):]
            interval = Interval(resource, record.node_id, record.time)
            open_by_node[(record.node_id, resource)] = interval
            intervals.append(interval)
        elif record.text.startswith(EXIT_PREFIX):
            resource = record.text[len(EXIT_PREFIX):]
            interval = open_by_node.pop((record.node_id, resource), None)
            if interval is not None:
                interval.exited = record.time
    return intervals


def check_mutual_exclusion(records: List[LogRecord]) -> List[Tuple[Interval, Interval]]:
    """
    Pairs of critical-section intervals that overlap on the same resource.

    An interval with no exit record is treated as still open.
    """
    intervals = critical_section_intervals(records)
    violations = []
    for i, first in enumerate(intervals):
        for second in intervals[i + 1:]:
            if first.resource == second.resource and _overlaps(first, second):
                violations.append((first, second))
    return violations


def _overlaps(a: Interval, b: Interval) -> bool:
    a_end = a.exited if a.exited is not None else float("inf")
    b_end = b.exited if b.exited is not None else float("inf")
    return a.entered < b_end and b.entered < a_end
