"""
Cluster configuration: topology, fault assignment and protocol timings.

Topology and faults are fixed when a process starts. Values come from, in
increasing precedence: the defaults below, environment variables, a YAML or
JSON config file, and CLI flags.

Example config file:

    nodes: "0:8000,1:8001,2:8002"     # or a list of {id, host, port}
    faulty: [2]
    timings:
      decision_timeout: 1.5
      admission_timeout: 6.0
"""

import json
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import yaml

DEFAULT_HOST = os.environ.get("COORD_HOST", "127.0.0.1")
DEFAULT_LOG_PATH = os.environ.get("COORD_LOG_PATH")

# Scenario A: commander 0, honest lieutenant 1, faulty lieutenant 2
BYZANTINE_NODES = "0:8000,1:8001,2:8002"
BYZANTINE_FAULTY = frozenset({2})
COMMANDER_ID = 0

# Scenario B: four nodes each requesting A then B
LAMPORT_NODES = "0:8000,1:8001,2:8002,3:8003"
LAMPORT_RESOURCES = ("A", "B")


class ConfigError(ValueError):
    """Invalid topology string or config file."""


@dataclass(frozen=True)
class NodeAddress:
    node_id: int
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


def parse_nodes(spec: str, host: str = DEFAULT_HOST) -> List[NodeAddress]:
    """
    Parse a topology string: comma separated ``id:port`` or ``id:host:port``.

    >>> parse_nodes("0:8000,1:8001")
    [NodeAddress(node_id=0, host='127.0.0.1', port=8000), NodeAddress(node_id=1, host='127.0.0.1', port=8001)]
    """
    nodes = []
    for pair in spec.split(","):
        pair = pair.strip()
        if not pair:
            continue
        parts = pair.split(":")
        try:
            if len(parts) == 2:
                nodes.append(NodeAddress(int(parts[0]), host, int(parts[1])))
            elif len(parts) == 3:
                nodes.append(NodeAddress(int(parts[0]), parts[1], int(parts[2])))
            else:
                raise ValueError(pair)
        except ValueError:
            raise ConfigError(f"bad node entry {pair!r}, expected id:port or id:host:port")
    return validate_nodes(nodes)


def parse_ids(spec: str) -> FrozenSet[int]:
    """Parse a comma separated id list such as ``"2"`` or ``"1,2"``."""
    try:
        return frozenset(int(part) for part in spec.split(",") if part.strip())
    except ValueError:
        raise ConfigError(f"bad node id list {spec!r}")


def validate_nodes(nodes: List[NodeAddress]) -> List[NodeAddress]:
    if not nodes:
        raise ConfigError("topology has no nodes")
    ids = [n.node_id for n in nodes]
    if len(set(ids)) != len(ids):
        raise ConfigError(f"duplicate node ids in topology: {ids}")
    if any(i < 0 for i in ids):
        raise ConfigError(f"node ids must be non-negative: {ids}")
    return nodes


@dataclass(frozen=True)
class Timings:
    # Byzantine: how long decide() waits for the round to settle
    decision_timeout: float = 1.5
    # Lamport: admission deadline and simulated critical-section hold
    admission_timeout: float = 6.0
    critical_section_duration: float = 0.5
    # Transport
    send_timeout: float = 2.0
    # Scenario driver pacing
    startup_delay: float = 0.3
    start_delay: float = 1.0
    stagger: float = 1.0
    pause: float = 0.2
    pause_step: float = 0.1
    settle: float = 1.0


@dataclass(frozen=True)
class ClusterConfig:
    nodes: List[NodeAddress]
    faulty: FrozenSet[int] = frozenset()
    commander: int = COMMANDER_ID
    resources: tuple = LAMPORT_RESOURCES
    broadcast_release: bool = False
    log_path: Optional[str] = DEFAULT_LOG_PATH
    timings: Timings = field(default_factory=Timings)

    @classmethod
    def byzantine(cls, **overrides) -> "ClusterConfig":
        """Default Scenario A topology."""
        base = cls(nodes=parse_nodes(BYZANTINE_NODES), faulty=BYZANTINE_FAULTY)
        return replace(base, **overrides)

    @classmethod
    def lamport(cls, **overrides) -> "ClusterConfig":
        """Default Scenario B topology."""
        return replace(cls(nodes=parse_nodes(LAMPORT_NODES)), **overrides)

    @classmethod
    def from_file(cls, path: str, base: Optional["ClusterConfig"] = None) -> "ClusterConfig":
        """Load config from JSON or YAML file, on top of ``base`` (Scenario A defaults)."""
        with open(path, "r") as f:
            try:
                if path.endswith(".yaml") or path.endswith(".yml"):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                raise ConfigError(f"{path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a mapping at top level")
        return (base or cls.byzantine()).merge(data)

    def merge(self, data: Dict[str, Any]) -> "ClusterConfig":
        """Return a copy with the keys present in ``data`` applied."""
        changes: Dict[str, Any] = {}
        if "nodes" in data:
            changes["nodes"] = _nodes_from(data["nodes"])
        if "faulty" in data:
            changes["faulty"] = _ids_from("faulty", data["faulty"])
        if "commander" in data:
            changes["commander"] = _int_from("commander", data["commander"])
        if "resources" in data:
            changes["resources"] = _resources_from(data["resources"])
        if "broadcast_release" in data:
            changes["broadcast_release"] = bool(data["broadcast_release"])
        if "log_path" in data:
            changes["log_path"] = data["log_path"]
        if "timings" in data:
            changes["timings"] = _timings_from(self.timings, data["timings"])
        return replace(self, **changes)

    def check_byzantine(self) -> "ClusterConfig":
        """Raise ConfigError unless the commander and faulty ids are in the topology."""
        ids = set(self.node_ids)
        if self.commander not in ids:
            raise ConfigError(f"commander {self.commander} is not in the topology {sorted(ids)}")
        stray = self.faulty - ids
        if stray:
            raise ConfigError(f"faulty node ids {sorted(stray)} are not in the topology {sorted(ids)}")
        return self

    def node(self, node_id: int) -> NodeAddress:
        for n in self.nodes:
            if n.node_id == node_id:
                return n
        raise ConfigError(f"node {node_id} is not in the topology")

    def peers_of(self, node_id: int) -> List[NodeAddress]:
        """Every other node, in topology order."""
        return [n for n in self.nodes if n.node_id != node_id]

    @property
    def node_ids(self) -> List[int]:
        return [n.node_id for n in self.nodes]


def _nodes_from(value: Any) -> List[NodeAddress]:
    if isinstance(value, str):
        return parse_nodes(value)
    if not isinstance(value, Iterable):
        raise ConfigError(f"bad nodes entry {value!r}")
    nodes = []
    for entry in value:
        try:
            nodes.append(NodeAddress(int(entry["id"]), entry.get("host", DEFAULT_HOST), int(entry["port"])))
        except (KeyError, TypeError, ValueError):
            raise ConfigError(f"bad node entry {entry!r}, expected {{id, host, port}}")
    return validate_nodes(nodes)


def _int_from(name: str, value: Any) -> int:
    if not isinstance(value, bool):
        try:
            return int(value)
        except (TypeError, ValueError):
            pass
    raise ConfigError(f"{name} must be an integer, got {value!r}")


def _ids_from(name: str, value: Any) -> FrozenSet[int]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return parse_ids(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return frozenset({value})
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ConfigError(f"{name} must be a list of node ids, got {value!r}")
    return frozenset(_int_from(name, v) for v in value)


def _resources_from(value: Any) -> tuple:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"resources must be a list of names, got {value!r}")
    resources = tuple(str(r).strip() for r in value if str(r).strip())
    if not resources:
        raise ConfigError("resources must name at least one resource")
    return resources


def _timings_from(base: Timings, value: Any) -> Timings:
    if not isinstance(value, dict):
        raise ConfigError(f"timings must be a mapping, got {value!r}")
    known = {f.name for f in fields(Timings)}
    unknown = set(value) - known
    if unknown:
        raise ConfigError(f"unknown timing keys: {sorted(unknown)}")
    for name, seconds in value.items():
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
            raise ConfigError(f"timing {name} must be a number, got {seconds!r}")
        if seconds < 0:
            raise ConfigError(f"timing {name} must not be negative, got {seconds!r}")
    return replace(base, **value)
