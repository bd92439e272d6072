"""
Command line entry point.

Usage:
    # Scenario A: 3 nodes on ports 8000-8002, node 2 faulty
    coordination-lab byzantine

    # Scenario B: 4 nodes on ports 8000-8003, each requesting A then B
    coordination-lab lamport --log-file lamport.log

    # One node per process, driven over HTTP
    coordination-lab serve --protocol byzantine --id 1 --nodes 0:8000,1:8001,2:8002 --faulty 2
    curl -X POST localhost:8000/command -d '{"value": "ATTACK"}' -H 'Content-Type: application/json'
    curl localhost:8001/decision
"""

import argparse
import sys
from typing import Any, Dict, List, Optional

import uvicorn

from coordination.byzantine import ByzantineNode
from coordination.config import ClusterConfig, ConfigError
from coordination.event_log import EventLogger, quiet_access_log
from coordination.lamport import LamportNode
from coordination.messages import ATTACK, RETREAT
from coordination.scenarios import run_byzantine, run_lamport
from coordination.transport import HttpTransport


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coordination-lab",
        description="Byzantine agreement and Lamport mutual exclusion over HTTP nodes",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def common(p: argparse.ArgumentParser):
        p.add_argument("--config", type=str, default=None, help="YAML or JSON cluster config")
        p.add_argument("--nodes", type=str, default=None, help="id:port,id:port (or id:host:port)")
        p.add_argument("--log-file", type=str, default=None, help="Shared append-only event log")

    byz = sub.add_parser("byzantine", help="Run Scenario A (one-round Byzantine agreement)")
    common(byz)
    byz.add_argument("--faulty", type=str, default=None, help="Comma separated faulty node ids")
    byz.add_argument("--commander", type=int, default=None)
    byz.add_argument("--value", type=str, default=ATTACK, choices=[ATTACK, RETREAT])
    byz.add_argument("--local", action="store_true", help="Deliver in-process instead of over HTTP")

    lam = sub.add_parser("lamport", help="Run Scenario B (Lamport mutual exclusion)")
    common(lam)
    lam.add_argument("--resources", type=str, default=None, help="Comma separated, e.g. A,B")
    lam.add_argument("--release", action="store_true", help="Broadcast RELEASE on critical-section exit")
    lam.add_argument("--local", action="store_true", help="Deliver in-process instead of over HTTP")

    serve = sub.add_parser("serve", help="Run a single node in this process")
    common(serve)
    serve.add_argument("--protocol", required=True, choices=["byzantine", "lamport"])
    serve.add_argument("--id", type=int, required=True)
    serve.add_argument("--faulty", type=str, default=None, help="Comma separated faulty node ids")
    serve.add_argument("--release", action="store_true", help="Broadcast RELEASE on critical-section exit")
    return parser


def load_config(args: argparse.Namespace, base: ClusterConfig) -> ClusterConfig:
    """Defaults, then --config file, then individual flags."""
    config = ClusterConfig.from_file(args.config, base) if args.config else base
    overrides: Dict[str, Any] = {}
    if args.nodes:
        overrides["nodes"] = args.nodes
    if args.log_file:
        overrides["log_path"] = args.log_file
    if getattr(args, "faulty", None) is not None:
        overrides["faulty"] = args.faulty
    if getattr(args, "commander", None) is not None:
        overrides["commander"] = args.commander
    if getattr(args, "resources", None):
        overrides["resources"] = args.resources
    if getattr(args, "release", False):
        overrides["broadcast_release"] = True
    return config.merge(overrides)


def cmd_byzantine(config: ClusterConfig, args: argparse.Namespace) -> int:
    print(f"=== BYZANTINE AGREEMENT: {len(config.nodes)} nodes, faulty={sorted(config.faulty)} ===")
    result = run_byzantine(config, value=args.value, local=args.local)
    print("-" * 45)
    for node_id, decision in result.decisions.items():
        marker = " (faulty)" if node_id in config.faulty else ""
        print(f"   [Node {node_id}]{marker} decided {decision}  tally={result.tallies[node_id]}")
    honest = [d for n, d in result.decisions.items() if n not in config.faulty]
    return 0 if honest and all(d == args.value for d in honest) else 1


def cmd_lamport(config: ClusterConfig, args: argparse.Namespace) -> int:
    print(f"=== LAMPORT MUTUAL EXCLUSION: {len(config.nodes)} nodes, resources={list(config.resources)} ===")
    result = run_lamport(config, local=args.local)
    print("-" * 45)
    for node_id, outcome in result.admitted.items():
        summary = ", ".join(f"{r}={'entered' if ok else 'timed out'}" for r, ok in outcome.items())
        print(f"   [Node {node_id}] {summary}")
    if result.violations:
        for first, second in result.violations:
            print(f"   OVERLAP on {first.resource}: node {first.node_id} and node {second.node_id}")
        return 1
    print("   No overlapping critical sections.")
    return 0


def cmd_serve(config: ClusterConfig, args: argparse.Namespace) -> int:
    address = config.node(args.id)
    event_log = EventLogger(config.log_path)
    transport = HttpTransport(timeout=config.timings.send_timeout)
    if args.protocol == "byzantine":
        node = ByzantineNode(
            address, config.peers_of(args.id), transport, event_log,
            is_faulty=args.id in config.faulty,
            decision_timeout=config.timings.decision_timeout,
        )
    else:
        node = LamportNode(
            address, config.peers_of(args.id), transport, event_log,
            admission_timeout=config.timings.admission_timeout,
            critical_section_duration=config.timings.critical_section_duration,
            broadcast_release=config.broadcast_release,
        )

    print(f"Starting {args.protocol} node {args.id} on {address.url}")
    node.start(serve_http=False)
    quiet_access_log()
    try:
        uvicorn.run(node.app, host=address.host, port=address.port, log_level="warning")
    finally:
        node.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    lamport = args.command == "lamport" or getattr(args, "protocol", None) == "lamport"
    base = ClusterConfig.lamport() if lamport else ClusterConfig.byzantine()
    try:
        config = load_config(args, base)
        if args.command == "serve":
            config.node(args.id)
        if not lamport:
            config.check_byzantine()
    except (ConfigError, OSError) as e:
        parser.error(str(e))

    if args.command == "byzantine":
        return cmd_byzantine(config, args)
    if args.command == "lamport":
        return cmd_lamport(config, args)
    return cmd_serve(config, args)


if __name__ == "__main__":
    sys.exit(main())
