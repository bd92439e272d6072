import os
import tempfile
import unittest
from dataclasses import replace

from coordination.cli import main
from coordination.config import ClusterConfig, ConfigError
from coordination.event_log import EventLogger, LogRecord
from coordination.scenarios import check_mutual_exclusion, critical_section_intervals, run_byzantine, run_lamport
from tests.helpers import quiet_log


def record(t, node_id, text):
    return LogRecord(t, node_id, text)


def enter(t, node_id, resource="A"):
    return record(t, node_id, f"Entering Critical Section for resource={resource}")


def leave(t, node_id, resource="A"):
    return record(t, node_id, f"Exiting Critical Section for resource={resource}")


class MutualExclusionCheckTest(unittest.TestCase):
    def test_back_to_back_intervals_are_fine(self):
        records = [enter(1.0, 0), leave(1.5, 0), enter(1.5, 1), leave(2.0, 1)]
        self.assertEqual(check_mutual_exclusion(records), [])
        spans = [(i.node_id, i.entered, i.exited) for i in critical_section_intervals(records)]
        self.assertEqual(spans, [(0, 1.0, 1.5), (1, 1.5, 2.0)])

    def test_overlap_on_the_same_resource_is_reported(self):
        records = [enter(1.0, 0), enter(1.2, 1), leave(1.5, 0), leave(1.7, 1)]
        violations = check_mutual_exclusion(records)
        self.assertEqual(len(violations), 1)
        first, second = violations[0]
        self.assertEqual((first.node_id, second.node_id), (0, 1))

    def test_different_resources_may_overlap(self):
        records = [enter(1.0, 0, "A"), enter(1.1, 1, "B"), leave(1.5, 0, "A"), leave(1.6, 1, "B")]
        self.assertEqual(check_mutual_exclusion(records), [])

    def test_unclosed_interval_stays_open(self):
        records = [enter(1.0, 0), record(1.1, 0, "something else"), enter(9.0, 2)]
        self.assertEqual(len(check_mutual_exclusion(records)), 1)


class EventLogTest(unittest.TestCase):
    def test_lines_are_appended_to_the_shared_file(self):
        path = os.path.join(tempfile.mkdtemp(), "run.log")
        event_log = EventLogger(path, echo=False)
        event_log.log(0, "Broadcasting REQUEST ts=1 for resource=A")
        event_log.log(3, "Entering Critical Section for resource=A")

        with open(path) as f:
            lines = f.read().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertRegex(lines[1], r"^\[\d+\.\d{3}\] \[Node 3\] Entering Critical Section for resource=A$")

        parsed = EventLogger.read(path)
        self.assertEqual([(r.node_id, r.text) for r in parsed],
                         [(0, "Broadcasting REQUEST ts=1 for resource=A"),
                          (3, "Entering Critical Section for resource=A")])
        self.assertEqual(event_log.snapshot(), [])

    def test_records_are_kept_in_memory_only_on_request(self):
        event_log = EventLogger(echo=False, keep_records=True)
        event_log.log(1, "Forwarding ATTACK to 2")
        event_log.log(1, "kept off stdout", echo=False)
        self.assertEqual([r.text for r in event_log.snapshot()],
                         ["Forwarding ATTACK to 2", "kept off stdout"])


class ScenarioBTest(unittest.TestCase):
    def fast_config(self, **overrides):
        config = ClusterConfig.lamport(log_path=None, **overrides)
        timings = replace(
            config.timings,
            start_delay=0.0, stagger=0.15, pause=0.02, pause_step=0.01,
            critical_section_duration=0.05, admission_timeout=0.4, settle=0.0,
        )
        return replace(config, timings=timings)

    def test_no_overlap_with_release(self):
        config = self.fast_config(broadcast_release=True)
        config = replace(config, timings=replace(config.timings, admission_timeout=2.0))

        result = run_lamport(config, local=True, event_log=quiet_log())

        self.assertEqual(result.violations, [])
        for node_id in config.node_ids:
            self.assertEqual(result.admitted[node_id], {"A": True, "B": True})
        for resource in ("A", "B"):
            order = [i.node_id for i in result.intervals if i.resource == resource]
            self.assertEqual(order, [0, 1, 2, 3])

    def test_no_overlap_with_the_four_message_protocol(self):
        result = run_lamport(self.fast_config(), local=True, event_log=quiet_log())

        self.assertEqual(result.violations, [])
        self.assertTrue(result.admitted[0]["A"])
        self.assertTrue(result.admitted[0]["B"])


class CliTest(unittest.TestCase):
    def test_byzantine_scenario_runs_in_process(self):
        self.assertEqual(main(["byzantine", "--local"]), 0)

    def test_bad_topology_is_a_usage_error(self):
        with self.assertRaises(SystemExit) as ctx:
            main(["byzantine", "--local", "--nodes", "zero:8000"])
        self.assertEqual(ctx.exception.code, 2)

    def test_commander_outside_the_topology_is_a_usage_error(self):
        for argv in (["byzantine", "--local", "--commander", "7"],
                     ["byzantine", "--local", "--faulty", "5"]):
            with self.subTest(argv=argv):
                with self.assertRaises(SystemExit) as ctx:
                    main(argv)
                self.assertEqual(ctx.exception.code, 2)

    def test_run_byzantine_checks_roles_before_starting(self):
        config = ClusterConfig.byzantine(log_path=None, commander=7)
        with self.assertRaises(ConfigError):
            run_byzantine(config, local=True, event_log=quiet_log())


if __name__ == "__main__":
    unittest.main()
