import json
import os
import tempfile
import unittest

from coordination.config import ClusterConfig, ConfigError, NodeAddress, parse_ids, parse_nodes


class ParseTest(unittest.TestCase):
    def test_parse_id_port_pairs(self):
        nodes = parse_nodes("0:8000, 1:8001,2:example.org:9000", host="localhost")
        self.assertEqual(nodes, [
            NodeAddress(0, "localhost", 8000),
            NodeAddress(1, "localhost", 8001),
            NodeAddress(2, "example.org", 9000),
        ])
        self.assertEqual(nodes[2].url, "http://example.org:9000")

    def test_rejects_bad_topologies(self):
        for spec in ["", "0", "a:8000", "0:8000,0:8001", "-1:8000", "0:h:p:1"]:
            with self.subTest(spec=spec):
                with self.assertRaises(ConfigError):
                    parse_nodes(spec)

    def test_parse_ids(self):
        self.assertEqual(parse_ids("1, 2"), frozenset({1, 2}))
        self.assertEqual(parse_ids(""), frozenset())
        with self.assertRaises(ConfigError):
            parse_ids("x")


class ClusterConfigTest(unittest.TestCase):
    def write(self, name, text):
        directory = tempfile.mkdtemp()
        path = os.path.join(directory, name)
        with open(path, "w") as f:
            f.write(text)
        return path

    def test_scenario_defaults(self):
        byz = ClusterConfig.byzantine()
        self.assertEqual(byz.node_ids, [0, 1, 2])
        self.assertEqual(byz.faulty, frozenset({2}))
        self.assertEqual([p.node_id for p in byz.peers_of(1)], [0, 2])

        lam = ClusterConfig.lamport()
        self.assertEqual(lam.node_ids, [0, 1, 2, 3])
        self.assertEqual(lam.resources, ("A", "B"))
        self.assertFalse(lam.broadcast_release)

    def test_yaml_file_overrides_defaults(self):
        path = self.write("cluster.yaml", "\n".join([
            "nodes:",
            "  - {id: 0, port: 9000}",
            "  - {id: 1, host: 10.0.0.2, port: 9001}",
            "faulty: [1]",
            "timings:",
            "  decision_timeout: 0.25",
        ]))
        config = ClusterConfig.from_file(path)
        self.assertEqual(config.node(1), NodeAddress(1, "10.0.0.2", 9001))
        self.assertEqual(config.faulty, frozenset({1}))
        self.assertEqual(config.timings.decision_timeout, 0.25)
        self.assertEqual(config.timings.admission_timeout, 6.0)

    def test_json_file_on_lamport_base(self):
        path = self.write("cluster.json", json.dumps({
            "resources": "X,Y,Z",
            "broadcast_release": True,
        }))
        config = ClusterConfig.from_file(path, ClusterConfig.lamport())
        self.assertEqual(config.resources, ("X", "Y", "Z"))
        self.assertTrue(config.broadcast_release)
        self.assertEqual(len(config.nodes), 4)

    def test_bad_files_raise_config_error(self):
        cases = [
            ("list.yaml", "- 1\n- 2\n"),
            ("broken.json", "{"),
            ("timings.yaml", "timings:\n  warp_speed: 9\n"),
            ("nodes.yaml", "nodes:\n  - {id: 0}\n"),
        ]
        for name, text in cases:
            with self.subTest(name=name):
                with self.assertRaises(ConfigError):
                    ClusterConfig.from_file(self.write(name, text))

    def test_values_are_converted_or_rejected(self):
        base = ClusterConfig.byzantine()
        self.assertEqual(base.merge({"faulty": ["2"]}).faulty, frozenset({2}))
        self.assertEqual(base.merge({"faulty": 1}).faulty, frozenset({1}))
        self.assertEqual(base.merge({"commander": "1"}).commander, 1)
        self.assertEqual(base.merge({"timings": {"settle": 0}}).timings.settle, 0)

        bad = [
            {"commander": "x"},
            {"commander": None},
            {"faulty": ["two"]},
            {"faulty": {"id": 2}},
            {"timings": 5},
            {"timings": {"decision_timeout": "abc"}},
            {"timings": {"admission_timeout": -1}},
            {"resources": 3},
            {"resources": ""},
            {"nodes": 8000},
        ]
        for data in bad:
            with self.subTest(data=data):
                with self.assertRaises(ConfigError):
                    base.merge(data)

    def test_byzantine_roles_must_be_in_the_topology(self):
        config = ClusterConfig.byzantine()
        self.assertIs(config.check_byzantine(), config)
        with self.assertRaises(ConfigError):
            config.merge({"commander": 7}).check_byzantine()
        with self.assertRaises(ConfigError):
            config.merge({"nodes": "0:8000,1:8001"}).check_byzantine()  # faulty 2 is gone
        # lamport runs ignore commander and faulty
        ClusterConfig.lamport().merge({"nodes": "5:9000,6:9001"})

    def test_unknown_node_lookup(self):
        with self.assertRaises(ConfigError):
            ClusterConfig.byzantine().node(7)


if __name__ == "__main__":
    unittest.main()
