"""
Tests for configuration loading.
"""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from capacity_finder.config import generate_levels, get_config, load_env_file, parse_levels


class TestConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.env_path = Path(self.tmp.name) / ".env"

    def tearDown(self):
        self.tmp.cleanup()

    def test_load_env_file(self):
        self.env_path.write_text("# comment\nlevels=5,10\n\ncooldown = 3\nbroken line\n",
                                 encoding="utf-8")
        self.assertEqual(load_env_file(self.env_path), {"levels": "5,10", "cooldown": "3"})

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = get_config(self.env_path)
        self.assertEqual(config['levels'], [10, 20, 30, 40, 50])
        self.assertEqual(config['target_duration'], 45.0)
        self.assertEqual(config['grace_period'], 10.0)
        self.assertEqual(config['cooldown'], 15.0)
        self.assertEqual(config['sample_interval'], 1.0)
        self.assertEqual(config['high_success'], 90.0)
        self.assertEqual(config['low_success'], 50.0)
        self.assertEqual(config['pool_capacity'], 200)
        self.assertEqual(config['worker_max_lifetime'], 300.0)
        self.assertEqual(config['output_root'], Path("."))
        self.assertFalse(config['debug'])

    def test_environment_overrides(self):
        env = {"LEVELS": "4, 8", "TARGET_DURATION": "30", "DEBUG": "1", "WORKER_MAX_LIFETIME": "0"}
        with patch.dict(os.environ, env, clear=True):
            config = get_config(self.env_path)
        self.assertEqual(config['levels'], [4, 8])
        self.assertEqual(config['target_duration'], 30.0)
        self.assertTrue(config['debug'])
        self.assertIsNone(config['worker_max_lifetime'])

    def test_env_file_wins_over_environment(self):
        self.env_path.write_text("cooldown=2\n", encoding="utf-8")
        with patch.dict(os.environ, {"COOLDOWN": "9"}, clear=True):
            self.assertEqual(get_config(self.env_path)['cooldown'], 2.0)

    def test_parse_levels(self):
        self.assertEqual(parse_levels("10,20, 30,"), [10, 20, 30])
        with self.assertRaises(ValueError):
            parse_levels("10,twenty")

    def test_generate_levels(self):
        self.assertEqual(generate_levels(10, 50, 20), [10, 30, 50])
        self.assertEqual(generate_levels(5, 12, 5), [5, 10])
        for bad in ((0, 10, 5), (10, 5, 5), (5, 10, 0)):
            with self.assertRaises(ValueError):
                generate_levels(*bad)


if __name__ == '__main__':
    unittest.main()
