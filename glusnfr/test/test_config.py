import copy
import dataclasses
import json
import os
import tempfile
import unittest

from glusnfr import _param_defaults_dFoF
from glusnfr.config import DEFAULT_CONFIG, PipelineConfig
from glusnfr.util import util


class Test_config(unittest.TestCase):
    """Test class for the parameter defaults and PipelineConfig"""

    @classmethod
    def setUpClass(cls):
        cls.defaults_snapshot = copy.deepcopy(_param_defaults_dFoF)

    def test_default_params(self):
        """
        Test if default parameters in __init__.py are what the config holds
        """
        config = PipelineConfig.from_params()
        self.assertEqual(config, DEFAULT_CONFIG)
        self.assertEqual(config.timing.baseline_window, (0, 250))
        self.assertEqual(config.timing.stimulus_frame, 266)
        self.assertEqual(config.timing.response_window, 50)
        self.assertEqual(config.thresholds.low_noise_sigma, 3.0)
        self.assertEqual(config.thresholds.high_noise_sigma, 4.5)
        self.assertEqual(config.thresholds.lower_sigma, 1.5)
        self.assertAlmostEqual(config.thresholds.sd_noise_cutoff, 0.02 / 3)

    def test_overwrite_params_dict(self):
        """
        Test if a partial nested dict only replaces the keys it names
        """
        config = PipelineConfig.from_params(
            {"thresholds": {"low_noise_sigma": 2.5}, "timing": {"ms_per_frame": 10}}
        )
        self.assertEqual(config.thresholds.low_noise_sigma, 2.5)
        self.assertEqual(config.thresholds.high_noise_sigma, 4.5)
        self.assertEqual(config.timing.ms_per_frame, 10)
        self.assertEqual(config.timing.stimulus_frame, 266)
        self.assertEqual(_param_defaults_dFoF, self.defaults_snapshot)

    def test_overwrite_params_json(self):
        """
        Test if parameters load from a json file path
        """
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "params.json")
            with open(path, "w") as f:
                json.dump({"timing": {"baseline_window": [10, 200]}}, f)
            config = PipelineConfig.from_params(path)
        self.assertEqual(config.timing.baseline_window, (10, 200))

    def test_overwrite_params_type(self):
        with self.assertRaises(TypeError):
            util.overwrite_params(42, _param_defaults_dFoF)

    def test_threshold_ordering_enforced(self):
        """
        upper > lower must hold for both noise classes at load time
        """
        with self.assertRaises(ValueError):
            PipelineConfig.from_params({"thresholds": {"lower_sigma": 3.0}})
        with self.assertRaises(ValueError):
            PipelineConfig.from_params({"thresholds": {"high_noise_sigma": 2.0}})
        with self.assertRaises(ValueError):
            PipelineConfig.from_params({"thresholds": {"lower_sigma": -0.5}})

    def test_timing_validation(self):
        with self.assertRaises(ValueError):
            PipelineConfig.from_params({"timing": {"baseline_window": (100, 100)}})
        with self.assertRaises(ValueError):
            PipelineConfig.from_params({"timing": {"ms_per_frame": 0}})
        with self.assertRaises(ValueError):
            PipelineConfig.from_params({"accelerator": {"memory_fraction": 1.5}})

    def test_frozen(self):
        with self.assertRaises(dataclasses.FrozenInstanceError):
            DEFAULT_CONFIG.thresholds.low_noise_sigma = 1.0

    def test_frames_from_ms(self):
        self.assertEqual(DEFAULT_CONFIG.timing.frames_from_ms(50), 10)
        self.assertEqual(DEFAULT_CONFIG.timing.frames_from_ms(12), 2)
        self.assertEqual(DEFAULT_CONFIG.timing.frames_from_ms(12.5), 3)
        self.assertEqual(DEFAULT_CONFIG.timing.frames_from_ms(22.5), 5)

    def test_to_dict_round_trip(self):
        params = DEFAULT_CONFIG.to_dict()
        self.assertEqual(PipelineConfig.from_params(params), DEFAULT_CONFIG)

    def test_column_batches(self):
        batches = list(util.column_batches(10, 4))
        self.assertEqual(batches, [[0, 4], [4, 8], [8, 10]])
        self.assertEqual(list(util.column_batches(3, 0)), [[0, 1], [1, 2], [2, 3]])


if __name__ == "__main__":
    unittest.main()
