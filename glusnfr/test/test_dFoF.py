import unittest
from unittest import mock

import numpy as np

from glusnfr.config import DEFAULT_CONFIG, PipelineConfig
from glusnfr.signal_process import dFoF as dFoF_module
from glusnfr.signal_process.dFoF import (
    AcceleratorContext,
    normalize,
    normalize_batch,
    should_use_accelerator,
)


class Test_dFoF(unittest.TestCase):
    """Test class for the dF/F normalizer"""

    @classmethod
    def setUpClass(cls):
        """
        Here we create mock data and arguments for testing purposes.
        """
        ## Fake data: (num.of.frames, num.of.rois) shape matrix
        cls.n_frames = 600
        cls.n_rois = 20
        rng = np.random.default_rng(0)
        cls.traces = (
            rng.uniform(50, 500, size=(1, cls.n_rois))
            + rng.normal(0, 2, size=(cls.n_frames, cls.n_rois))
        ).astype(np.float32)
        cls.traces[268:280] += 40

        ## Accelerated path on torch's cpu device
        cls.config_accel = PipelineConfig.from_params(
            {"accelerator": {"min_data_size": 0}}
        )
        cls.accel_context = AcceleratorContext(
            available=True, free_memory_bytes=10**12, device="cpu"
        )

    def test_baseline_mean_is_zero(self):
        """
        Mean dF/F over the baseline window is ~0 by construction of F0
        """
        out = normalize(self.traces)
        np.testing.assert_allclose(
            out.dFoF[0:250].mean(axis=0), 0, atol=1e-5
        )
        self.assertEqual(out.dFoF.shape, self.traces.shape)
        self.assertEqual(out.baseline_sd.shape, (self.n_rois,))
        self.assertFalse(out.used_accelerator)

    def test_known_values(self):
        traces = np.full((600, 1), 100, dtype=np.float32)
        traces[269, 0] = 130
        out = normalize(traces)
        self.assertAlmostEqual(float(out.dFoF[269, 0]), 0.3, places=6)
        self.assertEqual(float(out.baseline_sd[0]), 0.0)
        np.testing.assert_array_equal(out.dFoF[0:250, 0], 0)

    def test_backend_equivalence(self):
        """
        Accelerated and CPU paths agree within 1e-4 relative tolerance
        """
        cpu = normalize(self.traces, config=self.config_accel)
        accel = normalize(
            self.traces, accel_context=self.accel_context, config=self.config_accel
        )
        self.assertFalse(cpu.used_accelerator)
        self.assertTrue(accel.used_accelerator)
        np.testing.assert_allclose(accel.dFoF, cpu.dFoF, rtol=1e-4, atol=1e-6)
        np.testing.assert_allclose(
            accel.baseline_sd, cpu.baseline_sd, rtol=1e-4, atol=1e-7
        )

    def test_chunked_accelerator(self):
        """
        A tight memory budget splits the ROIs into chunks with the same result
        """
        ## 600 frames * 4 bytes * 3 = 7200 bytes per ROI, budget 80000 bytes
        context = AcceleratorContext(
            available=True, free_memory_bytes=100000, device="cpu"
        )
        cpu = normalize(self.traces, config=self.config_accel)
        chunked = normalize(
            self.traces, accel_context=context, config=self.config_accel
        )
        self.assertTrue(chunked.used_accelerator)
        np.testing.assert_allclose(chunked.dFoF, cpu.dFoF, rtol=1e-4, atol=1e-6)
        np.testing.assert_allclose(
            chunked.baseline_sd, cpu.baseline_sd, rtol=1e-4, atol=1e-7
        )

    def test_accelerator_failure_falls_back(self):
        """
        A failing accelerator is recovered on the CPU and reported
        """
        with mock.patch.object(
            dFoF_module, "_dFoF_torch", side_effect=RuntimeError("CUDA out of memory")
        ):
            out = normalize(
                self.traces, accel_context=self.accel_context, config=self.config_accel
            )
        self.assertFalse(out.used_accelerator)
        np.testing.assert_allclose(
            out.dFoF, normalize(self.traces).dFoF, rtol=1e-6, atol=1e-7
        )

    def test_should_use_accelerator(self):
        accel = DEFAULT_CONFIG.accelerator
        big = AcceleratorContext(available=True, free_memory_bytes=10**9)
        self.assertTrue(should_use_accelerator(100000, big, accel))
        ## too small
        self.assertFalse(should_use_accelerator(50000, big, accel))
        ## not available
        self.assertFalse(
            should_use_accelerator(100000, AcceleratorContext.unavailable(), accel)
        )
        ## 100000 * 4 bytes is more than 0.8 * 450000
        small = AcceleratorContext(available=True, free_memory_bytes=450000)
        self.assertFalse(should_use_accelerator(100000, small, accel))

    def test_default_config_accelerated(self):
        """
        60000 elements with plenty of free memory go to the accelerator
        """
        rng = np.random.default_rng(1)
        traces = rng.uniform(50, 500, size=(600, 100)).astype(np.float32)
        accel = normalize(traces, accel_context=self.accel_context)
        cpu = normalize(traces)
        self.assertTrue(accel.used_accelerator)
        np.testing.assert_allclose(accel.dFoF, cpu.dFoF, rtol=1e-4, atol=1e-6)
        np.testing.assert_allclose(
            accel.baseline_sd, cpu.baseline_sd, rtol=1e-4, atol=1e-7
        )

    def test_default_data_size_keeps_cpu(self):
        """
        12000 elements is below the default accelerator minimum
        """
        out = normalize(self.traces, accel_context=self.accel_context)
        self.assertFalse(out.used_accelerator)

    def test_multicore_matches_numpy(self):
        config = PipelineConfig.from_params({"processing": {"multicore_pref": True}})
        numba_out = normalize(self.traces, config=config)
        numpy_out = normalize(self.traces)
        np.testing.assert_allclose(numba_out.dFoF, numpy_out.dFoF, rtol=1e-4, atol=1e-6)
        np.testing.assert_allclose(
            numba_out.baseline_sd, numpy_out.baseline_sd, rtol=1e-4, atol=1e-7
        )

    def test_dead_roi(self):
        """
        A zero baseline is floored to min_F0 and dF/F stays finite
        """
        traces = self.traces.copy()
        traces[:, 3] = 0
        traces[:, 4] = -5
        for context, config in (
            (None, DEFAULT_CONFIG),
            (self.accel_context, self.config_accel),
        ):
            out = normalize(traces, accel_context=context, config=config)
            self.assertTrue(np.all(np.isfinite(out.dFoF)))
            self.assertTrue(np.all(np.isfinite(out.baseline_sd)))
            self.assertEqual(float(out.baseline_sd[3]), 0.0)

    def test_nan_baseline(self):
        """
        An all-NaN ROI gives dF/F of 0 and a baseline SD of 0
        """
        traces = self.traces.copy()
        traces[:, 5] = np.nan
        traces[10, 6] = np.nan
        traces[11, 6] = np.inf
        for context, config in (
            (None, DEFAULT_CONFIG),
            (self.accel_context, self.config_accel),
        ):
            out = normalize(traces, accel_context=context, config=config)
            np.testing.assert_array_equal(out.dFoF[:, 5], 0)
            self.assertEqual(float(out.baseline_sd[5]), 0.0)
            self.assertTrue(np.all(np.isfinite(out.dFoF[:, 6])))
            self.assertGreater(float(out.baseline_sd[6]), 0.0)

    def test_input_not_mutated(self):
        traces = self.traces.copy()
        normalize(traces)
        np.testing.assert_array_equal(traces, self.traces)

    def test_preconditions(self):
        with self.assertRaises(ValueError):
            normalize(np.ones(600, dtype=np.float32))
        with self.assertRaises(ValueError):
            normalize(np.ones((0, 5), dtype=np.float32))
        with self.assertRaises(ValueError):
            normalize(np.ones((600, 0), dtype=np.float32))
        with self.assertRaises(ValueError):
            normalize(self.traces, baseline_window=(500, 700))
        with self.assertRaises(ValueError):
            normalize(np.ones((100, 3), dtype=np.float32))

    def test_custom_baseline_window(self):
        out = normalize(self.traces, baseline_window=(300, 500))
        np.testing.assert_allclose(out.dFoF[300:500].mean(axis=0), 0, atol=1e-5)

    def test_normalize_batch(self):
        groups = {"a": self.traces, "b": self.traces[:, :5]}
        out = normalize_batch(groups)
        self.assertEqual(set(out), {"a", "b"})
        np.testing.assert_allclose(out["b"].dFoF, out["a"].dFoF[:, :5], rtol=1e-6)


if __name__ == "__main__":
    unittest.main()
