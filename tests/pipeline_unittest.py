"""
Tests for reconstructing stacks of raw frames with SimReconstruction
"""
import unittest
from unittest.mock import patch
from pathlib import Path
import tempfile
import json
import numpy as np
import tifffile
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from simrecon.analysis.pipeline import SimReconstruction, get_frame_index_map, check_frame_index_map
from simrecon.analysis.otf import OtfModel
from simrecon.analysis.sim_params import IlluminationParameters, DirectionParameters
from simrecon.analysis.sim_reconstruction import STAGE_RAW, STAGE_PREPROCESSED, STAGE_RECONSTRUCTED
from simrecon.analysis.simulate import get_ground_truth_beads, get_simulated_sim_imgs
from simrecon.analysis.errors import (ConfigurationError, EstimationFailure, InputShapeError,
                                      ReconstructionPrecondition)

size = 128
dxy = 0.08


def get_params():
    otf = OtfModel.from_estimate(na=1.2, wavelength=0.5)
    geometry = IlluminationParameters(nbands=3, ndirs=3, nphases=5, size=size, pixel_size=dxy)

    frqs_pix = [(21.4, 3.2), (-7.9, 19.8), (-13.3, -16.1)]
    directions = [DirectionParameters(np.array(f) * geometry.df, (1., 0.7, 0.5), p)
                  for f, p in zip(frqs_pix, [0.1, 1.7, -2.5])]

    return geometry, geometry.with_directions(directions), otf


def get_slice(params, otf, seed):
    gt = get_ground_truth_beads(2 * size, dxy / 2, nbeads=40, seed=seed)
    # offset keeps the frames positive
    return get_simulated_sim_imgs(gt, params, otf, upsample_factor=2) + 0.1


class TestIndexMap(unittest.TestCase):

    def test_slice_major(self):
        index_map = get_frame_index_map(2, 3, 5, order="slice-major")

        self.assertEqual(index_map.shape, (2, 3, 5))
        np.testing.assert_equal(index_map.ravel(), np.arange(30))

    def test_direction_major(self):
        index_map = get_frame_index_map(2, 3, 5, order="direction-major")

        self.assertEqual(index_map[0, 0, 0], 0)
        self.assertEqual(index_map[1, 0, 0], 5)
        self.assertEqual(index_map[0, 1, 0], 10)
        self.assertEqual(index_map[1, 2, 4], 29)
        np.testing.assert_equal(np.sort(index_map.ravel()), np.arange(30))

    def test_invalid(self):
        with self.assertRaises(ConfigurationError):
            get_frame_index_map(2, 3, 5, order="phase-major")

        index_map = get_frame_index_map(2, 3, 5)
        check_frame_index_map(index_map, 30, 3, 5)

        with self.assertRaises(InputShapeError):
            check_frame_index_map(index_map, 29, 3, 5)

        with self.assertRaises(InputShapeError):
            check_frame_index_map(index_map, 30, 5, 3)

        with self.assertRaises(InputShapeError):
            check_frame_index_map(index_map.astype(float), 30, 3, 5)

        repeated = np.array(index_map, copy=True)
        repeated[1, 0, 0] = 0
        with self.assertRaises(InputShapeError):
            check_frame_index_map(repeated, 30, 3, 5)


class TestPipeline(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.geometry, cls.params, cls.otf = get_params()
        cls.slices = [get_slice(cls.params, cls.otf, seed) for seed in [0, 1]]
        cls.stack = np.concatenate(cls.slices, axis=0).reshape((-1, size, size))

    def test_run_known_parameters(self):
        recon = SimReconstruction(self.params, self.otf, estimate_parameters=False, print_to_terminal=False)
        results = recon.run(self.stack)

        self.assertEqual(len(results), 2)
        for ii, res in enumerate(results):
            self.assertTrue(res.succeeded)
            self.assertEqual(res.index, ii)
            self.assertEqual(res.sim_sr.shape, (2 * size, 2 * size))
            self.assertEqual(res.widefield.shape, (size, size))
            self.assertEqual(res.widefield_deconvolution.shape, (2 * size, 2 * size))
            self.assertEqual(res.clipped_fraction.shape, (3, 5))
            self.assertEqual(res.params, self.params)

        # same slices in direction-major order
        stack_dir = np.stack(self.slices, axis=0).transpose((1, 0, 2, 3, 4)).reshape((-1, size, size))
        results_dir = recon.run(stack_dir, order="direction-major")
        for res, res_dir in zip(results, results_dir):
            np.testing.assert_allclose(res_dir.sim_sr, res.sim_sr)

        # explicit index map
        results_map = recon.run(self.stack, index_map=get_frame_index_map(2, 3, 5)[::-1])
        np.testing.assert_allclose(results_map[0].sim_sr, results[1].sim_sr)

    def test_run_shared_estimation(self):
        recon = SimReconstruction(self.geometry, self.otf, print_to_terminal=False)
        results = recon.run(self.stack)

        self.assertTrue(all(res.succeeded for res in results))
        self.assertTrue(recon.params_estimated.is_complete)
        np.testing.assert_allclose(recon.params_estimated.frqs_pixels, self.params.frqs_pixels, atol=0.1)

        for res in results:
            self.assertEqual(res.params, recon.params_estimated)

        # single slice estimation
        recon = SimReconstruction(self.geometry, self.otf, estimate_slice=1, print_to_terminal=False)
        recon.run(self.stack)
        np.testing.assert_allclose(recon.params_estimated.frqs_pixels, self.params.frqs_pixels, atol=0.1)

    def test_per_slice_failure(self):
        """
        A slice where estimation fails is reported as failed without affecting other slices
        """
        stack = np.concatenate([self.slices[0], np.ones((3, 5, size, size))], axis=0).reshape((-1, size, size))

        recon = SimReconstruction(self.geometry, self.otf, estimate_per_slice=True, print_to_terminal=False)
        results = recon.run(stack)

        self.assertTrue(results[0].succeeded)
        np.testing.assert_allclose(results[0].params.frqs_pixels, self.params.frqs_pixels, atol=0.1)

        self.assertFalse(results[1].succeeded)
        self.assertIsInstance(results[1].error, ReconstructionPrecondition)
        self.assertIsNone(results[1].sim_sr)
        self.assertIsNone(results[1].params)
        self.assertIsNone(results[1].estimation_info)
        self.assertEqual(len(results[0].estimation_info), 3)

    def test_per_slice_estimation_info(self):
        """
        Fit diagnostics from per-slice estimation are kept with each slice instead of on the reconstruction object
        """
        recon = SimReconstruction(self.geometry, self.otf, estimate_per_slice=True, print_to_terminal=False)
        results = recon.run(self.stack)

        self.assertIsNone(recon.params_estimated)
        self.assertEqual(recon.estimation_info, [])

        for res in results:
            self.assertTrue(res.succeeded)
            self.assertEqual([info["direction"] for info in res.estimation_info], [0, 1, 2])
            self.assertFalse(any(info["fallback"] for info in res.estimation_info))

        self.assertIsNot(results[0].estimation_info, results[1].estimation_info)

        # single slice reconstruction does not modify the shared estimate either
        result = recon.reconstruct_slice(self.slices[0])
        self.assertIsNone(recon.params_estimated)
        self.assertEqual(len(result.estimation_info), 3)

    def test_fallback_parameters(self):
        stack = np.concatenate([self.slices[0], np.ones((3, 5, size, size))], axis=0).reshape((-1, size, size))

        # estimation from uniform slice fails without fallback
        recon = SimReconstruction(self.geometry, self.otf, estimate_slice=1, print_to_terminal=False)
        with self.assertRaises(EstimationFailure):
            recon.run(stack)

        recon = SimReconstruction(self.geometry, self.otf, estimate_slice=1, fallback_parameters=self.params,
                                  print_to_terminal=False)
        results = recon.run(stack)

        self.assertTrue(all(res.succeeded for res in results))
        self.assertEqual(recon.params_estimated.directions, self.params.directions)
        self.assertTrue(all(info["fallback"] for info in recon.estimation_info))
        self.assertIn("fallback", recon.log.getvalue())

    def test_shape_errors_before_transform(self):
        """
        Invalid frames are rejected before any Fourier transform is computed
        """
        recon = SimReconstruction(self.params, self.otf, estimate_parameters=False, print_to_terminal=False)

        with patch("simrecon.analysis.preprocess.ft2") as ft_mock:
            with self.assertRaises(InputShapeError):
                recon.run(self.stack[:, :-1, :-1])

            with self.assertRaises(InputShapeError):
                recon.run(self.stack[:-1])

            with self.assertRaises(InputShapeError):
                recon.run(self.stack[0])

            with self.assertRaises(InputShapeError):
                recon.run(self.stack, index_map=np.zeros((2, 3, 5), dtype=int))

            # list of frames where a single frame has the wrong size
            frames = list(self.stack)
            frames[7] = frames[7][:size // 2, :size // 2]
            with self.assertRaises(InputShapeError):
                recon.run(frames)

            # nested list of frames for a single slice
            nested = [list(f) for f in self.slices[0]]
            nested[1][3] = nested[1][3][:, :-1]
            with self.assertRaises(InputShapeError):
                recon.reconstruct_slice(nested)

            ft_mock.assert_not_called()

    def test_invalid_configuration(self):
        with self.assertRaises(ConfigurationError):
            SimReconstruction(self.geometry, self.otf, estimate_parameters=False)

        with self.assertRaises(ConfigurationError):
            SimReconstruction(self.geometry, self.otf, fallback_parameters=self.geometry)

        with self.assertRaises(ConfigurationError):
            SimReconstruction(self.geometry, self.otf, estimate_per_slice=True, estimate_slice=0)

        with self.assertRaises(ConfigurationError):
            SimReconstruction(self.geometry, self.otf, fade_pixels=size)

        recon = SimReconstruction(self.geometry, self.otf, estimate_slice=5, print_to_terminal=False)
        with self.assertRaises(ConfigurationError):
            recon.run(self.stack)

    def test_reconstruct_slice_feedback(self):
        """
        Raw and preprocessed frames are passed to the observer at the highest feedback level
        """
        stages = []
        recon = SimReconstruction(self.params, self.otf, estimate_parameters=False, fade_pixels=8,
                                  callback=lambda s, d: stages.append(s), feedback_level=4,
                                  print_to_terminal=False)
        result = recon.reconstruct_slice(self.slices[0])

        self.assertTrue(result.succeeded)
        self.assertEqual(stages[:2], [STAGE_RAW, STAGE_PREPROCESSED])
        self.assertEqual(stages[-1], STAGE_RECONSTRUCTED)

        with self.assertRaises(InputShapeError):
            recon.reconstruct_slice(self.slices[0][:2])

    def test_save_and_plot(self):
        recon = SimReconstruction(self.params, self.otf, estimate_parameters=False, print_to_terminal=False)

        with self.assertRaises(ReconstructionPrecondition):
            recon.save_imgs("unused")

        recon.run(self.stack)
        recon.print_parameters()
        self.assertIn("Direction 2", recon.log.getvalue())

        with tempfile.TemporaryDirectory() as save_dir:
            fname = recon.save_imgs(save_dir, save_suffix="_test", attributes={"sample": "beads"})

            with open(fname, "r") as f:
                metadata = json.load(f)

            self.assertEqual(metadata["sample"], "beads")
            self.assertEqual(len(metadata["slices"]), 2)
            self.assertEqual(IlluminationParameters.from_dict(metadata["params"]), self.params)

            sr = tifffile.imread(Path(save_dir) / "sim_sr_test.tif")
            wf = tifffile.imread(Path(save_dir) / "widefield_test.tif")
            self.assertEqual(sr.shape, (2, 2 * size, 2 * size))
            self.assertEqual(wf.shape, (2, size, size))

        figh = recon.plot_reconstruction()
        self.assertIsInstance(figh, matplotlib.figure.Figure)
        plt.close(figh)


if __name__ == "__main__":
    unittest.main()
