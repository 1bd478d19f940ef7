"""
Tests for parameter containers and settings
"""
import unittest
import json
import numpy as np
from simrecon.analysis.sim_params import (DirectionParameters, IlluminationParameters, EstimationSettings,
                                          ReconstructionSettings)
from simrecon.analysis.errors import ConfigurationError, ReconstructionPrecondition


class TestParameters(unittest.TestCase):

    def setUp(self):
        self.geometry = IlluminationParameters(nbands=3, ndirs=3, nphases=5, size=256, pixel_size=0.08)
        self.directions = [DirectionParameters((2.1 * np.cos(a), 2.1 * np.sin(a)), (1., 0.7, 0.5), 0.1 * ii)
                           for ii, a in enumerate([0, np.pi / 3, 2 * np.pi / 3])]

    def test_direction_parameters(self):
        d = DirectionParameters(np.array([0., 2.]), [1., 0.5], 0.3)

        self.assertEqual(d.frq, (0., 2.))
        self.assertEqual(d.nbands, 2)
        self.assertAlmostEqual(d.period, 0.5)
        self.assertAlmostEqual(d.angle, np.pi / 2)

    def test_direction_parameters_invalid(self):
        with self.assertRaises(ConfigurationError):
            DirectionParameters((1., 0.), (0.9, 0.5))

        with self.assertRaises(ConfigurationError):
            DirectionParameters((1., 0.), (1., -0.5))

        with self.assertRaises(ConfigurationError):
            DirectionParameters((np.nan, 0.), (1., 0.5))

        with self.assertRaises(ConfigurationError):
            DirectionParameters((1., 0., 0.), (1., 0.5))

        with self.assertRaises(ConfigurationError):
            DirectionParameters((1., 0.), (1.,))

    def test_incomplete(self):
        """
        Per-direction values are unavailable until every direction is set
        """
        self.assertFalse(self.geometry.is_complete)

        with self.assertRaises(ReconstructionPrecondition):
            _ = self.geometry.frqs

        with self.assertRaises(ReconstructionPrecondition):
            _ = self.geometry.phase_offsets

        with self.assertRaises(ConfigurationError):
            self.geometry.with_directions(self.directions[:2])

    def test_with_directions(self):
        """
        Setting directions returns a new snapshot and leaves the original unchanged
        """
        params = self.geometry.with_directions(self.directions)

        self.assertTrue(params.is_complete)
        self.assertFalse(self.geometry.is_complete)
        self.assertEqual(params.frqs.shape, (3, 2))
        self.assertEqual(params.mod_depths.shape, (3, 3))
        np.testing.assert_allclose(params.phase_offsets, [0., 0.1, 0.2])
        np.testing.assert_allclose(params.frqs_pixels, params.frqs * 256 * 0.08)

    def test_geometry_invalid(self):
        with self.assertRaises(ConfigurationError):
            IlluminationParameters(nbands=3, ndirs=3, nphases=4, size=256, pixel_size=0.08)

        with self.assertRaises(ConfigurationError):
            IlluminationParameters(nbands=1, ndirs=3, nphases=3, size=256, pixel_size=0.08)

        with self.assertRaises(ConfigurationError):
            IlluminationParameters(nbands=2, ndirs=3, nphases=3, size=256, pixel_size=0.)

        with self.assertRaises(ConfigurationError):
            IlluminationParameters(nbands=2, ndirs=3, nphases=3, size=256, pixel_size=0.08, wiener_parameter=0)

        with self.assertRaises(ConfigurationError):
            IlluminationParameters(nbands=2, ndirs=2, nphases=3, size=256, pixel_size=0.08,
                                   phase_steps=np.zeros((2, 4)))

        # nbands of directions must match
        with self.assertRaises(ConfigurationError):
            IlluminationParameters(nbands=2, ndirs=3, nphases=3, size=256, pixel_size=0.08,
                                   directions=self.directions)

    def test_phase_steps(self):
        np.testing.assert_allclose(self.geometry.get_phase_steps(1), 2 * np.pi * np.arange(5) / 5)

        steps = np.array([[0, 1.1, 2.2], [0, 2, 4]])
        params = IlluminationParameters(nbands=2, ndirs=2, nphases=3, size=64, pixel_size=0.1, phase_steps=steps)
        np.testing.assert_allclose(params.get_phase_steps(1), [0, 2, 4])

        with self.assertRaises(ValueError):
            params.get_phase_steps(2)

    def test_with_filter(self):
        params = self.geometry.with_directions(self.directions).with_filter(wiener_parameter=0.2, apo_bend=0.5)

        self.assertEqual(params.wiener_parameter, 0.2)
        self.assertEqual(params.apo_bend, 0.5)
        self.assertEqual(params.apo_cutoff, self.geometry.apo_cutoff)
        self.assertEqual(params.directions, tuple(self.directions))

    def test_dict(self):
        """
        Parameters survive conversion to JSON and back
        """
        params = IlluminationParameters(nbands=3, ndirs=3, nphases=5, size=256, pixel_size=0.08,
                                        phase_steps=np.tile(np.arange(5) * 1.3, (3, 1)),
                                        directions=self.directions)

        params_loaded = IlluminationParameters.from_dict(json.loads(json.dumps(params.to_dict())))
        self.assertEqual(params_loaded, params)


class TestSettings(unittest.TestCase):

    def test_fit_band(self):
        self.assertEqual(EstimationSettings().get_fit_band(3), 2)
        self.assertEqual(EstimationSettings().get_fit_band(2), 1)
        self.assertEqual(EstimationSettings(fit_band=1).get_fit_band(3), 1)

        with self.assertRaises(ConfigurationError):
            EstimationSettings(fit_band=2).get_fit_band(2)

    def test_estimation_settings_invalid(self):
        with self.assertRaises(ConfigurationError):
            EstimationSettings(fit_band=0)

        with self.assertRaises(ConfigurationError):
            EstimationSettings(fit_exclude=0.8, fmax_search=0.7)

        with self.assertRaises(ConfigurationError):
            EstimationSettings(min_correlation=2.)

    def test_reconstruction_settings_invalid(self):
        with self.assertRaises(ConfigurationError):
            ReconstructionSettings(output_mode="scale")

        with self.assertRaises(ConfigurationError):
            ReconstructionSettings(apodization_mode="gaussian")

        with self.assertRaises(ConfigurationError):
            ReconstructionSettings(upsample_factor=0)

        with self.assertRaises(ConfigurationError):
            ReconstructionSettings(upsample_factor=1.5)


if __name__ == "__main__":
    unittest.main()
