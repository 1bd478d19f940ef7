"""
Tests for the OTF model
"""
import unittest
from dataclasses import FrozenInstanceError
import numpy as np
from simrecon.analysis.otf import OtfModel, ideal_otf
from simrecon.analysis.errors import ConfigurationError


class TestOTF(unittest.TestCase):

    def setUp(self):
        self.otf = OtfModel.from_estimate(na=1.2, wavelength=0.5, otf_correction=0.3)

    def test_ideal_otf(self):
        """
        Ideal OTF is 1 at zero frequency, decreases monotonically, and vanishes at and beyond the cutoff
        """
        rho = np.linspace(0, 1.5, 301)
        otf = ideal_otf(rho)

        self.assertAlmostEqual(float(otf[0]), 1.)
        self.assertTrue(np.all(np.diff(otf[rho <= 1]) <= 0))
        np.testing.assert_allclose(otf[rho >= 1], 0)
        self.assertTrue(np.all(otf >= 0))

    def test_fmax(self):
        self.assertAlmostEqual(self.otf.fmax, 2 * 1.2 / 0.5)
        self.assertAlmostEqual(self.otf.cutoff(2), self.otf.fmax)

    def test_value(self):
        """
        OTF is real, at most 1, monotonic along a radial line, and zero beyond the cutoff frequency
        """
        fmax = self.otf.fmax
        angle = 0.3
        ff = np.linspace(0, 1.5 * fmax, 401)
        values = self.otf.value(ff * np.cos(angle), ff * np.sin(angle))

        self.assertTrue(np.isrealobj(values))
        self.assertAlmostEqual(float(values[0]), 1.)
        self.assertTrue(np.all(values <= 1))
        self.assertTrue(np.all(np.diff(values) <= 0))
        np.testing.assert_allclose(values[ff >= fmax], 0)

        # correction damps high frequencies relative to the ideal OTF
        ideal = OtfModel(na=1.2, wavelength=0.5)
        inside = np.logical_and(ff > 0, ff < fmax)
        self.assertTrue(np.all(values[inside] < ideal.value(ff, 0)[inside]))
        np.testing.assert_allclose(ideal.value(ff, 0), ideal_otf(ff / fmax))

    def test_attenuation(self):
        """
        Attenuation is a notch at zero frequency which is only applied when switched on
        """
        np.testing.assert_allclose(self.otf.attenuation(np.zeros(5), np.zeros(5)), np.ones(5))

        otf_att = self.otf.set_attenuation(0.99, 1.).switch_attenuation(True)
        self.assertFalse(self.otf.use_attenuation)

        self.assertAlmostEqual(float(otf_att.attenuation(0., 0.)), 0.01)
        self.assertAlmostEqual(float(otf_att.attenuation(3., 0.)), 1., places=6)

        # at half width half max, the notch depth is halved
        self.assertAlmostEqual(float(otf_att.attenuation(0.5, 0.)), 1 - 0.99 / 2)

        fx = np.linspace(-4, 4, 11)
        np.testing.assert_allclose(otf_att.effective(fx, 0.5),
                                   otf_att.value(fx, 0.5) * otf_att.attenuation(fx, 0.5))

        np.testing.assert_allclose(otf_att.switch_attenuation(False).effective(fx, 0.5),
                                   self.otf.value(fx, 0.5))

    def test_invalid(self):
        with self.assertRaises(ConfigurationError):
            OtfModel(na=0, wavelength=0.5)

        with self.assertRaises(ConfigurationError):
            OtfModel(na=1.2, wavelength=-0.5)

        with self.assertRaises(ConfigurationError):
            OtfModel(na=1.2, wavelength=0.5, otf_correction=0.)

        with self.assertRaises(ConfigurationError):
            OtfModel(na=1.2, wavelength=0.5, otf_correction=1.5)

        with self.assertRaises(ConfigurationError):
            self.otf.set_attenuation(1.5, 1.)

        with self.assertRaises(ConfigurationError):
            self.otf.value(0., 0., band=-1)

        with self.assertRaises(ConfigurationError):
            self.otf.cutoff(band=-2)

    def test_immutable(self):
        with self.assertRaises(FrozenInstanceError):
            self.otf.na = 1.4

    def test_dict(self):
        otf = self.otf.set_attenuation(0.9, 1.5).switch_attenuation(True)
        self.assertEqual(OtfModel.from_dict(otf.to_dict()), otf)


if __name__ == "__main__":
    unittest.main()
