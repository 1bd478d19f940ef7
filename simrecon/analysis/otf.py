"""
Optical transfer function model used for SIM parameter estimation and reconstruction.

The OTF is modeled as the incoherent transfer function of a circular pupil, multiplied by an empirical
correction which accounts for the stronger suppression of high frequencies seen in real systems,

.. math::

  H(f) = \\frac{2}{\\pi} \\left[\\arccos(\\rho) - \\rho \\sqrt{1 - \\rho^2} \\right] a^\\rho,
  \\quad \\rho = |f| / f_\\text{max}, \\quad f_\\text{max} = \\frac{2 NA}{\\lambda}

An optional attenuation notch, which suppresses the center of each band, can be switched on

.. math::

  A(f) = 1 - s \\exp \\left(-\\frac{|f|^2}{2 \\sigma^2} \\right), \\quad \\sigma = \\frac{\\text{FWHM}}{2 \\sqrt{2 \\ln 2}}

"""
from dataclasses import dataclass, replace, asdict
from typing import Union
import numpy as np
from simrecon.analysis.errors import ConfigurationError


def ideal_otf(rho: Union[float, np.ndarray]) -> np.ndarray:
    """
    Incoherent OTF of a circular pupil as a function of the radial frequency in units of the cutoff frequency

    :param rho: |f| / fmax
    :return otf: value in [0, 1]. Zero for rho >= 1
    """
    rho = np.abs(np.asarray(rho, dtype=float))
    inside = rho < 1
    rho_in = np.where(inside, rho, 1.)

    otf = 2 / np.pi * (np.arccos(rho_in) - rho_in * np.sqrt(1 - rho_in**2))
    otf = np.where(inside, otf, 0.)

    return otf


@dataclass(frozen=True)
class OtfModel:
    """
    Immutable OTF model. Wavelength is given in microns, so frequencies are in 1/um.

    Example:

    >>> otf = OtfModel.from_estimate(na=1.4, wavelength=0.525, otf_correction=0.3)
    >>> otf = otf.set_attenuation(0.9995, 2.).switch_attenuation(True)
    >>> otf.value(1., 0.5)
    """
    na: float
    wavelength: float
    otf_correction: float = 1.
    attenuation_strength: float = 0.
    attenuation_fwhm: float = 1.
    use_attenuation: bool = False

    def __post_init__(self):
        if not self.na > 0:
            raise ConfigurationError(f"na must be positive, but was {self.na}")

        if not self.wavelength > 0:
            raise ConfigurationError(f"wavelength must be positive, but was {self.wavelength}")

        if not 0 < self.otf_correction <= 1:
            raise ConfigurationError(f"otf_correction must be in (0, 1], but was {self.otf_correction}")

        if not 0 <= self.attenuation_strength <= 1:
            raise ConfigurationError(f"attenuation_strength must be in [0, 1], but was {self.attenuation_strength}")

        if not self.attenuation_fwhm > 0:
            raise ConfigurationError(f"attenuation_fwhm must be positive, but was {self.attenuation_fwhm}")

    @classmethod
    def from_estimate(cls,
                      na: float,
                      wavelength: float,
                      otf_correction: float = 1.):
        """
        Estimate the OTF from the numerical aperture and emission wavelength

        :param na: numerical aperture
        :param wavelength: emission wavelength in um
        :param otf_correction: empirical damping of high frequencies. 1 gives the ideal OTF
        :return otf:
        """
        return cls(na=na, wavelength=wavelength, otf_correction=otf_correction)

    @classmethod
    def from_dict(cls, d: dict):
        return cls(**d)

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def fmax(self) -> float:
        """
        Incoherent cutoff frequency 2*NA/wavelength in 1/um
        """
        return 2 * self.na / self.wavelength

    def cutoff(self, band: int = 0) -> float:
        """
        Cutoff frequency for a given band. In 2D all bands share the same OTF

        :param band:
        :return fmax:
        """
        self._check_band(band)
        return self.fmax

    def value(self,
              fx: Union[float, np.ndarray],
              fy: Union[float, np.ndarray],
              band: int = 0) -> np.ndarray:
        """
        OTF magnitude at frequency (fx, fy) without attenuation

        :param fx: x-frequencies in 1/um. Broadcast against fy
        :param fy: y-frequencies in 1/um
        :param band: band index
        :return otf: values in [0, 1]
        """
        self._check_band(band)

        rho = np.sqrt(np.asarray(fx, dtype=float)**2 + np.asarray(fy, dtype=float)**2) / self.fmax
        otf = ideal_otf(rho) * self.otf_correction ** np.minimum(rho, 1.)

        return otf

    def attenuation(self,
                    fx: Union[float, np.ndarray],
                    fy: Union[float, np.ndarray]) -> np.ndarray:
        """
        Attenuation factor at (fx, fy). Returns ones if attenuation is switched off

        :param fx:
        :param fy:
        :return att:
        """
        ff_sqr = np.asarray(fx, dtype=float)**2 + np.asarray(fy, dtype=float)**2

        if not self.use_attenuation:
            return np.ones(ff_sqr.shape)

        sigma = self.attenuation_fwhm / (2 * np.sqrt(2 * np.log(2)))
        return 1 - self.attenuation_strength * np.exp(-ff_sqr / (2 * sigma**2))

    def effective(self,
                  fx: Union[float, np.ndarray],
                  fy: Union[float, np.ndarray],
                  band: int = 0) -> np.ndarray:
        """
        OTF including attenuation (if switched on). This is the transfer function used for Wiener filtering

        :param fx:
        :param fy:
        :param band:
        :return otf:
        """
        return self.value(fx, fy, band) * self.attenuation(fx, fy)

    def set_attenuation(self,
                        strength: float,
                        fwhm: float):
        """
        Return new model with given attenuation strength and FWHM (in 1/um). This does not switch attenuation on
        """
        return replace(self, attenuation_strength=strength, attenuation_fwhm=fwhm)

    def switch_attenuation(self, enabled: bool):
        return replace(self, use_attenuation=bool(enabled))

    @staticmethod
    def _check_band(band: int):
        if band < 0:
            raise ConfigurationError(f"band must be non-negative, but was {band:d}")
