"""
Parameter containers for SIM reconstruction.

`IlluminationParameters` holds the acquisition geometry (number of bands, directions and phases, image size and
pixel size), the Wiener filter and apodization settings, and once estimated, the per-direction illumination
parameters stored as `DirectionParameters`. All containers are immutable. Estimation produces a new snapshot
rather than modifying an existing one, so a single parameter set can be shared between reconstructions of
many slices.

The illumination pattern for direction d and phase step j is modeled as

.. math::

  I_{dj}(r) = 1 + \\sum_{b=1}^{n_b - 1} m_{db} \\cos \\left(b \\left[2\\pi k_d \\cdot r + \\phi_d + s_{dj} \\right] \\right)

where :math:`k_d` is the fundamental frequency (in 1/um), :math:`m_{db}` are the modulation depths,
:math:`\\phi_d` is the phase offset and :math:`s_{dj}` are the known phase steps.
"""
from dataclasses import dataclass, field, replace
from typing import Optional
from collections.abc import Sequence
import numpy as np
from simrecon.analysis.errors import ConfigurationError, ReconstructionPrecondition


@dataclass(frozen=True)
class DirectionParameters:
    """
    Illumination parameters for one pattern direction

    :param frq: fundamental pattern frequency (fx, fy) in 1/um. Band b is found at b * frq
    :param mod_depths: modulation depth for each band. mod_depths[0] is always 1
    :param phase_offset: phase offset of the pattern in radians
    """
    frq: tuple[float, float]
    mod_depths: tuple[float, ...]
    phase_offset: float = 0.

    def __post_init__(self):
        frq = tuple(float(f) for f in np.ravel(self.frq))
        if len(frq) != 2 or not np.all(np.isfinite(frq)):
            raise ConfigurationError(f"frq must be two finite values (fx, fy), but was {self.frq}")

        mod_depths = tuple(float(m) for m in np.ravel(self.mod_depths))
        if len(mod_depths) < 2:
            raise ConfigurationError(f"at least two modulation depths are required, but got {len(mod_depths):d}")

        if not np.isclose(mod_depths[0], 1.):
            raise ConfigurationError(f"mod_depths[0] must be 1, but was {mod_depths[0]}")

        if not np.all(np.isfinite(mod_depths)) or np.any(np.array(mod_depths) < 0):
            raise ConfigurationError(f"modulation depths must be finite and non-negative, but were {mod_depths}")

        if not np.isfinite(self.phase_offset):
            raise ConfigurationError(f"phase_offset must be finite, but was {self.phase_offset}")

        object.__setattr__(self, "frq", frq)
        object.__setattr__(self, "mod_depths", mod_depths)
        object.__setattr__(self, "phase_offset", float(self.phase_offset))

    @property
    def nbands(self) -> int:
        return len(self.mod_depths)

    @property
    def period(self) -> float:
        """
        Pattern period in um
        """
        return 1 / np.linalg.norm(self.frq)

    @property
    def angle(self) -> float:
        """
        Pattern angle in radians
        """
        return float(np.angle(self.frq[0] + 1j * self.frq[1]))

    def to_dict(self) -> dict:
        return {"frq": list(self.frq),
                "mod_depths": list(self.mod_depths),
                "phase_offset": self.phase_offset}

    @classmethod
    def from_dict(cls, d: dict):
        return cls(frq=d["frq"],
                   mod_depths=d["mod_depths"],
                   phase_offset=d.get("phase_offset", 0.))


@dataclass(frozen=True)
class IlluminationParameters:
    """
    Immutable SIM parameter set. Counts are fixed at construction. Per-direction parameters are either
    absent (not yet estimated) or present for every direction.

    Example:

    >>> params = IlluminationParameters(nbands=3, ndirs=3, nphases=5, size=512, pixel_size=0.08)
    >>> params.is_complete
    False
    >>> params = params.with_directions([DirectionParameters((1.7, 0.), (1., 0.5, 0.5), 0.)] * 3)
    >>> params.is_complete
    True

    :param nbands: number of bands, including the unshifted band. 2 for two-beam SIM, 3 for three-beam SIM.
    :param ndirs: number of pattern directions
    :param nphases: number of phase steps per direction. Must be at least 2 * nbands - 1
    :param size: raw image size (square images)
    :param pixel_size: raw image pixel size in um
    :param wiener_parameter: Wiener filter parameter
    :param apo_cutoff: apodization cutoff as a multiple of the OTF cutoff frequency
    :param apo_bend: apodization bend. Start of the cosine taper as a fraction of the OTF cutoff frequency,
      or the exponent of the OTF power apodization
    :param phase_steps: None if phase steps are equally spaced (2*pi*j / nphases), otherwise a
      ndirs x nphases table of phase steps in radians
    :param directions: empty, or one DirectionParameters per direction
    """
    nbands: int
    ndirs: int
    nphases: int
    size: int
    pixel_size: float
    wiener_parameter: float = 0.05
    apo_cutoff: float = 2.
    apo_bend: float = 0.9
    phase_steps: Optional[tuple[tuple[float, ...], ...]] = None
    directions: tuple[DirectionParameters, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.nbands < 2:
            raise ConfigurationError(f"nbands must be at least 2, but was {self.nbands:d}")

        if self.ndirs < 1:
            raise ConfigurationError(f"ndirs must be at least 1, but was {self.ndirs:d}")

        if self.nphases < 2 * self.nbands - 1:
            raise ConfigurationError(f"nphases must be at least 2*nbands - 1 = {2 * self.nbands - 1:d} to separate "
                                     f"the bands, but was {self.nphases:d}")

        if self.size <= 0:
            raise ConfigurationError(f"size must be positive, but was {self.size:d}")

        if not self.pixel_size > 0:
            raise ConfigurationError(f"pixel_size must be positive, but was {self.pixel_size}")

        if not self.wiener_parameter > 0:
            raise ConfigurationError(f"wiener_parameter must be positive, but was {self.wiener_parameter}")

        if not self.apo_cutoff > 0:
            raise ConfigurationError(f"apo_cutoff must be positive, but was {self.apo_cutoff}")

        if not self.apo_bend > 0:
            raise ConfigurationError(f"apo_bend must be positive, but was {self.apo_bend}")

        # phase steps
        if self.phase_steps is not None:
            steps = np.array(self.phase_steps, dtype=float)
            if steps.shape != (self.ndirs, self.nphases):
                raise ConfigurationError(f"phase_steps must have shape {(self.ndirs, self.nphases)}, "
                                         f"but had shape {steps.shape}")

            if not np.all(np.isfinite(steps)):
                raise ConfigurationError("phase_steps must be finite")

            object.__setattr__(self, "phase_steps", tuple(tuple(float(s) for s in row) for row in steps))

        # per-direction parameters
        directions = tuple(self.directions)
        if len(directions) != 0 and len(directions) != self.ndirs:
            raise ConfigurationError(f"directions must be empty or have {self.ndirs:d} entries, "
                                     f"but had {len(directions):d}")

        for ii, d in enumerate(directions):
            if not isinstance(d, DirectionParameters):
                raise ConfigurationError(f"direction {ii:d} was {type(d)}, not DirectionParameters")

            if d.nbands != self.nbands:
                raise ConfigurationError(f"direction {ii:d} had {d.nbands:d} modulation depths, "
                                         f"but nbands={self.nbands:d}")

        object.__setattr__(self, "size", int(self.size))
        object.__setattr__(self, "pixel_size", float(self.pixel_size))
        object.__setattr__(self, "directions", directions)

    @property
    def ncomponents(self) -> int:
        return 2 * self.nbands - 1

    @property
    def is_complete(self) -> bool:
        return len(self.directions) == self.ndirs

    @property
    def df(self) -> float:
        """
        Fourier space pixel size in 1/um
        """
        return 1 / (self.size * self.pixel_size)

    @property
    def frqs(self) -> np.ndarray:
        """
        Fundamental pattern frequencies as an ndirs x 2 array in 1/um
        """
        self._require_complete()
        return np.array([d.frq for d in self.directions])

    @property
    def frqs_pixels(self) -> np.ndarray:
        """
        Fundamental pattern frequencies as an ndirs x 2 array in units of Fourier space pixels
        """
        return self.frqs / self.df

    @property
    def mod_depths(self) -> np.ndarray:
        """
        ndirs x nbands array of modulation depths
        """
        self._require_complete()
        return np.array([d.mod_depths for d in self.directions])

    @property
    def phase_offsets(self) -> np.ndarray:
        self._require_complete()
        return np.array([d.phase_offset for d in self.directions])

    def get_phase_steps(self, direction: int) -> np.ndarray:
        """
        Phase steps for a given direction

        :param direction:
        :return phase_steps: array of size nphases
        """
        if direction < 0 or direction >= self.ndirs:
            raise ValueError(f"direction must be in [0, {self.ndirs - 1:d}], but was {direction:d}")

        if self.phase_steps is None:
            return 2 * np.pi * np.arange(self.nphases) / self.nphases

        return np.array(self.phase_steps[direction])

    def with_directions(self, directions: Sequence[DirectionParameters]):
        """
        Return a new parameter set with the given per-direction parameters

        :param directions:
        :return params:
        """
        return replace(self, directions=tuple(directions))

    def with_filter(self,
                    wiener_parameter: Optional[float] = None,
                    apo_cutoff: Optional[float] = None,
                    apo_bend: Optional[float] = None):
        """
        Return a new parameter set with updated filter settings. Arguments which are None keep their current value
        """
        changes = {}
        if wiener_parameter is not None:
            changes["wiener_parameter"] = wiener_parameter
        if apo_cutoff is not None:
            changes["apo_cutoff"] = apo_cutoff
        if apo_bend is not None:
            changes["apo_bend"] = apo_bend

        return replace(self, **changes)

    def to_dict(self) -> dict:
        """
        Convert to a JSON serializable dictionary
        """
        return {"nbands": self.nbands,
                "ndirs": self.ndirs,
                "nphases": self.nphases,
                "size": self.size,
                "pixel_size": self.pixel_size,
                "wiener_parameter": self.wiener_parameter,
                "apo_cutoff": self.apo_cutoff,
                "apo_bend": self.apo_bend,
                "phase_steps": None if self.phase_steps is None else [list(s) for s in self.phase_steps],
                "directions": [d.to_dict() for d in self.directions]
                }

    @classmethod
    def from_dict(cls, d: dict):
        d = dict(d)
        d["directions"] = tuple(DirectionParameters.from_dict(v) for v in d.get("directions", []))
        return cls(**d)

    def _require_complete(self):
        if not self.is_complete:
            raise ReconstructionPrecondition("illumination parameters have not been estimated for all directions")


@dataclass(frozen=True)
class EstimationSettings:
    """
    Settings for illumination parameter estimation

    :param fit_band: band used to fit the pattern frequency. None uses the highest band. For three-beam data
      band 1 is typically more robust while band 2 is more precise
    :param coarse_search: if True, search for the frequency peak by cross-correlation. If False, only refine
      the frequencies already stored in the parameter set
    :param fit_exclude: inner radius of the frequency search region as a fraction of the OTF cutoff
    :param fmax_search: outer radius of the frequency search region as a fraction of the OTF cutoff. Increase
      above 1 for TIRF-SIM data
    :param fine_search_pixels: half-width of the sub-pixel refinement region in Fourier pixels
    :param min_correlation: minimum band correlation quality. Directions below this fail
    :param min_mod_depth: minimum modulation depth of the fit band. Directions below this fail
    :param otf_mask_threshold: only frequencies where both OTFs exceed this value enter the band correlation
    :param correlation_wiener: Wiener parameter used when weighting bands by the OTF during the frequency search
    :param tie_rtol: relative tolerance for considering two correlation peak values equal
    """
    fit_band: Optional[int] = None
    coarse_search: bool = True
    fit_exclude: float = 0.6
    fmax_search: float = 1.
    fine_search_pixels: float = 2.
    min_correlation: float = 0.05
    min_mod_depth: float = 1e-3
    otf_mask_threshold: float = 0.1
    correlation_wiener: float = 0.3
    tie_rtol: float = 1e-12

    def __post_init__(self):
        if self.fit_band is not None and self.fit_band < 1:
            raise ConfigurationError(f"fit_band must be at least 1, but was {self.fit_band:d}")

        if self.fit_exclude < 0:
            raise ConfigurationError(f"fit_exclude must be non-negative, but was {self.fit_exclude}")

        if not self.fmax_search > self.fit_exclude:
            raise ConfigurationError(f"fmax_search={self.fmax_search} must be larger than "
                                     f"fit_exclude={self.fit_exclude}")

        if not self.fine_search_pixels > 0:
            raise ConfigurationError(f"fine_search_pixels must be positive, but was {self.fine_search_pixels}")

        if not 0 <= self.min_correlation <= 1:
            raise ConfigurationError(f"min_correlation must be in [0, 1], but was {self.min_correlation}")

        if self.min_mod_depth < 0:
            raise ConfigurationError(f"min_mod_depth must be non-negative, but was {self.min_mod_depth}")

        if not 0 <= self.otf_mask_threshold < 1:
            raise ConfigurationError(f"otf_mask_threshold must be in [0, 1), but was {self.otf_mask_threshold}")

        if self.correlation_wiener < 0:
            raise ConfigurationError(f"correlation_wiener must be non-negative, but was {self.correlation_wiener}")

        if self.tie_rtol < 0:
            raise ConfigurationError(f"tie_rtol must be non-negative, but was {self.tie_rtol}")

    def get_fit_band(self, nbands: int) -> int:
        """
        Band used for frequency fitting, resolving the default
        """
        fit_band = nbands - 1 if self.fit_band is None else self.fit_band
        if fit_band >= nbands:
            raise ConfigurationError(f"fit_band={fit_band:d} must be less than nbands={nbands:d}")

        return fit_band


@dataclass(frozen=True)
class ReconstructionSettings:
    """
    Settings for the Wiener filter reconstruction

    :param otf_before_shift: apply the conjugate OTF to each band before shifting it. Otherwise the OTF is
      evaluated at the shifted frequencies after the shift
    :param output_mode: "none" keeps negative values, "clip" sets negative values to zero and "clip-scale"
      clips and rescales to [0, display_max]
    :param upsample_factor: the reconstruction grid is this factor larger than the raw image grid
    :param apodization_mode: "cosine" or "otf-power"
    :param display_max: maximum value used by "clip-scale"
    """
    allowed_output_modes = ("none", "clip", "clip-scale")
    allowed_apodization_modes = ("cosine", "otf-power")

    otf_before_shift: bool = True
    output_mode: str = "none"
    upsample_factor: int = 2
    apodization_mode: str = "cosine"
    display_max: float = 255.

    def __post_init__(self):
        if self.output_mode not in self.allowed_output_modes:
            raise ConfigurationError(f"output_mode must be one of {self.allowed_output_modes}, "
                                     f"but was '{self.output_mode}'")

        if self.apodization_mode not in self.allowed_apodization_modes:
            raise ConfigurationError(f"apodization_mode must be one of {self.allowed_apodization_modes}, "
                                     f"but was '{self.apodization_mode}'")

        if int(self.upsample_factor) != self.upsample_factor or self.upsample_factor < 1:
            raise ConfigurationError(f"upsample_factor must be a positive integer, but was {self.upsample_factor}")

        if not self.display_max > 0:
            raise ConfigurationError(f"display_max must be positive, but was {self.display_max}")

        object.__setattr__(self, "upsample_factor", int(self.upsample_factor))
