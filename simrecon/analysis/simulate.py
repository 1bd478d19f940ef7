"""
Generate synthetic SIM data. Objects and patterns are generated on a grid which is finer than the camera grid,
blurred by the OTF, and then resampled to the camera grid by cropping their Fourier transform.
The fine grid uses the same coordinate convention as the reconstruction grid, so the parameters used
to generate data are exactly those expected from the estimation
"""
from typing import Optional, Union
from collections.abc import Sequence
import numpy as np
from simrecon.analysis.fft import ft2, ift2, get_fft_frqs, get_fft_pos
from simrecon.analysis.otf import OtfModel
from simrecon.analysis.sim_params import IlluminationParameters
from simrecon.analysis.errors import InputShapeError, ReconstructionPrecondition, ConfigurationError


def get_sinusoidal_patterns(dxy: float,
                            size: Sequence[int],
                            frqs: np.ndarray,
                            phases: np.ndarray,
                            mod_depths: np.ndarray,
                            amps: Optional[Union[float, np.ndarray]] = None) -> np.ndarray:
    """
    Generate multi-band sinusoidal SIM patterns

    .. math::

      I(r) = A \\left[1 + \\sum_{b=1}^{n_b - 1} m_b \\cos \\left(b \\left[2\\pi f \\cdot r + \\phi \\right] \\right) \\right]

    :param dxy: pixel size
    :param size: (ny, nx)
    :param frqs: npatterns x 2
    :param phases: npatterns
    :param mod_depths: npatterns x nbands. The value for band 0 is ignored
    :param amps: npatterns
    :return patterns: npatterns x ny x nx
    """
    frqs = np.atleast_2d(frqs)
    phases = np.atleast_1d(phases)
    mod_depths = np.atleast_2d(mod_depths)
    npatterns = len(frqs)

    if amps is None:
        amps = np.ones(npatterns)
    amps = np.broadcast_to(amps, (npatterns,))

    if len(phases) != npatterns or len(mod_depths) != npatterns:
        raise ValueError(f"frqs, phases and mod_depths must have the same length, but had lengths "
                         f"{npatterns:d}, {len(phases):d} and {len(mod_depths):d}")

    ny, nx = size
    x = get_fft_pos(nx, dxy)
    y = get_fft_pos(ny, dxy)
    xx, yy = np.meshgrid(x, y)

    patterns = np.zeros((npatterns, ny, nx))
    for ii in range(npatterns):
        arg = 2 * np.pi * (frqs[ii, 0] * xx + frqs[ii, 1] * yy) + phases[ii]

        patterns[ii] = 1
        for b in range(1, mod_depths.shape[1]):
            patterns[ii] += mod_depths[ii, b] * np.cos(b * arg)

        patterns[ii] *= amps[ii]

    return patterns


def get_sim_patterns(params: IlluminationParameters,
                     upsample_factor: int = 1) -> np.ndarray:
    """
    Illumination patterns described by a complete parameter set

    :param params:
    :param upsample_factor: generate patterns on a grid this factor finer than the camera grid
    :return patterns: ndirs x nphases x (upsample_factor * size) x (upsample_factor * size)
    """
    if not params.is_complete:
        raise ReconstructionPrecondition("patterns can only be generated from complete parameters")

    frqs = np.repeat(params.frqs, params.nphases, axis=0)
    phases = np.concatenate([params.phase_offsets[ii] + params.get_phase_steps(ii) for ii in range(params.ndirs)])
    mod_depths = np.repeat(params.mod_depths, params.nphases, axis=0)

    n = upsample_factor * params.size
    patterns = get_sinusoidal_patterns(params.pixel_size / upsample_factor,
                                       (n, n),
                                       frqs,
                                       phases,
                                       mod_depths)

    return patterns.reshape((params.ndirs, params.nphases, n, n))


def get_ground_truth_beads(size: int,
                           dxy: float,
                           nbeads: int = 100,
                           bead_sigma: float = 0.1,
                           margin: Optional[float] = None,
                           seed: Optional[int] = None) -> np.ndarray:
    """
    Object made of randomly placed Gaussian beads with random brightness

    :param size: image size
    :param dxy: pixel size in um
    :param nbeads:
    :param bead_sigma: standard deviation of each bead in um
    :param margin: minimum distance between bead centers and the image edge in um. Defaults to 4 * bead_sigma
    :param seed: random seed
    :return ground_truth: size x size
    """
    rng = np.random.default_rng(seed)

    x = get_fft_pos(size, dxy)
    xx, yy = np.meshgrid(x, x)

    if margin is None:
        margin = 4 * bead_sigma

    if 2 * margin >= x[-1] - x[0]:
        raise ConfigurationError(f"margin {margin:.3f}um leaves no room for beads in an image of "
                                 f"width {x[-1] - x[0]:.3f}um")

    centers = rng.uniform(x[0] + margin, x[-1] - margin, size=(nbeads, 2))
    amps = rng.uniform(0.5, 1., size=nbeads)

    ground_truth = np.zeros((size, size))
    for (cx, cy), a in zip(centers, amps):
        ground_truth += a * np.exp(-((xx - cx) ** 2 + (yy - cy) ** 2) / (2 * bead_sigma ** 2))

    return ground_truth


def get_simulated_sim_imgs(ground_truth: np.ndarray,
                           params: IlluminationParameters,
                           otf: OtfModel,
                           upsample_factor: int = 2,
                           snr_db: Optional[float] = None,
                           seed: Optional[int] = None) -> np.ndarray:
    """
    Simulate raw SIM images. The ground truth is multiplied by each pattern on the fine grid, blurred by the OTF,
    and resampled to the camera grid. Optionally, Gaussian noise is added

    :param ground_truth: object on the fine grid, (upsample_factor * size) x (upsample_factor * size)
    :param params: complete parameter set describing the patterns
    :param otf:
    :param upsample_factor:
    :param snr_db: signal-to-noise ratio 10*log10(mean(signal^2) / noise_variance). If None, no noise is added
    :param seed: random seed for the noise
    :return imgs: ndirs x nphases x size x size
    """
    n = params.size
    n_us = upsample_factor * n
    if ground_truth.shape != (n_us, n_us):
        raise InputShapeError(f"ground_truth must have shape {(n_us, n_us)}, but had shape {ground_truth.shape}")

    patterns = get_sim_patterns(params, upsample_factor)

    f_us = get_fft_frqs(n_us, params.pixel_size / upsample_factor)
    otf_us = otf.value(*np.meshgrid(f_us, f_us))

    # central part of the spectrum maps onto the camera grid
    start = n_us // 2 - n // 2
    roi = (slice(None), slice(None), slice(start, start + n), slice(start, start + n))

    imgs = np.zeros((params.ndirs, params.nphases, n, n))
    for ii in range(params.ndirs):
        imgs_ft = ft2(ground_truth * patterns[ii]) * otf_us
        imgs[ii] = ift2(imgs_ft[roi[1:]]).real / upsample_factor ** 2

    if snr_db is not None:
        rng = np.random.default_rng(seed)
        noise_sd = np.sqrt(np.mean(imgs ** 2) / 10 ** (snr_db / 10))
        imgs = imgs + rng.normal(scale=noise_sd, size=imgs.shape)

    return imgs
