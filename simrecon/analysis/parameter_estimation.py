"""
Estimate SIM illumination parameters (pattern frequency, phase offset and modulation depths) from the raw data.

For each direction the bands are first separated using the known phase steps. The pattern frequency is found
by cross-correlating the unshifted band with a shifted band, first on the discrete frequency grid and then
to sub-pixel precision by Fourier shifting. Once the frequency is known, the bands are shifted back into
place and the phase offset and modulation depths are determined from the complex correlation between the
unshifted band and each shifted band, see get_band_correlation()
"""
from typing import Optional
from collections.abc import Sequence, Callable
from dask import delayed, compute
import numpy as np
from scipy.fft import fftshift, ifftshift, fftfreq, fft2, ifft2
from scipy.optimize import minimize
from scipy.signal import correlate
from simrecon.analysis.fft import get_fft_frqs
from simrecon.analysis.otf import OtfModel
from simrecon.analysis.sim_params import IlluminationParameters, DirectionParameters, EstimationSettings
from simrecon.analysis.sim_reconstruction import (get_band_indices, unmix_bands, shift_bands, check_slice_shape,
                                                  get_noise_power)
from simrecon.analysis.errors import EstimationFailure, ConfigurationError, InputShapeError

# bands are shifted on a grid upsampled by this factor before correlating
_correlation_upsample_factor = 2


def fit_modulation_frq(mft1: np.ndarray,
                       mft2: np.ndarray,
                       dxy: float,
                       mask: Optional[np.ndarray] = None,
                       frq_guess: Optional[Sequence[float]] = None,
                       max_frq_shift: Optional[float] = None,
                       otf: Optional[np.ndarray] = None,
                       otf_fn: Optional[Callable] = None,
                       wiener_param: float = 0.3,
                       tie_rtol: float = 1e-12,
                       keep_guess_if_better: bool = True) -> (np.ndarray, np.ndarray, dict):
    """
    Find SIM frequency from image by maximizing the cross correlation between ft1 and ft2

    .. math::

       C(f') &= \\sum_f ft_1(f)  ft_2^*(f + f')

       f^\\star &= \\text{argmax}_{f'} |C(f')|

    An initial guess is found by evaluating the cross-correlation on the discrete frequency grid, normalized by
    the cross-correlation of the OTF weights, and taking the maximum within the mask. If several points have
    the same value (within tie_rtol), the one closest to the search center is chosen, and remaining ties are
    broken by (fy, fx). The search center is the origin, or frq_guess if provided.
    The initial guess is then refined to sub-pixel precision by maximizing the normalized correlation

    .. math::

       Q(f') = \\frac{\\left|\\sum_f \\left[ft_1(f) H(f + f')\\right]^* ft_2(f + f') H(f)\\right|}
       {\\sqrt{\\sum_f |ft_1(f) H(f + f')|^2 \\sum_f |ft_2(f + f') H(f)|^2}}

    If :math:`ft_2(f) = c \\cdot O(f - f_o) H(f)` and :math:`ft_1(f) = O(f) H(f)`, both terms are proportional at
    :math:`f' = f_o` and Q reaches its maximum value 1 there, so the OTF does not bias the fit.

    :param mft1: 2D Fourier space image
    :param mft2: 2D Fourier space image to be cross correlated with ft1
    :param dxy: pixel size. Units of dxy and frequencies must be consistent
    :param mask: boolean array same size as ft1 and ft2. Only consider frequency points where mask is True
      for the initial guess. If frq_guess is provided, the mask is further restricted to points within
      max_frq_shift of the guess
    :param frq_guess: frequency guess [fx, fy]
    :param max_frq_shift: maximum frequency shift during refinement, and maximum distance from the guess
      considered when frq_guess is provided. Defaults to two Fourier pixels
    :param otf: OTF evaluated at the frequencies of ft1 and ft2, used to weight the correlation
    :param otf_fn: function otf_fn(fx, fy) returning the OTF at arbitrary frequencies, used during refinement.
      If None, the OTF is not used during refinement
    :param wiener_param:
    :param tie_rtol: relative tolerance for equal correlation values
    :param keep_guess_if_better: keep the initial frequency guess if the cost function is more optimal
       at this point than after fitting
    :return fit_frqs, mask, fit_result:
    """

    if mft1.shape != mft2.shape:
        raise ValueError("must have ft1.shape = ft2.shape")

    if mft1.ndim != 2:
        raise ValueError(f"ft1 must be 2D, but had shape {mft1.shape}")

    ny, nx = mft1.shape
    dfx = 1 / (nx * dxy)
    dfy = 1 / (ny * dxy)

    if max_frq_shift is None:
        max_frq_shift = 2 * max(dfx, dfy)

    # mask
    if mask is None:
        mask = np.ones(mft1.shape, dtype=bool)
    else:
        mask = np.array(mask, dtype=bool, copy=True)

    if mask.shape != mft1.shape:
        raise ValueError("mask must have same shape as ft1")

    # otf
    if otf is None:
        otf = 1.
        wiener_param = 0.

    # get frequency data
    fxs = get_fft_frqs(nx, dxy)
    fys = get_fft_frqs(ny, dxy)
    fxfx, fyfy = np.meshgrid(fxs, fys)

    if frq_guess is None:
        center = np.zeros(2)
    else:
        center = np.array(frq_guess, dtype=float)
        mask[np.logical_or(np.abs(fxfx - center[0]) > max_frq_shift,
                           np.abs(fyfy - center[1]) > max_frq_shift)] = False

    if not np.any(mask):
        raise ValueError("frequency search region was empty")

    # ############################
    # initial guess using cross-correlation on the discrete grid
    # ############################
    otf_factor = np.conj(otf) / (np.abs(otf) ** 2 + wiener_param ** 2) * np.ones(mft1.shape)

    # cc(k) = \sum_f ft2(f + k) ft1^*(f). Index i of the output of correlate with mode='same'
    # corresponds to a shift of i - n//2, which matches the frequency grid of fftshift(fftfreq(n))
    cc = np.abs(correlate(mft2 * otf_factor,
                          mft1 * otf_factor,
                          mode='same'))

    otf_cc = np.abs(correlate(otf_factor,
                              otf_factor,
                              mode='same'))

    with np.errstate(divide="ignore", invalid="ignore"):
        to_max = cc / otf_cc
    to_max[np.logical_not(np.isfinite(to_max))] = 0.
    to_max[np.logical_not(mask)] = 0.

    peak_value = float(np.max(to_max[mask]))

    # candidate points, ordered by distance to search center, then fy, then fx
    candidates = np.logical_and(mask, to_max >= peak_value * (1 - tie_rtol))
    cfx = fxfx[candidates]
    cfy = fyfy[candidates]
    dists = np.sqrt((cfx - center[0]) ** 2 + (cfy - center[1]) ** 2)
    ind = np.lexsort((cfx, cfy, dists))[0]

    init_params = np.array([cfx[ind], cfy[ind]])

    # ############################
    # define normalized correlation and minimization objective function
    # ############################
    # real-space coordinates, in the same order as the unshifted FFT
    x = fftfreq(nx) * nx * dxy
    y = fftfreq(ny) * ny * dxy
    xx, yy = np.meshgrid(x, y)

    img2 = ifft2(ifftshift(mft2))

    # compute ft2(f + fo)
    def fft_shifted(f): return fftshift(fft2(np.exp(-1j * 2 * np.pi * (f[0] * xx + f[1] * yy)) * img2))

    if otf_fn is None:
        def otf_shifted(f): return 1.
        otf_grid = 1.
    else:
        def otf_shifted(f): return otf_fn(fxfx + f[0], fyfy + f[1])
        otf_grid = otf_fn(fxfx, fyfy)

    def cc_fn(f):
        t1 = mft1 * otf_shifted(f)
        t2 = fft_shifted(f) * otf_grid
        norm = np.sum(np.abs(t1) ** 2) * np.sum(np.abs(t2) ** 2)
        if norm == 0:
            return 0.

        return np.abs(np.sum(t1.conj() * t2)) ** 2 / norm

    # optimize in units of Fourier pixels relative to the initial guess
    df = np.array([dfx, dfy])
    def min_fn(p): return -cc_fn(init_params + p * df)

    # ############################
    # do fitting
    # ############################
    bounds = ((-max_frq_shift / dfx, max_frq_shift / dfx),
              (-max_frq_shift / dfy, max_frq_shift / dfy))

    fit_result = minimize(min_fn, np.zeros(2), bounds=bounds, options={"ftol": 1e-14, "gtol": 1e-12})

    # polish, since finite difference gradients limit the precision of L-BFGS-B near the maximum
    steps = np.where(fit_result.x > 0, -0.01, 0.01)
    simplex = fit_result.x + np.array([[0., 0.], [steps[0], 0.], [0., steps[1]]])
    polish_result = minimize(min_fn, fit_result.x, method="Nelder-Mead", bounds=bounds,
                             options={"xatol": 1e-6, "fatol": 1e-12, "initial_simplex": simplex})

    # convert to dictionary and add anything we want to it
    fit_result = dict(fit_result)
    fit_result["polish_nit"] = polish_result.nit
    if polish_result.fun <= fit_result["fun"]:
        fit_result["x"] = polish_result.x
        fit_result["fun"] = polish_result.fun

    fit_frqs = init_params + fit_result["x"] * df
    fit_result["init_params"] = init_params
    fit_result["peak_value"] = peak_value

    # ensure we never get a worse point than our initial guess
    if keep_guess_if_better and min_fn(np.zeros(2)) < fit_result["fun"]:
        fit_frqs = init_params

    return fit_frqs, mask, fit_result


def get_band_correlation(band0: np.ndarray,
                         band1: np.ndarray,
                         otf0: np.ndarray,
                         otf1: np.ndarray,
                         mask: np.ndarray) -> (complex, float):
    """
    Compare the unshifted (0th) SIM band with a shifted band to estimate the phase offset and
    modulation depth.

    This is done by computing the amplitude and phase of

    .. math::

      C = \\frac{\\sum_f \\left[b_0(f) / H(f) \\right]^* b_1(f) / H(f + f_o)}{\\sum |b_0(f) / H(f)|^2}

    If correct reconstruction parameters are used, we expect the bands differ only by a complex constant over
    any areas where they are not noise corrupted and both the OTF and the shifted OTF have support,

    .. math::

       b_1(f) = m  e^{i \\phi} b_0(f)

    so that :math:`C = m e^{i \\phi}`

    :param band0: ny x nx. band0(f) = O(f) * otf(f)
    :param band1: same shape as band0. band1(f) = m * exp(i*phi) * O(f) * otf(f + fo),
       i.e. the separated band after shifting to correct position
    :param otf0: otf(f)
    :param otf1: otf(f + fo)
    :param mask: where mask is True, use these points to evaluate the band correlation.
       Typically construct by picking points where otf(f) and otf(f + fo) are both > w, where w is some cutoff value.
    :return corr, quality: complex correlation C, and normalized correlation coefficient in [0, 1]
    """

    with np.errstate(invalid="ignore", divide="ignore"):
        x = band0[mask] / otf0[mask]
        y = band1[mask] / otf1[mask]

        cross = np.sum(np.conj(x) * y)
        norm0 = np.sum(np.abs(x) ** 2)
        norm1 = np.sum(np.abs(y) ** 2)

        corr = cross / norm0
        quality = np.abs(cross) / np.sqrt(norm0 * norm1)

    return complex(corr), float(quality)


def estimate_direction(imgs_ft: np.ndarray,
                       params: IlluminationParameters,
                       direction: int,
                       otf: OtfModel,
                       settings: Optional[EstimationSettings] = None) -> (DirectionParameters, dict):
    """
    Estimate illumination parameters for a single pattern direction

    :param imgs_ft: Fourier transformed images for this direction, nphases x size x size
    :param params: parameter set providing geometry and phase steps. If settings.coarse_search is False,
      params must be complete and its frequencies are used as the starting point
    :param direction: direction index
    :param otf:
    :param settings:
    :return direction_params, info:
    """
    if settings is None:
        settings = EstimationSettings()

    expected = (params.nphases, params.size, params.size)
    if imgs_ft.shape != expected:
        raise InputShapeError(f"expected images of shape {expected}, but got shape {imgs_ft.shape}")

    nbands = params.nbands
    dxy = params.pixel_size
    fit_band = settings.get_fit_band(nbands)
    band_inds = list(get_band_indices(nbands))

    # ############################
    # separate bands using known phase steps
    # ############################
    bands_ft = unmix_bands(imgs_ft, params.get_phase_steps(direction), nbands)

    # e.g. uniform frames, where every shifted band is zero up to rounding
    fit_power = np.sum(np.abs(bands_ft[band_inds.index(fit_band)]) ** 2)
    ref_power = np.sum(np.abs(bands_ft[0]) ** 2)
    if not fit_power > np.finfo(float).eps * ref_power:
        raise EstimationFailure(direction, f"band {fit_band:d} carries no signal, so the pattern is not modulated")

    f_raw = get_fft_frqs(params.size, dxy)
    fxfx, fyfy = np.meshgrid(f_raw, f_raw)
    otf_raw = otf.value(fxfx, fyfy)

    # ############################
    # fit frequency of target band
    # ############################
    if settings.coarse_search:
        ff = np.sqrt(fxfx ** 2 + fyfy ** 2)
        mask = np.logical_and(ff >= settings.fit_exclude * otf.fmax,
                              ff <= settings.fmax_search * otf.fmax)
        frq_guess = None
    else:
        if not params.is_complete:
            raise ConfigurationError("fine frequency search requires frequency guesses, "
                                     "but parameters have not been set")
        mask = None
        frq_guess = fit_band * np.array(params.directions[direction].frq)

    try:
        fit_frq, _, fit_result = fit_modulation_frq(bands_ft[0],
                                                    bands_ft[band_inds.index(fit_band)],
                                                    dxy,
                                                    mask=mask,
                                                    frq_guess=frq_guess,
                                                    max_frq_shift=settings.fine_search_pixels * params.df,
                                                    otf=otf_raw,
                                                    otf_fn=otf.value,
                                                    wiener_param=settings.correlation_wiener,
                                                    tie_rtol=settings.tie_rtol)
    except ValueError as e:
        raise EstimationFailure(direction, f"frequency fit failed: {e}") from e

    if not fit_result["peak_value"] > 0 or not np.all(np.isfinite(fit_frq)):
        raise EstimationFailure(direction, "no correlation peak found in the frequency search region")

    frq = fit_frq / fit_band

    # ############################
    # shift bands and correlate with unshifted band to get phase offset and modulation depths
    # ############################
    us = _correlation_upsample_factor
    bands_shifted_ft = shift_bands(bands_ft, frq, band_inds, (dxy, dxy), us)

    f_us = get_fft_frqs(us * params.size, dxy / us)
    fxfx_us, fyfy_us = np.meshgrid(f_us, f_us)
    otf0 = otf.value(fxfx_us, fyfy_us)

    corrs = np.zeros(nbands, dtype=complex)
    qualities = np.zeros(nbands)
    corrs[0] = 1.
    qualities[0] = 1.
    for b in range(1, nbands):
        otf_b = otf.value(fxfx_us + b * frq[0], fyfy_us + b * frq[1], band=b)
        mask_b = np.logical_and(otf0 > settings.otf_mask_threshold,
                                otf_b > settings.otf_mask_threshold)

        if not np.any(mask_b):
            raise EstimationFailure(direction, f"band {b:d} has no overlap with band 0 where both OTFs exceed "
                                               f"{settings.otf_mask_threshold:.3f}. The frequency fit may have failed")

        corrs[b], qualities[b] = get_band_correlation(bands_shifted_ft[0],
                                                      bands_shifted_ft[band_inds.index(b)],
                                                      otf0,
                                                      otf_b,
                                                      mask_b)

        if not np.isfinite(corrs[b]) or not np.isfinite(qualities[b]):
            raise EstimationFailure(direction, f"band {b:d} correlation was not finite")

    if qualities[fit_band] < settings.min_correlation:
        raise EstimationFailure(direction, f"band {fit_band:d} correlation quality {qualities[fit_band]:.3f} "
                                           f"was below minimum {settings.min_correlation:.3f}")

    if np.abs(corrs[fit_band]) < settings.min_mod_depth:
        raise EstimationFailure(direction, f"band {fit_band:d} modulation depth {np.abs(corrs[fit_band]):.3g} "
                                           f"was below minimum {settings.min_mod_depth:.3g}")

    mod_depths = np.abs(corrs)
    mod_depths[0] = 1.

    direction_params = DirectionParameters(frq=tuple(frq),
                                           mod_depths=tuple(mod_depths),
                                           phase_offset=float(np.angle(corrs[1])))

    # peak-to-noise ratio of the target band, diagnostic only
    noise = np.sqrt(get_noise_power(bands_ft[band_inds.index(fit_band)], (dxy, dxy), otf.fmax))

    info = {"direction": direction,
            "fit_band": fit_band,
            "coarse_search": settings.coarse_search,
            "frq_guess": frq_guess,
            "fit_result": fit_result,
            "correlations": corrs,
            "qualities": qualities,
            "noise": noise}

    return direction_params, info


def estimate_parameters(imgs_ft: np.ndarray,
                        params: IlluminationParameters,
                        otf: OtfModel,
                        settings: Optional[EstimationSettings] = None,
                        scheduler: str = "threads") -> IlluminationParameters:
    """
    Estimate illumination parameters for all directions in parallel

    :param imgs_ft: Fourier transformed images, ndirs x nphases x size x size
    :param params:
    :param otf:
    :param settings:
    :param scheduler: dask scheduler
    :return params_estimated: new parameter set containing the estimated per-direction parameters
    """
    check_slice_shape(imgs_ft, params)

    r = [delayed(estimate_direction)(imgs_ft[ii], params, ii, otf, settings) for ii in range(params.ndirs)]
    results = compute(*r, scheduler=scheduler)
    directions, _ = zip(*results)

    return params.with_directions(directions)
