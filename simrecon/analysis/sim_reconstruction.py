"""
Tools for reconstructing 2D sinusoidal SIM images from raw data using generalized Wiener filtering.
Suppose we illuminate an object :math:`O(r)` with a series of patterns

.. math::

  I_{dj}(r) = 1 + \\sum_{b=1}^{n_b - 1} m_{db} \\cos \\left(b \\left[2\\pi k_d \\cdot r + \\phi_d + s_{dj} \\right] \\right)

Then the images we measure are

.. math::

  D_{dj}(r) = \\left[I_{dj}(r) O(r) \\right] * h(r)

where :math:`h(r)` is the point-spread function of the system. In Fourier space each image is a mixture of
:math:`2 n_b - 1` components :math:`O(f - b k_d) H(f)`, which are separated using the known phase steps,
shifted back to their true positions, and combined using a Wiener filter.

Fourier components are always ordered [0, 1, -1, 2, -2, ...], see get_band_indices().
"""
from typing import Optional, Union
from collections.abc import Sequence, Callable
from warnings import warn
import numpy as np
from simrecon.analysis.fft import irft2, conj_transpose_fft, translate_ft, get_fft_frqs
from simrecon.analysis.otf import OtfModel, ideal_otf
from simrecon.analysis.sim_params import IlluminationParameters, ReconstructionSettings
from simrecon.analysis.errors import ConfigurationError, InputShapeError, ReconstructionPrecondition

# processing stages, in order. The observer callback is invoked for a stage when feedback_level >= its level
STAGE_RAW = "raw"
STAGE_PREPROCESSED = "preprocessed"
STAGE_BAND_SEPARATED = "band-separated"
STAGE_SHIFTED_FILTERED = "shifted-filtered"
STAGE_COMBINED = "combined"
STAGE_RECONSTRUCTED = "reconstructed"

STAGES = (STAGE_RAW,
          STAGE_PREPROCESSED,
          STAGE_BAND_SEPARATED,
          STAGE_SHIFTED_FILTERED,
          STAGE_COMBINED,
          STAGE_RECONSTRUCTED)

STAGE_LEVELS = {STAGE_RAW: 4,
                STAGE_PREPROCESSED: 4,
                STAGE_BAND_SEPARATED: 3,
                STAGE_SHIFTED_FILTERED: 2,
                STAGE_COMBINED: 1,
                STAGE_RECONSTRUCTED: 0}


def notify_stage(callback: Optional[Callable],
                 feedback_level: int,
                 stage: str,
                 data):
    """
    Pass intermediate data to an observer if the feedback level is high enough

    :param callback: function called as callback(stage, data), or None
    :param feedback_level: -1 disables all feedback
    :param stage: one of STAGES
    :param data:
    """
    if callback is not None and feedback_level >= STAGE_LEVELS[stage]:
        callback(stage, data)


# SIM band manipulation functions
def get_band_indices(nbands: int) -> np.ndarray:
    """
    Multiple of the pattern frequency where each Fourier component is centered, [0, 1, -1, 2, -2, ...]

    :param nbands: number of bands including the unshifted band
    :return band_inds: array of size 2 * nbands - 1
    """
    if nbands < 1:
        raise ValueError(f"nbands must be at least 1, but was {nbands:d}")

    band_inds = [0]
    for b in range(1, nbands):
        band_inds += [b, -b]

    return np.array(band_inds, dtype=int)


def get_band_mixing_matrix(phases: Sequence[float],
                           nbands: int,
                           mod_depths: Optional[Union[float, Sequence[float]]] = None,
                           amps: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Return matrix M, which relates the measured images to the object profile filtered by the OTF.
    For three phases and two bands,

    .. math::

       \\begin{pmatrix}
         D_1(f)\\\\
         D_2(f)\\\\
         D_3(f)
       \\end{pmatrix}
       = M
       \\begin{pmatrix}
       O(f)H(f)\\\\
       O(f-p)H(f)\\\\
       O(f+p)H(f)
       \\end{pmatrix}

    with

    .. math::

      M =
      \\begin{pmatrix}
      A_1 & \\frac{1}{2} A_1 m e^{i \\phi_1} & \\frac{1}{2} A_1 m e^{-i \\phi_1}\\\\
      A_2 & \\frac{1}{2} A_2 m e^{i \\phi_2} & \\frac{1}{2} A_2 m e^{-i \\phi_2}\\\\
      A_3 & \\frac{1}{2} A_3 m e^{i \\phi_3} & \\frac{1}{2} A_3 m e^{-i \\phi_3}
      \\end{pmatrix}

    For more bands, the column for component :math:`\\pm b` is :math:`\\frac{1}{2} A_j m_b e^{\\pm i b \\phi_j}`

    :param phases: np.array([phase_1, ..., phase_n])
    :param nbands: number of bands
    :param mod_depths: modulation depth for each band (the value for band 0 is ignored), or a single value
      used for all bands. If None, all are set to 1
    :param amps: np.array([a_1, a_2, ..., a_n]). If None, all are set to 1
    :return mat: nphases x (2 * nbands - 1) matrix
    """
    phases = np.atleast_1d(np.asarray(phases, dtype=float))

    if amps is None:
        amps = np.ones(len(phases))
    amps = np.asarray(amps, dtype=float)

    if mod_depths is None:
        mod_depths = np.ones(nbands)
    elif np.ndim(mod_depths) == 0:
        mod_depths = np.full(nbands, float(mod_depths))
    mod_depths = np.asarray(mod_depths, dtype=float)

    if len(amps) != len(phases):
        raise ValueError(f"len(amps)={len(amps):d} did not match len(phases)={len(phases):d}")

    if len(mod_depths) != nbands:
        raise ValueError(f"len(mod_depths)={len(mod_depths):d} did not match nbands={nbands:d}")

    band_inds = get_band_indices(nbands)
    mods = np.where(band_inds == 0, 1., 0.5 * mod_depths[np.abs(band_inds)])

    mat = amps[:, None] * mods[None, :] * np.exp(1j * phases[:, None] * band_inds[None, :])

    return mat


def phases_equally_spaced(phases: Sequence[float],
                          atol: float = 1e-6) -> bool:
    """
    Test if phases are equally spaced over 2pi, up to ordering and a global offset

    :param phases:
    :param atol: tolerance in radians
    :return equally_spaced:
    """
    phases = np.atleast_1d(np.asarray(phases, dtype=float))
    n = len(phases)

    diffs = np.sort(np.mod(phases - phases[0], 2 * np.pi))
    expected = 2 * np.pi * np.arange(n) / n

    # circular distance, so that e.g. 2pi - 1e-12 matches 0
    err = np.abs(np.angle(np.exp(1j * (diffs - expected))))

    return bool(np.all(err < atol))


def get_band_mixing_inv(phases: Sequence[float],
                        nbands: int,
                        mod_depths: Optional[Union[float, Sequence[float]]] = None,
                        amps: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Get inverse of the band mixing matrix, which maps measured data to separated (but unshifted) bands.
    If phases are equally spaced and amplitudes are equal, the columns of M are orthogonal and the inverse is
    computed in closed form. Otherwise, the least-squares pseudo-inverse is used.

    :param phases: nphases
    :param nbands:
    :param mod_depths:
    :param amps:
    :return mixing_mat_inv: (2 * nbands - 1) x nphases
    """
    ncomponents = 2 * nbands - 1
    if len(phases) < ncomponents:
        raise ConfigurationError(f"separating {ncomponents:d} components requires at least {ncomponents:d} phases, "
                                 f"but only {len(phases):d} were provided")

    mixing_mat = get_band_mixing_matrix(phases, nbands, mod_depths, amps)

    equal_amps = amps is None or np.allclose(amps, amps[0])
    if phases_equally_spaced(phases) and equal_amps:
        # M^H M is diagonal
        col_norms = np.sum(np.abs(mixing_mat) ** 2, axis=0)
        if np.any(col_norms == 0):
            raise ConfigurationError("band mixing matrix has a zero column. Check modulation depths and amplitudes")

        mixing_mat_inv = mixing_mat.conj().transpose() / col_norms[:, None]
    else:
        if np.linalg.matrix_rank(mixing_mat) < ncomponents:
            raise ConfigurationError(f"phases {phases} do not allow separating {ncomponents:d} components")

        # pseudo-inverse
        mixing_mat_inv = np.linalg.pinv(mixing_mat)

    return mixing_mat_inv


def unmix_bands(imgs_ft: np.ndarray,
                phases: Sequence[float],
                nbands: int,
                mod_depths: Optional[Union[float, Sequence[float]]] = None,
                amps: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Do noisy inversion of SIM data for one pattern direction, i.e. determine

    .. math::

       \\begin{pmatrix}
         O(f)H(f)\\\\
         O(f-p)H(f)\\\\
         O(f+p)H(f)
       \\end{pmatrix}
        = M^{-1}
       \\begin{pmatrix}
         D_1(f)\\\\
         D_2(f)\\\\
         D_3(f)
       \\end{pmatrix}

    If mod_depths is None, the separated components retain their modulation depth and phase offset factors,
    :math:`m_b e^{\\pm i b \\phi} O(f \\mp b p)H(f)`

    :param imgs_ft: Fourier transform of SIM image data :math:`D_j(f)` as an array of
      size n0 x ... x nm x nphases x ny x nx.
      DC frequency information should be shifted to the center of the array i.e. as obtained from fftshift
    :param phases: phase steps for each image
    :param nbands:
    :param mod_depths:
    :param amps:
    :return components_ft: unmixed bands of size n0 x ... x nm x (2 * nbands - 1) x ny x nx
    """
    imgs_ft = np.asarray(imgs_ft)

    if imgs_ft.ndim < 3:
        raise InputShapeError(f"imgs_ft must be at least 3D, but had shape {imgs_ft.shape}")

    if imgs_ft.shape[-3] != len(phases):
        raise InputShapeError(f"imgs_ft has {imgs_ft.shape[-3]:d} phase images, but {len(phases):d} "
                              f"phases were provided")

    mixing_mat_inv = get_band_mixing_inv(phases, nbands, mod_depths, amps)

    return np.einsum("cj,...jyx->...cyx", mixing_mat_inv, imgs_ft)


def separate_bands(imgs_ft: np.ndarray,
                   params: IlluminationParameters) -> np.ndarray:
    """
    Separate bands for every pattern direction

    :param imgs_ft: ndirs x nphases x ny x nx
    :param params:
    :return bands_ft: ndirs x ncomponents x ny x nx
    """
    return np.stack([unmix_bands(imgs_ft[ii], params.get_phase_steps(ii), params.nbands)
                     for ii in range(params.ndirs)], axis=0)


def resample_bandlimited_ft(img_ft: np.ndarray,
                            mag: Sequence[int],
                            axes: Sequence[int]) -> np.ndarray:
    """
    Zero pad Fourier space image by adding high-frequency content. This corresponds to interpolating the real-space
    image

    Note that this is not the same as the zero padding by using ifftn s parameter, since that will pad after the least
    magnitude negative frequency, while this pads near the highest-magnitude frequencies.

    The expanded array is normalized so that the realspace values will match after an inverse FFT,
    thus the corresponding Fourier space components will have the relationship b_k = a_k * b.size / a.size

    :param img_ft: frequency space representation of image, arranged so that zero frequency is near the center of
       the array. The frequencies can be obtained with fftshift(fftfreq(n, dxy))
    :param mag: factor by which to oversample array. This must be an integer
    :param axes: zero-pad along these axes only
    :return img_ft_pad: expanded array
    """
    if len(mag) != len(axes):
        raise ValueError(f"mag and axes must have the same length, but had lengths {len(mag):d} and {len(axes):d}")

    # make axes to operate on positive
    axes = tuple([a if a >= 0 else img_ft.ndim + a for a in axes])

    # expansion factors
    facts = np.ones(img_ft.ndim, dtype=int)
    for ii, a in enumerate(axes):
        facts[a] = mag[ii]

    # if extra padding not even (i.e. if initial array was odd) then put one more on the left
    pad_width = [(int(np.ceil((f - 1) * img_ft.shape[ii] / 2)),
                  (f - 1) * img_ft.shape[ii] // 2) for ii, f in enumerate(facts)]

    img_ft_pad = np.pad(img_ft,
                        pad_width=pad_width,
                        mode="constant",
                        constant_values=0) * np.prod(mag)

    # for even sizes the unpaired frequency -N/2 must be split equally between -N/2 and +N/2 of the larger array
    # so that b_(mn) = a_n and b stays real when a is real
    for m, a in zip(mag, axes):
        if img_ft.shape[a] % 2 == 1 or m == 1:
            continue

        old_nyquist_ind = m * img_ft.shape[a] // 2 - img_ft.shape[a] // 2
        nyquist_slice = [slice(None, None)] * img_ft.ndim
        nyquist_slice[a] = slice(old_nyquist_ind, old_nyquist_ind + 1)

        img_ft_pad[tuple(nyquist_slice)] *= 0.5

        pair_frq_ind = old_nyquist_ind + img_ft.shape[a]
        pair_slice = [slice(None, None)] * img_ft.ndim
        pair_slice[a] = slice(pair_frq_ind, pair_frq_ind + 1)

        img_ft_pad[tuple(pair_slice)] = img_ft_pad[tuple(nyquist_slice)]

    return img_ft_pad


def shift_bands(bands_ft: np.ndarray,
                frq: Sequence[float],
                band_inds: Sequence[int],
                drs: Sequence[float],
                upsample_factor: int) -> np.ndarray:
    """
    Upsample separated SIM bands and shift them to their correct locations in Fourier space, i.e. component b
    is shifted so that :math:`O(f - b p)H(f) \\to O(f)H(f + b p)`

    Negative components are obtained by reflecting the matching positive component, which assumes the bands
    were separated from real-valued images

    :param bands_ft: n0 x ... x nm x ncomponents x ny x nx
    :param frq: pattern frequency (fx, fy)
    :param band_inds: multiple of frq for each component
    :param drs: (dy, dx) pixel size of the raw images
    :param upsample_factor:
    :return shifted_bands_ft: n0 x ... x nm x ncomponents x (upsample_factor * ny) x (upsample_factor * nx)
    """
    band_inds = np.asarray(band_inds, dtype=int)
    dy, dx = drs

    if bands_ft.shape[-3] != len(band_inds):
        raise InputShapeError(f"bands_ft has {bands_ft.shape[-3]:d} components, "
                              f"but {len(band_inds):d} band indices were provided")

    pos = band_inds >= 0

    # zero-pad bands (interpolate in realspace)
    expanded = resample_bandlimited_ft(bands_ft[..., pos, :, :],
                                       (upsample_factor, upsample_factor),
                                       axes=(-1, -2))

    shifted_pos = translate_ft(expanded,
                               band_inds[pos] * frq[0],
                               band_inds[pos] * frq[1],
                               drs=(dy / upsample_factor, dx / upsample_factor))

    shifted = np.zeros(bands_ft.shape[:-2] + expanded.shape[-2:], dtype=complex)
    shifted[..., pos, :, :] = shifted_pos

    # reflect m*O(f)H(f + b*p) to get m*O(f)H(f - b*p)
    pos_inds = list(band_inds[pos])
    for ii, b in enumerate(band_inds):
        if b < 0:
            shifted[..., ii, :, :] = conj_transpose_fft(shifted_pos[..., pos_inds.index(-b), :, :])

    return shifted


def get_band_weights(params: IlluminationParameters,
                     otf: OtfModel,
                     direction: int,
                     upsample_factor: int = 2) -> np.ndarray:
    """
    Wiener weights :math:`w_c(f) = m_{|b|} e^{i b \\phi} H(f + b p)` for each component of one direction,
    evaluated on the upsampled reconstruction grid. H is the effective OTF, including attenuation if enabled

    :param params: complete parameter set
    :param otf:
    :param direction:
    :param upsample_factor:
    :return weights: ncomponents x (upsample_factor * size) x (upsample_factor * size)
    """
    d = params.directions[direction]
    band_inds = get_band_indices(params.nbands)

    n_us = upsample_factor * params.size
    f_us = get_fft_frqs(n_us, params.pixel_size / upsample_factor)
    fxfx, fyfy = np.meshgrid(f_us, f_us)

    weights = np.zeros((len(band_inds), n_us, n_us), dtype=complex)
    for ii, b in enumerate(band_inds):
        factor = d.mod_depths[abs(b)] * np.exp(1j * b * d.phase_offset)
        weights[ii] = factor * otf.effective(fxfx + b * d.frq[0],
                                             fyfy + b * d.frq[1],
                                             band=abs(b))

    return weights


def combine_bands(bands_shifted_ft: np.ndarray,
                  weights: np.ndarray,
                  wiener_parameter: float,
                  prefiltered: bool = False) -> np.ndarray:
    """
    Combine shifted bands with the generalized Wiener filter

    .. math::

      \\tilde{O}(f) = \\frac{\\sum_c w_c^*(f) S_c(f)}{\\sum_c |w_c(f)|^2 + w^2}

    :param bands_shifted_ft: n0 x ... x nm x ncomponents x ny x nx. Sums are taken over all leading dimensions
    :param weights: broadcastable to bands_shifted_ft
    :param wiener_parameter: w
    :param prefiltered: if True, bands_shifted_ft already contains :math:`w_c^* S_c`
    :return combined_ft: ny x nx
    """
    sum_axes = tuple(range(bands_shifted_ft.ndim - 2))

    if prefiltered:
        numerator = np.sum(bands_shifted_ft, axis=sum_axes)
    else:
        numerator = np.sum(np.conj(weights) * bands_shifted_ft, axis=sum_axes)

    weights_norm = np.sum(np.abs(np.broadcast_to(weights, bands_shifted_ft.shape)) ** 2, axis=sum_axes)

    return numerator / (weights_norm + wiener_parameter ** 2)


def get_apodization(fx: np.ndarray,
                    fy: np.ndarray,
                    fmax: float,
                    apo_cutoff: float,
                    apo_bend: float,
                    mode: str = "cosine") -> np.ndarray:
    """
    Radial apodization function applied to the reconstructed Fourier image

    "cosine" is 1 below apo_bend * fmax and eases to zero at apo_cutoff * fmax following a raised cosine.
    "otf-power" is :math:`H_\\text{ideal}(|f| / (a_c f_\\text{max}))^{a_b}`

    :param fx: x-frequencies
    :param fy: y-frequencies, broadcastable against fx
    :param fmax: OTF cutoff frequency
    :param apo_cutoff: apodization cutoff as a multiple of fmax
    :param apo_bend:
    :param mode: "cosine" or "otf-power"
    :return apodization:
    """
    ff = np.sqrt(np.asarray(fx) ** 2 + np.asarray(fy) ** 2)

    if mode == "cosine":
        if apo_bend >= apo_cutoff:
            raise ConfigurationError(f"apo_bend={apo_bend} must be smaller than apo_cutoff={apo_cutoff} "
                                     f"for cosine apodization")

        f_start = apo_bend * fmax
        f_end = apo_cutoff * fmax

        x = np.clip((ff - f_start) / (f_end - f_start), 0, 1)
        apodization = 0.5 * (1 + np.cos(np.pi * x))
    elif mode == "otf-power":
        apodization = ideal_otf(ff / (apo_cutoff * fmax)) ** apo_bend
    else:
        raise ConfigurationError(f"apodization mode must be one of {ReconstructionSettings.allowed_apodization_modes}, "
                                 f"but was '{mode}'")

    return apodization


def apply_output_mode(img: np.ndarray,
                      mode: str = "none",
                      display_max: float = 255.) -> np.ndarray:
    """
    Apply output value policy to reconstructed image

    :param img:
    :param mode: "none" returns the image unchanged, "clip" sets negative values to zero, and "clip-scale"
      clips negative values and rescales the image to [0, display_max]
    :param display_max:
    :return img_out:
    """
    if mode == "none":
        return img

    if mode not in ReconstructionSettings.allowed_output_modes:
        raise ConfigurationError(f"output mode must be one of {ReconstructionSettings.allowed_output_modes}, "
                                 f"but was '{mode}'")

    img_out = np.array(img, copy=True)
    img_out[img_out < 0] = 0

    if mode == "clip-scale":
        vmax = np.max(img_out)
        if vmax > 0:
            img_out *= display_max / vmax

    return img_out


def check_slice_shape(imgs_ft: np.ndarray,
                      params: IlluminationParameters):
    """
    Raise InputShapeError unless imgs_ft is ndirs x nphases x size x size
    """
    expected = (params.ndirs, params.nphases, params.size, params.size)
    if np.shape(imgs_ft) != expected:
        raise InputShapeError(f"expected data of shape {expected}, but got shape {np.shape(imgs_ft)}")


def reconstruct_slice(imgs_ft: np.ndarray,
                      params: IlluminationParameters,
                      otf: OtfModel,
                      settings: Optional[ReconstructionSettings] = None,
                      callback: Optional[Callable] = None,
                      feedback_level: int = -1) -> np.ndarray:
    """
    Wiener filter SIM reconstruction of a single slice, following the approach of fairSIM,
    https://doi.org/10.1038/ncomms10980

    :param imgs_ft: Fourier transformed and preprocessed images, ndirs x nphases x size x size
    :param params: complete illumination parameters
    :param otf:
    :param settings: reconstruction settings. If None, use the defaults
    :param callback: observer called as callback(stage, data) for intermediate results
    :param feedback_level: amount of intermediate results passed to callback. -1 disables
    :return sim_sr: reconstructed image, (upsample_factor * size) x (upsample_factor * size)
    """
    if settings is None:
        settings = ReconstructionSettings()

    if not params.is_complete:
        raise ReconstructionPrecondition("illumination parameters must be estimated for all directions "
                                         "before reconstruction")

    check_slice_shape(imgs_ft, params)

    upsample_factor = settings.upsample_factor
    dxy = params.pixel_size
    band_inds = get_band_indices(params.nbands)

    # #############################################
    # band separation
    # #############################################
    bands_ft = separate_bands(imgs_ft, params)
    notify_stage(callback, feedback_level, STAGE_BAND_SEPARATED, bands_ft)

    # #############################################
    # shift bands and apply OTF
    # #############################################
    n_us = upsample_factor * params.size
    ncomponents = len(band_inds)
    filtered = np.zeros((params.ndirs, ncomponents, n_us, n_us), dtype=complex)
    weights = np.zeros((params.ndirs, ncomponents, n_us, n_us), dtype=complex)

    if settings.otf_before_shift:
        f_raw = get_fft_frqs(params.size, dxy)
        otf_raw = otf.effective(*np.meshgrid(f_raw, f_raw))

    for ii in range(params.ndirs):
        d = params.directions[ii]
        weights[ii] = get_band_weights(params, otf, ii, upsample_factor)

        if settings.otf_before_shift:
            # OTF is real, so conj(H(f)) = H(f) applied at the pre-shift sampling
            filtered[ii] = shift_bands(bands_ft[ii] * otf_raw, d.frq, band_inds, (dxy, dxy), upsample_factor)

            factors = np.array([d.mod_depths[abs(b)] * np.exp(1j * b * d.phase_offset) for b in band_inds])
            filtered[ii] *= np.expand_dims(factors.conj(), axis=(-1, -2))
        else:
            filtered[ii] = shift_bands(bands_ft[ii], d.frq, band_inds, (dxy, dxy), upsample_factor)
            filtered[ii] *= weights[ii].conj()

    notify_stage(callback, feedback_level, STAGE_SHIFTED_FILTERED, filtered)

    # #############################################
    # generalized Wiener filter over all directions and components
    # #############################################
    sim_sr_ft = combine_bands(filtered, weights, params.wiener_parameter, prefiltered=True)
    notify_stage(callback, feedback_level, STAGE_COMBINED, sim_sr_ft)

    # #############################################
    # apodize and return to real space
    # #############################################
    f_us = get_fft_frqs(n_us, dxy / upsample_factor)
    apodization = get_apodization(np.expand_dims(f_us, axis=0),
                                  np.expand_dims(f_us, axis=1),
                                  otf.fmax,
                                  params.apo_cutoff,
                                  params.apo_bend,
                                  mode=settings.apodization_mode)

    sim_sr = irft2(sim_sr_ft * apodization)
    sim_sr = apply_output_mode(sim_sr, settings.output_mode, settings.display_max)

    notify_stage(callback, feedback_level, STAGE_RECONSTRUCTED, sim_sr)

    return sim_sr


def get_widefield(imgs: np.ndarray) -> np.ndarray:
    """
    Widefield image, obtained by averaging over all directions and phases

    :param imgs: n0 x ... x nm x ndirs x nphases x ny x nx
    :return widefield: n0 x ... x nm x ny x nx
    """
    imgs = np.asarray(imgs)
    if imgs.ndim < 4:
        raise InputShapeError(f"imgs must be at least 4D, but had shape {imgs.shape}")

    return np.mean(imgs, axis=(-3, -4))


def wiener_deconvolve_widefield(imgs_ft: np.ndarray,
                                params: IlluminationParameters,
                                otf: OtfModel,
                                settings: Optional[ReconstructionSettings] = None) -> np.ndarray:
    """
    Wiener deconvolution of the widefield image on the same grid as the SIM reconstruction. This uses only the
    unshifted band from each direction. The apodization is scaled down by the resolution gain of SIM,
    so it reaches zero at apo_cutoff / 2 * fmax

    :param imgs_ft: ndirs x nphases x size x size
    :param params: phase steps and filter settings are used. Does not need to be complete
    :param otf:
    :param settings:
    :return widefield_deconvolution: (upsample_factor * size) x (upsample_factor * size)
    """
    if settings is None:
        settings = ReconstructionSettings()

    check_slice_shape(imgs_ft, params)

    upsample_factor = settings.upsample_factor
    band0 = np.stack([unmix_bands(imgs_ft[ii], params.get_phase_steps(ii), params.nbands)[0]
                      for ii in range(params.ndirs)], axis=0)
    band0_us = resample_bandlimited_ft(band0, (upsample_factor, upsample_factor), axes=(-1, -2))

    f_us = get_fft_frqs(upsample_factor * params.size, params.pixel_size / upsample_factor)
    fxfx, fyfy = np.meshgrid(f_us, f_us)
    otf_us = otf.effective(fxfx, fyfy)

    decon_ft = np.sum(otf_us * band0_us, axis=0) / (params.ndirs * otf_us ** 2 + params.wiener_parameter ** 2)

    apodization = get_apodization(fxfx,
                                  fyfy,
                                  otf.fmax,
                                  0.5 * params.apo_cutoff,
                                  0.5 * params.apo_bend if settings.apodization_mode == "cosine" else params.apo_bend,
                                  mode=settings.apodization_mode)

    decon = irft2(decon_ft * apodization)

    return apply_output_mode(decon, settings.output_mode, settings.display_max)


def get_noise_power(img_ft: np.ndarray,
                    drs: Sequence[float],
                    fmax: float) -> np.ndarray:
    """
    Estimate average noise power of an image by looking at frequencies beyond the maximum frequency
    where the OTF has support. If an nD image array is passed, compute this over the last two dimensions

    :param img_ft: Size n0 x n1 x ... x ny x nx. Fourier transform of image.
    :param drs: pixel size (dy, dx)
    :param fmax: maximum frequency where signal may be present
    :return noise_power:
    """
    dy, dx = drs
    ny, nx = img_ft.shape[-2:]
    fxfx, fyfy = np.meshgrid(get_fft_frqs(nx, dx), get_fft_frqs(ny, dy))
    ff = np.sqrt(fxfx ** 2 + fyfy ** 2)

    outside = ff > fmax
    if not np.any(outside):
        warn("no frequencies outside of fmax, so noise power cannot be estimated")
        return np.full(img_ft.shape[:-2], np.nan)

    return np.mean(np.abs(img_ft[..., outside]) ** 2, axis=-1)
