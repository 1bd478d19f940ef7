"""
FFT functions using our preferred idioms. All Fourier space arrays are stored with the zero frequency
at the center of the array, i.e. frequencies are fftshift(fftfreq(n, dr)) and real space coordinates
are (arange(n) - n // 2) * dr
"""

from typing import Optional
from collections.abc import Sequence
import numpy as np
import scipy.fft as fft


def ft2(m: np.ndarray,
        axes: tuple[int, int] = (-1, -2),
        shift: bool = True) -> np.ndarray:
    """
    2D FFT which handles fftshifting appropriately

    :param m: array to perform Fourier transform on
    :param axes: axes to perform Fourier transform on
    :param shift: whether to shift the arrays to move zero index from/to the center.
      When True, the spatial coordinates are for each pixel are range(n) - (n // 2) along a dimension of size n
      When False, the spatial coordinates are range(n)
    :return ft2: Fourier transform. Frequencies can be found with fftshift(fftfreq(n, dr)) when if shift is True,
      or fftfreq(n, dr) otherwise.
    """
    if shift:
        return fft.fftshift(fft.fft2(fft.ifftshift(m, axes=axes), axes=axes), axes=axes)

    return fft.fft2(m, axes=axes)


def ift2(m: np.ndarray,
         axes: tuple[int, int] = (-1, -2),
         shift: bool = True) -> np.ndarray:
    """
    Inverse function for ft2()

    :param m:
    :param axes:
    :param shift:
    :return ift2:
    """
    if shift:
        return fft.fftshift(fft.ifft2(fft.ifftshift(m, axes=axes), axes=axes), axes=axes)

    return fft.ifft2(m, axes=axes)


def irft2(m: np.ndarray,
          axes: tuple[int, int] = (-2, -1),
          shift: bool = True) -> np.ndarray:
    """
    2D inverse real Fourier transform. Only the non-negative frequencies along the last axis are used,
    so m is implicitly assumed to be Hermitian

    :param m:
    :param axes:
    :param shift:
    :return ift:
    """
    if shift:
        m = fft.ifftshift(m, axes=axes)

    # irfft2 ~2X faster than ifft2
    one_sided = m[..., :m.shape[-1] // 2 + 1]

    # note: for irfft2 must match shape and axes, so order important
    result = fft.irfft2(one_sided, s=m.shape[-2:], axes=axes)

    if shift:
        result = fft.fftshift(result, axes=axes)

    return result


def get_fft_frqs(n: int,
                 dr: float = 1.) -> np.ndarray:
    """
    Frequencies matching the output of ft2()

    :param n: number of points
    :param dr: spacing of real space points
    :return frqs:
    """
    return fft.fftshift(fft.fftfreq(n, dr))


def get_fft_pos(n: int,
                dr: float = 1.) -> np.ndarray:
    """
    Real space positions matching the input of ft2()

    :param n:
    :param dr:
    :return pos:
    """
    return (np.arange(n) - (n // 2)) * dr


def conj_transpose_fft(img_ft: np.ndarray,
                       axes: tuple[int, int] = (-1, -2)) -> np.ndarray:
    """
    Given img_ft(f), return a new array
    img_new_ft(f) := conj(img_ft(-f))

    :param img_ft:
    :param axes: axes on which to perform the transformation
    :return img_ft_ct:
    """

    # convert axes to positive number
    axes = np.mod(np.array(axes), img_ft.ndim)

    # flip and conjugate
    img_ft_ct = np.flip(np.conj(img_ft), axis=tuple(axes))

    # for odd FFT size, can simply flip the array to take f -> -f
    # for even FFT size, have one more negative frequency than positive frequency component.
    # by flipping array, have put the negative frequency components on the wrong side of the array
    # so must roll array to put them back on the right side
    to_roll = [a for a in axes if np.mod(img_ft.shape[a], 2) == 0]
    img_ft_ct = np.roll(img_ft_ct,
                        shift=[1] * len(to_roll),
                        axis=tuple(to_roll))

    return img_ft_ct


def translate_ft(img_ft: np.ndarray,
                 fx: np.ndarray,
                 fy: np.ndarray,
                 drs: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Given img_ft(f), return the translated function
    img_ft_shifted(f) = img_ft(f + shift_frq)
    using the FFT shift relationship, img_ft(f + shift_frq) = F[ exp(-2*pi*i * shift_frq * r) * img(r) ]
    This is an approximation to the Whittaker-Shannon interpolation formula which can be performed using only FFT's.
    In this sense, it is exact for band-limited functions.

    :param img_ft: array representing the fourier transform of an image with
      frequency origin centered as if using fftshift. Shape n1 x n2 x ... x n_{-3} x ny x nx
      Shifting is done along the last two axes.
    :param fx: array of x-shift frequencies
      fx and fy should either be broadcastable to the same size as img_ft, or they should be of size
      n_{-m} x ... x n_{-3} where images along dimensions -m, ..., -3 are shifted in parallel
    :param fy: array of y-shift frequencies
    :param drs: (dy, dx) pixel size (sampling rate) of real space image in directions.
    :return: shifted images, same size as img_ft
    """

    if img_ft.ndim < 2:
        raise ValueError("img_ft must be at least 2D")

    n_extra_dims = img_ft.ndim - 2
    ny, nx = img_ft.shape[-2:]

    fx = np.asarray(fx, dtype=float)
    fy = np.asarray(fy, dtype=float)

    if fx.shape != fy.shape:
        raise ValueError(f"fx and fy must have same shape, but had shapes {fx.shape} and {fy.shape}")

    if 0 < fx.ndim <= n_extra_dims and fx.shape == img_ft.shape[-2 - fx.ndim:-2]:
        # one shift per image
        fx = np.expand_dims(fx, axis=(-1, -2))
        fy = np.expand_dims(fy, axis=(-1, -2))
    else:
        try:
            _ = np.broadcast(fx, img_ft)
        except ValueError:
            raise ValueError(f"fx and img_ft have incompatible shapes {fx.shape} and {img_ft.shape}")

    if np.all(fx == 0) and np.all(fy == 0):
        return np.array(img_ft, copy=True)

    if drs is None:
        drs = (1, 1)
    dy, dx = drs

    # must use symmetric frequency representation to do shifting correctly
    x = np.expand_dims(fft.fftfreq(nx) * nx * dx, axis=tuple(range(n_extra_dims + 1)))
    y = np.expand_dims(fft.fftfreq(ny) * ny * dy, axis=tuple(range(n_extra_dims)) + (-1,))

    exp_factor = np.exp(-1j * 2 * np.pi * (fx * x + fy * y))

    # FT shift theorem to approximate the Whittaker-Shannon interpolation formula,
    # 1. shift frequencies in img_ft so zero frequency is in corner using ifftshift
    # 2. inverse ft
    # 3. multiply by exponential factor
    # 4. take fourier transform, then shift frequencies back using fftshift
    img_ft_shifted = fft.fftshift(fft.fft2(exp_factor *
                                           fft.ifft2(fft.ifftshift(img_ft, axes=(-1, -2)), axes=(-1, -2)),
                                           axes=(-1, -2)),
                                  axes=(-1, -2))

    return img_ft_shifted
