"""
Preprocessing of raw SIM frames before parameter estimation and reconstruction: shape validation,
background subtraction, optional border fading and Fourier transformation
"""
from typing import Union
from collections.abc import Sequence
from dask import delayed, compute
import numpy as np
from scipy.signal.windows import tukey
from skimage.exposure import match_histograms
from simrecon.analysis.fft import ft2
from simrecon.analysis.errors import InputShapeError


def check_frame_shape(frame: np.ndarray,
                      size: int):
    """
    Raise InputShapeError unless frame is a size x size image

    :param frame:
    :param size:
    """
    shape = np.shape(frame)

    if len(shape) != 2:
        raise InputShapeError(f"frames must be 2D, but frame had shape {shape}")

    if shape[0] != shape[1]:
        raise InputShapeError(f"frames must be square, but frame had shape {shape}")

    if shape[0] != size:
        raise InputShapeError(f"frames must have size {size:d}x{size:d}, but frame had shape {shape}")


def get_frame_array(frames: Union[np.ndarray, Sequence],
                    size: int,
                    nleading: int) -> np.ndarray:
    """
    Convert frames to an array of shape n0 x ... x n_{nleading-1} x size x size. If frames is a (nested) sequence,
    the shape of every frame is checked before converting, so that a single wrong-sized frame raises
    InputShapeError instead of failing in numpy

    :param frames: array, or nested sequence nleading deep whose elements are 2D frames
    :param size: expected image size
    :param nleading: number of dimensions before the frame dimensions
    :return frames:
    """
    if isinstance(frames, np.ndarray):
        if frames.ndim != nleading + 2:
            raise InputShapeError(f"frames must be {nleading + 2:d}D, but had shape {frames.shape}")

        if frames.size == 0:
            raise InputShapeError(f"no frames were provided, frames had shape {frames.shape}")

        check_frame_shape(frames[(0,) * nleading], size)
        return frames

    if nleading == 0:
        check_frame_shape(frames, size)
        return np.asarray(frames)

    arrays = [get_frame_array(f, size, nleading - 1) for f in frames]
    if len(arrays) == 0:
        raise InputShapeError("no frames were provided")

    shapes = sorted({a.shape for a in arrays})
    if len(shapes) > 1:
        raise InputShapeError(f"frame groups must all have the same shape, but had shapes {shapes}")

    return np.stack(arrays, axis=0)


def subtract_background(frame: np.ndarray,
                        background: Union[float, np.ndarray] = 0.) -> (np.ndarray, float):
    """
    Subtract background and clip negative values to zero

    :param frame: image
    :param background: constant background or array broadcastable to frame
    :return frame_sub, clipped_fraction: background subtracted image and the fraction of pixels which were clipped
    """
    frame_sub = np.asarray(frame, dtype=float) - background

    clipped = frame_sub < 0
    clipped_fraction = float(np.mean(clipped))
    frame_sub[clipped] = 0

    return frame_sub, clipped_fraction


def get_border_window(size: int,
                      fade_pixels: int) -> np.ndarray:
    """
    Window which fades the image smoothly to zero over fade_pixels at each border using a cosine taper

    :param size: image size
    :param fade_pixels: width of the taper. 0 gives a window which is 1 everywhere
    :return window: size x size array
    """
    if fade_pixels < 0 or 2 * fade_pixels > size:
        raise ValueError(f"fade_pixels must be in [0, {size // 2:d}], but was {fade_pixels:d}")

    # tukey window tapers over alpha * (n - 1) / 2 points at each edge
    alpha = 0 if size <= 1 else 2 * fade_pixels / (size - 1)
    win = tukey(size, alpha=min(alpha, 1.))

    return np.outer(win, win)


def preprocess_frame(frame: np.ndarray,
                     size: int,
                     background: Union[float, np.ndarray] = 0.,
                     fade_pixels: int = 0) -> (np.ndarray, float):
    """
    Prepare a single raw frame for SIM processing

    :param frame: raw image
    :param size: expected image size
    :param background: background to subtract
    :param fade_pixels: width of the cosine border fade. If 0, no fade is applied
    :return frame_ft, clipped_fraction: centered Fourier transform of the frame and fraction of clipped pixels
    """
    check_frame_shape(frame, size)

    frame_sub, clipped_fraction = subtract_background(frame, background)

    if fade_pixels > 0:
        frame_sub *= get_border_window(size, fade_pixels)

    return ft2(frame_sub), clipped_fraction


def preprocess_frames(frames: Union[np.ndarray, Sequence[np.ndarray]],
                      size: int,
                      background: Union[float, np.ndarray] = 0.,
                      fade_pixels: int = 0,
                      scheduler: str = "threads") -> (np.ndarray, np.ndarray):
    """
    Preprocess many frames in parallel. Every frame shape is checked before any frame is transformed.

    :param frames: array of size n0 x ... x nm x size x size, or a sequence of 2D frames
    :param size: expected image size
    :param background:
    :param fade_pixels:
    :param scheduler: dask scheduler
    :return frames_ft, clipped_fractions: Fourier transformed frames of size n0 x ... x nm x size x size,
      and clipped fractions of size n0 x ... x nm
    """

    if isinstance(frames, np.ndarray):
        if frames.ndim < 2:
            raise InputShapeError(f"frames must be at least 2D, but had shape {frames.shape}")

        extra_shape = frames.shape[:-2]
        frame_list = list(frames.reshape((-1,) + frames.shape[-2:]))
    else:
        extra_shape = (len(frames),)
        frame_list = list(frames)

    if len(frame_list) == 0:
        raise InputShapeError("no frames were provided")

    for f in frame_list:
        check_frame_shape(f, size)

    r = [delayed(preprocess_frame)(f, size, background=background, fade_pixels=fade_pixels) for f in frame_list]
    results = compute(*r, scheduler=scheduler)
    frames_ft, clipped = zip(*results)

    frames_ft = np.stack(frames_ft, axis=0).reshape(extra_shape + (size, size))
    clipped = np.array(clipped).reshape(extra_shape)

    return frames_ft, clipped


def normalize_histograms(frames: np.ndarray) -> np.ndarray:
    """
    Match the histogram of each phase image to the first phase image of the same direction. This removes
    fluctuations of the excitation power between phase steps

    :param frames: n0 x ... x nm x ndirs x nphases x ny x nx
    :return frames_norm: same shape as frames
    """
    frames = np.asarray(frames, dtype=float)
    if frames.ndim < 4:
        raise InputShapeError(f"frames must be at least 4D, but had shape {frames.shape}")

    frames_norm = np.array(frames, copy=True)
    for ind in np.ndindex(frames.shape[:-3]):
        ref = frames[ind][0]
        for jj in range(1, frames.shape[-3]):
            frames_norm[ind][jj] = match_histograms(frames[ind][jj], ref)

    return frames_norm
