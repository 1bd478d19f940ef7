"""
Reconstruct stacks of raw SIM frames, one slice at a time.

The class `SimReconstruction` maps raw frames to slices, directions and phases, preprocesses them, estimates
illumination parameters (once for the whole stack, or separately for each slice), and reconstructs each slice
in parallel. Results for each slice are returned as `SliceResult` objects.

>>> recon = SimReconstruction(params, otf)
>>> results = recon.run(stack)
>>> recon.print_parameters()
>>> recon.save_imgs("results")
"""
from sys import stdout
from time import perf_counter
from typing import Optional, Union
from collections.abc import Callable
from dataclasses import dataclass, asdict
from pathlib import Path
from io import StringIO
import json
# parallelization
from dask import delayed, compute
from dask.diagnostics import ProgressBar
# numerics
import numpy as np
# loading and exporting data
import tifffile
# plotting
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
from matplotlib.colors import PowerNorm
from matplotlib.patches import Circle
# code from this project
from simrecon.analysis.fft import ft2
from simrecon.analysis.otf import OtfModel
from simrecon.analysis.sim_params import (IlluminationParameters, EstimationSettings, ReconstructionSettings,
                                          DirectionParameters)
from simrecon.analysis.preprocess import (check_frame_shape, get_frame_array, preprocess_frames,
                                          subtract_background, normalize_histograms as normalize_frame_histograms)
from simrecon.analysis.parameter_estimation import estimate_direction
from simrecon.analysis.sim_reconstruction import (reconstruct_slice, get_widefield, wiener_deconvolve_widefield,
                                                  notify_stage, STAGE_RAW, STAGE_PREPROCESSED)
from simrecon.analysis.errors import (ConfigurationError, EstimationFailure, InputShapeError,
                                      ReconstructionPrecondition)

allowed_frame_orders = ("slice-major", "direction-major")


def get_frame_index_map(nslices: int,
                        ndirs: int,
                        nphases: int,
                        order: str = "slice-major") -> np.ndarray:
    """
    Map slice, direction and phase indices to the index of the frame in a raw image stack

    :param nslices:
    :param ndirs:
    :param nphases:
    :param order: "slice-major" if frames are ordered [slice][direction][phase], or "direction-major"
      if frames are ordered [direction][slice][phase]
    :return index_map: nslices x ndirs x nphases integer array
    """
    if nslices < 1 or ndirs < 1 or nphases < 1:
        raise ConfigurationError(f"nslices, ndirs and nphases must be positive, but were "
                                 f"{nslices:d}, {ndirs:d} and {nphases:d}")

    ss, dd, pp = np.meshgrid(np.arange(nslices), np.arange(ndirs), np.arange(nphases), indexing="ij")

    if order == "slice-major":
        index_map = (ss * ndirs + dd) * nphases + pp
    elif order == "direction-major":
        index_map = (dd * nslices + ss) * nphases + pp
    else:
        raise ConfigurationError(f"order must be one of {allowed_frame_orders}, but was '{order}'")

    return index_map


def check_frame_index_map(index_map: np.ndarray,
                          nframes: int,
                          ndirs: int,
                          nphases: int) -> np.ndarray:
    """
    Validate a frame index map

    :param index_map: nslices x ndirs x nphases
    :param nframes: number of frames in the stack
    :param ndirs:
    :param nphases:
    :return index_map: as integer array
    """
    index_map = np.asarray(index_map)

    if index_map.ndim != 3 or index_map.shape[1:] != (ndirs, nphases):
        raise InputShapeError(f"index map must have shape nslices x {ndirs:d} x {nphases:d}, "
                              f"but had shape {index_map.shape}")

    if not np.issubdtype(index_map.dtype, np.integer):
        raise InputShapeError(f"index map must contain integers, but had dtype {index_map.dtype}")

    if np.any(index_map < 0) or np.any(index_map >= nframes):
        raise InputShapeError(f"index map entries must be in [0, {nframes - 1:d}]")

    if len(np.unique(index_map)) != index_map.size:
        raise InputShapeError("index map entries must be unique")

    return index_map


@dataclass
class SliceResult:
    """
    Reconstruction result for one slice. If the slice failed, error is set and the images are None.
    estimation_info holds the fit diagnostics when parameters were estimated from this slice alone
    """
    index: int
    sim_sr: Optional[np.ndarray] = None
    widefield: Optional[np.ndarray] = None
    widefield_deconvolution: Optional[np.ndarray] = None
    params: Optional[IlluminationParameters] = None
    estimation_info: Optional[list] = None
    clipped_fraction: Optional[np.ndarray] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class SimReconstruction:
    def __init__(self,
                 params: IlluminationParameters,
                 otf: OtfModel,
                 estimation_settings: Optional[EstimationSettings] = None,
                 recon_settings: Optional[ReconstructionSettings] = None,
                 background: float = 0.,
                 fade_pixels: int = 0,
                 normalize_histograms: bool = False,
                 estimate_parameters: bool = True,
                 estimate_per_slice: bool = False,
                 estimate_slice: Optional[int] = None,
                 fallback_parameters: Optional[IlluminationParameters] = None,
                 callback: Optional[Callable] = None,
                 feedback_level: int = -1,
                 print_to_terminal: bool = True):
        """
        Reconstruct SIM data slice by slice using the Wiener filter style reconstruction of Gustafsson and
        Heintzmann, following the implementation of fairSIM

        :param params: acquisition geometry and filter settings. If estimate_parameters is False, this must be
          complete and is used for every slice. If estimation_settings.coarse_search is False, the frequencies
          stored here are used as the starting point for estimation
        :param otf: optical transfer function model
        :param estimation_settings:
        :param recon_settings:
        :param background: background subtracted from each frame before processing
        :param fade_pixels: width of cosine border fade applied to each frame. 0 disables
        :param normalize_histograms: for each direction, match the histograms of all phase images to the first
          phase image to account for laser power fluctuations
        :param estimate_parameters: estimate illumination parameters from the data
        :param estimate_per_slice: estimate parameters separately for each slice. Otherwise, estimate once
          and share the parameters between all slices
        :param estimate_slice: if parameters are shared, estimate them from this slice. If None, estimate
          from the average of all slices
        :param fallback_parameters: complete parameters used for any direction where estimation fails.
          If None, estimation failures are errors
        :param callback: observer called as callback(stage, data) with intermediate results
        :param feedback_level: amount of intermediate results passed to callback. -1 disables
        :param print_to_terminal: print log messages to stdout
        """

        # #############################################
        # logging and printing results
        # #############################################
        self._streams = []
        self.log = StringIO()  # can save this stream to a file later if desired
        self.add_stream(self.log)
        if print_to_terminal:
            self.add_stream(stdout)

        # #############################################
        # settings
        # #############################################
        if estimation_settings is None:
            estimation_settings = EstimationSettings()

        if recon_settings is None:
            recon_settings = ReconstructionSettings()

        if not estimate_parameters and not params.is_complete:
            raise ConfigurationError("estimate_parameters is False, but the parameters are not complete")

        if fallback_parameters is not None:
            if not fallback_parameters.is_complete:
                raise ConfigurationError("fallback parameters must be complete")

            if (fallback_parameters.ndirs != params.ndirs or
                    fallback_parameters.nbands != params.nbands):
                raise ConfigurationError("fallback parameters must have the same number of directions and bands "
                                         "as the parameters")

        if estimate_slice is not None and estimate_per_slice:
            raise ConfigurationError("estimate_slice cannot be used with estimate_per_slice")

        if fade_pixels < 0 or 2 * fade_pixels > params.size:
            raise ConfigurationError(f"fade_pixels must be in [0, {params.size // 2:d}], but was {fade_pixels:d}")

        self.params = params
        self.otf = otf
        self.estimation_settings = estimation_settings
        self.recon_settings = recon_settings
        self.fallback_parameters = fallback_parameters
        self.callback = callback
        self.feedback_level = feedback_level

        self._preprocessing_settings = {"background": background,
                                        "fade_pixels": fade_pixels,
                                        "normalize_histograms": normalize_histograms}

        self._estimation_mode = {"estimate_parameters": estimate_parameters,
                                 "estimate_per_slice": estimate_per_slice,
                                 "estimate_slice": estimate_slice}

        # #############################################
        # results
        # #############################################
        self.params_estimated = None
        self.estimation_info = []
        self.results = []

    # logging
    def add_stream(self,
                   stream):
        """
        Add stream to be used with print_log()

        :param stream:
        :return:
        """
        if stream not in self._streams:
            self._streams.append(stream)

    def print_log(self,
                  string: str,
                  **kwargs):
        """
        Print result to stdout and to a log file.

        :param string: string to print
        :param kwargs: passed through to print()
        """
        for stream in self._streams:
            print(string, **kwargs, file=stream)

    # processing
    def preprocess(self,
                   frames: np.ndarray,
                   scheduler: str = "threads") -> (np.ndarray, np.ndarray):
        """
        Background subtraction, optional histogram normalization and border fade, and Fourier transform

        :param frames: n0 x ... x nm x ndirs x nphases x size x size array, or a nested sequence of frames
          ndirs x nphases
        :param scheduler: dask scheduler
        :return frames_ft, clipped_fraction:
        """
        if not isinstance(frames, np.ndarray):
            frames = get_frame_array(frames, self.params.size, 2)

        if frames.ndim < 4 or frames.shape[-4:-2] != (self.params.ndirs, self.params.nphases):
            raise InputShapeError(f"frames must have shape ... x {self.params.ndirs:d} x {self.params.nphases:d} "
                                  f"x ny x nx, but had shape {frames.shape}")

        check_frame_shape(frames[(0,) * (frames.ndim - 2)], self.params.size)

        if self._preprocessing_settings["normalize_histograms"]:
            tstart = perf_counter()
            frames = normalize_frame_histograms(frames)
            self.print_log(f"normalizing histograms took {perf_counter() - tstart:.2f}s")

        return preprocess_frames(frames,
                                 self.params.size,
                                 background=self._preprocessing_settings["background"],
                                 fade_pixels=self._preprocessing_settings["fade_pixels"],
                                 scheduler=scheduler)

    def _estimate_direction(self,
                            imgs_ft: np.ndarray,
                            direction: int) -> (DirectionParameters, dict):
        try:
            direction_params, info = estimate_direction(imgs_ft, self.params, direction, self.otf,
                                                        self.estimation_settings)
            return direction_params, dict(info, fallback=False)
        except EstimationFailure as e:
            if self.fallback_parameters is None:
                raise

            self.print_log(f"parameter estimation failed for direction {direction:d}, "
                           f"using fallback parameters instead: {e}")

            return self.fallback_parameters.directions[direction], {"direction": direction,
                                                                    "fallback": True,
                                                                    "error": str(e)}

    def _estimate(self,
                  frames_ft: np.ndarray,
                  scheduler: str) -> (IlluminationParameters, list):
        tstart = perf_counter()

        expected = (self.params.ndirs, self.params.nphases, self.params.size, self.params.size)
        if frames_ft.shape != expected:
            raise InputShapeError(f"expected frames of shape {expected}, but got shape {frames_ft.shape}")

        r = [delayed(self._estimate_direction)(frames_ft[ii], ii) for ii in range(self.params.ndirs)]
        results = compute(*r, scheduler=scheduler)
        directions, info = zip(*results)

        params = self.params.with_directions(directions)

        self.print_log(f"estimating parameters for {self.params.ndirs:d} directions "
                       f"took {perf_counter() - tstart:.2f}s")

        return params, list(info)

    def estimate(self,
                 frames_ft: np.ndarray,
                 scheduler: str = "threads") -> IlluminationParameters:
        """
        Estimate illumination parameters, estimating all directions in parallel. Fit diagnostics for each
        direction are stored in estimation_info

        :param frames_ft: Fourier transformed frames, ndirs x nphases x size x size
        :param scheduler: dask scheduler
        :return params: complete parameters
        """
        params, self.estimation_info = self._estimate(frames_ft, scheduler)
        return params

    def _process_slice(self,
                       index: int,
                       frames: np.ndarray,
                       frames_ft: np.ndarray,
                       clipped_fraction: np.ndarray,
                       params: Optional[IlluminationParameters]) -> SliceResult:
        """
        Estimate parameters if needed, and reconstruct one slice

        :param index: slice index
        :param frames: raw frames, ndirs x nphases x size x size
        :param frames_ft: preprocessed frames
        :param clipped_fraction:
        :param params: shared parameters, or None to estimate parameters from this slice
        :return result:
        """
        tstart = perf_counter()

        notify_stage(self.callback, self.feedback_level, STAGE_RAW, frames)
        notify_stage(self.callback, self.feedback_level, STAGE_PREPROCESSED, frames_ft)

        estimation_info = None
        if params is None:
            try:
                params, estimation_info = self._estimate(frames_ft, scheduler="synchronous")
            except EstimationFailure as e:
                self.print_log(f"slice {index:d} failed: {e}")
                error = ReconstructionPrecondition(f"slice {index:d}: parameter estimation failed, {e}")
                error.__cause__ = e

                return SliceResult(index=index,
                                   params=None,
                                   clipped_fraction=clipped_fraction,
                                   error=error)

        sim_sr = reconstruct_slice(frames_ft,
                                   params,
                                   self.otf,
                                   self.recon_settings,
                                   callback=self.callback,
                                   feedback_level=self.feedback_level)

        widefield, _ = subtract_background(get_widefield(frames), self._preprocessing_settings["background"])
        decon = wiener_deconvolve_widefield(frames_ft, params, self.otf, self.recon_settings)

        self.print_log(f"reconstructed slice {index:d} in {perf_counter() - tstart:.2f}s")

        return SliceResult(index=index,
                           sim_sr=sim_sr,
                           widefield=widefield,
                           widefield_deconvolution=decon,
                           params=params,
                           estimation_info=estimation_info,
                           clipped_fraction=clipped_fraction)

    def reconstruct_slice(self,
                          frames: np.ndarray,
                          index: int = 0) -> SliceResult:
        """
        Reconstruct a single slice

        :param frames: ndirs x nphases x size x size
        :param index: slice index used in the result and log
        :return result:
        """
        frames = get_frame_array(frames, self.params.size, 2)
        frames_ft, clipped = self.preprocess(frames)

        if self._estimation_mode["estimate_parameters"]:
            params = None
        else:
            params = self.params

        return self._process_slice(index, frames, frames_ft, clipped, params)

    def run(self,
            stack: np.ndarray,
            index_map: Optional[np.ndarray] = None,
            order: str = "slice-major",
            scheduler: str = "threads") -> list[SliceResult]:
        """
        Reconstruct a stack of raw frames

        :param stack: nframes x size x size
        :param index_map: nslices x ndirs x nphases array giving the frame index for each slice, direction
          and phase. If None, this is generated from order
        :param order: frame order used if index_map is None. See get_frame_index_map()
        :param scheduler: dask scheduler used to process slices in parallel
        :return results: one result per slice
        """
        tstart = perf_counter()

        ndirs = self.params.ndirs
        nphases = self.params.nphases

        # #############################################
        # validate everything before doing any work
        # #############################################
        stack = get_frame_array(stack, self.params.size, 1)

        nframes = stack.shape[0]
        if index_map is None:
            if nframes % (ndirs * nphases) != 0:
                raise InputShapeError(f"number of frames {nframes:d} is not a multiple of "
                                      f"ndirs * nphases = {ndirs * nphases:d}")

            index_map = get_frame_index_map(nframes // (ndirs * nphases), ndirs, nphases, order)
        else:
            index_map = check_frame_index_map(index_map, nframes, ndirs, nphases)

        nslices = index_map.shape[0]
        self.print_log(f"reconstructing {nslices:d} slices from {nframes:d} frames")

        # #############################################
        # preprocessing
        # #############################################
        tstart_pre = perf_counter()
        frames = stack[index_map]
        frames_ft, clipped = self.preprocess(frames, scheduler=scheduler)

        self.print_log(f"preprocessing {nframes:d} frames took {perf_counter() - tstart_pre:.2f}s, "
                       f"max clipped fraction = {np.max(clipped):.3g}")

        # #############################################
        # shared parameter estimation
        # #############################################
        self.params_estimated = None
        self.estimation_info = []

        if not self._estimation_mode["estimate_parameters"]:
            shared_params = self.params
        elif self._estimation_mode["estimate_per_slice"]:
            shared_params = None
        else:
            estimate_slice = self._estimation_mode["estimate_slice"]
            if estimate_slice is None:
                est_data = np.mean(frames_ft, axis=0)
                self.print_log(f"estimating parameters from average of {nslices:d} slices")
            else:
                if estimate_slice < 0 or estimate_slice >= nslices:
                    raise ConfigurationError(f"estimate_slice must be in [0, {nslices - 1:d}], "
                                             f"but was {estimate_slice:d}")
                est_data = frames_ft[estimate_slice]
                self.print_log(f"estimating parameters from slice {estimate_slice:d}")

            shared_params = self.estimate(est_data, scheduler=scheduler)
            self.params_estimated = shared_params

        # #############################################
        # reconstruct slices
        # #############################################
        r = [delayed(self._process_slice)(ii, frames[ii], frames_ft[ii], clipped[ii], shared_params)
             for ii in range(nslices)]
        self.results = list(compute(*r, scheduler=scheduler))

        nfailed = np.sum([not res.succeeded for res in self.results])
        if nfailed > 0:
            self.print_log(f"{nfailed:d} of {nslices:d} slices failed")

        self.print_log(f"reconstruction took {perf_counter() - tstart:.2f}s")

        return self.results

    # printing utility functions
    def print_parameters(self,
                         params: Optional[IlluminationParameters] = None):
        """
        Print parameters used during SIM reconstruction

        :param params: parameters to print. If None, print the most recently estimated parameters
        :return:
        """
        if params is None:
            params = self.params_estimated if self.params_estimated is not None else self.params

        self.print_log(f"SIM reconstruction for {params.ndirs:d} directions, {params.nphases:d} phases "
                       f"and {params.nbands:d} bands")
        self.print_log(f"images are size {params.size:d}x{params.size:d} with pixel size {params.pixel_size:.3f}um")
        self.print_log(f"OTF NA={self.otf.na:.3f}, wavelength={self.otf.wavelength * 1e3:.1f}nm, "
                       f"fmax={self.otf.fmax:.3f}1/um")

        for k, v in self._preprocessing_settings.items():
            self.print_log(f"'{k:s}' = {v}")

        for k, v in asdict(self.estimation_settings).items():
            self.print_log(f"'{k:s}' = {v}")

        for k, v in asdict(self.recon_settings).items():
            self.print_log(f"'{k:s}' = {v}")

        self.print_log(f"wiener parameter = {params.wiener_parameter:.3f}, apodization cutoff = "
                       f"{params.apo_cutoff:.3f}, apodization bend = {params.apo_bend:.3f}")

        if not params.is_complete:
            self.print_log("illumination parameters not estimated")
            return

        frq_formatter = {"float": lambda x: f"{x:7.3f}"}
        for ii, d in enumerate(params.directions):
            self.print_log(f"################ Direction {ii:d} ################")
            frq_str = np.array2string(np.array(d.frq), formatter=frq_formatter, separator=", ")
            frq_pix_str = np.array2string(params.frqs_pixels[ii], formatter=frq_formatter, separator=", ")
            self.print_log(f"{'Frequency':15s} (fx, fy) = {frq_str:s}1/um = {frq_pix_str:s}pix,"
                           f" period = {d.period * 1e3:.3f}nm,"
                           f" angle ={d.angle * 180 / np.pi:7.3f}deg")

            mod_str = np.array2string(np.array(d.mod_depths[1:]), formatter={"float": lambda x: f"{x:05.3f}"},
                                      separator=", ")
            self.print_log(f"modulation depths = {mod_str:s}")
            self.print_log(f"phase offset = {np.mod(d.phase_offset, 2 * np.pi) * 180 / np.pi:7.2f}deg")

    def save_imgs(self,
                  save_dir: Union[str, Path],
                  save_suffix: str = "",
                  save_prefix: str = "",
                  attributes: Optional[dict] = None) -> Path:
        """
        Save SIM results as tiff files and metadata as a json file

        :param save_dir: directory to save results
        :param save_suffix:
        :param save_prefix:
        :param attributes: dictionary passing extra attributes which will be saved with SIM data. This data
          must be json serializable
        :return metadata_fname:
        """
        if not self.results:
            raise ReconstructionPrecondition("no results to save, run the reconstruction first")

        if attributes is None:
            attributes = {}

        tstart_save = perf_counter()

        save_dir = Path(save_dir)
        save_dir.mkdir(exist_ok=True, parents=True)

        # ###############################
        # metadata
        # ###############################
        metadata = {"log": self.log.getvalue(),
                    "otf": self.otf.to_dict(),
                    "params": self.params.to_dict(),
                    "estimation_settings": asdict(self.estimation_settings),
                    "reconstruction_settings": asdict(self.recon_settings),
                    "preprocessing_settings": self._preprocessing_settings,
                    "slices": [{"index": res.index,
                                "succeeded": res.succeeded,
                                "error": None if res.error is None else str(res.error),
                                "params": None if res.params is None else res.params.to_dict(),
                                "clipped_fraction": None if res.clipped_fraction is None else
                                res.clipped_fraction.tolist()}
                               for res in self.results]
                    }
        metadata.update(attributes)

        fname = save_dir / f"{save_prefix:s}sim_reconstruction{save_suffix:s}.json"
        with open(fname, "w") as f:
            json.dump(metadata, f, indent="\t")

        # ###############################
        # images, failed slices are filled with NaN
        # ###############################
        dxy = self.params.pixel_size
        dxy_us = dxy / self.recon_settings.upsample_factor

        def save_delayed(attr, pixel_size):
            def _save():
                imgs = [getattr(res, attr) for res in self.results]
                shape = next(im.shape for im in imgs if im is not None)
                stack = np.stack([im if im is not None else np.full(shape, np.nan) for im in imgs])
                stack = stack.astype(np.float32)

                tifffile.imwrite(save_dir / f"{save_prefix:s}{attr:s}{save_suffix:s}.tif",
                                 stack,
                                 imagej=False,
                                 resolution=(1 / pixel_size, 1 / pixel_size),
                                 metadata={"Info": f"array type = {attr:s}, axes = slices, y, x",
                                           "unit": "um",
                                           "min": 0,
                                           "max": float(np.nanmax(stack))
                                           }
                                 )

            return delayed(_save)()

        if not any(res.succeeded for res in self.results):
            self.print_log("no slices succeeded, only metadata saved")
            return fname

        future = [save_delayed("sim_sr", dxy_us),
                  save_delayed("widefield", dxy),
                  save_delayed("widefield_deconvolution", dxy_us)]

        self.print_log("saving images...")
        with ProgressBar():
            compute(future)
        self.print_log(f"saving SIM images took {perf_counter() - tstart_save:.2f}s")

        return fname

    def plot_reconstruction(self,
                            result: Optional[SliceResult] = None,
                            figsize: tuple[float, float] = (20., 10.),
                            gamma: float = 0.1,
                            min_percentile: float = 0.1,
                            max_percentile: float = 99.9,
                            **kwargs) -> Figure:
        """
        Plot SIM image and compare with 'widefield' image. Pass additional keyword arguments to
        plt.figure()

        :param result: slice to plot. If None, plot the first successful slice
        :param figsize:
        :param gamma:
        :param min_percentile:
        :param max_percentile:
        :param kwargs:
        :return figh:
        """
        if result is None:
            successful = [res for res in self.results if res.succeeded]
            if len(successful) == 0:
                raise ReconstructionPrecondition("no successful slices to plot")
            result = successful[0]

        if not result.succeeded:
            raise ReconstructionPrecondition(f"slice {result.index:d} failed and cannot be plotted")

        fmax = self.otf.fmax
        dxy = self.params.pixel_size
        dxy_us = dxy / self.recon_settings.upsample_factor

        figh = plt.figure(figsize=figsize, **kwargs)
        grid = figh.add_gridspec(nrows=2, ncols=3)
        figh.suptitle(f"SIM reconstruction, slice {result.index:d}\n"
                      f"wiener parameter {result.params.wiener_parameter:.3f}, "
                      f"apodization cutoff {result.params.apo_cutoff:.2f}, "
                      f"apodization bend {result.params.apo_bend:.2f}")

        panels = [("widefield", result.widefield, dxy),
                  ("widefield deconvolution", result.widefield_deconvolution, dxy_us),
                  ("SIM-SR", result.sim_sr, dxy_us)]

        for ii, (title, img, d) in enumerate(panels):
            ny, nx = img.shape
            extent_real = [-(nx // 2 + 0.5) * d, (nx - nx // 2 - 0.5) * d,
                           (ny - ny // 2 - 0.5) * d, -(ny // 2 + 0.5) * d]
            dfx = 1 / (nx * d)
            dfy = 1 / (ny * d)
            extent_ft = [-(nx // 2 + 0.5) * dfx, (nx - nx // 2 - 0.5) * dfx,
                         (ny - ny // 2 - 0.5) * dfy, -(ny // 2 + 0.5) * dfy]

            # real space
            ax = figh.add_subplot(grid[0, ii])
            vmin = np.percentile(img.ravel(), min_percentile)
            vmax = np.percentile(img.ravel(), max_percentile)
            if vmax <= vmin:
                vmax += 1e-12

            ax.imshow(img,
                      vmin=vmin,
                      vmax=vmax,
                      cmap="bone",
                      extent=extent_real)
            ax.set_title(title)
            ax.set_xlabel(r'x-position ($\mu m$)')
            ax.set_ylabel(r'y-position ($\mu m$)')

            # fourier space
            ax = figh.add_subplot(grid[1, ii])
            ax.imshow(np.abs(ft2(img)) ** 2,
                      norm=PowerNorm(gamma=gamma),
                      extent=extent_ft,
                      cmap="bone")

            ax.add_artist(Circle((0, 0),
                                 radius=fmax,
                                 color='r',
                                 fill=False,
                                 ls='--'))
            ax.add_artist(Circle((0, 0),
                                 radius=2 * fmax,
                                 color='r',
                                 fill=False,
                                 ls='--'))

            ax.set_xlim([-2 * fmax, 2 * fmax])
            ax.set_ylim([2 * fmax, -2 * fmax])
            ax.set_xlabel(r"$f_x (1/\mu m)$")
            ax.set_ylabel(r"$f_y (1/\mu m)$")

        return figh
