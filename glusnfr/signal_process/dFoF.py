import time
import warnings
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

import numpy as np
import torch
from tqdm import tqdm

from glusnfr.config import DEFAULT_CONFIG, AcceleratorConfig, PipelineConfig
from glusnfr.math_module.timeSeries import nanmean_numba, nanstd_numba
from glusnfr.util.util import column_batches


@dataclass(frozen=True)
class AcceleratorContext:
    """
    What the caller knows about the accelerator for this call.

    Args:
        available (bool):
            Whether an accelerator may be used at all.
        free_memory_bytes (int):
            Free accelerator memory, in bytes.
        device (str):
            torch device string the accelerated path runs on.
    """

    available: bool
    free_memory_bytes: int = 0
    device: str = "cuda"

    @classmethod
    def from_torch(cls, device: str = "cuda") -> "AcceleratorContext":
        """Probe torch for a CUDA device and its free memory."""
        if not torch.cuda.is_available():
            return cls.unavailable()
        try:
            free_bytes, _ = torch.cuda.mem_get_info(torch.device(device))
        except RuntimeError:
            return cls.unavailable()
        return cls(available=True, free_memory_bytes=int(free_bytes), device=device)

    @classmethod
    def unavailable(cls) -> "AcceleratorContext":
        return cls(available=False, free_memory_bytes=0, device="cpu")


class NormalizedTraces(NamedTuple):
    dFoF: np.ndarray
    baseline_sd: np.ndarray
    used_accelerator: bool


def should_use_accelerator(
    n_elements: int,
    accel_context: AcceleratorContext,
    accel_config: AcceleratorConfig,
) -> bool:
    """
    Sizing heuristic for the backend. Both backends give the same result;
     the accelerator is only worth the transfer for large enough data
     that fits comfortably in its free memory.
    """
    if not accel_context.available:
        return False
    if n_elements <= accel_config.min_data_size:
        return False
    memory_required = n_elements * accel_config.element_size
    return (
        memory_required
        < accel_config.memory_fraction * accel_context.free_memory_bytes
    )


def _validate_inputs(traces, baseline_window) -> Tuple[np.ndarray, Tuple[int, int]]:
    traces = np.asarray(traces, dtype=np.float32)
    if traces.ndim != 2:
        raise ValueError(
            f"traces must be a 2-D [frames x rois] array, got shape {traces.shape}"
        )
    n_frames, n_rois = traces.shape
    if n_frames == 0 or n_rois == 0:
        raise ValueError(f"traces must not be empty, got shape {traces.shape}")

    start, stop = (int(b) for b in baseline_window)
    if start < 0 or stop <= start or stop > n_frames:
        raise ValueError(
            f"baseline window [{start}, {stop}) is outside the {n_frames} frames of the trace"
        )
    return traces, (start, stop)


def _dFoF_cpu(
    traces: np.ndarray,
    baseline_window: Tuple[int, int],
    min_F0: float,
    multicore_pref: bool = False,
) -> Tuple[np.ndarray, np.ndarray]:
    start, stop = baseline_window

    baseline = traces[start:stop]
    baseline = np.where(np.isfinite(baseline), baseline, np.nan)
    with warnings.catch_warnings():
        ## all-NaN columns are expected (dead ROIs) and resolve to 0 below
        warnings.simplefilter("ignore", category=RuntimeWarning)
        F0 = (
            nanmean_numba(baseline)
            if multicore_pref
            else np.nanmean(baseline, axis=0)
        ).astype(np.float32)
    F0[F0 < min_F0] = min_F0

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        dFoF = (traces - F0[None, :]) / F0[None, :]
    dFoF[~np.isfinite(dFoF)] = 0

    baseline_dFoF = dFoF[start:stop]
    baseline_sd = (
        nanstd_numba(baseline_dFoF)
        if multicore_pref
        else np.nanstd(baseline_dFoF, axis=0)
    ).astype(np.float32)
    baseline_sd[~np.isfinite(baseline_sd)] = 0

    return dFoF.astype(np.float32, copy=False), baseline_sd


def _dFoF_torch(
    traces: np.ndarray,
    baseline_window: Tuple[int, int],
    min_F0: float,
    device: str,
) -> Tuple[np.ndarray, np.ndarray]:
    start, stop = baseline_window

    X = torch.as_tensor(traces, dtype=torch.float32, device=device)

    baseline = X[start:stop]
    baseline = torch.where(
        torch.isfinite(baseline), baseline, torch.full_like(baseline, float("nan"))
    )
    F0 = torch.nanmean(baseline, dim=0)
    F0 = torch.where(F0 < min_F0, torch.full_like(F0, min_F0), F0)

    dFoF = (X - F0[None, :]) / F0[None, :]
    dFoF = torch.where(torch.isfinite(dFoF), dFoF, torch.zeros_like(dFoF))

    baseline_dFoF = dFoF[start:stop]
    baseline_mean = torch.mean(baseline_dFoF, dim=0, keepdim=True)
    baseline_sd = torch.sqrt(torch.mean((baseline_dFoF - baseline_mean) ** 2, dim=0))
    baseline_sd = torch.where(
        torch.isfinite(baseline_sd), baseline_sd, torch.zeros_like(baseline_sd)
    )

    return dFoF.cpu().numpy(), baseline_sd.cpu().numpy()


def _run_accelerated(
    traces: np.ndarray,
    baseline_window: Tuple[int, int],
    accel_context: AcceleratorContext,
    config: PipelineConfig,
    verbose: bool = False,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """
    Accelerated dF/F. Returns None if the accelerator failed, in which
     case the caller recomputes on the CPU.
    Columns are processed in chunks when the working set (input,
     intermediates and output) does not fit in the memory budget.
    """
    accel = config.accelerator
    n_frames, n_rois = traces.shape
    budget = accel.memory_fraction * accel_context.free_memory_bytes
    bytes_per_roi = n_frames * accel.element_size * accel.working_set_factor

    try:
        if bytes_per_roi * n_rois <= budget:
            return _dFoF_torch(
                traces, baseline_window, config.thresholds.min_F0, accel_context.device
            )

        rois_per_chunk = max(int(budget // bytes_per_roi), 1)
        if verbose:
            print(f"Accelerator chunked processing: {rois_per_chunk} ROIs per chunk")
        dFoF = np.empty((n_frames, n_rois), dtype=np.float32)
        baseline_sd = np.empty(n_rois, dtype=np.float32)
        for start, end in column_batches(n_rois, rois_per_chunk):
            dFoF[:, start:end], baseline_sd[start:end] = _dFoF_torch(
                traces[:, start:end],
                baseline_window,
                config.thresholds.min_F0,
                accel_context.device,
            )
        return dFoF, baseline_sd
    ## torch raises AssertionError when built without CUDA support
    except (RuntimeError, AssertionError) as err:
        if verbose:
            print(f"Accelerator failed ({err}), using CPU")
        return None


def normalize(
    traces,
    baseline_window=None,
    accel_context: Optional[AcceleratorContext] = None,
    config: Optional[PipelineConfig] = None,
    verbose: bool = False,
) -> NormalizedTraces:
    """
    Calculates the baseline-normalized fractional change (dF/F) of
     fluorescence traces and the baseline noise of every ROI.

    F0 is the mean of each ROI over the baseline window (non-finite
     samples ignored), floored to min_F0. dF/F = (F - F0) / F0, with
     non-finite results set to 0. The baseline SD is the population
     standard deviation of dF/F over the baseline window; degenerate
     baselines give 0.

    Args:
        traces (np.ndarray):
            Raw fluorescence. shape=(frames, ROIs)
        baseline_window (tuple of int):
            Half-open [start, stop) frame range of the baseline.
            If None, config.timing.baseline_window is used.
        accel_context (AcceleratorContext):
            Accelerator availability and free memory.
            If None, only the CPU is used.
        config (PipelineConfig):
            Parameters. If None, the defaults are used.
        verbose (bool):
            Whether you'd like printed updates

    Returns:
        NormalizedTraces:
            dFoF (np.ndarray):
                float32, same shape as traces
            baseline_sd (np.ndarray):
                float32, one value per ROI
            used_accelerator (bool):
                False if the CPU computed the result, including
                 after an accelerator failure.
    """
    tic = time.time()

    config = DEFAULT_CONFIG if config is None else config
    baseline_window = (
        config.timing.baseline_window if baseline_window is None else baseline_window
    )
    accel_context = (
        AcceleratorContext.unavailable() if accel_context is None else accel_context
    )

    traces, baseline_window = _validate_inputs(traces, baseline_window)
    n_frames, n_rois = traces.shape

    use_accelerator = should_use_accelerator(
        traces.size, accel_context, config.accelerator
    )
    if verbose:
        print(
            f"Processing {n_rois} ROIs x {n_frames} frames "
            f"({'accelerator' if use_accelerator else 'CPU'}, "
            f"{traces.size * config.accelerator.element_size / 1e6:.1f}MB)"
        )

    out = (
        _run_accelerated(traces, baseline_window, accel_context, config, verbose)
        if use_accelerator
        else None
    )
    used_accelerator = out is not None
    if out is None:
        out = _dFoF_cpu(
            traces,
            baseline_window,
            config.thresholds.min_F0,
            multicore_pref=config.processing.multicore_pref,
        )
    dFoF, baseline_sd = out

    if verbose:
        print(
            f"Calculated dFoF. Total elapsed time: {round(time.time() - tic,2)} seconds"
        )

    return NormalizedTraces(
        dFoF=dFoF, baseline_sd=baseline_sd, used_accelerator=used_accelerator
    )


def normalize_batch(
    traces_dict: dict,
    baseline_window=None,
    accel_context: Optional[AcceleratorContext] = None,
    config: Optional[PipelineConfig] = None,
    verbose: bool = False,
) -> dict:
    """
    Normalize several independent groups with one accelerator context.

    Args:
        traces_dict (dict):
            keys: group name
            values: traces (np.ndarray), shape=(frames, ROIs)

    Returns:
        results (dict):
            keys: group name
            values: NormalizedTraces
    """
    return {
        key: normalize(
            traces,
            baseline_window=baseline_window,
            accel_context=accel_context,
            config=config,
            verbose=False,
        )
        for key, traces in tqdm(
            traces_dict.items(), disable=not verbose, desc="dFoF"
        )
    }
