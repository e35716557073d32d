import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np
from numba import njit, prange

from glusnfr.config import DEFAULT_CONFIG, PipelineConfig, ThresholdConfig, TimingConfig
from glusnfr.math_module.timeSeries import duplicate_columns_numba


class Protocol(str, Enum):
    SINGLE = "1AP"
    PAIRED = "PPF"


class NoiseClass(str, Enum):
    LOW = "low"
    HIGH = "high"


class ResponseCategory(str, Enum):
    PASSES = "passes"
    FAILS = "fails"
    BOTH_PEAKS = "both_peaks"
    PEAK1_ONLY = "peak1_only"
    PEAK2_ONLY = "peak2_only"


class ExclusionReason(str, Enum):
    EMPTY = "empty"
    DUPLICATE = "duplicate"
    BASELINE_NOISE = "baseline_noise"
    NON_FINITE_THRESHOLD = "non_finite_threshold"
    CLIPPED_WINDOW = "clipped_window"
    LOW_AMPLITUDE = "low_amplitude"
    NO_RESPONSE = "no_response"


@dataclass(frozen=True)
class WindowResponse:
    """
    Response of one ROI inside one post-stimulus window.
    onset_frame / offset_frame are absolute frame indices; offset_frame is
     the first frame after onset that falls below the lower threshold
     (or the trace length if it never does).
    """

    start: int
    stop: int
    peak_amplitude: float
    responded: bool
    onset_frame: Optional[int] = None
    offset_frame: Optional[int] = None
    n_events: int = 0

    @property
    def duration_frames(self) -> Optional[int]:
        if self.onset_frame is None or self.offset_frame is None:
            return None
        return self.offset_frame - self.onset_frame


@dataclass(frozen=True)
class ThresholdRecord:
    roi_id: str
    noise_class: NoiseClass
    upper: float
    lower: float
    baseline_sd: float
    category: ResponseCategory
    windows: Tuple[WindowResponse, ...] = ()

    def to_dict(self) -> dict:
        out = {
            "roi_id": self.roi_id,
            "noise_class": self.noise_class.value,
            "upper": self.upper,
            "lower": self.lower,
            "baseline_sd": self.baseline_sd,
            "category": self.category.value,
        }
        for ii, window in enumerate(self.windows, start=1):
            out[f"window{ii}_peak"] = window.peak_amplitude
            out[f"window{ii}_responded"] = window.responded
            out[f"window{ii}_onset"] = window.onset_frame
            out[f"window{ii}_offset"] = window.offset_frame
            out[f"window{ii}_n_events"] = window.n_events
        return out


@dataclass
class ClassificationStats:
    protocol: Protocol
    total_rois: int
    passed_rois: int
    low_noise_rois: int = 0
    high_noise_rois: int = 0
    interstimulus_ms: Optional[float] = None
    category_counts: Dict[ResponseCategory, int] = field(default_factory=dict)
    exclusions: Dict[str, ExclusionReason] = field(default_factory=dict)

    @property
    def filter_rate(self) -> float:
        return self.passed_rois / self.total_rois if self.total_rois else 0.0

    @property
    def summary(self) -> str:
        out = (
            f"{self.protocol.value}: {self.passed_rois}/{self.total_rois} ROIs passed "
            f"({self.filter_rate*100:.1f}%), {self.low_noise_rois} low noise, "
            f"{self.high_noise_rois} high noise"
        )
        if self.protocol is Protocol.PAIRED:
            out += ", " + ", ".join(
                f"{cat.value}={self.category_counts.get(cat, 0)}"
                for cat in (
                    ResponseCategory.BOTH_PEAKS,
                    ResponseCategory.PEAK1_ONLY,
                    ResponseCategory.PEAK2_ONLY,
                )
            )
        return out


class ClassificationResult(NamedTuple):
    dFoF: np.ndarray
    roi_ids: List[str]
    thresholds: List[ThresholdRecord]
    classification: List[ResponseCategory]
    stats: ClassificationStats


def calculate_thresholds(
    baseline_sd, threshold_config: ThresholdConfig
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Noise class and Schmitt thresholds of every ROI.

    Args:
        baseline_sd (np.ndarray):
            Baseline standard deviation of dF/F, one value per ROI.
        threshold_config (ThresholdConfig):
            Noise cutoff and sigma multipliers.

    Returns:
        is_low_noise (np.ndarray):
            bool, baseline_sd <= sd_noise_cutoff
        upper (np.ndarray):
            low_noise_sigma * SD for low noise ROIs,
             high_noise_sigma * SD otherwise
        lower (np.ndarray):
            lower_sigma * SD for every ROI
    """
    baseline_sd = np.asarray(baseline_sd, dtype=np.float64)
    is_low_noise = baseline_sd <= threshold_config.sd_noise_cutoff
    upper = np.where(
        is_low_noise,
        threshold_config.low_noise_sigma,
        threshold_config.high_noise_sigma,
    ) * baseline_sd
    lower = threshold_config.lower_sigma * baseline_sd
    return is_low_noise, upper, lower


def response_windows(
    protocol: Protocol,
    timing: TimingConfig,
    interstimulus_ms: Optional[float] = None,
) -> List[Tuple[int, int]]:
    """
    Half-open frame windows searched for a response. Each window starts
     one frame after its stimulus. The windows may run past the end of
     the trace; see window_peak.
    """
    stim_frames = [timing.stimulus_frame]
    if protocol is Protocol.PAIRED:
        stim_frames.append(
            timing.stimulus_frame + timing.frames_from_ms(interstimulus_ms)
        )
    return [
        (stim + 1, stim + 1 + timing.response_window) for stim in stim_frames
    ]


def crosses_upper(values, upper) -> np.ndarray:
    """
    values >= upper, except that a zero upper threshold (SD of 0)
     needs a strictly positive value. A flat window never crosses.
    """
    values = np.asarray(values, dtype=np.float64)
    upper = np.asarray(upper, dtype=np.float64)
    return np.where(upper > 0, values >= upper, values > upper)


def window_peak(dFoF: np.ndarray, start: int, stop: int) -> Tuple[np.ndarray, int]:
    """
    Maximum dF/F of every ROI in frames [start, stop).
    Frames past the end of the trace count as 0.

    Returns:
        peak (np.ndarray):
            One value per ROI. NaN if every in-range sample is NaN.
        n_in_range (int):
            Number of window frames that exist in the trace.
    """
    n_frames, n_rois = dFoF.shape
    lo = min(max(start, 0), n_frames)
    hi = min(max(stop, 0), n_frames)
    n_in_range = hi - lo
    if n_in_range <= 0:
        return np.zeros(n_rois, dtype=np.float64), 0

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        peak = np.nanmax(dFoF[lo:hi], axis=0).astype(np.float64)
    if hi < stop:
        peak = np.maximum(peak, 0.0)
    return peak, n_in_range


@njit(parallel=True)
def schmitt_extent_numba(dFoF, upper, lower, start, stop):
    """
    Dual-threshold latch over frames [start, stop) of every ROI.
    The latch sets when dF/F reaches upper (exceeds it when upper is 0)
     and resets when it falls below lower, so fluctuations around upper
     do not count as new events.

    Args:
        dFoF (ndarray):
            2-D array [frames x rois]
        upper (ndarray):
            Upper threshold per ROI
        lower (ndarray):
            Lower threshold per ROI
        start (int):
            First frame of the window
        stop (int):
            End of the window (exclusive). Clipped to the trace.

    Returns:
        onset (ndarray):
            First frame reaching upper, -1 if none
        offset (ndarray):
            First frame after onset below lower, searched to the end
             of the trace. n_frames if it never drops, -1 if no onset.
        n_events (ndarray):
            Number of latch set events in the window
    """
    n_frames = dFoF.shape[0]
    n_rois = dFoF.shape[1]
    lo = min(max(start, 0), n_frames)
    hi = min(max(stop, 0), n_frames)

    onset = np.full(n_rois, -1, dtype=np.int64)
    offset = np.full(n_rois, -1, dtype=np.int64)
    n_events = np.zeros(n_rois, dtype=np.int64)

    for jj in prange(n_rois):
        up = upper[jj]
        low = lower[jj]
        if not (np.isfinite(up) and np.isfinite(low)):
            continue
        latched = False
        for ii in range(lo, hi):
            val = dFoF[ii, jj]
            if not latched and (val >= up if up > 0 else val > up):
                latched = True
                n_events[jj] += 1
                if onset[jj] < 0:
                    onset[jj] = ii
            elif latched and val < low:
                latched = False
                if offset[jj] < 0:
                    offset[jj] = ii
        if onset[jj] >= 0 and offset[jj] < 0:
            ## first event still high at window end, follow it to the trace end
            offset[jj] = n_frames
            for ii in range(hi, n_frames):
                if dFoF[ii, jj] < low:
                    offset[jj] = ii
                    break
    return onset, offset, n_events


def find_empty_rois(dFoF: np.ndarray) -> np.ndarray:
    """ROIs whose trace is all NaN or has zero variance."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        all_nan = np.all(np.isnan(dFoF), axis=0)
        variance = np.nanvar(dFoF, axis=0)
    return all_nan | ~(variance > 0)


def find_duplicate_rois(dFoF: np.ndarray, candidates: np.ndarray, tol: float) -> np.ndarray:
    """
    Boolean mask over all columns flagging duplicates among the
     candidate columns. The first of each identical group is kept.
    """
    is_duplicate = np.zeros(dFoF.shape[1], dtype=bool)
    idx = np.flatnonzero(candidates)
    if len(idx) < 2:
        return is_duplicate
    is_duplicate[idx] = duplicate_columns_numba(
        np.ascontiguousarray(dFoF[:, idx], dtype=np.float64), float(tol)
    )
    return is_duplicate


def _categorize(
    protocol: Protocol, responded: List[np.ndarray]
) -> List[ResponseCategory]:
    if protocol is Protocol.SINGLE:
        return [
            ResponseCategory.PASSES if r else ResponseCategory.FAILS
            for r in responded[0]
        ]
    table = {
        (True, True): ResponseCategory.BOTH_PEAKS,
        (True, False): ResponseCategory.PEAK1_ONLY,
        (False, True): ResponseCategory.PEAK2_ONLY,
        (False, False): ResponseCategory.FAILS,
    }
    return [table[(bool(r1), bool(r2))] for r1, r2 in zip(*responded)]


def classify(
    dFoF,
    baseline_sd,
    roi_ids,
    protocol,
    interstimulus_ms: Optional[float] = None,
    config: Optional[PipelineConfig] = None,
    verbose: bool = False,
) -> ClassificationResult:
    """
    Decide which ROIs show a stimulus-evoked response.

    Each ROI gets a noise class from its baseline SD and a pair of
     Schmitt thresholds (upper, lower). A ROI responds in a window if
     the maximum dF/F there is finite and reaches upper (see
     crosses_upper). For 1AP the
     ROI passes if it responds in the single window. For PPF the two
     windows give both_peaks / peak1_only / peak2_only; ROIs that fail
     both are dropped. The lower threshold bounds the extent of each
     response and keeps rebounds from counting as new events.

    Args:
        dFoF (np.ndarray):
            dF/F. shape=(frames, ROIs)
        baseline_sd (np.ndarray):
            Baseline SD of each ROI, from normalize.
        roi_ids (list of str):
            One unique identifier per column.
        protocol (Protocol or str):
            '1AP' or 'PPF'.
        interstimulus_ms (float):
            Interval between the two PPF stimuli. Required for PPF.
        config (PipelineConfig):
            Parameters. If None, the defaults are used.
        verbose (bool):
            Whether you'd like printed updates

    Returns:
        ClassificationResult:
            dFoF (np.ndarray):
                Columns of the passing ROIs, in input order.
            roi_ids (list):
                Identifiers of the passing ROIs.
            thresholds (list of ThresholdRecord):
                Noise class, thresholds and window responses per passing ROI.
            classification (list of ResponseCategory):
                Category per passing ROI.
            stats (ClassificationStats):
                Counts and the exclusion reason of every dropped ROI.
    """
    config = DEFAULT_CONFIG if config is None else config
    protocol = Protocol(protocol)
    if protocol is Protocol.PAIRED:
        if interstimulus_ms is None:
            raise ValueError("PPF classification requires interstimulus_ms")
        if not np.isfinite(interstimulus_ms) or interstimulus_ms <= 0:
            raise ValueError(
                f"interstimulus_ms must be a positive number, got {interstimulus_ms}"
            )

    dFoF = np.asarray(dFoF)
    if dFoF.ndim != 2:
        raise ValueError(f"dFoF must be a 2-D [frames x rois] array, got shape {dFoF.shape}")
    n_frames, n_rois = dFoF.shape
    baseline_sd = np.asarray(baseline_sd, dtype=np.float64).reshape(-1)
    roi_ids = list(roi_ids)
    if len(baseline_sd) != n_rois or len(roi_ids) != n_rois:
        raise ValueError(
            f"expected {n_rois} baseline SDs and ROI ids, got {len(baseline_sd)} and {len(roi_ids)}"
        )
    if len(set(roi_ids)) != n_rois:
        raise ValueError("roi_ids must be unique")

    filtering = config.filtering
    keep = np.ones(n_rois, dtype=bool)
    reasons = [None] * n_rois

    def _exclude(mask, reason):
        mask = mask & keep
        for jj in np.flatnonzero(mask):
            reasons[jj] = reason
        keep[mask] = False
        return int(mask.sum())

    if filtering.remove_empty:
        n_empty = _exclude(find_empty_rois(dFoF), ExclusionReason.EMPTY)
        if verbose and n_empty:
            print(f"Removed {n_empty} empty ROIs")
    if filtering.remove_duplicates:
        n_dup = _exclude(
            find_duplicate_rois(dFoF, keep, filtering.duplicate_tolerance),
            ExclusionReason.DUPLICATE,
        )
        if verbose and n_dup:
            print(f"Removed {n_dup} duplicate columns")

    is_low_noise, upper, lower = calculate_thresholds(baseline_sd, config.thresholds)

    if filtering.max_baseline_noise is not None:
        _exclude(
            ~(baseline_sd <= filtering.max_baseline_noise),
            ExclusionReason.BASELINE_NOISE,
        )
    _exclude(
        ~(np.isfinite(upper) & np.isfinite(lower)),
        ExclusionReason.NON_FINITE_THRESHOLD,
    )

    if verbose:
        print(
            f"Adaptive thresholds: {int(is_low_noise.sum())} low noise, "
            f"{int((~is_low_noise).sum())} high noise ROIs"
        )

    windows = response_windows(protocol, config.timing, interstimulus_ms)
    dFoF_64 = np.ascontiguousarray(dFoF, dtype=np.float64)
    peaks, crossed, responded, extents = [], [], [], []
    any_in_range = False
    for start, stop in windows:
        peak, n_in_range = window_peak(dFoF, start, stop)
        crossed_ii = (
            np.isfinite(peak) & crosses_upper(peak, upper) & (n_in_range > 0)
        )
        responded_ii = (
            crossed_ii & (peak >= filtering.min_response_amplitude)
            if filtering.min_response_amplitude is not None
            else crossed_ii
        )
        peaks.append(peak)
        crossed.append(crossed_ii)
        responded.append(responded_ii)
        extents.append(schmitt_extent_numba(dFoF_64, upper, lower, start, stop))
        any_in_range = any_in_range or n_in_range > 0

    categories = _categorize(protocol, responded)
    passes = np.any(responded, axis=0) & keep

    if verbose:
        for ii, responded_ii in enumerate(responded, start=1):
            print(
                f"ROIs passing threshold for stimulus {ii}: "
                f"{int(np.sum(responded_ii & keep))}/{int(keep.sum())}"
            )

    if not any_in_range:
        _exclude(~passes, ExclusionReason.CLIPPED_WINDOW)
    _exclude(~passes & np.any(crossed, axis=0), ExclusionReason.LOW_AMPLITUDE)
    _exclude(~passes, ExclusionReason.NO_RESPONSE)

    passed_idx = np.flatnonzero(passes)
    thresholds = []
    for jj in passed_idx:
        window_responses = []
        for ww, (start, stop) in enumerate(windows):
            onset, offset, n_events = (e[jj] for e in extents[ww])
            window_responses.append(
                WindowResponse(
                    start=start,
                    stop=stop,
                    peak_amplitude=float(peaks[ww][jj]),
                    responded=bool(responded[ww][jj]),
                    onset_frame=int(onset) if onset >= 0 else None,
                    offset_frame=int(offset) if onset >= 0 else None,
                    n_events=int(n_events),
                )
            )
        thresholds.append(
            ThresholdRecord(
                roi_id=roi_ids[jj],
                noise_class=NoiseClass.LOW if is_low_noise[jj] else NoiseClass.HIGH,
                upper=float(upper[jj]),
                lower=float(lower[jj]),
                baseline_sd=float(baseline_sd[jj]),
                category=categories[jj],
                windows=tuple(window_responses),
            )
        )

    classification = [categories[jj] for jj in passed_idx]
    counted = (
        [ResponseCategory.PASSES]
        if protocol is Protocol.SINGLE
        else [
            ResponseCategory.BOTH_PEAKS,
            ResponseCategory.PEAK1_ONLY,
            ResponseCategory.PEAK2_ONLY,
        ]
    )
    category_counts = {cat: classification.count(cat) for cat in counted}
    category_counts[ResponseCategory.FAILS] = n_rois - len(passed_idx)

    stats = ClassificationStats(
        protocol=protocol,
        total_rois=n_rois,
        passed_rois=len(passed_idx),
        low_noise_rois=int(np.sum(is_low_noise[passes])),
        high_noise_rois=int(np.sum(~is_low_noise[passes])),
        interstimulus_ms=interstimulus_ms if protocol is Protocol.PAIRED else None,
        category_counts=category_counts,
        exclusions={roi_ids[jj]: reasons[jj] for jj in np.flatnonzero(~passes)},
    )

    if verbose:
        print(stats.summary)

    return ClassificationResult(
        dFoF=dFoF[:, passed_idx].copy(),
        roi_ids=[roi_ids[jj] for jj in passed_idx],
        thresholds=thresholds,
        classification=classification,
        stats=stats,
    )
