from dataclasses import dataclass, asdict
from typing import Optional, Tuple

import numpy as np

from glusnfr import _param_defaults_dFoF
from glusnfr.util import util


@dataclass(frozen=True)
class TimingConfig:
    ms_per_frame: float
    baseline_window: Tuple[int, int]
    stimulus_frame: int
    response_window: int

    def __post_init__(self):
        object.__setattr__(
            self, "baseline_window", tuple(int(b) for b in self.baseline_window)
        )
        start, stop = self.baseline_window
        if start < 0 or stop <= start:
            raise ValueError(
                f"baseline_window must satisfy 0 <= start < stop, got {self.baseline_window}"
            )
        if self.ms_per_frame <= 0:
            raise ValueError(f"ms_per_frame must be positive, got {self.ms_per_frame}")
        if self.response_window <= 0:
            raise ValueError(
                f"response_window must be positive, got {self.response_window}"
            )
        if self.stimulus_frame < 0:
            raise ValueError(
                f"stimulus_frame must be non-negative, got {self.stimulus_frame}"
            )

    def frames_from_ms(self, interval_ms: float) -> int:
        ## halves round up, 12.5 ms at 5 ms/frame is 3 frames
        return int(np.floor(interval_ms / self.ms_per_frame + 0.5))


@dataclass(frozen=True)
class ThresholdConfig:
    sd_noise_cutoff: float
    low_noise_sigma: float
    high_noise_sigma: float
    lower_sigma: float
    min_F0: float

    def __post_init__(self):
        ## upper > lower >= 0 must hold for every noise class
        if self.lower_sigma < 0:
            raise ValueError(f"lower_sigma must be >= 0, got {self.lower_sigma}")
        if self.low_noise_sigma <= self.lower_sigma:
            raise ValueError(
                f"low_noise_sigma ({self.low_noise_sigma}) must exceed lower_sigma ({self.lower_sigma})"
            )
        if self.high_noise_sigma <= self.low_noise_sigma:
            raise ValueError(
                f"high_noise_sigma ({self.high_noise_sigma}) must exceed low_noise_sigma ({self.low_noise_sigma})"
            )
        if self.min_F0 <= 0:
            raise ValueError(f"min_F0 must be positive, got {self.min_F0}")


@dataclass(frozen=True)
class AcceleratorConfig:
    min_data_size: int
    memory_fraction: float
    element_size: int
    working_set_factor: int

    def __post_init__(self):
        if not 0 < self.memory_fraction <= 1:
            raise ValueError(
                f"memory_fraction must be in (0, 1], got {self.memory_fraction}"
            )
        if self.element_size <= 0 or self.working_set_factor <= 0:
            raise ValueError("element_size and working_set_factor must be positive")


@dataclass(frozen=True)
class FilterConfig:
    remove_empty: bool
    remove_duplicates: bool
    duplicate_tolerance: float
    max_baseline_noise: Optional[float]
    min_response_amplitude: Optional[float]


@dataclass(frozen=True)
class ProcessingConfig:
    multicore_pref: bool
    verbose: bool


@dataclass(frozen=True)
class PipelineConfig:
    """
    Immutable parameter set shared by the normalizer and the classifier.
    Build it with PipelineConfig.from_params; pass it explicitly to every call.
    """

    timing: TimingConfig
    thresholds: ThresholdConfig
    accelerator: AcceleratorConfig
    filtering: FilterConfig
    processing: ProcessingConfig

    @classmethod
    def from_params(cls, params_input=None) -> "PipelineConfig":
        """
        Args:
            params_input (dict or str, optional):
                If None, use default parameters.
                If dict, overwrite default parameters' matching key-value pairs.
                If str / os.PathLike, load the overwrites from a json file.
        """
        params = util.overwrite_params(
            {} if params_input is None else params_input, _param_defaults_dFoF
        )
        return cls(
            timing=TimingConfig(**params["timing"]),
            thresholds=ThresholdConfig(**params["thresholds"]),
            accelerator=AcceleratorConfig(**params["accelerator"]),
            filtering=FilterConfig(**params["filtering"]),
            processing=ProcessingConfig(**params["processing"]),
        )

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULT_CONFIG = PipelineConfig.from_params()
