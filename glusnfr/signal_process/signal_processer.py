from dataclasses import dataclass
from typing import Dict, List, Optional

import natsort
import numpy as np
import pandas as pd

from glusnfr.config import PipelineConfig
from glusnfr.util.parallel_helpers import map_parallel
from glusnfr.signal_process.dFoF import AcceleratorContext, normalize
from glusnfr.signal_process.schmitt_trigger import (
    ClassificationResult,
    ResponseCategory,
    ThresholdRecord,
    classify,
)


@dataclass
class ProcessedTrial:
    """Output of one normalize + classify pass over a single trial / file."""

    classified: ClassificationResult
    baseline_sd: np.ndarray
    used_accelerator: bool

    @property
    def dFoF(self) -> np.ndarray:
        return self.classified.dFoF

    @property
    def roi_ids(self) -> List[str]:
        return self.classified.roi_ids

    @property
    def stats(self):
        return self.classified.stats


def thresholds_to_dataframe(thresholds: List[ThresholdRecord]) -> pd.DataFrame:
    """One row per ROI with its noise class, thresholds and window responses."""
    return pd.DataFrame([record.to_dict() for record in thresholds])


def split_by_category(classified: ClassificationResult) -> Dict[str, pd.DataFrame]:
    """
    Separate the surviving PPF ROIs into response-type groups.

    Returns:
        groups (dict):
            'both_peaks': ROIs that responded to both stimuli
            'single_peak': ROIs that responded to exactly one
            Values are DataFrames of dF/F with one column per ROI.
    """
    groups = {"both_peaks": [], "single_peak": []}
    for jj, category in enumerate(classified.classification):
        if category is ResponseCategory.BOTH_PEAKS:
            groups["both_peaks"].append(jj)
        elif category in (ResponseCategory.PEAK1_ONLY, ResponseCategory.PEAK2_ONLY):
            groups["single_peak"].append(jj)
    return {
        name: pd.DataFrame(
            classified.dFoF[:, idx],
            columns=[classified.roi_ids[jj] for jj in idx],
        )
        for name, idx in groups.items()
    }


class trace_processer:
    def __init__(
        self,
        params_input=None,
        accel_context: Optional[AcceleratorContext] = None,
        verbose: Optional[bool] = None,
    ):
        """
        Pipeline class to turn raw ROI traces into filtered dF/F.

        Args:
            params_input (dict or str, optional):
                Overwrite parameters given inputs. Defaults to None.
                If None, use default parameters.
                If dict, overwrite default parameters' matching key-value pair with given dict.
                If str, load parameters from given json file.
            accel_context (AcceleratorContext, optional):
                If None, probe torch for a CUDA device.
            verbose (bool, optional):
                If None, use params['processing']['verbose'].
        """
        self.params_input = params_input
        self.config = PipelineConfig.from_params(params_input)
        self.accel_context = (
            AcceleratorContext.from_torch() if accel_context is None else accel_context
        )
        self.verbose = self.config.processing.verbose if verbose is None else verbose

    def process(
        self,
        traces,
        roi_ids,
        protocol,
        interstimulus_ms: Optional[float] = None,
    ) -> ProcessedTrial:
        """
        Normalize one trial and classify its ROIs.

        Args:
            traces (np.ndarray):
                Raw fluorescence. shape=(frames, ROIs)
            roi_ids (list of str):
                One unique identifier per column.
            protocol (str):
                '1AP' or 'PPF'.
            interstimulus_ms (float):
                PPF inter-stimulus interval.
        """
        normalized = normalize(
            traces,
            accel_context=self.accel_context,
            config=self.config,
            verbose=self.verbose,
        )
        classified = classify(
            normalized.dFoF,
            normalized.baseline_sd,
            roi_ids,
            protocol,
            interstimulus_ms=interstimulus_ms,
            config=self.config,
            verbose=self.verbose,
        )
        return ProcessedTrial(
            classified=classified,
            baseline_sd=normalized.baseline_sd,
            used_accelerator=normalized.used_accelerator,
        )

    def process_groups(
        self,
        groups: dict,
        method: str = "multithreading",
        workers: int = -1,
    ) -> Dict[str, ProcessedTrial]:
        """
        Process independent groups (files, coverslips...) in parallel.

        Args:
            groups (dict):
                keys: group name
                values: (traces, roi_ids, protocol, interstimulus_ms)
            method (str):
                'multithreading', 'multiprocessing' or 'serial'.
                See map_parallel.
            workers (int):
                Number of workers. -1 uses all cores.

        Returns:
            results (dict):
                keys: group name, in natural sort order
                values: ProcessedTrial
        """
        keys = natsort.natsorted(groups.keys())
        args = [groups[key] for key in keys]
        results = map_parallel(
            self.process,
            [
                [arg[0] for arg in args],
                [arg[1] for arg in args],
                [arg[2] for arg in args],
                [arg[3] if len(arg) > 3 else None for arg in args],
            ],
            method=method,
            workers=workers,
            prog_bar=self.verbose,
            desc="groups",
        )
        return dict(zip(keys, results))

    def summary_table(self, results: Dict[str, ProcessedTrial]) -> pd.DataFrame:
        """Per-group pass counts, one row per group."""
        rows = []
        for key, trial in results.items():
            stats = trial.stats
            row = {
                "group": key,
                "protocol": stats.protocol.value,
                "interstimulus_ms": stats.interstimulus_ms,
                "total_rois": stats.total_rois,
                "passed_rois": stats.passed_rois,
                "low_noise_rois": stats.low_noise_rois,
                "high_noise_rois": stats.high_noise_rois,
                "used_accelerator": trial.used_accelerator,
            }
            row.update(
                {cat.value: count for cat, count in stats.category_counts.items()}
            )
            rows.append(row)
        return pd.DataFrame(rows)
