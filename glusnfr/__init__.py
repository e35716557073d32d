_param_defaults_dFoF = {
    ## Frame indices are 0-based, windows are half-open [start, stop)
    "timing": {
        "ms_per_frame": 5,
        "baseline_window": (0, 250),
        "stimulus_frame": 266,
        "response_window": 50,
    },
    "thresholds": {
        "sd_noise_cutoff": 0.02 / 3,
        "low_noise_sigma": 3.0,
        "high_noise_sigma": 4.5,
        "lower_sigma": 1.5,
        "min_F0": 1e-6,
    },
    "accelerator": {
        "min_data_size": 50000,
        "memory_fraction": 0.8,
        "element_size": 4,
        "working_set_factor": 3,
    },
    "filtering": {
        "remove_empty": True,
        "remove_duplicates": True,
        "duplicate_tolerance": 1e-10,
        "max_baseline_noise": None,
        "min_response_amplitude": None,
    },
    "processing": {
        "multicore_pref": False,
        "verbose": True,
    },
}
