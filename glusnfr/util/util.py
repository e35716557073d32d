import os
import copy
import json


def overwrite_params(params_input, default_params) -> dict:
    """
    Merge user parameters into a copy of the default parameters.
    Nested dicts are merged key by key, so a partial group
     (e.g. {'thresholds': {'low_noise_sigma': 2.5}}) only replaces
     the keys it names. default_params is left untouched.

    Args:
        params_input (dict, str or os.PathLike):
            Parameters to overwrite with.
            If str or os.PathLike, load parameters from the json file.
        default_params (dict):
            Default parameters.

    Returns:
        params (dict):
            Merged parameters.
    """
    ## Load master params
    if isinstance(params_input, (str, os.PathLike)):
        with open(params_input) as param_handle:
            master_params = json.load(param_handle)
    elif isinstance(params_input, dict):
        master_params = params_input
    else:
        raise TypeError(
            f"params_input should be a dict or a path to a json file, got {type(params_input)}"
        )

    params = copy.deepcopy(default_params)

    ## Overwrite default params with master params
    for key in master_params:
        if isinstance(params.get(key), dict) and isinstance(master_params[key], dict):
            params[key] = overwrite_params(master_params[key], params[key])
        else:
            params[key] = copy.deepcopy(master_params[key])

    return params

def column_batches(n_columns: int, batch_size: int):
    """Yield [start, end] column index pairs covering n_columns."""
    batch_size = max(int(batch_size), 1)
    for start in range(0, n_columns, batch_size):
        yield [start, min(start + batch_size, n_columns)]
