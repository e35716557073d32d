import numpy as np
from numba import njit, prange


##############################################################
######### NUMBA implementations of simple algorithms #########
##############################################################
@njit(parallel=True)
def nanmean_numba(X):
    """
    Parallel (multicore) nan-ignoring mean over the first
     dimension (frames) of a [frames x rois] array.
    Columns without any finite sample give NaN.

    Args:
        X (ndarray):
            2-D array.

    Returns:
        X_mean (ndarray):
            1-D array of size X.shape[1]
    """
    X_mean = np.empty(X.shape[1])
    for jj in prange(X.shape[1]):
        total = 0.0
        count = 0
        for ii in range(X.shape[0]):
            val = X[ii, jj]
            if np.isfinite(val):
                total += val
                count += 1
        X_mean[jj] = total / count if count > 0 else np.nan
    return X_mean


@njit(parallel=True)
def nanstd_numba(X):
    """
    Parallel nan-ignoring population standard deviation (ddof=0)
     over the first dimension of a [frames x rois] array.
    Columns without any finite sample give NaN.
    """
    X_std = np.empty(X.shape[1])
    for jj in prange(X.shape[1]):
        total = 0.0
        count = 0
        for ii in range(X.shape[0]):
            val = X[ii, jj]
            if np.isfinite(val):
                total += val
                count += 1
        if count == 0:
            X_std[jj] = np.nan
            continue
        mean = total / count
        ss = 0.0
        for ii in range(X.shape[0]):
            val = X[ii, jj]
            if np.isfinite(val):
                ss += (val - mean) ** 2
        X_std[jj] = np.sqrt(ss / count)
    return X_std


@njit(parallel=True)
def duplicate_columns_numba(X, tol):
    """
    Flag columns that equal an earlier column within an
     absolute tolerance. NaNs compare equal to NaNs.

    Args:
        X (ndarray):
            2-D array [frames x columns].
        tol (float):
            Absolute tolerance per sample.

    Returns:
        is_duplicate (ndarray):
            1-D boolean array. The first column of each group
             of identical columns is never flagged.
    """
    n_cols = X.shape[1]
    is_duplicate = np.zeros(n_cols, dtype=np.bool_)
    for jj in prange(n_cols):
        for kk in range(jj):
            same = True
            for ii in range(X.shape[0]):
                a = X[ii, jj]
                b = X[ii, kk]
                if np.isnan(a) and np.isnan(b):
                    continue
                if not abs(a - b) <= tol:
                    same = False
                    break
            if same:
                is_duplicate[jj] = True
                break
    return is_duplicate
