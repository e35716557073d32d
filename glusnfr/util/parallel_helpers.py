from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
import multiprocessing as mp
from tqdm import tqdm


def map_parallel(
    func, args, method="multithreading", workers=-1, prog_bar=True, desc=None
):
    """
    Map a function to a list of arguments in parallel.

    Args:
        func (function):
            Function to map.
        args (list):
            List of argument iterables, one per positional argument of func.
            Element i of each iterable is passed to the i-th call.
        method (str):
            Method to use for parallelization. Options are:
                'multithreading': Use multithreading from concurrent.futures.
                'multiprocessing': Use multiprocessing from concurrent.futures.
                    func and its arguments must be picklable.
                'serial': Use a plain map in the calling thread.
        workers (int):
            Number of workers to use. If -1, use all available.
        prog_bar (bool):
            Whether to show a progress bar with tqdm.
        desc (str):
            Label of the progress bar.

    Returns:
        output (list):
            List of results, in the order of the arguments.
    """
    if workers == -1:
        workers = mp.cpu_count()

    ## Get number of calls. If args is a generator, make None.
    n_args = len(args[0]) if hasattr(args[0], "__len__") else None

    if method == "multithreading":
        executor = ThreadPoolExecutor
    elif method == "multiprocessing":
        executor = ProcessPoolExecutor
    elif method == "serial":
        return list(
            tqdm(map(func, *args), total=n_args, disable=not prog_bar, desc=desc)
        )
    else:
        raise ValueError(f"method {method} not recognized")

    with executor(workers) as ex:
        return list(
            tqdm(ex.map(func, *args), total=n_args, disable=not prog_bar, desc=desc)
        )
