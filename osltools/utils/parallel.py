"""Utility functions for parallel processing.

"""

from functools import partial

import dask.bag as db
from dask.distributed import default_client

# Housekeeping for logging
import logging
osl_logger = logging.getLogger(__name__)


def dask_parallel_bag(func, iter_args, func_args=None, func_kwargs=None):
    """Run a function over a list of inputs on the active dask cluster.

    Parameters
    ---------
    func : function
        The function to run in parallel.
    iter_args : list
        One item per call. Items which are lists or tuples are unpacked into
        positional arguments.
    func_args : list, optional
        Positional arguments appended to every call.
    func_kwargs : dict, optional
        Keyword arguments passed to every call.

    Returns
    -------
    list
        The return values of func, in input order.

    References
    ----------
    https://docs.dask.org/en/stable/bag.html
    """
    func_args = [] if func_args is None else list(func_args)
    func_kwargs = {} if func_kwargs is None else func_kwargs

    # Raises ValueError if no client has been started
    client = default_client()
    osl_logger.info('Dask Client : {0}'.format(client.__repr__()))
    osl_logger.info('Dask Client dashboard link: {0}'.format(client.dashboard_link))
    osl_logger.debug('Running function : {0}'.format(func.__repr__()))

    run_func = partial(func, **func_kwargs)

    if all(isinstance(aa, (list, tuple)) for aa in iter_args) is False:
        iter_args = [[aa] for aa in iter_args]
    iter_args = [list(aa) + func_args for aa in iter_args]

    bag = db.from_sequence(iter_args).starmap(run_func)
    flags = bag.compute()

    osl_logger.info('Computation complete')

    return flags
