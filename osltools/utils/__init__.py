#!/usr/bin/python

from . import logger  # noqa: F401, F403
from .file_handling import *  # noqa: F401, F403
from .parallel import dask_parallel_bag  # noqa: F401, F403
from .samples import pick_chantype, has_chantype, good_sample_mask  # noqa: F401, F403
from .package import soft_import, run_package_tests  # noqa: F401, F403
from . import fieldtrip  # noqa: F401, F403
