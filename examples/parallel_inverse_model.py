"""Example script for computing beamformer weights for several subjects in parallel.

A forward model is computed for each subject at a set of MNI coordinates,
then LCMV beamformer weights are computed and saved for each preprocessed
recording.
"""

import mne
import numpy as np
from glob import glob
from dask.distributed import Client

from osltools import source_recon, utils

import logging
logger = logging.getLogger("osltools")

if __name__ == "__main__":
    utils.logger.set_up(level="INFO")

    # Directories
    preproc_dir = "/data/wakeman_henson/preproc"
    coreg_dir = "/data/wakeman_henson/coreg"
    out_dir = "/data/wakeman_henson/bf"

    # Files
    PREPROC_FILE = preproc_dir + "/{0}_run-01_meg_preproc_raw.fif"
    TRANS_FILE = coreg_dir + "/{0}/{0}-trans.fif"
    BEM_FILE = coreg_dir + "/{0}/{0}-bem-sol.fif"

    # Left and right motor cortex in mm
    mni_coords = np.array([[-38, -22, 56], [38, -22, 56]])

    # Settings
    options = {
        "modalities": ["MEGMAG", "MEGPLANAR"],
        "fuse": "meg",
        "inverse_method": "beamform_bilateral",
        "pca_order": 60,
        "dirname": out_dir,
    }

    # Get subjects
    subjects = sorted(set(f.split("/")[-1].split("_")[0] for f in glob(preproc_dir + "/sub-*")))

    # Forward models
    preproc_files = []
    fwds = []
    for subject in subjects:
        preproc_file = PREPROC_FILE.format(subject)
        info = mne.io.read_info(preproc_file)
        fwd = source_recon.make_forward_model(
            info,
            mni_coords,
            trans=TRANS_FILE.format(subject),
            bem=BEM_FILE.format(subject),
        )
        preproc_files.append(preproc_file)
        fwds.append(fwd)

    # Setup a Dask client for parallel processing
    #
    # Generally, we advise leaving threads_per_worker=1
    # and setting n_workers to the number of CPUs you want
    # to use.
    client = Client(n_workers=4, threads_per_worker=1)

    # Beamformer weights are saved to <out_dir>/<run id>_BF.h5
    flags = source_recon.run_inverse_batch(
        preproc_files,
        mni_coords,
        fwds,
        options=options,
        dask_client=True,
    )
    logger.info("{0} of {1} subjects failed".format(len(flags) - np.sum(flags), len(flags)))
