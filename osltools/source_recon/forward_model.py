"""Forward models for sources at arbitrary MNI coordinates.

"""

import numpy as np
from mne import make_forward_solution, setup_volume_source_space
from mne.bem import ConductorModel, read_bem_solution
from mne.transforms import apply_trans, read_trans

try:
    from mne._fiff.constants import FIFF
except ImportError:
    # Depreciated in mne 1.6
    from mne.io.constants import FIFF

from ..utils.logger import log_or_print


def mni_to_mri(mni_coords, mni_mri_t=None):
    """Transform MNI coordinates (mm) to MRI coordinates (m).

    Parameters
    ----------
    mni_coords : (n_sources, 3) np.ndarray
        Coordinates in MNI space in mm.
    mni_mri_t : (4, 4) np.ndarray
        MNI to MRI transform in mm. Identity if None, i.e. the MRI is already
        in MNI space.

    Returns
    -------
    (n_sources, 3) np.ndarray
        Coordinates in MRI space in metres.
    """
    mni_coords = np.atleast_2d(np.asarray(mni_coords, dtype=float))
    if mni_coords.ndim != 2 or mni_coords.shape[1] != 3:
        raise ValueError("mni_coords must be (n_sources, 3), got shape {0}".format(mni_coords.shape))

    if mni_mri_t is None:
        mri_coords = mni_coords
    else:
        mni_mri_t = np.asarray(mni_mri_t, dtype=float)
        if mni_mri_t.shape != (4, 4):
            raise ValueError("mni_mri_t must be a 4x4 matrix, got shape {0}".format(mni_mri_t.shape))
        mri_coords = apply_trans(mni_mri_t, mni_coords)

    return mri_coords / 1000


def make_forward_model(
    info,
    mni_coords,
    trans,
    bem,
    mni_mri_t=None,
    meg=True,
    eeg=False,
    mindist=0.0,
    ignore_ref=False,
    n_jobs=1,
    verbose=None,
):
    """Compute a free orientation forward model for sources at MNI coordinates.

    Parameters
    ----------
    info : mne.Info
        Measurement info of the sensor data.
    mni_coords : (n_sources, 3) np.ndarray
        Source positions in MNI space in mm.
    trans : str or mne.transforms.Transform
        Head to MRI transform (MNE convention, metres).
    bem : str or mne.bem.ConductorModel
        BEM solution or sphere model.
    mni_mri_t : (4, 4) np.ndarray
        MNI to MRI transform in mm. Identity if None.
    meg : bool
        Compute the forward model for MEG sensors?
    eeg : bool
        Compute the forward model for EEG sensors?
    mindist : float
        Exclude sources closer than this distance (mm) to the inner skull.
    ignore_ref : bool
        Ignore MEG reference channels?
    n_jobs : int
        Number of jobs for :py:func:`mne.make_forward_solution`.

    Returns
    -------
    fwd : mne.Forward
        Forward solution in head coordinates with one source per row of
        mni_coords, in the same order.
    """
    log_or_print("*** RUNNING OSLTOOLS FORWARD MODEL ***")

    rr = mni_to_mri(mni_coords, mni_mri_t)
    nn = np.zeros_like(rr)
    nn[:, 2] = 1

    src = setup_volume_source_space(pos={"rr": rr, "nn": nn}, verbose=verbose)

    if isinstance(trans, str):
        trans = read_trans(trans)

    if isinstance(bem, str):
        bem = read_bem_solution(bem)
    elif not isinstance(bem, ConductorModel):
        raise TypeError("bem must be a string or ConductorModel")

    fwd = make_forward_solution(
        info,
        trans=trans,
        src=src,
        bem=bem,
        meg=meg,
        eeg=eeg,
        mindist=mindist,
        ignore_ref=ignore_ref,
        n_jobs=n_jobs,
        verbose=verbose,
    )

    # fwd should be in Head space. Let's just check that is the case:
    if fwd["src"][0]["coord_frame"] != FIFF.FIFFV_COORD_HEAD:
        raise RuntimeError("fwd['src'][0] is not in HEAD coordinates")

    if fwd["nsource"] != len(rr):
        raise RuntimeError(
            "{0} of {1} sources were excluded from the forward model, check mindist and the BEM".format(
                len(rr) - fwd["nsource"], len(rr)
            )
        )

    log_or_print("*** OSLTOOLS FORWARD MODEL COMPLETE ***")

    return fwd
