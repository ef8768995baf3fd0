"""Helpers for selecting channels and good samples in MNE objects.

"""

import mne
import numpy as np

try:
    from mne._fiff.pick import _picks_to_idx
except ImportError:
    # Depreciated in mne 1.6
    from mne.io.pick import _picks_to_idx

# Housekeeping for logging
import logging
logger = logging.getLogger(__name__)


# SPM channel types and the MNE picks they correspond to. Note that MNE
# reads CTF axial gradiometers as magnetometers, so MEGGRAD picks 'mag'
# without reference sensors.
SPM_CHANTYPES = {
    "MEG": {"meg": True, "ref_meg": False},
    "MEGANY": {"meg": True, "ref_meg": False},
    "MEGMAG": {"meg": "mag", "ref_meg": False},
    "MEGGRAD": {"meg": "mag", "ref_meg": False},
    "MEGPLANAR": {"meg": "grad", "ref_meg": False},
    "EEG": {"meg": False, "eeg": True},
}


def pick_chantype(info, chantype, exclude="bads"):
    """Indices of channels of an SPM channel type.

    Parameters
    ----------
    info : mne.Info
    chantype : str
        One of ``'MEG'``, ``'MEGANY'``, ``'MEGMAG'``, ``'MEGGRAD'``, ``'MEGPLANAR'`` or ``'EEG'``.
    exclude : str or list
        Channels to exclude, passed to :py:func:`mne.pick_types`.

    Returns
    -------
    np.ndarray of int
    """
    if chantype not in SPM_CHANTYPES:
        raise ValueError("chantype '{0}' not recognised, should be one of {1}".format(
            chantype, list(SPM_CHANTYPES)))
    return mne.pick_types(info, exclude=exclude, **SPM_CHANTYPES[chantype])


def has_chantype(info, chantype):
    """Does the data contain any good channel of an SPM channel type?"""
    return len(pick_chantype(info, chantype)) > 0


def picks_to_idx(info, picks):
    """Convert MNE style picks (types, names, indices or None) to indices."""
    return _picks_to_idx(info, picks, none="all", exclude=(), allow_empty=False)


def good_sample_mask(raw):
    """Boolean mask of the samples of a Raw object not covered by a bad annotation.

    Parameters
    ----------
    raw : mne.io.Raw

    Returns
    -------
    good : np.ndarray of bool
        (n_times,) True for good samples.
    """
    good = np.ones(raw.n_times, dtype=bool)
    annotations = raw.annotations
    if len(annotations) == 0:
        return good

    bad = np.array([desc.lower().startswith("bad") for desc in annotations.description])
    if not np.any(bad):
        return good

    onsets = raw.time_as_index(
        annotations.onset[bad], use_rounding=True, origin=annotations.orig_time
    )
    durations = np.round(annotations.duration[bad] * raw.info["sfreq"]).astype(int)
    for onset, duration in zip(onsets, durations):
        start = max(onset, 0)
        stop = min(onset + max(duration, 1), raw.n_times)
        if stop > start:
            good[start:stop] = False

    logger.debug("{0}/{1} samples marked bad".format(raw.n_times - good.sum(), raw.n_times))
    return good
