"""Channel-averaged spectrogram of continuous MEG/EEG data.

"""

import mne
import numpy as np
import matplotlib.pyplot as plt
from scipy import signal

from .utils.samples import good_sample_mask, pick_chantype

# Housekeeping for logging
import logging
logger = logging.getLogger(__name__)


# Short-time Fourier transform settings (samples)
WINDOW_LEN = 512
OVERLAP = 384
NFFT = 1024


def _load_continuous(data):
    if isinstance(data, str):
        data = mne.io.read_raw_fif(data, preload=False)

    if isinstance(data, mne.io.BaseRaw):
        return data
    elif isinstance(data, mne.BaseEpochs):
        if len(data) > 1:
            raise ValueError("Only works on continuous data")
        return data
    raise ValueError("data must be an mne.io.Raw, a single mne.Epochs or a fif file, got {0}".format(type(data)))


def _get_channel_data(data, pick, good):
    if isinstance(data, mne.io.BaseRaw):
        x = data.get_data(picks=[pick])[0]
    else:
        x = data.get_data(picks=[pick])[0, 0]
    if good is not None:
        x = x[good]
    return x


def spectrogram(data, chantype="MEGGRAD", chaninds=None, cut_badsegments=False):
    """Compute the spectrogram averaged over channels of one type.

    Parameters
    ----------
    data : mne.io.Raw, mne.Epochs or str
        Continuous data: a Raw object, an Epochs object with a single epoch or
        the path to a fif file.
    chantype : str
        SPM channel type to average over, e.g. ``'MEGGRAD'``, ``'MEGMAG'``,
        ``'MEGPLANAR'``, ``'MEG'`` or ``'EEG'``.
    chaninds : list of int
        Indices into the channels of type chantype to use. All if None.
    cut_badsegments : bool
        Should we drop samples annotated as bad before computing the spectrogram?

    Returns
    -------
    S : np.ndarray
        (n_freqs, n_times) mean spectrogram (power spectral density).
    F : np.ndarray
        (n_freqs,) frequencies in Hz.
    T : np.ndarray
        (n_times,) times of the window centres in seconds.
    """
    data = _load_continuous(data)
    fs = data.info["sfreq"]

    picks = pick_chantype(data.info, chantype)
    if chaninds is not None:
        picks = picks[np.asarray(chaninds, dtype=int)]
    if len(picks) == 0:
        raise ValueError("No channels of type {0} found".format(chantype))

    good = None
    if cut_badsegments:
        if isinstance(data, mne.io.BaseRaw):
            good = good_sample_mask(data)
            logger.info("Using {0}/{1} good samples".format(good.sum(), len(good)))
        else:
            logger.warning("cut_badsegments is only used for Raw data")

    logger.info("Computing spectrogram of {0} {1} channels".format(len(picks), chantype))

    S = None
    for pick in picks:
        x = _get_channel_data(data, pick, good)
        F, T, Sxx = signal.spectrogram(
            x, fs=fs, window="hamming", nperseg=WINDOW_LEN, noverlap=OVERLAP, nfft=NFFT
        )
        S = Sxx if S is None else S + Sxx
    S = S / len(picks)

    return S, F, T


def plot_spectrogram(data, chantype="MEGGRAD", chaninds=None, cut_badsegments=False, do_plot=True, ax=None):
    """Compute and plot the spectrogram averaged over channels of one type.

    Parameters
    ----------
    data : mne.io.Raw, mne.Epochs or str
        See :py:func:`spectrogram`.
    chantype : str
        See :py:func:`spectrogram`.
    chaninds : list of int
        See :py:func:`spectrogram`.
    cut_badsegments : bool
        See :py:func:`spectrogram`.
    do_plot : bool
        Should we plot the spectrogram?
    ax : matplotlib.axes.Axes
        Axes to plot on. A new figure is created if None.

    Returns
    -------
    S : np.ndarray
        (n_freqs, n_times) mean spectrogram.
    F : np.ndarray
        (n_freqs,) frequencies in Hz.
    T : np.ndarray
        (n_times,) times in seconds.

    Example
    -------
    >>> S, F, T = plot_spectrogram(raw, chantype='MEGPLANAR', do_plot=False)
    """
    S, F, T = spectrogram(data, chantype=chantype, chaninds=chaninds, cut_badsegments=cut_badsegments)

    if do_plot:
        if ax is None:
            fig, ax = plt.subplots()
        else:
            fig = ax.get_figure()
        mesh = ax.pcolormesh(T, F, S, shading="auto")
        fig.colorbar(mesh, ax=ax)
        if ax.yaxis_inverted():
            ax.invert_yaxis()
        ax.set_xlabel("time (s)")
        ax.set_ylabel("frequency (Hz)")

    return S, F, T
