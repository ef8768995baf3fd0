"""Memory-bounded covariance of sensor data.

The covariance (and mean) of a ``[channels x samples]`` data matrix is
accumulated over blocks of samples so that long recordings never need to be
held in memory in full. The same routine computes one covariance per epoch for
:py:class:`mne.Epochs` and one per epoch and frequency for
:py:class:`mne.time_frequency.EpochsTFR`, using only good samples.

Example
-------
>>> C, M = cov(raw, picks='meg')
"""

import mne
import numpy as np

from .utils.samples import good_sample_mask, picks_to_idx

# Housekeeping for logging
import logging
logger = logging.getLogger(__name__)


# Default memory budget of a single data block in bytes
MAX_BYTES = 2 ** 28


def memblocks(shape, axis, max_bytes=None, itemsize=8):
    """Split one dimension of a 2D array into blocks which fit in memory.

    Parameters
    ----------
    shape : tuple of int
        (n_rows, n_cols) of the full array.
    axis : {0, 1}
        Dimension to split. Each block spans the full other dimension.
    max_bytes : int
        Memory budget of a block in bytes. Defaults to ``MAX_BYTES``.
    itemsize : int
        Bytes per element.

    Returns
    -------
    blocks : np.ndarray of int
        (n_blocks, 2) array of ``[start, stop)`` indices along ``axis``. Blocks
        are contiguous and hold at least one row/column each.
    """
    if axis not in (0, 1):
        raise ValueError("axis must be 0 or 1, got {0}".format(axis))
    if len(shape) != 2:
        raise ValueError("shape must have 2 elements, got {0}".format(shape))

    max_bytes = MAX_BYTES if max_bytes is None else max_bytes
    n = int(shape[axis])
    n_other = max(int(shape[1 - axis]), 1)

    block_len = max(int(max_bytes // (n_other * itemsize)), 1)
    starts = np.arange(0, n, block_len)
    stops = np.minimum(starts + block_len, n)

    return np.column_stack([starts, stops]).astype(int).reshape(-1, 2)


# --------------------------------------------------------------
# Block readers for the different data containers
#
# Each reader exposes n_channels, n_trials, n_freqs, good_samples(trl) and
# read(trl, freq, chans, samples) returning a (len(chans), len(samples)) array.


class _ArrayReader:
    def __init__(self, data):
        if data.ndim == 2:
            data = data[:, :, np.newaxis]
        if data.ndim != 3:
            raise ValueError("data must be [channels x samples] or [channels x samples x trials]")
        self.data = data
        self.n_channels, self.n_samples, self.n_trials = data.shape
        self.n_freqs = 1
        self.dtype = data.dtype

    def good_samples(self, trl):
        return np.ones(self.n_samples, dtype=bool)

    def read(self, trl, freq, chans, samples):
        return self.data[chans, :, trl][:, samples]


class _RawReader:
    def __init__(self, raw, picks):
        self.raw = raw
        self.picks = picks_to_idx(raw.info, picks)
        self.n_channels = len(self.picks)
        self.n_trials = 1
        self.n_freqs = 1
        self.dtype = np.float64
        self._good = good_sample_mask(raw)

    def good_samples(self, trl):
        return self._good

    def read(self, trl, freq, chans, samples):
        # Read each contiguous run of samples separately
        runs = np.split(samples, np.where(np.diff(samples) != 1)[0] + 1)
        blks = [self.raw.get_data(picks=self.picks[chans], start=run[0], stop=run[-1] + 1) for run in runs]
        return np.concatenate(blks, axis=1)


class _EpochsReader:
    def __init__(self, epochs, picks):
        self.epochs = epochs
        self.picks = picks_to_idx(epochs.info, picks)
        self.n_channels = len(self.picks)
        self.n_trials = len(epochs)
        self.n_freqs = 1
        self.dtype = np.float64
        self._trial = None
        self._trial_data = None

    def good_samples(self, trl):
        return np.ones(len(self.epochs.times), dtype=bool)

    def read(self, trl, freq, chans, samples):
        if self._trial != trl:
            self._trial_data = self.epochs.get_data(picks=self.picks, item=trl)[0]
            self._trial = trl
        return self._trial_data[chans][:, samples]


class _TFRReader:
    def __init__(self, tfr, picks):
        self.tfr = tfr
        self.picks = picks_to_idx(tfr.info, picks)
        self.n_trials, _, self.n_freqs, self.n_samples = tfr.data.shape
        self.n_channels = len(self.picks)
        self.dtype = np.float64

    def good_samples(self, trl):
        return np.ones(self.n_samples, dtype=bool)

    def read(self, trl, freq, chans, samples):
        return np.real(self.tfr.data[trl, self.picks[chans], freq][:, samples])


def _get_reader(data, picks):
    if isinstance(data, np.ndarray):
        if picks is not None:
            raise ValueError("picks can only be used with MNE objects")
        return _ArrayReader(data)
    elif isinstance(data, mne.io.BaseRaw):
        return _RawReader(data, picks)
    elif isinstance(data, mne.BaseEpochs):
        return _EpochsReader(data, picks)
    elif isinstance(data, mne.time_frequency.EpochsTFR):
        return _TFRReader(data, picks)
    raise ValueError("Unable to compute the covariance of data of type {0}".format(type(data)))


# --------------------------------------------------------------
# Covariance


def cov(data, picks=None, max_bytes=None, samples=None):
    """Covariance and mean of sensor data computed in memory-bounded blocks.

    Parameters
    ----------
    data : np.ndarray, mne.io.Raw, mne.Epochs or mne.time_frequency.EpochsTFR
        A ``[channels x samples]`` (or ``[channels x samples x trials]``)
        array, or an MNE object. Samples covered by ``bad`` annotations are
        excluded for Raw data.
    picks : str, list or None
        Channels to use for MNE objects. All channels if None.
    max_bytes : int
        Memory budget of a data block. Defaults to ``MAX_BYTES``.
    samples : np.ndarray of bool
        Additional mask of the samples to use. Only for data with a single
        trial.

    Returns
    -------
    C : np.ndarray
        ``(n_channels, n_channels, n_trials, n_freqs)`` covariance, with trailing
        singleton dimensions removed.
    M : np.ndarray
        ``(n_channels, n_trials, n_freqs)`` mean, with trailing singleton
        dimensions removed.
    """
    reader = _get_reader(data, picks)
    nchans, ntrials, nfreqs = reader.n_channels, reader.n_trials, reader.n_freqs

    if samples is not None:
        samples = np.asarray(samples, dtype=bool)
        if ntrials != 1:
            raise ValueError("samples can only be used with single trial data")

    if isinstance(data, np.ndarray) and nchans > data.shape[1]:
        logger.warning("Input has {0} rows and {1} columns. Consider transposing".format(
            nchans, data.shape[1]))

    dtype = np.result_type(reader.dtype, np.float64)
    M = np.zeros((nchans, ntrials, nfreqs), dtype=dtype)
    C = np.zeros((nchans, nchans, ntrials, nfreqs), dtype=dtype)

    for f in range(nfreqs):
        for trl in range(ntrials):
            good = reader.good_samples(trl)
            if samples is not None:
                if len(samples) != len(good):
                    raise ValueError("samples has {0} elements, data has {1} samples".format(len(samples), len(good)))
                good = good & samples
            good = np.where(good)[0]
            nsamples = len(good)

            if nsamples == 0:
                # Trial is bad or empty
                logger.debug("No good samples in trial {0}".format(trl))
                continue

            # Means, over blocks of channels
            for start, stop in memblocks((nchans, nsamples), 0, max_bytes=max_bytes):
                blk = reader.read(trl, f, np.arange(start, stop), good)
                M[start:stop, trl, f] = np.mean(blk, axis=1)

            # Covariance, over blocks of samples
            for start, stop in memblocks((nchans, nsamples), 1, max_bytes=max_bytes):
                blk = reader.read(trl, f, np.arange(nchans), good[start:stop])
                blk = blk - M[:, trl, f][:, np.newaxis]
                C[:, :, trl, f] += blk @ blk.conj().T

            if nsamples > 1:
                C[:, :, trl, f] /= nsamples - 1
            else:
                C[:, :, trl, f] = 0

    # Drop trailing singleton dimensions
    if nfreqs == 1:
        C, M = C[..., 0], M[..., 0]
        if ntrials == 1:
            C, M = C[..., 0], M[..., 0]

    return C, M
