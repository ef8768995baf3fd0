"""Beamforming and minimum-norm inverse models for sources at MNI coordinates.

The inverse model follows the steps of the SPM beamforming batch: select
features (channels, conditions and a time window), compute the data
covariance, compute the inverse weights in a PCA subspace and write the
resulting montage of virtual sensors to disk.
"""

import os
import sys
import uuid
import numbers
import traceback

import mne
import numpy as np
from scipy import linalg
from h5io import read_hdf5, write_hdf5
from mne.beamformer._compute_beamformer import _reduce_leadfield_rank
from mne.forward.forward import is_fixed_orient

from ..covariance import cov
from ..utils.logger import log_or_print
from ..utils.file_handling import process_file_inputs, validate_outdir
from ..utils.parallel import dask_parallel_bag
from ..utils.samples import has_chantype, pick_chantype

# Housekeeping for logging
import logging
logger = logging.getLogger(__name__)


VALID_MODALITIES = (
    ["MEG"],
    ["MEGMAG"],
    ["MEGPLANAR"],
    ["MEGMAG", "MEGPLANAR"],
    ["MEGPLANAR", "MEGMAG"],
    ["EEG"],
)
VALID_TYPES = ("Scalar", "Vector")
VALID_FUSE = ("no", "all", "meg")
VALID_INVERSE_METHODS = ("beamform", "beamform_bilateral", "mne_eye", "mne_diag_datacov")

CLASS_CHANNEL = "CLASS"

# Regularisation of the minimum-norm solution
MNE_LAMBDA = 1.0


# --------------------------------------------------------------
# Data and options


def _load_data(data):
    if isinstance(data, str):
        if data.endswith(("-epo.fif", "_epo.fif", "-epo.fif.gz", "_epo.fif.gz")):
            return mne.read_epochs(data, preload=True)
        return mne.io.read_raw_fif(data, preload=True)
    elif isinstance(data, (mne.io.BaseRaw, mne.BaseEpochs)):
        return data
    raise ValueError("data must be an mne.io.Raw, mne.Epochs or a fif file, got {0}".format(type(data)))


def _data_dir(data):
    fname = None
    if isinstance(data, mne.io.BaseRaw) and len(data.filenames) > 0:
        fname = data.filenames[0]
    elif isinstance(data, mne.BaseEpochs):
        fname = getattr(data, "filename", None)
    if fname is None:
        return os.getcwd()
    return os.path.dirname(str(fname))


def _use_default(key, value, default):
    logger.warning("options.{0} = {1} is not valid, using the default: {2}".format(key, value, default))
    return default


def _is_number(value):
    return isinstance(value, numbers.Number) and not isinstance(value, bool)


def check_inverse_options(options, data):
    """Check the options of an inverse model and fill in defaults.

    Invalid settings are replaced by their default with a warning.

    Parameters
    ----------
    options : dict or None
        Settings, see :py:func:`inverse_model`.
    data : mne.io.Raw, mne.Epochs or str
        Data the inverse model will be computed for.

    Returns
    -------
    dict
        Checked options.
    """
    options = {} if options is None else dict(options)
    data = _load_data(data)
    info = data.info
    checked = {}

    # Sensors
    default = ["MEGPLANAR"] if has_chantype(info, "MEGPLANAR") else ["MEG"]
    modalities = options.pop("modalities", default)
    if isinstance(modalities, str):
        modalities = [modalities]
    if isinstance(modalities, (list, tuple)) and list(modalities) in VALID_MODALITIES:
        checked["modalities"] = list(modalities)
    else:
        checked["modalities"] = _use_default("modalities", modalities, default)

    value = options.pop("type", "Scalar")
    checked["type"] = value if value in VALID_TYPES else _use_default("type", value, "Scalar")

    # Time window in seconds
    value = options.pop("timespan", None)
    if value is None:
        checked["timespan"] = [0.0, np.inf]
    else:
        try:
            timespan = [float(t) for t in value]
        except (TypeError, ValueError):
            timespan = None
        if timespan is not None and len(timespan) == 2 and timespan[0] < timespan[1]:
            checked["timespan"] = timespan
        else:
            checked["timespan"] = _use_default("timespan", value, [0.0, np.inf])

    # Dimensionality of the covariance subspace, full rank by default
    n_channels = len(np.unique(np.concatenate([pick_chantype(info, m) for m in checked["modalities"]])))
    value = options.pop("pca_order", n_channels)
    if _is_number(value) and value >= 1:
        checked["pca_order"] = int(value)
    else:
        checked["pca_order"] = _use_default("pca_order", value, n_channels)

    value = options.pop("fuse", "no")
    checked["fuse"] = value if value in VALID_FUSE else _use_default("fuse", value, "no")

    value = options.pop("inverse_method", "beamform")
    if value in VALID_INVERSE_METHODS:
        checked["inverse_method"] = value
    else:
        checked["inverse_method"] = _use_default("inverse_method", value, "beamform")

    value = options.pop("use_class_channel", False)
    if isinstance(value, (bool, np.bool_)) or _is_number(value):
        checked["use_class_channel"] = bool(value)
    else:
        checked["use_class_channel"] = _use_default("use_class_channel", value, False)

    # Conditions
    value = options.pop("conditions", ["all"])
    conditions = [value] if isinstance(value, str) else value
    available = list(data.event_id) if isinstance(data, mne.BaseEpochs) else []
    if not isinstance(conditions, (list, tuple)) or len(conditions) == 0:
        checked["conditions"] = _use_default("conditions", value, ["all"])
    elif "all" in conditions:
        checked["conditions"] = ["all"]
    elif all(c in available for c in conditions):
        checked["conditions"] = list(conditions)
    else:
        checked["conditions"] = _use_default("conditions", value, ["all"])

    # Output
    value = options.pop("dirname", None)
    if not isinstance(value, str):
        if value is not None:
            logger.warning("options.dirname = {0} is not valid, using a temporary directory".format(value))
        value = os.path.join(_data_dir(data), "osl_bf_temp_" + uuid.uuid4().hex[:8])
    checked["dirname"] = str(validate_outdir(value))

    value = options.pop("prefix", "")
    checked["prefix"] = value if isinstance(value, str) else _use_default("prefix", value, "")

    for key in options:
        logger.warning("options.{0} not recognised, ignoring".format(key))

    return checked


def _select_features(data, options):
    """Restrict data to the conditions and time window of interest."""
    if isinstance(data, mne.BaseEpochs) and options["conditions"] != ["all"]:
        data = data[options["conditions"]]

    times = data.times
    tmin = max(options["timespan"][0], times[0])
    tmax = min(options["timespan"][1], times[-1])
    if tmin >= tmax:
        raise ValueError("timespan {0} does not overlap the data ({1} to {2} s)".format(
            options["timespan"], times[0], times[-1]))
    if tmin > times[0] or tmax < times[-1]:
        logger.info("Using data from {0} to {1} s".format(tmin, tmax))
        data = data.copy().crop(tmin, tmax)

    return data


def _group_modalities(modalities, fuse):
    """Sets of modalities inverted together."""
    if fuse == "all" or len(modalities) == 1:
        return [list(modalities)]
    elif fuse == "meg":
        meg = [m for m in modalities if m.startswith("MEG")]
        other = [m for m in modalities if not m.startswith("MEG")]
        return [group for group in (meg, other) if len(group) > 0]
    return [[m] for m in modalities]


def _data_covariances(data, picks, use_class_channel):
    """Data covariance, or one per class of the CLASS channel.

    Returns
    -------
    covs : list of np.ndarray
    classes : np.ndarray
        Class of each covariance. Empty when classes are not used.
    """
    if use_class_channel:
        if CLASS_CHANNEL not in data.ch_names:
            raise ValueError("use_class_channel requires a {0} channel".format(CLASS_CHANNEL))
        if not isinstance(data, mne.io.BaseRaw):
            raise ValueError("use_class_channel requires continuous data")

        labels = data.get_data(picks=[CLASS_CHANNEL])[0]
        classes = np.unique(labels[labels != 0])
        if len(classes) == 0:
            raise ValueError("No non-zero values in the {0} channel".format(CLASS_CHANNEL))

        covs = []
        for c in classes:
            C, _ = cov(data, picks=picks, samples=labels == c)
            logger.info("Class {0}: {1} samples".format(c, np.sum(labels == c)))
            covs.append(C)
        return covs, classes

    C, _ = cov(data, picks=picks)
    if C.ndim == 3:
        # Average over epochs
        C = np.mean(C, axis=2)
    return [C], np.array([])


def _sensor_normalisation(data, picks, C):
    """Scale of each channel, the sqrt of the mean variance of its type."""
    ch_types = np.array(data.get_channel_types(picks=picks))
    variances = np.diag(C)
    norm = np.ones(len(picks))
    for ch_type in np.unique(ch_types):
        inds = ch_types == ch_type
        variance = np.mean(variances[inds])
        log_or_print("variance for chantype {} is {}".format(ch_type, variance))
        if variance > 0:
            norm[inds] = np.sqrt(variance)
    return norm


def _get_leadfield(fwd, ch_names):
    row_names = fwd["sol"]["row_names"]
    missing = [ch for ch in ch_names if ch not in row_names]
    if len(missing) > 0:
        raise ValueError("Channels missing from the forward model: {0}".format(missing))
    rows = [row_names.index(ch) for ch in ch_names]
    n_orient = 1 if is_fixed_orient(fwd) else 3
    return fwd["sol"]["data"][rows], n_orient


# --------------------------------------------------------------
# Inverse weights


def _pca_subspace(C, pca_order):
    """Leading eigenvectors and eigenvalues of a covariance matrix."""
    s, U = np.linalg.eigh((C + C.T) / 2)
    order = np.argsort(s)[::-1]
    s, U = s[order], U[:, order]
    if s[0] <= 0:
        raise ValueError("Data covariance is zero")

    rank = int(np.sum(s > s[0] * 1e-12))
    order = min(pca_order, rank)
    if order < pca_order:
        logger.warning("pca_order {0} is greater than the rank of the data, using {1}".format(pca_order, order))
    return U[:, :order], s[:order]


def _unit_noise_gain(W, N):
    """Normalise weights so that the projected noise has unit variance."""
    noise = np.einsum("...ij,jk,...ik->...i", W, N, W)
    scale = np.sqrt(np.abs(noise))
    # Weights outside the span of a rank reduced leadfield are zero
    scale[noise <= np.max(noise, axis=-1, keepdims=True) * 1e-12] = np.inf
    return W / scale[..., np.newaxis]


def _pinv_rank(A, rank=None):
    """Pseudo-inverse of symmetric matrices keeping the rank largest eigenvalues."""
    s, U = np.linalg.eigh((A + A.swapaxes(-2, -1)) / 2)
    if rank is not None:
        s, U = s[..., -rank:], U[..., -rank:]
    return np.matmul(U / s[..., np.newaxis, :], U.swapaxes(-2, -1))


def _lcmv(Lk, Cinv, rank=None):
    """LCMV weights for leadfields with constraints Lk (n_sources, n_channels, n_cols)."""
    numer = np.matmul(Lk.swapaxes(-2, -1), Cinv)
    denom = np.matmul(numer, Lk)
    return np.matmul(_pinv_rank(denom, rank), numer)


def _mne(G, N, n_orient):
    """Minimum-norm weights for all sources, (n_sources, n_orient, n_channels)."""
    # Scale the leadfield so that lambda is relative to the noise power
    scale = np.trace(G @ G.T) / np.trace(N)
    Gs = G / np.sqrt(scale)
    W = Gs.T @ np.linalg.inv(Gs @ Gs.T + MNE_LAMBDA * N)
    return W.reshape(-1, n_orient, G.shape[0])


def _max_power_orientation(W, C, N, rank=None):
    """Orientations maximising the unit-noise-gain power of vector weights.

    The power ratio is maximised within the rank dimensional span of the
    weights, where the projected noise is positive definite.
    """
    rank = W.shape[1] if rank is None else rank
    ori = np.zeros((W.shape[0], W.shape[1]))
    for k in range(W.shape[0]):
        power = W[k] @ C @ W[k].T
        noise = W[k] @ N @ W[k].T
        _, U = linalg.eigh(noise)
        U = U[:, -rank:]
        _, vecs = linalg.eigh(U.T @ power @ U, U.T @ noise @ U)
        o = U @ vecs[:, -1]
        ori[k] = o / np.linalg.norm(o)
    return ori


def _mirror_sources(mni_coords):
    """Index of the source nearest to the mirror (x -> -x) of each source."""
    mirrored = mni_coords * np.array([-1, 1, 1])
    dists = np.linalg.norm(mni_coords[np.newaxis] - mirrored[:, np.newaxis], axis=-1)
    return np.argmin(dists, axis=1)


def _compute_weights(G, s, N, n_orient, mni_coords, inverse_method, source_type, rank=None):
    """Unit-noise-gain inverse weights in a PCA subspace.

    Parameters
    ----------
    G : (n_pcs, n_sources * n_orient) np.ndarray
        Leadfield in the subspace.
    s : (n_pcs,) np.ndarray
        Eigenvalues of the data covariance in the subspace.
    N : (n_pcs, n_pcs) np.ndarray
        Noise covariance in the subspace.
    rank : int
        Rank of the leadfield of each source. Free orientation leadfields
        are reduced to this rank, None keeps all n_orient dimensions.

    Returns
    -------
    (n_virtual, n_pcs) np.ndarray
    """
    n_pcs = G.shape[0]
    n_sources = G.shape[1] // n_orient
    C = np.diag(s)
    Cinv = np.diag(1 / s)
    Gk = G.reshape(n_pcs, n_sources, n_orient).transpose(1, 0, 2)

    if rank is None or rank >= n_orient:
        rank = n_orient
    else:
        # Drop the weakest direction of each source, i.e. radial for MEG
        Gk = _reduce_leadfield_rank(Gk)
        G = Gk.transpose(1, 0, 2).reshape(n_pcs, -1)

    if inverse_method.startswith("mne"):
        W = _mne(G, N, n_orient)
    else:
        W = _lcmv(Gk, Cinv, rank)

    if source_type == "Scalar" and n_orient > 1:
        ori = _max_power_orientation(W, C, N, rank)
        W = np.einsum("ko,koc->kc", ori, W)[:, np.newaxis]
        Gk = np.einsum("kco,ko->kc", Gk, ori)[..., np.newaxis]
        rank = 1

    if inverse_method == "beamform_bilateral":
        mirror = _mirror_sources(mni_coords)
        n_cols = Gk.shape[2]
        for k in range(n_sources):
            if mirror[k] == k:
                continue
            Lp = np.concatenate([Gk[k], Gk[mirror[k]]], axis=1)
            W[k] = _lcmv(Lp[np.newaxis], Cinv, 2 * rank)[0, :n_cols]

    W = _unit_noise_gain(W, N)
    return W.reshape(-1, n_pcs)


def _source_labels(n_sources, n_virtual_per_source):
    if n_virtual_per_source == 1:
        return ["src{0:04d}".format(k) for k in range(n_sources)]
    return ["src{0:04d}_{1}".format(k, ax) for k in range(n_sources) for ax in "xyz"[:n_virtual_per_source]]


# --------------------------------------------------------------
# Main API


def inverse_model(data, mni_coords=None, fwd=None, options=None):
    """Compute an inverse model for sources at MNI coordinates.

    Parameters
    ----------
    data : mne.io.Raw, mne.Epochs or str
        Sensor data or path to a fif file.
    mni_coords : (n_sources, 3) np.ndarray
        Source positions in MNI space in mm.
    fwd : mne.Forward or str
        Forward model for the sources at mni_coords, see
        :py:func:`osltools.source_recon.forward_model.make_forward_model`.
    options : dict
        Settings, all optional:

        - ``modalities``: list of sensor types, e.g. ``['MEGMAG', 'MEGPLANAR']``.
        - ``type``: ``'Scalar'`` or ``'Vector'``.
        - ``timespan``: ``[tmin, tmax]`` in seconds.
        - ``pca_order``: dimensionality of the covariance subspace.
        - ``fuse``: ``'no'``, ``'all'`` or ``'meg'``.
        - ``inverse_method``: ``'beamform'``, ``'beamform_bilateral'``,
          ``'mne_eye'`` or ``'mne_diag_datacov'``.
        - ``use_class_channel``: one covariance per value of the CLASS channel.
        - ``conditions``: list of conditions (epoched data) or ``['all']``.
        - ``dirname``: output directory.
        - ``prefix``: prefix of the output file name.

    Returns
    -------
    montage : dict
        Weights mapping sensors to virtual sensors at mni_coords, one set per
        group of fused modalities. Also saved to ``<dirname>/<prefix>BF.h5``.

    Notes
    -----
    Free orientation leadfields are reduced to rank 2 for groups of MEG
    sensors and kept at rank 3 when EEG is included.
    """
    if mni_coords is None or fwd is None:
        raise ValueError("inverse_model requires data, mni_coords and fwd")

    log_or_print("*** RUNNING OSLTOOLS INVERSE MODEL ***")

    data = _load_data(data)
    options = check_inverse_options(options, data)
    mni_coords = np.atleast_2d(np.asarray(mni_coords, dtype=float))

    if isinstance(fwd, str):
        fwd = mne.read_forward_solution(fwd)
    if fwd["nsource"] != len(mni_coords):
        raise ValueError("Forward model has {0} sources, got {1} mni_coords".format(fwd["nsource"], len(mni_coords)))

    # Features
    data = _select_features(data, options)
    groups = _group_modalities(options["modalities"], options["fuse"])
    group_picks = []
    for group in groups:
        picks = np.unique(np.concatenate([pick_chantype(data.info, m) for m in group]))
        if len(picks) == 0:
            raise ValueError("No good channels found for modalities {0}".format(group))
        group_picks.append(picks)
    all_picks = np.unique(np.concatenate(group_picks))

    covs, classes = _data_covariances(data, all_picks, options["use_class_channel"])

    # Inverse, one montage per group of fused modalities
    montages = []
    for group, picks in zip(groups, group_picks):
        log_or_print("computing {0} weights for {1}".format(options["inverse_method"], "+".join(group)))
        idx = np.searchsorted(all_picks, picks)
        ch_names = [data.ch_names[p] for p in picks]
        G, n_orient = _get_leadfield(fwd, ch_names)

        norm = _sensor_normalisation(data, picks, np.mean(covs, axis=0)[np.ix_(idx, idx)])
        Gn = G / norm[:, np.newaxis]

        # MEG leadfields of a sphere are blind to radial dipoles
        rank = 2 if all(m.startswith("MEG") for m in group) else 3

        weights = []
        for C in covs:
            Cn = C[np.ix_(idx, idx)] / np.outer(norm, norm)
            U, s = _pca_subspace(Cn, options["pca_order"])
            if options["inverse_method"] == "mne_diag_datacov":
                N = U.T @ np.diag(np.diag(Cn)) @ U
            else:
                N = np.eye(len(s))
            W = _compute_weights(
                U.T @ Gn, s, N, n_orient, mni_coords, options["inverse_method"], options["type"], rank=rank
            )
            weights.append((W @ U.T) / norm[np.newaxis])

        montages.append({
            "modalities": list(group),
            "ch_names": ch_names,
            "weights": np.array(weights),
            "sensor_norm": norm,
        })

    n_virtual = montages[0]["weights"].shape[1] // len(mni_coords)
    montage = {
        "mni_coords": mni_coords,
        "labels": _source_labels(len(mni_coords), n_virtual),
        "classes": classes,
        "options": options,
        "montages": montages,
    }

    # Write
    fname = os.path.join(options["dirname"], options["prefix"] + "BF.h5")
    log_or_print("saving {0}".format(fname))
    write_hdf5(fname, montage, overwrite=True)

    log_or_print("*** OSLTOOLS INVERSE MODEL COMPLETE ***")

    return montage


def read_montage(fname):
    """Load a montage saved by :py:func:`inverse_model`."""
    return read_hdf5(fname)


def apply_montage(data, montage, index=0, class_index=0):
    """Project sensor data onto the virtual sensors of a montage.

    Parameters
    ----------
    data : mne.io.Raw, mne.Epochs or str
        Sensor data.
    montage : dict or str
        Montage returned by :py:func:`inverse_model` or the path to its h5 file.
    index : int
        Which group of fused modalities to use.
    class_index : int
        Which class to use when the montage was computed per class.

    Returns
    -------
    mne.io.RawArray or mne.EpochsArray
        Virtual sensor data with one ``misc`` channel per montage label.
    """
    data = _load_data(data)
    if isinstance(montage, str):
        montage = read_montage(montage)

    mont = montage["montages"][index]
    W = np.asarray(mont["weights"])[class_index]
    missing = [ch for ch in mont["ch_names"] if ch not in data.ch_names]
    if len(missing) > 0:
        raise ValueError("Channels missing from the data: {0}".format(missing))
    picks = [data.ch_names.index(ch) for ch in mont["ch_names"]]

    info = mne.create_info(list(montage["labels"]), data.info["sfreq"], ch_types="misc")

    if isinstance(data, mne.io.BaseRaw):
        y = W @ data.get_data(picks=picks)
        out = mne.io.RawArray(y, info, first_samp=data.first_samp, verbose=False)
        out.set_meas_date(data.info["meas_date"])
        out.set_annotations(data.annotations)
    else:
        y = np.matmul(W, data.get_data(picks=picks))
        out = mne.EpochsArray(
            y, info, events=data.events, tmin=data.tmin, event_id=data.event_id, verbose=False
        )

    return out


# --------------------------------------------------------------
# Batch processing


def _run_inverse_model(infile, mni_coords, fwd, options):
    try:
        inverse_model(infile, mni_coords, fwd, options)
        return True
    except Exception:
        logger.critical("**************************")
        logger.critical("* INVERSE MODEL FAILED! *")
        logger.critical("**************************")

        ex_type, ex_value, ex_traceback = sys.exc_info()
        logger.error("{0}".format(infile))
        logger.error(ex_type)
        logger.error(ex_value)
        logger.error("".join(traceback.format_tb(ex_traceback)))
        return False


def run_inverse_batch(files, mni_coords, fwds, options=None, dask_client=False):
    """Compute inverse models for several files.

    Parameters
    ----------
    files : str or list
        Paths to fif files, as a list, a glob expression or a text file
        listing one file per line, see
        :py:func:`osltools.utils.file_handling.process_file_inputs`.
    mni_coords : (n_sources, 3) np.ndarray
        Source positions in MNI space in mm.
    fwds : mne.Forward, str or list
        Forward model(s), one for all files or one per file.
    options : dict
        Settings, see :py:func:`inverse_model`. When several files share a
        ``dirname`` the run id of each file is prepended to ``prefix``.
    dask_client : bool
        Indicate whether to use a previously initialised
        :py:class:`dask.distributed.Client <distributed.Client>` instance.

    Returns
    -------
    list of bool
        Flags indicating whether the inverse model was computed for each file.
    """
    infiles, outnames, good_files = process_file_inputs(files)
    if not isinstance(fwds, (list, tuple)):
        fwds = [fwds] * len(infiles)
    if len(fwds) != len(infiles):
        raise ValueError("Got {0} forward models for {1} files".format(len(fwds), len(infiles)))

    args = []
    todo = []
    for ind, (infile, outname, fwd) in enumerate(zip(infiles, outnames, fwds)):
        if not good_files[ind]:
            logger.warning("Skipping missing file: {0}".format(infile))
            continue
        file_options = dict(options or {})
        if "dirname" in file_options and len(infiles) > 1:
            file_options["prefix"] = outname + "_" + file_options.get("prefix", "")
        args.append((infile, mni_coords, fwd, file_options))
        todo.append(ind)

    if len(args) == 0:
        results = []
    elif dask_client:
        results = dask_parallel_bag(_run_inverse_model, args)
    else:
        results = [_run_inverse_model(*aa) for aa in args]

    flags = [False] * len(infiles)
    for ind, result in zip(todo, results):
        flags[ind] = result

    logger.info("Computed {0}/{1} inverse models successfully".format(np.sum(flags), len(flags)))
    return flags
