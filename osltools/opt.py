#!/usr/bin/env python

"""Checks and fills in the settings of an OPT (OSL's Preprocessing Tool) config.

An OPT config is a dict (usually read from a yaml file) with the input files,
the datatype and one section of settings per preprocessing stage. Missing
settings are filled with defaults, missing required inputs raise an error
and unrecognised settings are rejected.

Example config::

    datatype: neuromag
    input_files:
      - /data/fifs/sub1_face_sss.fif
      - /data/fifs/sub2_face_sss.fif
    downsample:
      freq: 200
    africa:
      do: 0
"""

import os
import sys
import argparse
from copy import deepcopy

import numpy as np
import yaml

from .utils import logger as osl_logger

# Housekeeping for logging
import logging
logger = logging.getLogger(__name__)


DATATYPES = ("neuromag", "ctf", "eeg")

# Input file lists in order of priority
INPUT_FILE_TYPES = ("raw_fif_files", "input_files", "spm_files")

DEFAULT_MODALITIES = {
    "neuromag": ["MEGMAG", "MEGPLANAR"],
    "ctf": ["MEGGRAD"],
    "eeg": ["EEG"],
}

DEFAULT_FID_LABELS = {
    "neuromag": {"nasion": "Nasion", "lpa": "LPA", "rpa": "RPA"},
    "ctf": {"nasion": "nas", "lpa": "lpa", "rpa": "rpa"},
    "eeg": {"nasion": "Nasion", "lpa": "LPA", "rpa": "RPA"},
}

# Keys dropped silently from the input
IGNORED_KEYS = ("osl_version", "osl2_version", "fname")

# Keys copied to the output when present
PASSTHROUGH_KEYS = ("results", "date")


def load_opt(opt):
    """Load an OPT config.

    Parameters
    ----------
    opt : str or dict
        Path to yaml file or string to convert to dict or a dict.

    Returns
    -------
    dict
        OPT config.
    """
    if type(opt) not in [str, dict]:
        raise ValueError("opt must be a str or dict, got {}.".format(type(opt)))

    if isinstance(opt, str):
        try:
            # See if we have a filepath
            with open(opt, "r") as f:
                opt = yaml.load(f, Loader=yaml.FullLoader)
        except (UnicodeDecodeError, FileNotFoundError, OSError):
            # We have a string
            opt = yaml.load(opt, Loader=yaml.FullLoader)

    if not isinstance(opt, dict):
        raise ValueError("opt must define a dict of settings, got {}.".format(type(opt)))

    for key in opt:
        if opt[key] == "None":
            opt[key] = None

    return opt


def _pop_section(optin, name):
    section = optin.pop(name, None)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError("opt.{0} must be a dict, got {1}".format(name, type(section)))
    return section


def _take(section, key, default):
    """Pop key from an input section, or build the default."""
    if key in section:
        return section.pop(key)
    return default() if callable(default) else default


def _check_full_paths(sess):
    for fname in sess:
        sess_path = os.path.dirname(str(fname))
        if len(sess_path) == 0 or sess_path.startswith("."):
            raise ValueError("Please specify full paths for the fif, input or spm files, got: {0}".format(fname))


def _unrecognised(name, section):
    """Log unrecognised settings of a section and return how many there were."""
    if len(section) == 0:
        return 0
    logger.error("The following {0} settings were not recognized by check_opt".format(name))
    for key in section:
        logger.error(" {0} ".format(key))
    return len(section)


def check_opt(optin):
    """Check an OPT config and fill in default settings.

    Parameters
    ----------
    optin : dict
        OPT config. Requires ``datatype`` ('neuromag', 'ctf' or 'eeg') and one
        of ``raw_fif_files`` (neuromag only), ``input_files`` or ``spm_files``.

    Returns
    -------
    opt : dict
        Checked config with all default settings. The input is not modified.
    """
    from . import __version__

    optin = deepcopy(optin)
    opt = {}

    # ----------------------------------------------------------
    # Required inputs

    if "datatype" not in optin:
        raise KeyError("Need to specify opt.datatype")
    opt["datatype"] = optin.pop("datatype")
    if opt["datatype"] not in DATATYPES:
        raise ValueError("opt.datatype must be one of {0}, got '{1}'".format(DATATYPES, opt["datatype"]))
    datatype = opt["datatype"]

    for key in INPUT_FILE_TYPES:
        files = optin.pop(key, None)
        opt[key] = [] if files is None else list(files)

    sess = None
    for key in INPUT_FILE_TYPES:
        if len(opt[key]) > 0:
            sess = opt[key]
            opt["input_file_type"] = key
            break
    if sess is None:
        raise ValueError("Either opt.raw_fif_files, or opt.input_files, or opt.spm_files need to be specified")
    if opt["input_file_type"] == "raw_fif_files" and datatype != "neuromag":
        raise ValueError("Should only specify raw fif files if using neuromag datatype")
    logger.info("Using opt.{0} as input".format(opt["input_file_type"]))
    optin.pop("input_file_type", None)

    n_sessions = len(sess)
    _check_full_paths(sess)

    # ----------------------------------------------------------
    # General settings

    opt["sessions_to_do"] = _take(optin, "sessions_to_do", lambda: list(range(n_sessions)))
    opt["dirname"] = _take(optin, "dirname", str(sess[0]) + ".opt")
    if ".opt" not in opt["dirname"]:
        opt["dirname"] = opt["dirname"] + ".opt"
    opt["modalities"] = _take(optin, "modalities", lambda: list(DEFAULT_MODALITIES[datatype]))

    # 0 deletes nothing, 1 keeps the post-sss and pre/post africa files, 2 deletes everything
    opt["cleanup_files"] = _take(optin, "cleanup_files", 1)

    n_invalid = 0

    # ----------------------------------------------------------
    # Convert

    sec = _pop_section(optin, "convert")
    opt["convert"] = {
        "trigger_channel_mask": _take(sec, "trigger_channel_mask", "0000000000111111"),
        "spm_files_basenames": _take(
            sec, "spm_files_basenames", lambda: ["spm_meg{0}".format(i + 1) for i in range(n_sessions)]
        ),
        "bad_epochs": _take(sec, "bad_epochs", lambda: [[] for _ in range(n_sessions)]),
    }
    n_invalid += _unrecognised("opt.convert", sec)

    # ----------------------------------------------------------
    # Maxfilter

    sec = _pop_section(optin, "maxfilter")
    opt["maxfilter"] = {
        "remote_port": _take(sec, "remote_port", 0),
        "do": _take(sec, "do", 1 if datatype == "neuromag" else 0),
        "do_sss": _take(sec, "do_sss", 1),
        "do_remove_badchans_pre_sss": _take(sec, "do_remove_badchans_pre_sss", 1),
        "max_badchans_pre_sss": _take(sec, "max_badchans_pre_sss", 10),
        "movement_compensation": _take(sec, "movement_compensation", 1),
        "trans_ref_file": _take(sec, "trans_ref_file", None),
        "temporal_extension": _take(sec, "temporal_extension", 0),
        "maxfilt_dir": _take(sec, "maxfilt_dir", "/neuro/bin/util"),
        "bad_epochs": _take(sec, "bad_epochs", lambda: [[] for _ in range(n_sessions)]),
        "cal_file": _take(sec, "cal_file", 0),
        "ctc_file": _take(sec, "ctc_file", 0),
    }
    n_invalid += _unrecognised("opt.maxfilter", sec)

    # ----------------------------------------------------------
    # Filtering and downsampling

    sec = _pop_section(optin, "downsample")
    opt["downsample"] = {
        "do": _take(sec, "do", 1),
        "freq": _take(sec, "freq", 250),
    }
    n_invalid += _unrecognised("opt.downsample", sec)

    sec = _pop_section(optin, "highpass")
    opt["highpass"] = {
        "do": _take(sec, "do", 0),
        "cutoff": _take(sec, "cutoff", 0.1),
    }
    n_invalid += _unrecognised("opt.highpass", sec)

    sec = _pop_section(optin, "mains")
    opt["mains"] = {"do": _take(sec, "do", 0)}
    n_invalid += _unrecognised("opt.mains", sec)

    # ----------------------------------------------------------
    # Bad segments

    sec = _pop_section(optin, "bad_segments")
    fns = _take(sec, "outlier_measure_fns", lambda: ["std"])
    opt["bad_segments"] = {
        "do": _take(sec, "do", 1),
        "dummy_epoch_tsize": _take(sec, "dummy_epoch_tsize", 2),
        "outlier_measure_fns": fns,
        "wthresh_ev": _take(sec, "wthresh_ev", lambda: [0.3] * len(fns)),
        "wthresh_chan": _take(sec, "wthresh_chan", lambda: [0.01] * len(fns)),
    }
    n_invalid += _unrecognised("opt.bad_segments", sec)

    # ----------------------------------------------------------
    # AFRICA (ICA artefact rejection)

    sec = _pop_section(optin, "africa")
    do_africa = _take(sec, "do", 1)

    todo = sec.pop("todo", None) or {}
    opt["africa"] = {
        "todo": {
            "ica": _take(todo, "ica", do_africa),
            "ident": _take(todo, "ident", do_africa),
            "remove": _take(todo, "remove", do_africa),
        },
        "precompute_topos": _take(sec, "precompute_topos", 1),
    }
    n_invalid += _unrecognised("opt.africa.todo", todo)

    if "used_maxfilter" in sec:
        opt["africa"]["used_maxfilter"] = sec.pop("used_maxfilter")
    elif datatype == "neuromag":
        if opt["input_file_type"] == "raw_fif_files":
            opt["africa"]["used_maxfilter"] = opt["maxfilter"]["do_sss"]
        else:
            opt["africa"]["used_maxfilter"] = 1
            logger.warning(
                "opt.datatype is neuromag, will assume that data has been maxfiltered "
                "and will set opt.africa.used_maxfilter=1"
            )
    else:
        opt["africa"]["used_maxfilter"] = 0

    ident = sec.pop("ident", None) or {}
    chans = _take(ident, "artefact_chans", lambda: ["ECG", "EOG"])
    opt["africa"]["ident"] = {
        "artefact_chans": chans,
        "artefact_chans_corr_thresh": _take(ident, "artefact_chans_corr_thresh", lambda: [0.15] * len(chans)),
        "do_kurt": _take(ident, "do_kurt", 1),
        "kurtosis_wthresh": _take(ident, "kurtosis_wthresh", 0.4),
        "kurtosis_thresh": _take(ident, "kurtosis_thresh", 0),
        "do_mains": _take(ident, "do_mains", 1),
        "mains_frequency": _take(ident, "mains_frequency", 50),
        "mains_kurt_thresh": _take(ident, "mains_kurt_thresh", 0.2),
        "func": _take(ident, "func", "auto"),
        "max_num_artefact_comps": _take(ident, "max_num_artefact_comps", 10),
    }
    n_invalid += _unrecognised("opt.africa.ident", ident)
    n_invalid += _unrecognised("opt.africa", sec)

    # ----------------------------------------------------------
    # Epoching and outliers

    sec = _pop_section(optin, "epoch")
    opt["epoch"] = {
        "do": _take(sec, "do", 1),
        "time_range": _take(sec, "time_range", lambda: [0.5, 2]),
        "timing_delay": _take(sec, "timing_delay", 0),
        "trialdef": _take(sec, "trialdef", 1),
    }
    n_invalid += _unrecognised("opt.epoch", sec)

    sec = _pop_section(optin, "outliers")
    fns = _take(sec, "outlier_measure_fns", lambda: ["min", "std"])
    opt["outliers"] = {
        "do": _take(sec, "do", 1),
        "outlier_measure_fns": fns,
        "wthresh_ev": _take(sec, "wthresh_ev", lambda: [0.4] * len(fns)),
        "wthresh_chan": _take(sec, "wthresh_chan", lambda: [0.01] * len(fns)),
    }
    n_invalid += _unrecognised("opt.outliers", sec)

    # ----------------------------------------------------------
    # Coregistration

    sec = _pop_section(optin, "coreg")
    opt["coreg"] = {
        "do": _take(sec, "do", 1),
        "useheadshape": _take(sec, "useheadshape", 1),
        "mri": _take(sec, "mri", lambda: [""] * n_sessions),
        "use_rhino": _take(sec, "use_rhino", 1),
        "forward_meg": _take(sec, "forward_meg", "Single Shell"),
        "fid_label": _take(sec, "fid_label", lambda: dict(DEFAULT_FID_LABELS[datatype])),
    }
    n_invalid += _unrecognised("opt.coreg", sec)

    # ----------------------------------------------------------
    # Results from previous runs

    for key in PASSTHROUGH_KEYS:
        if key in optin:
            opt[key] = optin.pop(key)
    for key in IGNORED_KEYS:
        optin.pop(key, None)

    n_invalid += _unrecognised("opt", optin)
    if n_invalid > 0:
        raise ValueError("Invalid check_opt settings")

    opt["osl_version"] = __version__

    return opt


def _to_builtin(obj):
    """Convert numpy types so that a checked config can be dumped to yaml."""
    if isinstance(obj, dict):
        return {key: _to_builtin(val) for key, val in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_builtin(val) for val in obj]
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, np.generic):
        return obj.item()
    return obj


# ----------------------------------------------------------
# Main CLI user function


def main(argv=None):
    """Command line interface to :py:func:`check_opt`.

    Parameters
    ----------
    argv : list
        Command line arguments.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Check an OPT config and fill in its default settings.")
    parser.add_argument("config", type=str, help="yaml defining the OPT settings")
    parser.add_argument("--outfile", type=str, default=None, help="yaml file to write the checked config to")
    parser.add_argument("--verbose", type=str, default="INFO", help="Set the logging level")
    args = parser.parse_args(argv)

    osl_logger.set_up(level=args.verbose, startup=False)

    opt = check_opt(load_opt(args.config))
    out = yaml.dump(_to_builtin(opt), sort_keys=False)

    if args.outfile is None:
        print(out)
    else:
        with open(args.outfile, "w") as f:
            f.write(out)
        logger.info("Saved checked config to {0}".format(args.outfile))


if __name__ == "__main__":
    main()
