"""File handling utility functions.

"""

import os
import csv
import glob
import pathlib

import mne
import numpy as np

# Housekeeping for logging
import logging
osl_logger = logging.getLogger(__name__)

# Extensions of recordings stored as directories rather than files
DIRECTORY_FORMATS = ('.ds', '.mff')

# Extensions stripped from recordings to give a run id
RECORDING_FORMATS = ('.fif', '.ds', '.meg4', '.mat', '.h5')


def process_file_inputs(inputs):
    """Resolve the different ways a list of recordings can be passed in.

    Parameters
    ----------
    inputs : str, pathlib.Path or list
        Either a path to a text file listing one recording per line (with an
        optional second comma-separated column holding an output name), a
        glob expression, a directory (e.g. a CTF ``.ds``), a list of paths,
        a list of ``(path, outname)`` pairs or a list of MNE Raw objects.

    Returns
    -------
    infiles : list
        Input paths (or Raw objects).
    outnames : list of str
        Run IDs used to name outputs.
    good_files : list of int
        1 where the input exists on disk, 0 otherwise.
    """
    if isinstance(inputs, pathlib.Path):
        inputs = str(inputs)

    infiles = []
    outnames = []
    check_paths = True

    if isinstance(inputs, str):
        if os.path.isdir(inputs):
            infiles = [inputs]
            outnames = [find_run_id(inputs)]
        elif inputs.endswith(RECORDING_FORMATS):
            # A single recording or a glob expression matching recordings
            infiles = sorted(glob.glob(inputs)) if any(c in inputs for c in "*?[") else [sanitise_filepath(inputs)]
            outnames = [find_run_id(f) for f in infiles]
        else:
            try:
                infiles, outnames = _load_unicode_inputs(inputs)
            except (UnicodeDecodeError, FileNotFoundError, IndexError):
                # Not a text file listing inputs - a path or glob expression
                infiles = sorted(glob.glob(inputs))
                outnames = [find_run_id(f) for f in infiles]

    elif isinstance(inputs, (list, tuple)):
        if len(inputs) == 0:
            raise ValueError("inputs is an empty list!")
        inputs = [str(i) if isinstance(i, pathlib.Path) else i for i in inputs]
        if isinstance(inputs[0], str):
            infiles = [sanitise_filepath(f) for f in inputs]
            outnames = [find_run_id(f) for f in infiles]
        elif isinstance(inputs[0], (list, tuple)):
            for row in inputs:
                infiles.append(sanitise_filepath(str(row[0])))
                outnames.append(row[1])
        elif isinstance(inputs[0], mne.io.BaseRaw):
            infiles = list(inputs)
            outnames = [find_run_id(raw) for raw in inputs]
            check_paths = False
        else:
            raise ValueError("Input type is invalid")
    else:
        raise ValueError("Input type is invalid")

    good_files = [1 for ii in range(len(infiles))]
    if check_paths:
        for idx, fname in enumerate(infiles):
            if fname.endswith(DIRECTORY_FORMATS):
                good_files[idx] = int(os.path.isdir(fname))
            else:
                good_files[idx] = int(os.path.isfile(fname))
            if good_files[idx] == 0:
                osl_logger.warning('Input file not found: {0}'.format(fname))

    if np.all(good_files):
        osl_logger.info('{0} files to be processed.'.format(len(infiles)))
    else:
        osl_logger.warning('{0} of {1} input files not found'.format(
            len(good_files) - int(np.sum(good_files)), len(infiles)))

    return infiles, outnames, good_files


def sanitise_filepath(fname):
    """Remove leading/trailing whitespace, tab, newline and carriage return
    characters."""
    return fname.strip(' \t\n\r')


def _load_unicode_inputs(fname):
    infiles = []
    outnames = []
    with open(fname, 'r') as f:
        rows = [row for row in csv.reader(f, delimiter=",") if len(row) > 0]
    osl_logger.info("loading inputs from : {0}".format(fname))
    for row in rows:
        infile = sanitise_filepath(row[0])
        infiles.append(infile)
        if len(row) > 1:
            outnames.append(sanitise_filepath(row[1]))
        else:
            outnames.append(find_run_id(infile))
    return infiles, outnames


def find_run_id(infile):
    """Name of a run derived from the path of a recording.

    Parameters
    ----------
    infile : str or mne.io.Raw
        Path to a recording, or a Raw object read from disk.

    Returns
    -------
    str
    """
    if isinstance(infile, mne.io.BaseRaw):
        if infile.filenames[0] is None:
            raise ValueError("Raw object was not read from disk, cannot find a run id.")
        infile = str(infile.filenames[0])

    infile = str(infile).rstrip('/')
    base, ext = os.path.splitext(os.path.basename(infile))
    if ext in RECORDING_FORMATS:
        return base
    # Strip to the left of the dot and hope for the best...
    return os.path.basename(infile).split('.')[0]


def validate_outdir(outdir):
    """Checks if an output directory exists and if not creates it.

    Parameters
    ----------
    outdir : str or pathlib.Path

    Returns
    -------
    pathlib.Path
    """
    outdir = pathlib.Path(outdir)
    if outdir.exists():
        if not outdir.is_dir():
            raise ValueError("outdir must be the path to a directory.")
        if not os.access(outdir, os.W_OK):
            raise PermissionError("No write access for {0}".format(outdir))
    else:
        if outdir.parent.exists():
            outdir.mkdir()
        else:
            raise ValueError(
                "Please create the parent directory: {0}".format(outdir.parent)
            )

    return outdir
