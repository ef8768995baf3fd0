"""Rebuild the MEX extensions shipped with FieldTrip.

FieldTrip ships precompiled MEX files in many folders, copies of the sources
compiled in ``src/`` (and ``fileio/@uint64/``). Stale binaries are a recurrent
cause of crashes, so this tool deletes the compiled sources, recompiles them
with ``ft_compile_mex`` and copies the fresh binaries over every stale copy.

Example use from the command line::

    osltools_recompile_fieldtrip /path/to/spm12/external/fieldtrip --dryrun
"""

import os
import sys
import glob
import shutil
import argparse
import platform
import subprocess
from collections import OrderedDict

from . import logger as osl_logger

# Housekeeping for logging
import logging
logger = logging.getLogger(__name__)


# Folders holding the sources compiled by ft_compile_mex, relative to the
# FieldTrip root
SRC_DIR = 'src'
FILEIO_DIR = os.path.join('fileio', '@uint64')


def default_mexext():
    """MATLAB's MEX file extension for the current platform."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == 'Linux':
        return 'mexa64'
    elif system == 'Darwin':
        return 'mexmaca64' if machine in ('arm64', 'aarch64') else 'mexmaci64'
    elif system == 'Windows':
        return 'mexw64'
    raise RuntimeError("Unable to determine the MEX extension for platform '{0}'".format(system))


def find_mex_files(folder, recursive=False):
    """Find compiled MEX files.

    Parameters
    ----------
    folder : str
        Folder to search.
    recursive : bool
        Search sub-folders as well?

    Returns
    -------
    list of str
        Sorted paths to files with a ``.mex*`` extension.
    """
    if recursive:
        pattern = os.path.join(folder, '**', '*.mex*')
    else:
        pattern = os.path.join(folder, '*.mex*')
    return sorted(f for f in glob.glob(pattern, recursive=recursive) if os.path.isfile(f))


def map_mex_files(mex_files):
    """Group MEX files by their path without extension.

    Parameters
    ----------
    mex_files : list of str

    Returns
    -------
    OrderedDict
        Maps ``path/basename`` to the list of extensions found for it,
        e.g. ``{'/ft/private/nanmean': ['.mexa64', '.mexw64']}``.
    """
    mex_map = OrderedDict()
    for fname in mex_files:
        key, ext = os.path.splitext(fname)
        mex_map.setdefault(key, []).append(ext)
    return mex_map


def _basename(key):
    return os.path.basename(key)


def _find_and_delete_mex(folder, dryrun=False):
    mex_files = find_mex_files(folder)
    mex_map = map_mex_files(mex_files)

    if len(mex_files) > 0:
        logger.info('{0} Mex-file(s) will be deleted:\n{1}'.format(len(mex_files), '\n'.join(mex_files)))
        for fname in mex_files:
            if not dryrun:
                os.remove(fname)
    else:
        logger.info('No Mex-file found in folder "{0}".'.format(folder))

    return mex_map


def patch_getopt(fieldtrip_dir, dryrun=False):
    """Replace the ``mxErrMsgTxt`` calls in ``src/ft_getopt.c`` with ``mexErrMsgTxt``.

    Returns
    -------
    int
        Number of replacements.
    """
    getopt_file = os.path.join(fieldtrip_dir, SRC_DIR, 'ft_getopt.c')
    if not os.path.isfile(getopt_file):
        logger.warning('{0} not found, skipping patch'.format(getopt_file))
        return 0

    with open(getopt_file, 'r') as f:
        source = f.read()

    count = source.count('mxErrMsgTxt')
    if count > 0 and not dryrun:
        with open(getopt_file, 'w') as f:
            f.write(source.replace('mxErrMsgTxt', 'mexErrMsgTxt'))
    logger.info('Patched {0} occurrence(s) of mxErrMsgTxt in {1}'.format(count, getopt_file))
    return count


def compile_mex(fieldtrip_dir, matlab='matlab', dryrun=False):
    """Run ``ft_compile_mex(true)`` in a MATLAB session started in fieldtrip_dir."""
    cmd = [matlab, '-batch', 'ft_compile_mex(true)']
    logger.info('Running: {0} (in {1})'.format(' '.join(cmd), fieldtrip_dir))
    if dryrun:
        return

    try:
        subprocess.run(cmd, cwd=fieldtrip_dir, check=True)
    except FileNotFoundError:
        raise RuntimeError("MATLAB executable '{0}' not found".format(matlab))
    except subprocess.CalledProcessError as e:
        raise RuntimeError("ft_compile_mex failed with exit code {0}".format(e.returncode))


def recompile_fieldtrip(fieldtrip_dir, matlab='matlab', mexext=None, dryrun=False):
    """Clean up, recompile and replace all MEX files in a FieldTrip installation.

    Parameters
    ----------
    fieldtrip_dir : str
        Root of the FieldTrip installation.
    matlab : str
        MATLAB executable used to run ``ft_compile_mex``.
    mexext : str
        MEX extension produced by the compiler. Guessed from the platform if None.
    dryrun : bool
        Only log what would be done.

    Returns
    -------
    replaced : list of str
        ``path/basename`` of the MEX files that were replaced.
    missing : list of str
        ``path/basename`` of the MEX files with no compiled replacement.
    """
    if not os.path.isdir(fieldtrip_dir):
        raise FileNotFoundError("FieldTrip directory not found: {0}".format(fieldtrip_dir))
    mexext = mexext or default_mexext()
    mexext = mexext.lstrip('.')

    src_dir = os.path.join(fieldtrip_dir, SRC_DIR)
    fileio_dir = os.path.join(fieldtrip_dir, FILEIO_DIR)

    # Delete all compiled sources
    src_map = _find_and_delete_mex(src_dir, dryrun=dryrun)
    fileio_map = _find_and_delete_mex(fileio_dir, dryrun=dryrun)

    src_names = set(_basename(key) for key in src_map)
    fileio_names = set(_basename(key) for key in fileio_map)
    if len(src_names & fileio_names) > 0:
        raise RuntimeError('Conflicts between Mex function names.')

    # Map all other MEX files
    compiled_dirs = (os.path.normpath(src_dir), os.path.normpath(fileio_dir))
    mex_files = find_mex_files(fieldtrip_dir, recursive=True)
    if dryrun:
        # Nothing was deleted, so ignore the compiled sources by hand
        mex_files = [f for f in mex_files if os.path.normpath(os.path.dirname(f)) not in compiled_dirs]
    mex_map = map_mex_files(mex_files)

    patch_getopt(fieldtrip_dir, dryrun=dryrun)
    compile_mex(fieldtrip_dir, matlab=matlab, dryrun=dryrun)

    replaced = []
    missing = []
    for key, exts in mex_map.items():
        name = _basename(key)
        if name in src_names:
            new_file = os.path.join(src_dir, name + '.' + mexext)
        elif name in fileio_names:
            new_file = os.path.join(fileio_dir, name + '.' + mexext)
        else:
            logger.warning('Could not find a replacement for Mex-file: "{0}"'.format(key))
            missing.append(key)
            continue

        if not dryrun and not os.path.isfile(new_file):
            logger.warning('Mex-file was not compiled: "{0}"'.format(new_file))
            missing.append(key)
            continue

        logger.info('Replacing {0} with {1}'.format(key, new_file))
        if not dryrun:
            for ext in exts:
                os.remove(key + ext)
            shutil.copy(new_file, os.path.dirname(key))
        replaced.append(key)

    logger.info('Replaced {0} Mex-file(s), {1} without replacement'.format(len(replaced), len(missing)))
    return replaced, missing


# ----------------------------------------------------------
# Main CLI user function


def main(argv=None):
    """Command line interface to :py:func:`recompile_fieldtrip`."""
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Recompile and replace the MEX files of a FieldTrip installation.")
    parser.add_argument("fieldtrip_dir", type=str, help="Root directory of FieldTrip")
    parser.add_argument("--matlab", type=str, default="matlab", help="MATLAB executable")
    parser.add_argument("--mexext", type=str, default=None, help="MEX file extension (default: guessed from platform)")
    parser.add_argument("--dryrun", action="store_true",
                        help="Don't actually change anything, just log what would have been done")
    parser.add_argument("--verbose", type=str, default="INFO", help="Set the logging level")
    args = parser.parse_args(argv)

    osl_logger.set_up(level=args.verbose, startup=False)

    recompile_fieldtrip(args.fieldtrip_dir, matlab=args.matlab, mexext=args.mexext, dryrun=args.dryrun)


if __name__ == "__main__":
    main()
