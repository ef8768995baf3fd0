"""Utility functions to read and write niftii volumes with orientation info.

Example code
------------

from osltools.source_recon import nii

# Use a standard mask to get the resolution and xform
mask, res, xform = nii.load_nii('MNI152_T1_8mm_brain.nii.gz')

# Save a map defined on the same grid
nii.save_nii(power_map, res, xform, 'power_map.nii.gz')
"""

import nibabel as nib
import numpy as np

# Housekeeping for logging
import logging
logger = logging.getLogger(__name__)


# NIFTI_XFORM_ALIGNED_ANAT and NIFTI_XFORM_UNKNOWN
QFORM_CODE = 2
SFORM_CODE = 0


def expand_resolution(res):
    """Expand a resolution specification to the 4 (x, y, z, t) voxel sizes.

    Parameters
    ----------
    res : float or array_like
        A single number (same in all spatial dimensions, time resolution of 1),
        3 numbers (time resolution of 1) or 4 numbers.

    Returns
    -------
    np.ndarray
        (4,) voxel sizes.
    """
    res = np.atleast_1d(np.asarray(res, dtype=float)).ravel()
    if len(res) == 1:
        return np.array([res[0], res[0], res[0], 1.0])
    elif len(res) == 3:
        return np.append(res, 1.0)
    elif len(res) == 4:
        return res
    raise ValueError("Unknown resolution - should be 1, 3, or 4 elements long")


def save_nii(vol, res, xform, fname):
    """Save a niftii file together with a given xform matrix.

    Parameters
    ----------
    vol : np.ndarray
        3D or 4D volume to save.
    res : float or array_like
        Resolution, see :py:func:`expand_resolution`. The spatial voxel sizes
        written to the header are those of xform, so that the qform is stored
        exactly. A warning is logged when res disagrees with them. The time
        resolution is written for 4D volumes.
    xform : np.ndarray
        (4, 4) voxel to world transform. It is stored as the qform (code 2,
        aligned) and the sform (code 0).
    fname : str
        File name of the niftii file to save.

    Returns
    -------
    fname : str
    """
    r = expand_resolution(res)
    xform = np.asarray(xform, dtype=float)
    if xform.shape != (4, 4):
        raise ValueError("xform must be a 4x4 matrix, got shape {0}".format(xform.shape))

    vol = np.asarray(vol)
    if vol.ndim not in (3, 4):
        raise ValueError("vol must be 3D or 4D, got {0} dimensions".format(vol.ndim))
    if vol.dtype == bool:
        vol = vol.astype(np.uint8)
    elif vol.dtype == np.int64:
        vol = vol.astype(np.int32)

    img = nib.Nifti1Image(vol, xform)
    img.set_qform(xform, code=QFORM_CODE)
    img.set_sform(xform, code=SFORM_CODE)

    # Spatial voxel sizes are defined by the qform
    zooms = img.header.get_zooms()[:3]
    if not np.allclose(zooms, r[:3], atol=1e-3):
        logger.warning("resolution {0} does not match the xform voxel sizes {1}".format(r[:3], zooms))
    if vol.ndim == 4:
        img.header.set_zooms(tuple(zooms) + (r[3],))

    logger.info("saving {0}".format(fname))
    nib.save(img, fname)

    return fname


def load_nii(fname):
    """Load a niftii file.

    Parameters
    ----------
    fname : str
        File name of the niftii file to load.

    Returns
    -------
    vol : np.ndarray
        Volume.
    res : np.ndarray
        (4,) voxel sizes, time resolution of 1 for 3D volumes.
    xform : np.ndarray
        (4, 4) qform if set, otherwise the sform.
    """
    img = nib.load(fname)
    vol = img.get_fdata()

    res = expand_resolution(img.header.get_zooms()[:4])

    xform, code = img.get_qform(coded=True)
    if xform is None or code == 0:
        xform = img.get_sform()

    return vol, res, xform
