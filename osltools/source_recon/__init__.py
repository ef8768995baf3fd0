from . import nii  # noqa: F401, F403
from .forward_model import make_forward_model, mni_to_mri  # noqa: F401, F403
from .beamforming import (  # noqa: F401, F403
    check_inverse_options,
    inverse_model,
    apply_montage,
    read_montage,
    run_inverse_batch,
)
