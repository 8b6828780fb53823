import logging

from .blending import (
    BlendMask,
    OverlapEdge,
    OverlapRegion,
    apply_curve,
    apply_overlap_blend,
)
from .config import (
    BlendConfig,
    BlendCurve,
    DecoderSettings,
    HomographySettings,
    OverlapConfig,
    ProjectConfig,
    ProjectorConfig,
    SessionSettings,
    load_project,
    save_project,
)
from .decoder import (
    CapturedExposure,
    CorrespondenceDecoder,
    DecodedCorrespondences,
    average_frames,
    detect_float_scale,
    to_gray_float,
)
from .errors import (
    CalibrationError,
    DegenerateGeometryError,
    InsufficientDataError,
    MissingExposureError,
    UndefinedProjectionError,
)
from .export import (
    export_all_blend_masks,
    export_blend_mask,
    load_correspondences,
    project_from_results,
    save_correspondences,
)
from .graycode import (
    PatternConfig,
    PatternDirection,
    PatternSpec,
    generate_pattern,
    gray_decode,
    gray_encode,
    num_bits,
)
from .homography import (
    HomographyEstimator,
    HomographyResult,
    invert,
    transform_point,
    transform_points,
)
from .overlap import (
    Bounds,
    OverlapDetectionResult,
    OverlapDetector,
    compute_bounds,
    determine_overlap_edge,
)
from .session import (
    CalibrationPhase,
    CalibrationSession,
    ProjectorCalibration,
    ProjectorReport,
    calibrate_all,
    calibrate_projector,
)

__version__ = "0.1.0"

logger = logging.getLogger(__name__)
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("[PMB] %(message)s"))
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)
