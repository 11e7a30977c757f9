__version__ = "1.0.0"

from .errors import (  # noqa: E402
    IntegrationError,
    EmptyIntersectionError,
    EmptyFeatureSetError,
    InsufficientNeighboursError,
    OrderMismatchError,
)
from .harmonize import harmonize  # noqa: E402
from .variance import estimate_variance, estimate_variance_per_batch, combine  # noqa: E402
from .features import select_features, build_blacklist  # noqa: E402
from .ordering import compute_merge_order, validate_merge_order  # noqa: E402
from .correct import correct, make_backend, CorrectedDataset, MNNBackend, MNNStepResult, ScanpyMNN, SklearnMNN  # noqa: E402
