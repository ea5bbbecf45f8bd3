"""Local reslice particle simulation (LRPS) for propagating traced chains through a volume."""
from .errors import (
    PropagationError, IndexOutOfRange, ChainWidthMismatch, InsufficientData,
    InvalidTarget, NoCandidateFound, CacheOverBudget
)
from .config import PropagationConfig
from .intensity_profile import find_maxima, rank_by_proximity
from .chain import Chain
