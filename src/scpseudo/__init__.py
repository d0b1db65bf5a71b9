"""scPseudo: pseudobulk quasi-likelihood DE and preranked GSEA for annotated single-cell data."""

__version__ = "0.1.0"

from .errors import (
    PseudobulkError,
    InsufficientReplicatesError,
    DesignDegenerateError,
    InvalidContrastError,
    DispersionEstimationError,
    GeneSetSizeError,
    NoGenesLeftError,
    NormalizationError,
)
