from __future__ import annotations

from typing import Any, Dict, Optional


class PseudobulkError(Exception):
    """
    Base class for statistical precondition failures of one comparison.

    Every subclass carries a machine-readable ``reason`` code that the
    orchestrator copies into the comparison status table.
    """

    reason: str = "pseudobulk_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details)

    def to_record(self) -> Dict[str, Any]:
        return {"reason": self.reason, "message": self.message, **self.details}


class InsufficientReplicatesError(PseudobulkError):
    """Fewer than the required number of samples in some level of the tested factor."""

    reason = "insufficient_replicates"


class DesignDegenerateError(PseudobulkError):
    """Rank-deficient design, or a grouping factor with a single level."""

    reason = "design_degenerate"


class InvalidContrastError(PseudobulkError):
    """Contrast not expressible in the coefficient space of the fitted design."""

    reason = "invalid_contrast"


class DispersionEstimationError(PseudobulkError):
    """Too few residual degrees of freedom to estimate variance."""

    reason = "dispersion_estimation"


class NoGenesLeftError(PseudobulkError):
    """Expression filters removed every gene."""

    reason = "no_genes"


class GeneSetSizeError(PseudobulkError):
    """
    A gene set outside [min_size, max_size].

    Not raised by the enrichment engine: instances are collected as exclusion
    records so the caller can audit which sets were not tested.
    """

    reason = "gene_set_size"

    def __init__(self, pathway: str, size: int, min_size: int, max_size: int, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"gene set {pathway!r} has {size} genes in the ranked list (allowed: {min_size}-{max_size})",
            pathway=pathway,
            size=int(size),
            min_size=int(min_size),
            max_size=int(max_size),
        )
        self.pathway = pathway
        self.size = int(size)


class NormalizationError(PseudobulkError, ValueError):
    """Library counts that no normalization method can scale (e.g. an all-zero library)."""

    reason = "normalization"
