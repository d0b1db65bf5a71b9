# src/scpseudo/design_utils.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.linalg import null_space

from .errors import DesignDegenerateError, InsufficientReplicatesError, InvalidContrastError

LOGGER = logging.getLogger(__name__)

INTERCEPT = "Intercept"

ContrastLike = Union[str, Mapping[str, float], Sequence[float], np.ndarray]


@dataclass(frozen=True)
class DesignSpec:
    """
    Explicit description of the model for one comparison.

    factor      metadata column holding the tested grouping (e.g. disease status)
    reference   baseline level of `factor`; coefficients are "level vs reference"
    levels      optional full level order; default is reference first, then sorted
    covariates  categorical nuisance columns (batch, dataset, donor for pairing)
    continuous  numeric nuisance columns
    cell_means  one column per level and no intercept (for interaction-style
                contrasts between group means)
    drop_confounded  drop nuisance columns that make the design rank deficient
                instead of failing the comparison
    """
    factor: str
    reference: str
    levels: Optional[Tuple[str, ...]] = None
    covariates: Tuple[str, ...] = ()
    continuous: Tuple[str, ...] = ()
    cell_means: bool = False
    drop_confounded: bool = True


@dataclass
class DesignMatrix:
    matrix: pd.DataFrame                  # (libraries x coefficients)
    spec: DesignSpec
    levels: List[str]                     # observed levels, reference first
    factor_columns: List[str]
    dropped_columns: List[str] = field(default_factory=list)

    @property
    def coef_names(self) -> List[str]:
        return [str(c) for c in self.matrix.columns]

    @property
    def implicit_zero_names(self) -> List[str]:
        """Names that may appear in contrasts but are absorbed by the intercept."""
        if self.spec.cell_means:
            return []
        return [coef_name(self.spec.factor, self.levels[0])]

    def to_numpy(self) -> np.ndarray:
        return self.matrix.to_numpy(dtype=np.float64)


def coef_name(factor: str, level: str) -> str:
    return f"{factor}[{level}]"


# -----------------------------------------------------------------------------
# Level handling
# -----------------------------------------------------------------------------
def resolve_levels(values: pd.Series, spec: DesignSpec) -> List[str]:
    observed = pd.Index(pd.unique(values.astype(str)))

    if spec.levels is not None:
        declared = [str(x) for x in spec.levels]
        unknown = [x for x in observed if x not in declared]
        if unknown:
            raise ValueError(
                f"{spec.factor!r} has levels {unknown} that are not in the declared levels {declared}"
            )
        ordered = [x for x in declared if x in set(observed)]
        missing = [x for x in declared if x not in set(observed)]
        if missing:
            LOGGER.warning("Design: declared level(s) %s of %r have no libraries and are dropped.", missing, spec.factor)
    else:
        ordered = sorted(observed)

    ref = str(spec.reference)
    if ref not in ordered:
        raise DesignDegenerateError(
            f"reference level {ref!r} of {spec.factor!r} has no libraries (observed: {ordered})",
            factor=spec.factor,
            levels=ordered,
        )
    if len(ordered) < 2:
        raise DesignDegenerateError(
            f"{spec.factor!r} has a single level {ordered} after filtering; nothing to compare",
            factor=spec.factor,
            levels=ordered,
        )
    return [ref] + [x for x in ordered if x != ref]


def check_replicates(
    metadata: pd.DataFrame,
    factor: str,
    *,
    min_samples_per_level: int = 2,
    sample_key: Optional[str] = None,
) -> pd.Series:
    """
    Count independent samples per level; raise if any level is under-replicated.

    When sample_key is given, a sample contributing several libraries to the
    same level (several subsets) is counted once.
    """
    if sample_key is not None and sample_key in metadata:
        n = metadata.groupby(metadata[factor].astype(str))[sample_key].nunique()
    else:
        n = metadata[factor].astype(str).value_counts()
    n = n.sort_index()

    low = n[n < int(min_samples_per_level)]
    if not low.empty:
        raise InsufficientReplicatesError(
            f"level(s) of {factor!r} with fewer than {min_samples_per_level} samples: "
            + ", ".join(f"{k}={int(v)}" for k, v in low.items()),
            factor=factor,
            samples_per_level={str(k): int(v) for k, v in n.items()},
        )
    return n


# -----------------------------------------------------------------------------
# Design construction
# -----------------------------------------------------------------------------
def _dependent_columns(X: np.ndarray, tol: Optional[float] = None) -> List[int]:
    """Greedy left-to-right: columns that do not increase the rank."""
    dep: List[int] = []
    kept: List[int] = []
    rank = 0
    for j in range(X.shape[1]):
        r = np.linalg.matrix_rank(X[:, kept + [j]], tol=tol)
        if r > rank:
            kept.append(j)
            rank = r
        else:
            dep.append(j)
    return dep


def build_design(metadata: pd.DataFrame, spec: DesignSpec) -> DesignMatrix:
    """
    Numeric design matrix for one comparison, rows aligned to metadata.

    Raises DesignDegenerateError when the tested factor has fewer than two
    levels, when the reference is absent, or when the factor columns are
    themselves confounded with nuisance terms.
    """
    for col in (spec.factor, *spec.covariates, *spec.continuous):
        if col not in metadata:
            raise KeyError(f"design column {col!r} not in pseudobulk metadata")

    values = metadata[spec.factor].astype(str)
    levels = resolve_levels(values, spec)

    cols: Dict[str, np.ndarray] = {}
    if spec.cell_means:
        for lv in levels:
            cols[coef_name(spec.factor, lv)] = (values == lv).to_numpy(dtype=np.float64)
    else:
        cols[INTERCEPT] = np.ones(metadata.shape[0])
        for lv in levels[1:]:
            cols[coef_name(spec.factor, lv)] = (values == lv).to_numpy(dtype=np.float64)
    factor_columns = list(cols.keys())

    for cov in spec.covariates:
        cv = metadata[cov].astype(str)
        cov_levels = sorted(pd.unique(cv))
        if len(cov_levels) < 2:
            LOGGER.info("Design: covariate %r is constant in this comparison; not modelled.", cov)
            continue
        for lv in cov_levels[1:]:
            cols[coef_name(cov, lv)] = (cv == lv).to_numpy(dtype=np.float64)

    for cov in spec.continuous:
        x = pd.to_numeric(metadata[cov], errors="coerce")
        if x.isna().any():
            raise ValueError(f"continuous covariate {cov!r} has missing or non-numeric values")
        cols[cov] = x.to_numpy(dtype=np.float64)

    X = pd.DataFrame(cols, index=metadata.index)
    dropped: List[str] = []

    dep = _dependent_columns(X.to_numpy())
    if dep:
        dep_names = [X.columns[j] for j in dep]
        in_factor = [c for c in dep_names if c in factor_columns]
        if in_factor or not spec.drop_confounded:
            raise DesignDegenerateError(
                f"design is rank deficient; linearly dependent column(s): {dep_names}",
                dependent_columns=dep_names,
            )
        LOGGER.warning("Design: dropping confounded nuisance column(s) %s", dep_names)
        X = X.drop(columns=dep_names)
        dropped = dep_names

    if X.shape[1] >= X.shape[0]:
        raise DesignDegenerateError(
            f"design has {X.shape[1]} coefficients for {X.shape[0]} libraries",
            n_coef=int(X.shape[1]),
            n_libraries=int(X.shape[0]),
        )

    return DesignMatrix(
        matrix=X,
        spec=spec,
        levels=levels,
        factor_columns=[c for c in factor_columns if c in X.columns],
        dropped_columns=dropped,
    )


# -----------------------------------------------------------------------------
# Contrasts
# -----------------------------------------------------------------------------
_NUMBER = re.compile(r"\s*(\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)\s*\*?\s*")


def parse_contrast(expr: str, names: Sequence[str], implicit_zero: Sequence[str] = ()) -> np.ndarray:
    """
    Parse "a[x] - a[y]", "0.5*g[A] + 0.5*g[B] - g[C]" into a weight vector.

    Coefficient names are matched longest-first, so names may contain
    characters that are also operators (e.g. "dataset[covid-19]").
    """
    names = [str(n) for n in names]
    known = sorted(set(names) | set(implicit_zero), key=len, reverse=True)
    index = {n: i for i, n in enumerate(names)}

    vec = np.zeros(len(names))
    s = str(expr).strip()
    if not s:
        raise InvalidContrastError("empty contrast expression")

    pos = 0
    n_terms = 0
    while pos < len(s):
        while pos < len(s) and s[pos].isspace():
            pos += 1
        sign = 1.0
        if pos < len(s) and s[pos] in "+-":
            sign = -1.0 if s[pos] == "-" else 1.0
            pos += 1
        elif n_terms > 0:
            raise InvalidContrastError(f"expected '+' or '-' at position {pos} in {expr!r}")
        while pos < len(s) and s[pos].isspace():
            pos += 1

        weight = 1.0
        m = _NUMBER.match(s, pos)
        if m and not any(s.startswith(k, pos) for k in known):
            weight = float(m.group(1))
            pos = m.end()

        hit = next((k for k in known if s.startswith(k, pos)), None)
        if hit is None:
            raise InvalidContrastError(
                f"unknown coefficient at {s[pos:]!r} in contrast {expr!r}; design coefficients: {names}",
                coefficients=names,
            )
        if hit in index:
            vec[index[hit]] += sign * weight
        pos += len(hit)
        n_terms += 1

    return vec


def _contrast_vector(c: ContrastLike, design: DesignMatrix) -> np.ndarray:
    names = design.coef_names
    if isinstance(c, str):
        return parse_contrast(c, names, design.implicit_zero_names)
    if isinstance(c, Mapping):
        vec = np.zeros(len(names))
        zero_ok = set(design.implicit_zero_names)
        for k, w in c.items():
            if k in names:
                vec[names.index(k)] += float(w)
            elif k not in zero_ok:
                raise InvalidContrastError(
                    f"unknown coefficient {k!r}; design coefficients: {names}",
                    coefficients=names,
                )
        return vec
    vec = np.asarray(c, dtype=np.float64).reshape(-1)
    if vec.size != len(names):
        raise InvalidContrastError(
            f"contrast vector has length {vec.size}, design has {len(names)} coefficients",
            coefficients=names,
        )
    return vec


def contrast_matrix(
    contrast: Union[ContrastLike, Sequence[ContrastLike]],
    design: DesignMatrix,
) -> np.ndarray:
    """
    Validate and convert a contrast into a (p x k) matrix.

    A list of expressions or mappings gives a k-column contrast (joint F-test).
    Raises InvalidContrastError for unknown names, wrong length, zero columns,
    linearly dependent columns, or contrasts outside the row space of the design.
    """
    if isinstance(contrast, (list, tuple)) and contrast and all(
        isinstance(c, (str, Mapping)) for c in contrast
    ):
        cols = [_contrast_vector(c, design) for c in contrast]
    elif isinstance(contrast, np.ndarray) and contrast.ndim == 2:
        if contrast.shape[0] != len(design.coef_names):
            raise InvalidContrastError(
                f"contrast matrix has {contrast.shape[0]} rows, design has {len(design.coef_names)} coefficients"
            )
        cols = [contrast[:, j].astype(np.float64) for j in range(contrast.shape[1])]
    else:
        cols = [_contrast_vector(contrast, design)]

    C = np.column_stack(cols)
    if np.any(np.all(C == 0, axis=0)):
        raise InvalidContrastError("contrast has an all-zero column")
    if np.linalg.matrix_rank(C) < C.shape[1]:
        raise InvalidContrastError("contrast columns are linearly dependent")

    # estimable iff each column lies in the row space of X
    X = design.to_numpy()
    n_space = null_space(X)
    if n_space.size and np.max(np.abs(C.T @ n_space)) > 1e-8:
        raise InvalidContrastError("contrast is not estimable from the design")
    return C


def default_contrasts(design: DesignMatrix) -> Dict[str, str]:
    """Every non-reference level against the reference."""
    f = design.spec.factor
    ref = design.levels[0]
    out: Dict[str, str] = {}
    for lv in design.levels[1:]:
        if design.spec.cell_means:
            out[f"{lv}_vs_{ref}"] = f"{coef_name(f, lv)} - {coef_name(f, ref)}"
        else:
            out[f"{lv}_vs_{ref}"] = coef_name(f, lv)
    return out
