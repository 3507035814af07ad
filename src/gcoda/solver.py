"""gCoda: sparse conditional dependence networks for compositional data.

High level helpers implementing the gCoda estimator of Fang et al. (2017):
the compositional penalised likelihood, the majorise-minimise iteration
solving it for one penalty, the solution path over a sequence of penalties
and EBIC based model selection.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import warnings

import numpy as np

from .backends import CoordinateDescentGlasso, PenalizedPrecisionSolver
from .selection import select_ebic
from .transform import clr_covariance

logger = logging.getLogger(__name__)

# Fraction of all p * (p - 1) / 2 edges the last network on the path should
# reach before the path stops being extended.
DENSITY_RATIO = 0.618
# Maximum number of penalties appended to the initial path.
EXTRA_LAMBDAS = 15
# The path is not extended below this penalty.
LAMBDA_FLOOR = 1e-6
# Precision entries with a larger absolute value are edges.
EDGE_THRESHOLD = 1e-6


@dataclass
class GcodaSubResult:
    """Outcome of :func:`gcoda_sub` for a single penalty."""

    isig: np.ndarray
    nloglik: float
    n_iter: int
    error: float
    converged: bool

    def as_dict(self) -> dict[str, object]:
        """Return a dictionary compatible with the original R API."""

        return {"iSig": self.isig, "nloglik": self.nloglik}


@dataclass
class GcodaPath:
    """Fits along the penalty sequence, in the order they were computed.

    ``n_initial`` entries come from the log-spaced path; any further entries
    were appended by halving the last penalty.
    """

    lambdas: np.ndarray
    nloglik: np.ndarray
    df: np.ndarray
    path: list[np.ndarray]
    icov: list[np.ndarray]
    n_initial: int

    @property
    def n_extended(self) -> int:
        return len(self.lambdas) - self.n_initial


@dataclass
class GcodaResult:
    """Container mirroring the list returned by the R ``gcoda`` routine."""

    lambdas: np.ndarray
    nloglik: np.ndarray
    df: np.ndarray
    path: list[np.ndarray]
    icov: list[np.ndarray]
    ebic_score: np.ndarray
    opt_index: int
    refit: np.ndarray
    opt_icov: np.ndarray
    opt_lambda: float

    def as_dict(self) -> dict[str, object]:
        """Return a dictionary keyed like the original R API.

        ``opt.index`` stays zero based.
        """

        return {
            "lambda": self.lambdas,
            "nloglik": self.nloglik,
            "df": self.df,
            "path": self.path,
            "icov": self.icov,
            "ebic.score": self.ebic_score,
            "opt.index": self.opt_index,
            "refit": self.refit,
            "opt.icov": self.opt_icov,
            "opt.lambda": self.opt_lambda,
        }


def _check_square(name: str, matrix: np.ndarray) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise ValueError(f"'{name}' must be a square matrix")
    return matrix


def gcoda_objective(isig: np.ndarray, s: np.ndarray, lambda_: float) -> float:
    """Penalised negative log-likelihood of gCoda at ``isig``.

    ``-log det(isig) + tr(isig s) + log(1' isig 1)
    - (isig 1)' s (isig 1) / (1' isig 1) + lambda_ * |isig|_1``

    Raises ``ValueError`` if ``isig`` is not positive definite.
    """

    isig = _check_square("isig", isig)
    s = _check_square("s", s)
    if isig.shape != s.shape:
        raise ValueError("'isig' and 's' must have the same shape")

    isig_o = isig.sum(axis=1)
    s_isig = float(isig_o.sum())
    sign, logdet = np.linalg.slogdet(isig)
    if sign <= 0 or s_isig <= 0:
        raise ValueError("Precision matrix must be positive definite")

    s_isig_o = np.sum(s * isig_o[np.newaxis, :], axis=1)
    nloglik = (
        -logdet
        + float(np.sum(isig * s))
        + np.log(s_isig)
        - float(np.sum(isig_o * s_isig_o)) / s_isig
    )
    pen = lambda_ * float(np.sum(np.abs(isig)))
    return float(nloglik + pen)


def gcoda_sub(
    s: np.ndarray,
    lambda_: float = 0.1,
    isig: np.ndarray | None = None,
    solver: PenalizedPrecisionSolver | None = None,
    tol_err: float = 1e-4,
    k_max: int = 100,
) -> GcodaSubResult:
    """Solve the gCoda problem for a single penalty.

    Each step projects ``s`` along the row sums of the current estimate and
    hands the result to ``solver``.  Iteration stops once either the
    largest relative entry change or the relative objective change drops to
    ``tol_err``, or after ``k_max`` steps, in which case a
    :class:`RuntimeWarning` is issued and the last estimate is returned.

    The returned ``nloglik`` excludes the L1 penalty.
    """

    s = _check_square("s", s)
    p = s.shape[0]
    if lambda_ <= 0:
        raise ValueError("'lambda_' must be positive")
    if not 0 < tol_err < 1:
        raise ValueError("'tol_err' must lie in (0, 1)")
    if k_max < 1:
        raise ValueError("'k_max' must be at least 1")

    if isig is None:
        isig = np.eye(p)
    else:
        isig = np.array(isig, dtype=float, copy=True)
        if isig.shape != (p, p):
            raise ValueError("'isig' must have shape (p, p)")
    if solver is None:
        solver = CoordinateDescentGlasso()

    err = 1.0
    k = 0
    fval_cur = np.inf

    while err > tol_err and k < k_max:
        isig_o = isig.sum(axis=1)
        is_isig = 1.0 / float(isig_o.sum())
        isig_o2 = isig_o * is_isig
        a_isig_o2 = np.sum(s * isig_o2[np.newaxis, :], axis=1)
        a2 = (
            s
            - a_isig_o2[:, np.newaxis]
            - a_isig_o2[np.newaxis, :]
            + float(np.sum(isig_o2 * a_isig_o2))
            + is_isig
        )
        isig2 = np.asarray(solver.solve_penalized_precision(a2, lambda_), dtype=float)

        fval_new = gcoda_objective(isig2, s, lambda_)
        xerr = float(np.max(np.abs(isig2 - isig) / (np.abs(isig2) + 1.0)))
        err = min(xerr, abs(fval_cur - fval_new) / (abs(fval_new) + 1.0))

        k += 1
        isig = isig2
        fval_cur = fval_new

    converged = err <= tol_err
    if not converged:
        warnings.warn(
            f"gcoda_sub stopped at the maximum iteration k_max={k_max} "
            f"with relative error {err:.6g}",
            RuntimeWarning,
        )

    nloglik = fval_cur - lambda_ * float(np.sum(np.abs(isig)))
    return GcodaSubResult(isig=isig, nloglik=nloglik, n_iter=k, error=err, converged=converged)


def lambda_sequence(s: np.ndarray, lambda_min_ratio: float = 1e-4, nlambda: int = 15) -> np.ndarray:
    """Log-spaced penalties from ``lambda_max`` down to ``lambda_min_ratio * lambda_max``.

    ``lambda_max`` is the largest absolute entry of ``s - I``.
    """

    s = _check_square("s", s)
    if nlambda < 1:
        raise ValueError("'nlambda' must be at least 1")
    if not 0 < lambda_min_ratio <= 1:
        raise ValueError("'lambda_min_ratio' must lie in (0, 1]")

    shifted = s - np.eye(s.shape[0])
    lambda_max = max(float(np.max(shifted)), -float(np.min(shifted)))
    if lambda_max <= 0:
        raise ValueError("Cannot derive a penalty path from 's'")
    lambda_min = lambda_min_ratio * lambda_max
    return np.exp(np.linspace(np.log(lambda_max), np.log(lambda_min), nlambda))


def edge_pattern(isig: np.ndarray, threshold: float = EDGE_THRESHOLD) -> np.ndarray:
    """Adjacency matrix of ``|isig| > threshold`` with an empty diagonal."""

    pattern = (np.abs(isig) > threshold).astype(int)
    np.fill_diagonal(pattern, 0)
    return pattern


def gcoda_path(
    s: np.ndarray,
    lambda_min_ratio: float = 1e-4,
    nlambda: int = 15,
    solver: PenalizedPrecisionSolver | None = None,
    tol_err: float = 1e-4,
    k_max: int = 100,
    density_ratio: float = DENSITY_RATIO,
    extra_lambdas: int = EXTRA_LAMBDAS,
    lambda_floor: float = LAMBDA_FLOOR,
    edge_threshold: float = EDGE_THRESHOLD,
) -> GcodaPath:
    """Fit gCoda along a decreasing penalty path.

    Every fit is warm started from the previous one, starting from the
    identity.  If the last network of the log-spaced path has fewer than
    ``density_ratio * p * (p - 1) / 2`` edges, the path is extended by
    halving the last penalty until that density is reached, the path holds
    ``nlambda + extra_lambdas`` penalties or the last penalty is at most
    ``lambda_floor``.
    """

    s = _check_square("s", s)
    p = s.shape[0]
    if extra_lambdas < 0:
        raise ValueError("'extra_lambdas' must be non-negative")
    if solver is None:
        solver = CoordinateDescentGlasso()

    lambdas = list(lambda_sequence(s, lambda_min_ratio, nlambda))
    nloglik: list[float] = []
    df: list[int] = []
    path: list[np.ndarray] = []
    icov: list[np.ndarray] = []

    def fit(lambda_: float, warm_start: np.ndarray) -> np.ndarray:
        out = gcoda_sub(s, lambda_, isig=warm_start, solver=solver, tol_err=tol_err, k_max=k_max)
        logger.debug(
            "lambda=%.6g: %d iterations, relative error %.3g", lambda_, out.n_iter, out.error
        )
        pattern = edge_pattern(out.isig, edge_threshold)
        nloglik.append(out.nloglik)
        icov.append(out.isig)
        path.append(pattern)
        df.append(int(np.count_nonzero(np.triu(pattern, 1))))
        return out.isig

    current = np.eye(p)
    for lambda_ in lambdas:
        current = fit(lambda_, current)

    min_edges = p * (p - 1) / 2 * density_ratio
    max_length = nlambda + extra_lambdas

    def density_reached() -> bool:
        return df[-1] >= min_edges

    def length_cap_reached() -> bool:
        return len(lambdas) >= max_length

    def lambda_floor_reached() -> bool:
        return lambdas[-1] <= lambda_floor

    while not (density_reached() or length_cap_reached() or lambda_floor_reached()):
        lambdas.append(lambdas[-1] / 2.0)
        logger.info(
            "Extending lambda path: index %d, lambda=%.6g (%d of %.1f edges so far)",
            len(lambdas) - 1,
            lambdas[-1],
            df[-1],
            min_edges,
        )
        current = fit(lambdas[-1], current)

    return GcodaPath(
        lambdas=np.asarray(lambdas),
        nloglik=np.asarray(nloglik),
        df=np.asarray(df, dtype=int),
        path=path,
        icov=icov,
        n_initial=nlambda,
    )


def gcoda(
    x: np.ndarray,
    counts: bool = False,
    pseudo: float = 0.5,
    lambda_min_ratio: float = 1e-4,
    nlambda: int = 15,
    ebic_gamma: float = 0.5,
    solver: PenalizedPrecisionSolver | None = None,
    tol_err: float = 1e-4,
    k_max: int = 100,
    density_ratio: float = DENSITY_RATIO,
    extra_lambdas: int = EXTRA_LAMBDAS,
    lambda_floor: float = LAMBDA_FLOOR,
    edge_threshold: float = EDGE_THRESHOLD,
) -> GcodaResult:
    """Infer a conditional dependence network from compositional data.

    Parameters
    ----------
    x : array_like of shape ``(n, p)``
        Samples in rows, components (e.g. taxa) in columns.
    counts : bool, optional
        Whether ``x`` holds counts rather than fractions.
    pseudo : float, optional
        Pseudo count added to ``x`` when ``counts`` is ``True``.
    lambda_min_ratio : float, optional
        Ratio between the smallest and the largest penalty of the path.
    nlambda : int, optional
        Length of the initial penalty path.
    ebic_gamma : float, optional
        Gamma of the extended BIC.
    solver : :class:`~gcoda.backends.PenalizedPrecisionSolver`, optional
        Graphical lasso used in each iteration; defaults to
        :class:`~gcoda.backends.CoordinateDescentGlasso`.
    tol_err, k_max : optional
        Convergence tolerance and iteration cap of :func:`gcoda_sub`.
    density_ratio, extra_lambdas, lambda_floor, edge_threshold : optional
        Path extension and edge detection settings, see :func:`gcoda_path`.

    Returns
    -------
    :class:`GcodaResult`
    """

    if ebic_gamma < 0:
        raise ValueError("'ebic_gamma' must be non-negative")

    x = np.asarray(x, dtype=float)
    s = clr_covariance(x, counts=counts, pseudo=pseudo)
    n, p = x.shape

    fit = gcoda_path(
        s,
        lambda_min_ratio=lambda_min_ratio,
        nlambda=nlambda,
        solver=solver,
        tol_err=tol_err,
        k_max=k_max,
        density_ratio=density_ratio,
        extra_lambdas=extra_lambdas,
        lambda_floor=lambda_floor,
        edge_threshold=edge_threshold,
    )

    opt_index, scores = select_ebic(fit.nloglik, fit.df, n, p, ebic_gamma)
    return GcodaResult(
        lambdas=fit.lambdas,
        nloglik=fit.nloglik,
        df=fit.df,
        path=fit.path,
        icov=fit.icov,
        ebic_score=scores,
        opt_index=opt_index,
        refit=fit.path[opt_index],
        opt_icov=fit.icov[opt_index],
        opt_lambda=float(fit.lambdas[opt_index]),
    )


__all__ = [
    "DENSITY_RATIO",
    "EDGE_THRESHOLD",
    "EXTRA_LAMBDAS",
    "LAMBDA_FLOOR",
    "GcodaPath",
    "GcodaResult",
    "GcodaSubResult",
    "edge_pattern",
    "gcoda",
    "gcoda_objective",
    "gcoda_path",
    "gcoda_sub",
    "lambda_sequence",
]
