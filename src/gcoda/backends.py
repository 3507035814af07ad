"""Penalised precision solvers consumed by the gCoda iteration.

gCoda calls an L1-penalised Gaussian graphical model solver once per
fixed-point step.  Any object implementing
:class:`PenalizedPrecisionSolver` can be plugged in.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass

import numpy as np
from sklearn.covariance import graphical_lasso

from .algorithm import glasso


def _check_square(matrix: np.ndarray) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise ValueError("'matrix' must be a square matrix")
    return matrix


class PenalizedPrecisionSolver(abc.ABC):
    """Interface of a graphical lasso implementation.

    Implementations must be deterministic for fixed inputs and must not
    modify ``matrix``.
    """

    @abc.abstractmethod
    def solve_penalized_precision(self, matrix: np.ndarray, lambda_: float) -> np.ndarray:
        """Return a symmetric positive definite ``p x p`` precision estimate."""


@dataclass(frozen=True)
class CoordinateDescentGlasso(PenalizedPrecisionSolver):
    """Bundled block coordinate descent solver (see :mod:`gcoda.algorithm`).

    The diagonal is penalised, matching the ``glasso`` method of the R
    ``huge`` package used by the reference gCoda code.
    """

    outer_maxit: int = 1000
    outer_thr: float = 1e-5
    inner_maxit: int = 1000
    inner_thr: float | None = None

    def solve_penalized_precision(self, matrix: np.ndarray, lambda_: float) -> np.ndarray:
        matrix = _check_square(matrix)
        result = glasso(
            matrix,
            lambda_,
            max_outer=self.outer_maxit,
            outer_threshold=self.outer_thr,
            max_inner=self.inner_maxit,
            inner_threshold=self.inner_thr,
        )
        return result.theta


@dataclass(frozen=True)
class SklearnGraphicalLasso(PenalizedPrecisionSolver):
    """Adapter around :func:`sklearn.covariance.graphical_lasso`.

    scikit-learn leaves the diagonal unpenalised, so the estimates differ
    slightly from :class:`CoordinateDescentGlasso` for the same ``lambda_``.
    """

    mode: str = "cd"
    tol: float = 1e-4
    enet_tol: float = 1e-4
    max_iter: int = 100

    def solve_penalized_precision(self, matrix: np.ndarray, lambda_: float) -> np.ndarray:
        matrix = _check_square(matrix)
        if lambda_ <= 0:
            raise ValueError("'lambda_' must be positive")
        _covariance, precision = graphical_lasso(
            matrix.copy(),
            alpha=lambda_,
            mode=self.mode,
            tol=self.tol,
            enet_tol=self.enet_tol,
            max_iter=self.max_iter,
        )
        return (precision + precision.T) / 2.0


__all__ = [
    "CoordinateDescentGlasso",
    "PenalizedPrecisionSolver",
    "SklearnGraphicalLasso",
]
