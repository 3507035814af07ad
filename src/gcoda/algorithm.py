"""Block coordinate descent graphical lasso.

This is the default penalised precision solver used by gCoda.  It solves

    minimise  -log det(Theta) + tr(S Theta) + lambda * ||Theta||_1

with the diagonal penalised, following the column-wise lasso scheme of
Friedman, Hastie and Tibshirani (2008).  The problem is first split into the
connected components of the graph ``{|S_ij| > lambda}`` (Witten et al., 2011)
and each component is solved on its own.  Isolated vertices have the closed
form solution ``Theta_jj = 1 / (S_jj + lambda)``.
"""
from __future__ import annotations

from dataclasses import dataclass
import math
from typing import List, Sequence

import numpy as np


_EPS = 1.0e-16


@dataclass
class GlassoLoopResult:
    """Container storing the state returned by :func:`glasso_loop`.

    Attributes
    ----------
    theta : :class:`numpy.ndarray`
        Updated precision matrix.
    w : :class:`numpy.ndarray`
        Updated covariance estimate ``W`` used by the coordinate descent
        iterations.
    beta : :class:`numpy.ndarray`
        Column-wise lasso coefficients, ``beta[:, j] = -theta[:, j] /
        theta[j, j]`` off the diagonal.
    outer_iterations : int
        Number of sweeps over the columns.
    max_delta : float
        Average absolute change of ``W`` in the last sweep.
    converged : bool
        ``True`` if the routine stopped because the convergence criterion
        was satisfied.
    """

    theta: np.ndarray
    w: np.ndarray
    beta: np.ndarray
    outer_iterations: int
    max_delta: float
    converged: bool


def _soft_threshold(a: float, lam: float) -> float:
    return math.copysign(max(abs(a) - lam, 0.0), a)


def glasso_loop(
    s: np.ndarray,
    lambda_: float,
    theta: np.ndarray,
    w: np.ndarray,
    max_outer: int,
    outer_threshold: float,
    max_inner: int,
    inner_threshold: float,
    eps: float = _EPS,
) -> GlassoLoopResult:
    """Run the column-wise coordinate descent on one connected block.

    Parameters
    ----------
    s : :class:`numpy.ndarray`
        Empirical second moment matrix of the block.
    lambda_ : float
        L1 penalty, applied to every entry including the diagonal.
    theta, w : :class:`numpy.ndarray`
        Starting precision and covariance estimates.  ``w`` must carry
        ``s + lambda_`` on its diagonal.
    max_outer, max_inner : int
        Maximum numbers of column sweeps and of lasso passes per column.
    outer_threshold, inner_threshold : float
        Relative convergence thresholds, scaled internally by the mean
        absolute off-diagonal entry of ``s``.
    eps : float, optional
        Small numerical constant safeguarding the inner threshold.

    Returns
    -------
    :class:`GlassoLoopResult`
    """

    if s.ndim != 2 or s.shape[0] != s.shape[1]:
        raise ValueError("'s' must be a square matrix")
    n = s.shape[0]
    for name, arr in {"theta": theta, "w": w}.items():
        if arr.shape != (n, n):
            raise ValueError(f"'{name}' must have shape {(n, n)}")

    theta = np.array(theta, dtype=float, copy=True)
    w = np.array(w, dtype=float, copy=True)
    s = np.asarray(s, dtype=float)

    shr = float(np.sum(np.abs(s))) - float(np.sum(np.abs(np.diag(s))))
    if shr == 0.0:
        beta = np.zeros_like(theta)
        return GlassoLoopResult(theta, w, beta, 0, 0.0, True)

    throut = outer_threshold * shr / (n - 1)
    thrin = inner_threshold * shr / (n - 1) / n
    thrin = max(thrin, 2 * eps)

    diag_theta = np.diag(theta).copy()
    if np.any(diag_theta == 0.0):
        raise ValueError("Diagonal entries of 'theta' must be non-zero")

    beta = -theta / diag_theta[np.newaxis, :]
    np.fill_diagonal(beta, 0.0)

    converged = False
    last_delta = 0.0

    for outer in range(1, max_outer + 1):
        dly = 0.0
        for j in range(n):
            b12 = beta[:, j].copy()
            b12[j] = 0.0
            active = np.flatnonzero(b12)
            w12 = w[:, active] @ b12[active]

            for _inner in range(max_inner):
                dlx = 0.0
                for i in range(n):
                    if i == j:
                        continue
                    a = s[i, j] - w12[i] + w[i, i] * b12[i]
                    c = _soft_threshold(a, lambda_) / w[i, i]
                    delta = c - b12[i]
                    if delta != 0.0:
                        b12[i] = c
                        w12 += delta * w[:, i]
                        dlx = max(dlx, abs(delta))
                if dlx < thrin:
                    break

            beta[:, j] = b12
            w12[j] = w[j, j]

            denom = w[j, j] - float(np.dot(w12, b12))
            if denom <= 0.0:
                raise FloatingPointError(
                    "Encountered non-positive Schur complement while updating theta"
                )
            theta_jj = 1.0 / denom

            dly = max(dly, float(np.sum(np.abs(w12 - w[:, j]))))

            theta[j, :] = -theta_jj * b12
            theta[:, j] = -theta_jj * b12
            theta[j, j] = theta_jj

            w[j, :] = w12
            w[:, j] = w12

        last_delta = dly
        if dly < throut:
            converged = True
            break

    last_delta = last_delta / (n - 1)
    return GlassoLoopResult(theta, w, beta, outer, last_delta, converged)


@dataclass
class GlassoResult:
    """Result produced by :func:`glasso`."""

    theta: np.ndarray
    w: np.ndarray
    outer_iterations: int
    max_delta: float
    converged: bool


def glasso(
    s: np.ndarray,
    lambda_: float,
    max_outer: int = 1000,
    outer_threshold: float = 1e-5,
    max_inner: int = 1000,
    inner_threshold: float | None = None,
) -> GlassoResult:
    """Solve the graphical lasso for a symmetric matrix ``s``.

    The input is left untouched.  Components of the thresholded graph are
    solved independently; entries of both ``theta`` and ``w`` between
    components are exactly zero.
    """

    s = np.asarray(s, dtype=float)
    if s.ndim != 2 or s.shape[0] != s.shape[1]:
        raise ValueError("'s' must be a square matrix")
    if lambda_ <= 0:
        raise ValueError("'lambda_' must be positive")
    if inner_threshold is None:
        inner_threshold = outer_threshold / 10.0

    diag_s = np.diag(s)
    theta = np.diag(1.0 / (diag_s + lambda_))
    w = np.diag(diag_s + lambda_)

    converged = True
    outer_iterations = 0
    max_delta = 0.0

    for indices in connected_components(s, lambda_):
        if indices.size < 2:
            # Isolated vertex: the starting value is already optimal.
            continue
        block = np.ix_(indices, indices)
        res = glasso_loop(
            s[block],
            lambda_,
            theta[block],
            s[block] + lambda_ * np.eye(indices.size),
            max_outer,
            outer_threshold,
            max_inner,
            inner_threshold,
        )
        theta[block] = res.theta
        w[block] = res.w
        converged = converged and res.converged
        outer_iterations = max(outer_iterations, res.outer_iterations)
        max_delta = max(max_delta, res.max_delta)

    return GlassoResult(theta, w, outer_iterations, max_delta, converged)


def _grow(
    component_id: int,
    frontier: Sequence[int],
    adjacency: np.ndarray,
    membership: np.ndarray,
) -> List[int]:
    """Return the unlabelled neighbours of ``frontier`` and label them."""

    new_vertices: List[int] = []
    for k in frontier:
        for j in np.flatnonzero(adjacency[:, k]):
            if membership[j] > 0:
                continue
            membership[j] = component_id
            new_vertices.append(int(j))
    return new_vertices


def connected_components(s: np.ndarray, lambda_: float) -> List[np.ndarray]:
    """Split the vertices into components of the graph ``|s_ij| > lambda_``.

    Components are returned in order of their smallest vertex, vertices in
    breadth-first order.  Indices are zero based.
    """

    s = np.asarray(s, dtype=float)
    if s.ndim != 2 or s.shape[0] != s.shape[1]:
        raise ValueError("'s' must be a square matrix")

    p = s.shape[0]
    adjacency = np.abs(s) > lambda_
    np.fill_diagonal(adjacency, False)
    membership = np.zeros(p, dtype=int)
    components: List[np.ndarray] = []

    for k in range(p):
        if membership[k] > 0:
            continue

        component_id = len(components) + 1
        membership[k] = component_id
        ordering = [k]

        new_vertices = _grow(component_id, [k], adjacency, membership)
        while new_vertices:
            ordering.extend(new_vertices)
            new_vertices = _grow(component_id, new_vertices, adjacency, membership)

        components.append(np.array(ordering, dtype=int))

    return components


__all__ = [
    "GlassoLoopResult",
    "GlassoResult",
    "connected_components",
    "glasso",
    "glasso_loop",
]
