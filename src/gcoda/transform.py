"""Log-ratio input statistic for compositional data."""
from __future__ import annotations

import numpy as np


def clr_covariance(x: np.ndarray, counts: bool = False, pseudo: float = 0.5) -> np.ndarray:
    """Sample covariance of the centred log-ratio transform of ``x``.

    Parameters
    ----------
    x : array_like of shape ``(n, p)``
        Samples in rows, components in columns.  Either raw counts or
        compositions (fractions).
    counts : bool, optional
        If ``True`` add ``pseudo`` to every entry and close each row to sum
        to one before the log transform.
    pseudo : float, optional
        Pseudo count used when ``counts`` is ``True``.

    Returns
    -------
    :class:`numpy.ndarray` of shape ``(p, p)``
        Covariance (denominator ``n - 1``) of ``log(x)`` with each row
        centred by its own mean.
    """

    x = np.array(x, dtype=float, copy=True)
    if x.ndim != 2:
        raise ValueError("'x' must be a 2-D array")
    n, p = x.shape
    if n < 2:
        raise ValueError("'x' must contain at least two samples")
    if p < 2:
        raise ValueError("'x' must contain at least two components")
    if not np.all(np.isfinite(x)):
        raise ValueError("'x' contains non-finite entries")

    if counts:
        if pseudo < 0:
            raise ValueError("'pseudo' must be non-negative")
        x += pseudo
        row_sums = x.sum(axis=1, keepdims=True)
        if np.any(row_sums == 0):
            raise ValueError("Rows of 'x' must not sum to zero")
        x /= row_sums

    if np.any(x <= 0):
        raise ValueError("Entries of 'x' must be positive before the log transform")

    log_x = np.log(x)
    clr = log_x - log_x.mean(axis=1, keepdims=True)

    if np.any(np.ptp(clr, axis=0) == 0):
        raise ValueError(
            "Log-ratio covariance has zero-variance components; "
            "the compositions carry no information on their dependence"
        )
    return np.cov(clr, rowvar=False, bias=False)


__all__ = ["clr_covariance"]
