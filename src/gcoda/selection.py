"""Extended BIC scoring of a gCoda solution path."""
from __future__ import annotations

from typing import Sequence

import numpy as np


def ebic_scores(
    nloglik: np.ndarray | Sequence[float],
    df: np.ndarray | Sequence[float],
    n: int,
    p: int,
    ebic_gamma: float = 0.5,
) -> np.ndarray:
    """EBIC of every path entry.

    ``n * nloglik + log(n) * df + 4 * ebic_gamma * log(p) * df``
    """

    nloglik = np.asarray(nloglik, dtype=float)
    df = np.asarray(df, dtype=float)
    if nloglik.shape != df.shape:
        raise ValueError("'nloglik' and 'df' must have the same shape")
    if n < 1 or p < 1:
        raise ValueError("'n' and 'p' must be positive")
    if ebic_gamma < 0:
        raise ValueError("'ebic_gamma' must be non-negative")

    return n * nloglik + np.log(n) * df + 4.0 * ebic_gamma * np.log(p) * df


def select_ebic(
    nloglik: np.ndarray | Sequence[float],
    df: np.ndarray | Sequence[float],
    n: int,
    p: int,
    ebic_gamma: float = 0.5,
) -> tuple[int, np.ndarray]:
    """Return the index of the smallest EBIC (first one on ties) and all scores."""

    scores = ebic_scores(nloglik, df, n, p, ebic_gamma)
    if scores.size == 0:
        raise ValueError("Cannot select a model from an empty path")
    return int(np.argmin(scores)), scores


__all__ = ["ebic_scores", "select_ebic"]
