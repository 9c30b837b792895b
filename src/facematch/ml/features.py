"""Embedding normalization and comparison."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from facematch.errors import InvalidInputError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray


def normalize(vector: ArrayLike) -> NDArray[np.float32]:
    """Scale ``vector`` to unit L2 norm.

    Raises:
        InvalidInputError: If the vector has zero norm.
    """
    values = np.asarray(vector, dtype=np.float64).reshape(-1)
    norm = float(np.sqrt(np.sum(values * values)))
    if norm == 0.0 or not np.isfinite(norm):
        raise InvalidInputError("Cannot normalize a zero-norm embedding")
    return (values / norm).astype(np.float32)


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """Cosine similarity of two unit vectors, rescaled from [-1, 1] to [0, 1].

    Both inputs must already be L2-normalized; that is not re-checked.

    Raises:
        InvalidInputError: If the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.size != vb.size:
        raise InvalidInputError(f"Feature dimension mismatch: {va.size} != {vb.size}")
    return (float(np.dot(va, vb)) + 1.0) / 2.0
