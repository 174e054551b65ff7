"""Embedding helpers: storage codec, similarity, and distance.

Vectors are stored as little-endian float32 blobs next to the model version
that produced them. Nothing here compares vectors across model versions;
callers are expected to check versions first.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

EARTH_RADIUS_KM = 6371.0


def encode_embedding(values: Optional[Sequence[float]]) -> Optional[bytes]:
    """Serialize an embedding for a BLOB column."""

    if values is None:
        return None
    return np.asarray(values, dtype="<f4").tobytes()


def decode_embedding(blob: Optional[bytes]) -> Optional[tuple[float, ...]]:
    if blob is None:
        return None
    return tuple(float(v) for v in np.frombuffer(blob, dtype="<f4"))


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Return cosine similarity of ``query`` against every row of ``matrix``.

    Zero-norm rows score 0.0 instead of producing NaN.
    """

    q = np.asarray(query, dtype=np.float32)
    q_norm = float(np.linalg.norm(q))
    if q_norm == 0.0 or matrix.size == 0:
        return np.zeros(matrix.shape[0], dtype=np.float32)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    scores = np.zeros(matrix.shape[0], dtype=np.float32)
    nonzero = denom > 0
    scores[nonzero] = (matrix[nonzero] @ q) / denom[nonzero]
    return scores


def top_k_indices(scores: np.ndarray, k: int, tie_keys: Sequence[str]) -> list[int]:
    """Indices of the k highest scores, ties broken by ``tie_keys`` ascending."""

    if k <= 0 or scores.size == 0:
        return []
    if k < scores.size:
        # argpartition for speed, then a stable sort of the survivors.
        # Everything equal to the kth score is kept so the tie-break is exact.
        kth = np.partition(-scores, k - 1)[k - 1]
        pool = np.flatnonzero(-scores <= kth)
    else:
        pool = np.arange(scores.size)
    ordered = sorted(pool.tolist(), key=lambda idx: (-float(scores[idx]), tie_keys[idx]))
    return ordered[:k]


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometers."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))
