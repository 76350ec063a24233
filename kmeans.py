import numpy as np
from typing import Tuple

from pq_errors import InsufficientDataError

NITER = 25
EPS = 1e-7
CHUNK_ELEMS = 1 << 22  # float cells per (rows, k, d) distance block in the E-step


def squared_l2(x, y, d=None) -> float:
    """Sum of squared coordinate differences over the first d coordinates."""
    if d is None:
        d = len(x)
    diff = np.asarray(x[:d]) - np.asarray(y[:d])
    return float(np.dot(diff, diff))


def _distances(x: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    # (n, d) x (k, d) -> (n, k) squared distances
    return np.sum((x[:, None, :] - centroids[None, :, :]) ** 2, axis=2)


def assign_centroid(x: np.ndarray, centroids: np.ndarray) -> Tuple[int, float]:
    """
    Nearest centroid of a single subvector.

    centroids: (k, d) block of one subspace.
    Returns (index, squared distance). On ties the lowest index wins.
    """
    dists = _distances(np.asarray(x)[None, :], centroids)[0]
    # argmin keeps the first minimum
    idx = int(np.argmin(dists))
    return idx, float(dists[idx])


def e_step(x: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Assign every row of x to its nearest centroid, chunked to bound memory."""
    n = x.shape[0]
    k, d = centroids.shape
    rows = max(1, CHUNK_ELEMS // max(1, k * d))
    codes = np.empty(n, dtype=np.uint8)
    for start in range(0, n, rows):
        stop = min(start + rows, n)
        codes[start:stop] = np.argmin(_distances(x[start:stop], centroids), axis=1)
    return codes


def pick_donor(counts: np.ndarray, rng: np.random.RandomState) -> int:
    """
    Choose a cluster to split, with probability proportional to count - 1.

    Clusters holding a single point (or none) have zero weight and are never
    chosen. One uniform draw, one binary search over the cumulative weights.
    """
    weights = np.maximum(counts.astype(np.int64) - 1, 0)
    cumulative = np.cumsum(weights)
    total = int(cumulative[-1])
    if total <= 0:
        raise InsufficientDataError("[PQ] no cluster holds enough points to be split")
    target = min(int(rng.uniform(0.0, 1.0) * total), total - 1)
    return int(np.searchsorted(cumulative, target, side="right"))


def split_cluster(
    centroids: np.ndarray, counts: np.ndarray, k: int, donor: int, eps: float = EPS
) -> None:
    """
    Reseed empty cluster k from donor and push the pair apart by eps.

    Even coordinates move the donor down and k up, odd coordinates the reverse,
    so the pair keeps the donor's mean. Counts are split in half as an estimate
    only; the next E-step recomputes them.
    """
    d = centroids.shape[1]
    centroids[k] = centroids[donor]
    sign = 1 - (np.arange(d) % 2) * 2
    centroids[k] += sign * eps
    centroids[donor] -= sign * eps
    counts[k] = counts[donor] // 2
    counts[donor] -= counts[k]


def m_step(
    x: np.ndarray,
    centroids: np.ndarray,
    codes: np.ndarray,
    rng: np.random.RandomState,
    eps: float = EPS,
) -> np.ndarray:
    """
    Recompute centroids as the mean of their points, in place.

    Empty clusters are reseeded by splitting a populated one.
    Returns the per-cluster counts after reseeding.
    """
    ksub = centroids.shape[0]
    counts = np.bincount(codes, minlength=ksub).astype(np.int64)
    centroids[:] = 0
    np.add.at(centroids, codes, x)
    filled = counts > 0
    centroids[filled] /= counts[filled, None]

    for k in np.flatnonzero(counts == 0):
        donor = pick_donor(counts, rng)
        split_cluster(centroids, counts, k, donor, eps)
    return counts


def kmeans(
    x: np.ndarray,
    centroids: np.ndarray,
    rng: np.random.RandomState,
    niter: int = NITER,
    eps: float = EPS,
) -> np.ndarray:
    """
    Train a (ksub, d) centroid block in place on (n, d) points with EM k-means.

    Centroids start from ksub distinct points picked by a shuffled permutation,
    then E and M steps alternate niter times. There is no convergence test.
    Returns the codes of the last E-step.
    """
    n = x.shape[0]
    ksub = centroids.shape[0]
    if n < ksub:
        raise InsufficientDataError(
            f"[PQ] k-means needs at least {ksub} points, got {n}"
        )
    perm = np.arange(n)
    rng.shuffle(perm)
    centroids[:] = x[perm[:ksub]]

    codes = np.zeros(n, dtype=np.uint8)
    for _ in range(niter):
        codes = e_step(x, centroids)
        m_step(x, centroids, codes, rng, eps)
    return codes
