import os
import struct
from typing import BinaryIO, Optional, Union

import numpy as np
from loguru import logger
from sklearn.exceptions import NotFittedError
from sklearn.utils import check_random_state

from kmeans import EPS, NITER, assign_centroid, e_step, kmeans
from pq_errors import InsufficientDataError, MalformedStreamError

CODE = np.uint8
KSUB = np.iinfo(CODE).max + 1  # centroids per subspace, one byte per code
MAX_POINTS_PER_CLUSTER = 256
MAX_POINTS = MAX_POINTS_PER_CLUSTER * KSUB
SEED = 1234

REAL = np.dtype(np.float32)
HEADER = struct.Struct("=iiii")  # dim, nsubq, dsub, lastdsub
READ_CHUNK = 1 << 20


class ProductQuantizer:
    def __init__(self, dim: int, dsub: int, seed: int = SEED, niter: int = NITER):
        """
        dim: original dimension
        dsub: subvector dimension, need not divide dim
        seed: seed of the private generator used for training
        niter: EM iterations per subspace
        """
        if dim <= 0 or dsub <= 0:
            raise ValueError(f"[PQ] dim and dsub must be positive, got {dim}, {dsub}")
        self.dim = dim
        self.dsub = dsub
        self.nsubq = dim // dsub
        self.lastdsub = dim % dsub
        if self.lastdsub == 0:
            self.lastdsub = dsub
        else:
            self.nsubq += 1
        self.niter = niter
        self.centroids = np.zeros(dim * KSUB, dtype=REAL)
        self.rng = check_random_state(seed)
        self.is_trained = False

    # ------------------------------------------------------------------
    # addressing
    # ------------------------------------------------------------------
    def subspace_width(self, m: int) -> int:
        if not 0 <= m < self.nsubq:
            raise IndexError(f"[PQ] subspace {m} out of range [0, {self.nsubq})")
        return self.lastdsub if m == self.nsubq - 1 else self.dsub

    def _offset(self, m: int, i: int) -> int:
        if not 0 <= i < KSUB:
            raise IndexError(f"[PQ] centroid {i} out of range [0, {KSUB})")
        if m == self.nsubq - 1:
            return m * KSUB * self.dsub + i * self.lastdsub
        return (m * KSUB + i) * self.dsub

    def subspace_block(self, m: int) -> np.ndarray:
        """Writable (KSUB, width) view over the centroids of subspace m."""
        d = self.subspace_width(m)
        start = self._offset(m, 0)
        return self.centroids[start:start + KSUB * d].reshape(KSUB, d)

    def get_centroids_mut(self, m: int, i: int) -> np.ndarray:
        d = self.subspace_width(m)
        start = self._offset(m, int(i))
        return self.centroids[start:start + d]

    def get_centroids(self, m: int, i: int) -> np.ndarray:
        view = self.get_centroids_mut(m, i).view()
        view.flags.writeable = False
        return view

    # ------------------------------------------------------------------
    # training
    # ------------------------------------------------------------------
    def _as_matrix(self, x, n: Optional[int] = None) -> np.ndarray:
        x = np.asarray(x, dtype=REAL)
        if x.ndim == 2 and x.shape[1] != self.dim:
            raise ValueError(f"[PQ] vectors have {x.shape[1]} columns, expected {self.dim}")
        if x.ndim > 2:
            raise ValueError(f"[PQ] expected a 1-D or 2-D array, got shape {x.shape}")
        if n is None:
            if x.ndim == 1 and x.size % self.dim != 0:
                raise ValueError(
                    f"[PQ] flat buffer of {x.size} values is not a multiple of {self.dim}"
                )
            n = x.size // self.dim if x.ndim == 1 else x.shape[0]
        if x.size < n * self.dim:
            raise ValueError(
                f"[PQ] expected {n} vectors of dimension {self.dim}, got {x.size} values"
            )
        return x.reshape(-1)[:n * self.dim].reshape(n, self.dim)

    def train(self, x, n: Optional[int] = None) -> "ProductQuantizer":
        """
        Learn KSUB centroids for every subspace.

        x: (n, dim) vectors, or a flat buffer holding n * dim values.
        At most MAX_POINTS vectors are sampled per subspace; the sample is
        reshuffled per subspace only when not every vector is used.
        """
        x = self._as_matrix(x, n)
        n = x.shape[0]
        if n < KSUB:
            raise InsufficientDataError(
                f"[PQ] matrix too small for quantization, must have at least {KSUB} rows"
            )
        self.is_trained = False
        np_ = min(n, MAX_POINTS)
        perm = np.arange(n)
        for m in range(self.nsubq):
            d = self.subspace_width(m)
            if np_ != n:
                self.rng.shuffle(perm)
            start = m * self.dsub
            xslice = np.ascontiguousarray(x[perm[:np_], start:start + d])
            kmeans(xslice, self.subspace_block(m), self.rng, self.niter, EPS)
            logger.debug(f"[PQ] trained subspace {m + 1}/{self.nsubq} (d={d}, points={np_})")
        self.is_trained = True
        logger.info(
            f"[PQ] trained with nsubq={self.nsubq} subvectors and K={KSUB} codewords each"
        )
        return self

    # ------------------------------------------------------------------
    # codec
    # ------------------------------------------------------------------
    def _check_trained(self):
        if not self.is_trained:
            raise NotFittedError("[PQ] must be trained or loaded before use")

    def compute_code(self, x) -> np.ndarray:
        """Encode a single vector of length dim into nsubq bytes."""
        self._check_trained()
        x = np.asarray(x, dtype=REAL).reshape(-1)
        if x.size != self.dim:
            raise ValueError(f"[PQ] vector has {x.size} values, expected {self.dim}")
        code = np.empty(self.nsubq, dtype=CODE)
        for m in range(self.nsubq):
            d = self.subspace_width(m)
            start = m * self.dsub
            code[m], _ = assign_centroid(x[start:start + d], self.subspace_block(m))
        return code

    def compute_codes(self, x, n: Optional[int] = None) -> np.ndarray:
        """Encode n vectors into an (n, nsubq) code matrix."""
        self._check_trained()
        x = self._as_matrix(x, n)
        codes = np.empty((x.shape[0], self.nsubq), dtype=CODE)
        for m in range(self.nsubq):
            d = self.subspace_width(m)
            start = m * self.dsub
            codes[:, m] = e_step(np.ascontiguousarray(x[:, start:start + d]), self.subspace_block(m))
        return codes

    def _code_row(self, codes, t: int) -> np.ndarray:
        codes = _as_codes(codes)
        if codes.ndim == 1:
            if codes.size % self.nsubq != 0:
                raise ValueError(
                    f"[PQ] code buffer of {codes.size} bytes is not a multiple of {self.nsubq}"
                )
            codes = codes.reshape(-1, self.nsubq)
        elif codes.shape[-1] != self.nsubq:
            raise ValueError(f"[PQ] codes must have {self.nsubq} columns")
        if not 0 <= t < codes.shape[0]:
            raise IndexError(f"[PQ] code {t} out of range [0, {codes.shape[0]})")
        return codes[t]

    def _check_dense(self, x):
        if x.ndim != 1 or x.size != self.dim:
            raise ValueError(f"[PQ] dense vector must have shape ({self.dim},), got {x.shape}")

    def mulcode(self, x, codes, t: int, alpha: float = 1.0) -> float:
        """Dot product of x with the vector encoded by codes[t], times alpha."""
        self._check_trained()
        x = np.asarray(x)
        self._check_dense(x)
        code = self._code_row(codes, t)
        res = 0.0
        for m in range(self.nsubq):
            c = self.get_centroids(m, code[m])
            start = m * self.dsub
            res += float(np.dot(x[start:start + c.size], c))
        return res * alpha

    def addcode(self, x: np.ndarray, codes, t: int, alpha: float = 1.0) -> None:
        """Add alpha times the vector encoded by codes[t] into x, in place."""
        self._check_trained()
        if not isinstance(x, np.ndarray):
            raise ValueError("[PQ] addcode updates x in place, x must be a numpy array")
        self._check_dense(x)
        code = self._code_row(codes, t)
        for m in range(self.nsubq):
            c = self.get_centroids(m, code[m])
            start = m * self.dsub
            x[start:start + c.size] += alpha * c

    approx_dot = mulcode
    accumulate = addcode

    def decode(self, codes) -> np.ndarray:
        """
        Reconstruct approximate vectors from codes.

        codes: (N, nsubq) or (nsubq,)
        Returns (N, dim) or (dim,).
        """
        self._check_trained()
        codes = _as_codes(codes)
        single = codes.ndim == 1
        codes = codes.reshape(-1, self.nsubq)
        out = np.empty((codes.shape[0], self.dim), dtype=REAL)
        for m in range(self.nsubq):
            d = self.subspace_width(m)
            start = m * self.dsub
            out[:, start:start + d] = self.subspace_block(m)[codes[:, m]]
        return out[0] if single else out

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def save(self, out: BinaryIO) -> None:
        out.write(HEADER.pack(self.dim, self.nsubq, self.dsub, self.lastdsub))
        out.write(self.centroids.astype(REAL, copy=False).tobytes())

    def load(self, inp: BinaryIO) -> "ProductQuantizer":
        dim, nsubq, dsub, lastdsub = HEADER.unpack(_read_exact(inp, HEADER.size))
        if min(dim, nsubq, dsub, lastdsub) <= 0:
            raise MalformedStreamError(
                f"[PQ] non-positive shape in stream: dim={dim} nsubq={nsubq} "
                f"dsub={dsub} lastdsub={lastdsub}"
            )
        if lastdsub > dsub or (nsubq - 1) * dsub + lastdsub != dim:
            raise MalformedStreamError(
                f"[PQ] inconsistent shape in stream: dim={dim} nsubq={nsubq} "
                f"dsub={dsub} lastdsub={lastdsub}"
            )
        size = dim * KSUB
        payload = _read_exact(inp, size * REAL.itemsize)
        self.centroids = np.frombuffer(payload, dtype=REAL).copy()
        self.dim, self.nsubq, self.dsub, self.lastdsub = dim, nsubq, dsub, lastdsub
        self.is_trained = True
        return self

    @classmethod
    def from_stream(cls, inp: BinaryIO, seed: int = SEED) -> "ProductQuantizer":
        return cls(1, 1, seed=seed).load(inp)

    def save_file(self, path: Union[str, os.PathLike]) -> None:
        with open(path, "wb") as f:
            self.save(f)
        logger.info(f"[PQ] saved centroids to {path}")

    @classmethod
    def load_file(cls, path: Union[str, os.PathLike], seed: int = SEED) -> "ProductQuantizer":
        with open(path, "rb") as f:
            pq = cls.from_stream(f, seed=seed)
        logger.info(f"[PQ] loaded centroids from {path} (dim={pq.dim}, nsubq={pq.nsubq})")
        return pq


def _read_exact(inp: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = inp.read(min(remaining, READ_CHUNK))
        if not chunk:
            raise MalformedStreamError(
                f"[PQ] stream ended early: needed {size} bytes, got {size - remaining}"
            )
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _as_codes(codes) -> np.ndarray:
    codes = np.asarray(codes)
    if codes.dtype != CODE:
        if codes.size and (codes.min() < 0 or codes.max() >= KSUB):
            raise ValueError(f"[PQ] code values must lie in [0, {KSUB})")
        codes = codes.astype(CODE)
    return codes
