import numpy as np
import pytest

from pq import KSUB, ProductQuantizer


@pytest.fixture
def rng():
    return np.random.RandomState(0)


@pytest.fixture
def trained_pq(rng):
    # dim not a multiple of dsub: last subspace is narrower
    pq = ProductQuantizer(10, 4, niter=5)
    x = rng.randn(2 * KSUB, 10).astype(np.float32)
    pq.train(x)
    return pq, x
