import time
from typing import Dict

import numpy as np
from loguru import logger

from pq import ProductQuantizer
from pq_logging import init_logger

D = 70
DSUB = 8
N = 2048


def reconstruction_report(pq: ProductQuantizer, vectors: np.ndarray) -> Dict[str, float]:
    """Encode then decode vectors and measure how far the reconstruction lands."""
    vectors = np.asarray(vectors, dtype=np.float32)
    decoded = pq.decode(pq.compute_codes(vectors))

    # Mean squared error per coordinate
    mse = float(np.mean((vectors - decoded) ** 2))
    rmse = float(np.sqrt(mse))
    # Error relative to original vector magnitude
    avg_norm = float(np.mean(np.linalg.norm(vectors, axis=1)))
    error_percent = (rmse / avg_norm) * 100 if avg_norm > 0 else 0.0
    return {"mse": mse, "rmse": rmse, "avg_norm": avg_norm, "error_percent": error_percent}


def main():
    init_logger("INFO")
    logger.info("Generating random data...")
    vectors = np.random.rand(N, D).astype(np.float32)

    pq = ProductQuantizer(D, DSUB)

    logger.info("Training PQ...")
    t0 = time.time()
    pq.train(vectors)
    logger.info(f"Training finished in {time.time() - t0:.2f} seconds")

    t1 = time.time()
    report = reconstruction_report(pq, vectors)
    logger.info(f"Encoding and decoding finished in {time.time() - t1:.2f} seconds")

    logger.info(f"MSE: {report['mse']:.6f}")
    logger.info(f"RMSE: {report['rmse']:.6f}")
    logger.info(f"Average vector norm: {report['avg_norm']:.6f}")
    logger.info(f"Reconstruction Error (%): {report['error_percent']:.4f}%")


if __name__ == "__main__":
    main()
