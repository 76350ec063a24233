from loguru import logger
import sys

PQ_PREFIX = "[PQ]"


def pq_only(record) -> bool:
    """loguru filter keeping only quantizer messages."""
    return record["message"].startswith(PQ_PREFIX)


def init_logger(level: str = "INFO", enqueue: bool = True, only_pq: bool = False, sink=None) -> int:
    """
    Route logs to sink (stdout by default). Returns the loguru sink id.

    only_pq drops every message that does not carry the quantizer prefix,
    for callers embedding the quantizer in an application that logs too.
    """
    logger.remove()
    return logger.add(
        sink if sink is not None else sys.stdout,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | "
               "<level>{level: <8}</level> | "
               "{name}:{line} - <level>{message}</level>",
        filter=pq_only if only_pq else None,
        enqueue=enqueue,
        backtrace=True,
        diagnose=False,
    )
