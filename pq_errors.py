class PQError(Exception):
    """Base class for product quantizer failures."""


class InsufficientDataError(PQError, ValueError):
    """Raised when there are fewer training points than centroids per subspace."""


class MalformedStreamError(PQError, ValueError):
    """Raised when a saved quantizer cannot be read back from a byte stream."""
