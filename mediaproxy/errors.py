class MediaProxyError(Exception):
    """Base exception for media proxy errors."""
    status = 500


class InvalidInput(MediaProxyError):
    """Malformed or missing client input (url, range, id)."""
    status = 400


class NotFound(MediaProxyError):
    """Unknown id, or the backing file is gone."""
    status = 404


class UpstreamFailure(MediaProxyError):
    """Origin fetch failed or returned a non-success status."""
    status = 502


class PersistenceFailure(MediaProxyError):
    """The record file could not be written."""
    pass
