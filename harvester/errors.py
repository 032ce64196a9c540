"""Pipeline exception hierarchy."""


class HarvesterError(Exception):
    """Base class for pipeline errors."""

    pass


class PermanentJobError(HarvesterError):
    """A job failure that retrying cannot fix.

    The worker skips remaining attempts and runs the stage's
    permanent-failure hook immediately.
    """

    pass


class SourceNotFoundError(PermanentJobError):
    """Referenced source row does not exist."""

    pass


class ExecutionNotFoundError(PermanentJobError):
    """Referenced execution row does not exist."""

    pass


class UnsupportedAffiliateNetworkError(PermanentJobError):
    """Source names an affiliate network without a parser."""

    def __init__(self, network: str | None):
        super().__init__(f"Unsupported affiliate network: {network}")
        self.network = network


class ContentTooLargeError(PermanentJobError):
    """First page exceeded the per-page size cap, so nothing was collected."""

    def __init__(self, url: str, limit: int):
        super().__init__(f"Response from {url} exceeds {limit} bytes")
        self.url = url
        self.limit = limit


class ContentParseError(PermanentJobError):
    """Fetched content is not in the format its source declares."""

    pass


class TotalWriteFailureError(HarvesterError):
    """Every item of a write job failed."""

    def __init__(self, failed: int, first_error: str | None = None):
        message = f"All {failed} items failed to write"
        if first_error:
            message = f"{message}: {first_error}"
        super().__init__(message)
        self.failed = failed


class PermanentFetchError(PermanentJobError):
    """Upstream refused the request in a way retrying cannot change (404, 401/403)."""

    pass
