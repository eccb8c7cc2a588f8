"""Feed pipeline error types.

Standard error codes:
- SOURCE_UNAVAILABLE: no primary or fallback records could be fetched
- SUPPLEMENTARY_FETCH_FAILED: one secondary record kind failed or timed out
- MALFORMED_RECORD: a record failed normalization or metric extraction

Only SOURCE_UNAVAILABLE reaches the feed assembler's error phase; the others
are absorbed where they occur.
"""


class FeedError(RuntimeError):
    """Base exception for feed pipeline errors.

    Attributes:
        code: Error code (e.g., "SOURCE_UNAVAILABLE")
        message: Human-readable message
    """

    code = "FEED_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"{self.code}: {message}")


class SourceUnavailableError(FeedError):
    """Raised when neither the primary query nor its fallback returned records."""

    code = "SOURCE_UNAVAILABLE"


class SupplementaryFetchError(FeedError):
    """Raised when one supplementary kind cannot be fetched.

    Attributes:
        kind: Supplementary kind that failed (e.g., "zaps")
    """

    code = "SUPPLEMENTARY_FETCH_FAILED"

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(f"{kind}: {message}")


class MalformedRecordError(FeedError):
    """Raised inside the normalizer and extractor for records that fail validation."""

    code = "MALFORMED_RECORD"
