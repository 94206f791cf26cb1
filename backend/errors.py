class ExtractionError(Exception):
    """Base error for audio resolution."""


class InvalidUrl(ExtractionError, ValueError):
    """Raised when a page URL does not match any recognized video URL shape."""


class StrategyFailed(ExtractionError):
    """Raised when a single extraction strategy cannot produce a stream.

    Always recoverable: the pipeline moves on to the next strategy.
    """

    def __init__(self, strategy: str, reason: str):
        super().__init__(f"{strategy}: {reason}")
        self.strategy = strategy
        self.reason = reason


class FatalLaunchError(ExtractionError):
    """Raised when the OS refuses to start any subprocess at all."""
