from __future__ import annotations


class ConfigError(ValueError):
    pass


class FetchError(Exception):
    """Base class for classified retrieval failures.

    ``tag`` is the classification prefix stored in a source's ``last_error``;
    ``reason`` is appended after a colon when the class carries one.
    """

    tag = "NetworkError"
    carries_reason = True

    def __init__(
        self,
        reason: str = "",
        *,
        url: str | None = None,
        status: int | None = None,
    ) -> None:
        self.reason = reason
        self.url = url
        self.status = status
        super().__init__(self.classification)

    @property
    def classification(self) -> str:
        if self.carries_reason and self.reason:
            return f"{self.tag}:{self.reason}"
        return self.tag

    def describe(self) -> str:
        parts = [self.classification]
        if self.url:
            parts.append(f"url={self.url}")
        if self.status is not None:
            parts.append(f"status={self.status}")
        return " ".join(parts)


class WAFBlocked(FetchError):
    tag = "WAFBlocked"


class DynamicSite(FetchError):
    tag = "DynamicSite"


class FetchTimeout(FetchError):
    tag = "TimeoutError"
    carries_reason = False


class BudgetExceeded(FetchError):
    tag = "BudgetExceeded"
    carries_reason = False


class NetworkError(FetchError):
    tag = "NetworkError"


class ParseError(FetchError):
    tag = "ParseError"
    carries_reason = False


class InsufficientContent(ParseError):
    def __init__(self, best_length: int, minimum: int, *, url: str | None = None) -> None:
        self.best_length = best_length
        self.minimum = minimum
        super().__init__(f"content_length={best_length}<{minimum}", url=url)

    def describe(self) -> str:
        return f"{super().describe()} {self.reason}"


class UnexpectedError(ParseError):
    """Wraps an exception nobody classified, tagged with its type name."""

    carries_reason = True

    def __init__(self, exc: BaseException, *, url: str | None = None) -> None:
        self.original = exc
        super().__init__(type(exc).__name__, url=url)


class IllegalTransition(RuntimeError):
    pass


class PushFailure(Exception):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
