"""Exception taxonomy for the sandbox engine."""

from __future__ import annotations

from collections.abc import Sequence


class RunboxError(Exception):
    """Base class for all runbox errors."""


class ConfigurationError(RunboxError, ValueError):
    """Invalid caller-supplied options."""


class TemplateIntegrityError(RunboxError):
    """Bootstrap template is missing one or more required markers."""

    missing_markers: list[str]

    def __init__(self, missing_markers: Sequence[str]) -> None:
        self.missing_markers = list(missing_markers)
        super().__init__(
            f"Template missing required markers: {', '.join(self.missing_markers)}"
        )


class FetchFailure(RunboxError):
    """A library or template could not be fetched."""

    url: str

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        super().__init__(f"Failed to fetch {url}: {reason}")


class ProtocolViolation(RunboxError):
    """An inbound message failed the origin or secret check.

    Only ever used for diagnostics; violations are dropped silently.
    """

    reason: str

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class TimeoutExceeded(RunboxError):
    """A run did not signal completion before its deadline."""

    timeout_ms: int

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Execution timeout ({timeout_ms}ms). Sandbox reset.")
