from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class PeerlinkError(Exception):
    """Base error for the engine. `code` is stable and machine-readable."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class ConfigError(PeerlinkError):
    """Fatal configuration problem (e.g. missing identity key). Never retried."""

    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("config_error", reason, details)


class StreamClosed(PeerlinkError):
    """The underlying byte stream reached EOF or was closed locally."""

    def __init__(self, reason: str = "closed") -> None:
        super().__init__("stream_closed", reason)


class FrameError(PeerlinkError):
    """A frame violated size bounds. The connection must be abandoned."""

    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("frame_error", reason, details)
