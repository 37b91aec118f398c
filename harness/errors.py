from __future__ import annotations

from typing import Optional


class HarnessError(RuntimeError):
    """Base class for errors raised by the comparison harness."""


class ScenarioError(HarnessError, ValueError):
    """Invalid scenario or run configuration. Surfaced to API callers as 400."""


class Unreachable(HarnessError):
    def __init__(self, target: str, cause: Optional[BaseException | str] = None) -> None:
        self.target = target
        self.cause = cause
        super().__init__(f"{target} is not reachable: {cause}")


class ExternalToolError(HarnessError):
    """The external benchmarking executable is missing, failed, or produced unusable output."""


class SessionNotFound(HarnessError, KeyError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")

    def __str__(self) -> str:
        return self.args[0]
