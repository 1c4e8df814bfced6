"""Exception hierarchy for the workflow protocol."""

from __future__ import annotations


class ProtocolError(Exception):
    """Base class for every error raised by planact."""


class AmbiguousModeError(ProtocolError):
    """Mode was neither given as a directive nor inferable with full confidence."""

    def __init__(self, request: str = "") -> None:
        self.request = request
        super().__init__(
            'Mode not specified. Reply with "MODE = PLAN MODE" or "MODE = ACT MODE".'
        )


class InvalidDependencyError(ProtocolError):
    """An upstream edge would create a cycle or alter a fixed core edge."""


class UnknownParentError(ProtocolError):
    """A context node was attached to a parent that is not an existing core node."""


class UnknownNodeError(ProtocolError, KeyError):
    """No node with the given id exists in the graph."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class IncompleteMemoryError(ProtocolError):
    """One or more core memory files have no content yet."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing core memory files: {', '.join(self.missing)}")


class PhaseOrderError(ProtocolError):
    """An operation was invoked in a phase that does not accept it."""


class SessionActiveError(ProtocolError):
    """A session (or a run within it) is already in progress."""


class DebugEntryRefused(ProtocolError):
    """The debug routine requires a prior failed fix for the same symptoms."""


class RepeatedDiagnosisError(ProtocolError):
    """A diagnosis already tried for this symptom set was proposed again."""
