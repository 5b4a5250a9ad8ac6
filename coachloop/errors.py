"""
Error taxonomy for the agent loop.

Recoverable errors (InvalidArguments, ToolExecutionFailure,
KnowledgeFetchFailure) never leave the loop: they are turned into
observations or log entries. TurnFailure subclasses end the current turn in
the ERROR state; the session stays usable for the next turn.
"""


class CoachLoopError(Exception):
    """Base class for all coachloop errors."""


# --- Recoverable -----------------------------------------------------------


class InvalidArguments(CoachLoopError):
    """Tool call arguments failed schema validation (or the tool is unknown)."""

    def __init__(self, tool: str, message: str):
        self.tool = tool
        super().__init__(f"Invalid arguments for {tool}: {message}")


class ToolExecutionFailure(CoachLoopError):
    """A tool collaborator raised while executing."""

    def __init__(self, tool: str, message: str):
        self.tool = tool
        super().__init__(f"Tool {tool} failed: {message}")


class KnowledgeFetchFailure(CoachLoopError):
    """An optional knowledge source could not be fetched."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Knowledge source {source} unavailable: {message}")


# --- Fatal to the turn -----------------------------------------------------


class TurnFailure(CoachLoopError):
    """Base class for errors that end the current turn in ERROR."""


class SequenceConflict(TurnFailure):
    """Appending to the event log kept colliding until retries ran out."""

    def __init__(self, session_id: str, attempts: int):
        self.session_id = session_id
        self.attempts = attempts
        super().__init__(
            f"Could not append to session {session_id} after {attempts} attempts"
        )


class ModelProtocolViolation(TurnFailure):
    """The model did not return exactly one tool call."""

    def __init__(self, tool_call_count: int):
        self.tool_call_count = tool_call_count
        super().__init__(f"Expected exactly one tool call, got {tool_call_count}")


class LoopTimeout(TurnFailure):
    """A model call or tool execution exceeded its time bound."""


class ModelTimeout(LoopTimeout):
    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"Model call exceeded {seconds}s")


class ToolTimeout(LoopTimeout):
    def __init__(self, tool: str, seconds: float):
        self.tool = tool
        self.seconds = seconds
        super().__init__(f"Tool {tool} exceeded {seconds}s")


# --- Session access --------------------------------------------------------


class SessionBusy(CoachLoopError):
    """A turn is already running for this session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is busy")


class SessionNotFound(CoachLoopError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class SessionOwnershipError(CoachLoopError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} belongs to another user")


# --- Storage ---------------------------------------------------------------


class SequenceCollision(CoachLoopError):
    """Raised by a SessionStore when (session_id, sequence) already exists."""

    def __init__(self, session_id: str, sequence: int):
        self.session_id = session_id
        self.sequence = sequence
        super().__init__(f"Sequence {sequence} already used in session {session_id}")


__all__ = [
    "CoachLoopError",
    "InvalidArguments",
    "ToolExecutionFailure",
    "KnowledgeFetchFailure",
    "TurnFailure",
    "SequenceConflict",
    "ModelProtocolViolation",
    "LoopTimeout",
    "ModelTimeout",
    "ToolTimeout",
    "SessionBusy",
    "SessionNotFound",
    "SessionOwnershipError",
    "SequenceCollision",
]
