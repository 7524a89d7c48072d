"""Custom exceptions for Folio."""


class FolioError(Exception):
    """Base exception for all Folio errors."""

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FolioError):
    """Raised when input validation fails (bad enum value, missing field)."""


class InvalidTransitionError(ValidationError):
    """Raised when a status change would move a record backwards."""

    def __init__(self, entity_type: str, current: object, target: object) -> None:
        current, target = str(current), str(target)
        super().__init__(
            f"{entity_type} cannot transition from {current!r} to {target!r}",
            details={"entity_type": entity_type, "current": current, "target": target},
        )


class NotFoundError(FolioError):
    """Raised when a requested record does not exist."""

    def __init__(self, entity_type: str, identifier: str) -> None:
        super().__init__(
            f"{entity_type} not found: {identifier}",
            details={"entity_type": entity_type, "identifier": identifier},
        )


class ToolExecutionError(FolioError):
    """Raised by tool implementations when a tool cannot do its job."""


class ToolNotFoundError(FolioError):
    """Raised when dispatching a tool name that was never registered."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}", details={"tool_name": tool_name})


class ExtractionError(FolioError):
    """Raised when a tool result cannot be turned into a reference.

    Never escapes the extraction loop; it is logged and skipped.
    """


class PersistenceError(FolioError):
    """Raised when the database rejects a write or read."""
