"""Error types raised by the beads engine."""


class BeadsError(Exception):
    """Base class for all beads errors."""

    exit_code = 1


class ValidationError(BeadsError):
    """Raised when a field value is malformed or out of range."""

    exit_code = 2

    def __init__(
        self,
        message: str,
        field: str | None = None,
        issue_id: str | None = None,
        line: int | None = None,
    ):
        self.field = field
        self.issue_id = issue_id
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class NotFoundError(BeadsError):
    """Raised when an issue or edge is not found."""

    exit_code = 3

    def __init__(self, issue_id: str, message: str | None = None):
        self.issue_id = issue_id
        super().__init__(message or f"Issue not found: {issue_id}")


class CycleError(BeadsError):
    """Raised when a blocks edge would close a cycle."""

    exit_code = 4

    def __init__(self, from_id: str, to_id: str, path: list[str]):
        self.from_id = from_id
        self.to_id = to_id
        self.path = path
        super().__init__(
            f"Cannot add dependency: {from_id} -> {to_id} would create a cycle "
            f"({' -> '.join(path)})"
        )


class LockError(BeadsError):
    """Raised when the store lock cannot be acquired in time."""

    exit_code = 5

    def __init__(self, path: str, timeout: float):
        self.path = path
        self.timeout = timeout
        super().__init__(f"Could not acquire lock on {path} within {timeout}s")


class CollisionError(BeadsError):
    """Raised when an import meets existing ids with different content."""

    exit_code = 6

    def __init__(self, ids: list[str]):
        self.ids = ids
        super().__init__(
            f"Import collides with {len(ids)} existing issue(s): {', '.join(ids)}. "
            "Use --resolve-collisions to remap them."
        )


class CorruptDataError(BeadsError):
    """Raised when the blocks graph contains a cycle despite the insertion guard."""

    exit_code = 7

    def __init__(self, cycles: list[list[str]]):
        self.cycles = cycles
        rendered = "; ".join(" -> ".join(cycle + cycle[:1]) for cycle in cycles)
        super().__init__(f"Found {len(cycles)} dependency cycle(s): {rendered}")
