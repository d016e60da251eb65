"""Data models for the beads issue tracker."""

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from beads.errors import ValidationError

ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*-[A-Za-z0-9]+$")
MIN_PRIORITY = 0
MAX_PRIORITY = 4


class Status(Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    CLOSED = "closed"


class IssueType(Enum):
    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"
    EPIC = "epic"
    CHORE = "chore"


class DependencyType(Enum):
    BLOCKS = "blocks"
    RELATED = "related"
    PARENT_CHILD = "parent_child"
    DISCOVERED_FROM = "discovered_from"


@dataclass
class Issue:
    id: str
    title: str
    description: str = ""
    status: Status = Status.OPEN
    priority: int = 2  # 0-4, lower = higher priority
    type: IssueType = IssueType.TASK
    assignee: str | None = None
    labels: list[str] = field(default_factory=list)
    design: str = ""
    notes: str = ""
    acceptance_criteria: str = ""
    estimated_minutes: float | None = None
    actual_minutes: float | None = None
    close_reason: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    closed_at: datetime | None = None

    def canonical_content(self) -> dict:
        """Fields that decide whether two records describe the same issue.

        Timestamps and dependency edges are left out.
        """
        return {
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority,
            "type": self.type.value,
            "assignee": self.assignee,
            "labels": sorted(self.labels),
            "design": self.design,
            "notes": self.notes,
            "acceptance_criteria": self.acceptance_criteria,
            "estimated_minutes": self.estimated_minutes,
            "actual_minutes": self.actual_minutes,
            "close_reason": self.close_reason,
        }

    @property
    def content_hash(self) -> str:
        """SHA256 of the canonical content for collision detection."""
        content = json.dumps(self.canonical_content(), sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(content.encode()).hexdigest()[:12]

    def is_open(self) -> bool:
        """Check if issue is in an open state (not closed)."""
        return self.status in (Status.OPEN, Status.IN_PROGRESS, Status.BLOCKED)


@dataclass(frozen=True)
class Dependency:
    """Directed edge: from_id depends on to_id.

    For BLOCKS, from_id is blocked by to_id. For PARENT_CHILD, from_id is
    the child and to_id the parent.
    """

    from_id: str
    to_id: str
    type: DependencyType = DependencyType.BLOCKS

    def __lt__(self, other: "Dependency") -> bool:
        return (self.from_id, self.to_id, self.type.value) < (
            other.from_id,
            other.to_id,
            other.type.value,
        )


@dataclass
class IssueFilter:
    """AND-combined filters for list and ready queries."""

    status: Status | None = None
    priority: int | None = None
    assignee: str | None = None
    type: IssueType | None = None
    labels: list[str] = field(default_factory=list)
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and (
            isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit < 1
        ):
            raise ValidationError(
                f"Limit must be a positive integer, got {self.limit!r}", field="limit"
            )

    def matches(self, issue: Issue) -> bool:
        if self.status is not None and issue.status != self.status:
            return False
        if self.priority is not None and issue.priority != self.priority:
            return False
        if self.assignee is not None and issue.assignee != self.assignee:
            return False
        if self.type is not None and issue.type != self.type:
            return False
        if self.labels and not set(self.labels) <= set(issue.labels):
            return False
        return True


def validate_priority(value: object, issue_id: str | None = None) -> int:
    """Return priority as int, raising ValidationError when outside 0-4."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"Priority must be an integer, got {value!r}", field="priority", issue_id=issue_id
        )
    if not MIN_PRIORITY <= value <= MAX_PRIORITY:
        raise ValidationError(
            f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {value}",
            field="priority",
            issue_id=issue_id,
        )
    return value


def validate_id(issue_id: object) -> str:
    """Check an explicit id has the '<prefix>-<suffix>' shape."""
    if not isinstance(issue_id, str) or not ID_PATTERN.match(issue_id):
        raise ValidationError(f"Invalid issue id: {issue_id!r}", field="id")
    return issue_id


def validate_effort(value: object, field_name: str, issue_id: str | None = None) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValidationError(
            f"{field_name} must be a non-negative number, got {value!r}",
            field=field_name,
            issue_id=issue_id,
        )
    return value


def parse_enum(enum_cls: type[Enum], value: object, field_name: str, issue_id: str | None = None):
    """Convert a raw value into enum_cls, raising ValidationError on bad input."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} {value!r} (expected one of: {choices})",
            field=field_name,
            issue_id=issue_id,
        ) from None


def clean_text(value: object, field_name: str, issue_id: str | None = None) -> str:
    """Free-text fields are stored stripped of surrounding whitespace."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(
            f"{field_name} must be a string, got {value!r}", field=field_name, issue_id=issue_id
        )
    return value.strip()


def id_number(issue_id: str, prefix: str) -> int | None:
    """Numeric suffix of '<prefix>-<n>', or None for other shapes."""
    head, _, tail = issue_id.rpartition("-")
    if head != prefix or not tail.isdigit():
        return None
    return int(tail)


def generate_id(prefix: str, taken: set[str]) -> str:
    """Next sequential id like 'bd-12' that is not in taken."""
    numbers = [n for n in (id_number(i, prefix) for i in taken) if n is not None]
    candidate = max(numbers, default=0) + 1
    while f"{prefix}-{candidate}" in taken:
        candidate += 1
    return f"{prefix}-{candidate}"


def natural_key(issue_id: str) -> tuple:
    """Sort key that orders 'bd-2' before 'bd-10'."""
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in re.split(r"(\d+)", issue_id)
        if part
    )
