"""Markdown file storage for the beads issue store."""

import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import frontmatter
import yaml

from beads.models import ID_PATTERN, Dependency, DependencyType, Issue, IssueType, Status

log = logging.getLogger(__name__)


def atomic_write(path: Path, content: str) -> None:
    """Write content to path via a temp file in the same directory."""
    tmp = _write_temp(path, content)
    os.replace(tmp, path)


def _write_temp(path: Path, content: str) -> Path:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
    except BaseException:
        os.unlink(tmp_name)
        raise
    return Path(tmp_name)


class StorageTransaction:
    """Staged writes applied all-or-nothing on commit."""

    def __init__(self, storage: "MarkdownStorage"):
        self.storage = storage
        self._issues: dict[str, Issue] = {}
        self._dependencies: list[Dependency] | None = None

    def write_issue(self, issue: Issue) -> None:
        self._issues[issue.id] = issue

    def write_dependencies(self, dependencies: list[Dependency]) -> None:
        self._dependencies = sorted(dependencies)

    @property
    def issue_ids(self) -> set[str]:
        return set(self._issues)

    def commit(self) -> None:
        """Write every staged file to a temp file, then rename them all into place."""
        staged: list[tuple[Path, str]] = [
            (self.storage.issue_path(issue.id), self.storage._serialize_issue(issue))
            for issue in self._issues.values()
        ]
        if self._dependencies is not None:
            staged.append(
                (
                    self.storage.dependencies_path,
                    self.storage._serialize_dependencies(self._dependencies),
                )
            )
        if not staged:
            return

        temps: list[tuple[Path, Path]] = []
        try:
            for path, content in staged:
                temps.append((_write_temp(path, content), path))
        except BaseException:
            for tmp, _ in temps:
                tmp.unlink(missing_ok=True)
            raise

        for tmp, path in temps:
            os.replace(tmp, path)
        log.debug("Committed %d file(s) to %s", len(temps), self.storage.root)


class MarkdownStorage:
    """Read/write issues as markdown files with YAML frontmatter.

    Layout under root (normally .beads/):
        issues/<id>.md      one file per issue
        dependencies.yml    the dependency edge table
        metadata.yml        dirty flag and sync timestamps
    """

    def __init__(self, root: Path):
        self.root = root
        self.issues_dir = root / "issues"
        self.dependencies_path = root / "dependencies.yml"
        self.metadata_path = root / "metadata.yml"
        self.lock_path = root / ".lock"

    def ensure_initialized(self) -> None:
        """Create .beads/issues/ and the dependency table if not exists."""
        self.issues_dir.mkdir(parents=True, exist_ok=True)
        if not self.dependencies_path.exists():
            atomic_write(self.dependencies_path, self._serialize_dependencies([]))
        if not self.metadata_path.exists():
            self.save_metadata({"dirty": False, "last_import_at": None, "last_export_at": None})

    def issue_path(self, issue_id: str) -> Path:
        """Get the path to an issue's markdown file."""
        return self.issues_dir / f"{issue_id}.md"

    def read_issue(self, issue_id: str) -> Issue | None:
        """Read and parse a single issue file. Malformed ids never touch the filesystem."""
        if not ID_PATTERN.match(issue_id):
            return None
        path = self.issue_path(issue_id)
        if not path.exists():
            return None
        post = frontmatter.load(path)
        return self._parse_issue(post)

    def write_issue(self, issue: Issue) -> None:
        """Write a single issue file atomically."""
        atomic_write(self.issue_path(issue.id), self._serialize_issue(issue))

    def list_issue_ids(self) -> list[str]:
        """List all issue IDs from filenames."""
        if not self.issues_dir.exists():
            return []
        return sorted(p.stem for p in self.issues_dir.glob("*.md"))

    def read_all_issues(self) -> list[Issue]:
        """Read all issues from storage."""
        return [
            issue
            for issue_id in self.list_issue_ids()
            if (issue := self.read_issue(issue_id)) is not None
        ]

    def read_dependencies(self) -> list[Dependency]:
        """Read the dependency edge table."""
        if not self.dependencies_path.exists():
            return []
        with open(self.dependencies_path) as f:
            data = yaml.safe_load(f) or {}
        return [
            Dependency(
                from_id=row["from"],
                to_id=row["to"],
                type=DependencyType(row.get("type", "blocks")),
            )
            for row in data.get("dependencies", []) or []
        ]

    def write_dependencies(self, dependencies: list[Dependency]) -> None:
        atomic_write(self.dependencies_path, self._serialize_dependencies(sorted(dependencies)))

    @contextmanager
    def transaction(self) -> Iterator[StorageTransaction]:
        """Stage writes; they are applied only if the block exits normally."""
        txn = StorageTransaction(self)
        yield txn
        txn.commit()

    def load_metadata(self) -> dict:
        if not self.metadata_path.exists():
            return {}
        with open(self.metadata_path) as f:
            return yaml.safe_load(f) or {}

    def save_metadata(self, metadata: dict) -> None:
        atomic_write(
            self.metadata_path,
            yaml.dump(metadata, default_flow_style=False, sort_keys=True),
        )

    def update_metadata(self, **values: object) -> dict:
        metadata = self.load_metadata()
        metadata.update(values)
        self.save_metadata(metadata)
        return metadata

    def mark_dirty(self) -> None:
        """Record that the store changed since the last export."""
        self.update_metadata(dirty=True, last_modified_at=time.time())

    def is_dirty(self) -> bool:
        return bool(self.load_metadata().get("dirty", False))

    def changed_since(self, timestamp: float) -> bool:
        """Whether any mutation was recorded after timestamp (epoch seconds)."""
        last = self.load_metadata().get("last_modified_at")
        return last is not None and last > timestamp

    def _serialize_dependencies(self, dependencies: list[Dependency]) -> str:
        rows = [
            {"from": dep.from_id, "to": dep.to_id, "type": dep.type.value}
            for dep in dependencies
        ]
        return yaml.dump({"dependencies": rows}, default_flow_style=False, sort_keys=False)

    def _parse_issue(self, post: frontmatter.Post) -> Issue:
        """Parse frontmatter Post into Issue dataclass."""
        metadata = post.metadata

        return Issue(
            id=metadata["id"],
            title=metadata["title"],
            description=post.content.strip(),
            status=Status(metadata.get("status", "open")),
            priority=metadata.get("priority", 2),
            type=IssueType(metadata.get("type", "task")),
            assignee=metadata.get("assignee"),
            labels=metadata.get("labels", []) or [],
            design=metadata.get("design", "") or "",
            notes=metadata.get("notes", "") or "",
            acceptance_criteria=metadata.get("acceptance_criteria", "") or "",
            estimated_minutes=metadata.get("estimated_minutes"),
            actual_minutes=metadata.get("actual_minutes"),
            close_reason=metadata.get("close_reason", "") or "",
            created_at=self._parse_datetime(metadata.get("created_at")),
            updated_at=self._parse_datetime(metadata.get("updated_at")),
            closed_at=self._parse_optional_datetime(metadata.get("closed_at")),
        )

    def _parse_datetime(self, value: str | datetime | None) -> datetime:
        """Parse datetime from string or return datetime directly."""
        if value is None:
            return datetime.now()
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(value)

    def _parse_optional_datetime(self, value: str | datetime | None) -> datetime | None:
        if value is None:
            return None
        return self._parse_datetime(value)

    def _serialize_issue(self, issue: Issue) -> str:
        """Serialize Issue to markdown with YAML frontmatter.

        The description is the markdown body; every other field lives in
        the frontmatter.
        """
        metadata = {
            "id": issue.id,
            "title": issue.title,
            "status": issue.status.value,
            "priority": issue.priority,
            "type": issue.type.value,
            "labels": sorted(issue.labels),
            "created_at": issue.created_at.isoformat(),
            "updated_at": issue.updated_at.isoformat(),
        }
        if issue.assignee:
            metadata["assignee"] = issue.assignee
        for name in ("design", "notes", "acceptance_criteria", "close_reason"):
            value = getattr(issue, name)
            if value:
                metadata[name] = value
        if issue.estimated_minutes is not None:
            metadata["estimated_minutes"] = issue.estimated_minutes
        if issue.actual_minutes is not None:
            metadata["actual_minutes"] = issue.actual_minutes
        if issue.closed_at:
            metadata["closed_at"] = issue.closed_at.isoformat()

        post = frontmatter.Post(issue.description, **metadata)
        return frontmatter.dumps(post) + "\n"
