"""Export/import between the issue store and the JSONL interchange file."""

import json
import logging
import re
import time
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from beads.cycles import find_cycles
from beads.debounce import Debouncer
from beads.errors import CollisionError, ValidationError
from beads.models import (
    Dependency,
    DependencyType,
    Issue,
    IssueFilter,
    IssueType,
    Status,
    clean_text,
    generate_id,
    natural_key,
    parse_enum,
    validate_effort,
    validate_id,
    validate_priority,
)
from beads.service import IssueService, normalize_labels
from beads.storage import atomic_write

log = logging.getLogger(__name__)

TEXT_FIELDS = ("description", "design", "notes", "acceptance_criteria")

# Characters that may appear inside an id; a mention must not be flanked by them.
_ID_CHARS = r"A-Za-z0-9_\-"


@dataclass
class IssueRecord:
    """One parsed interchange line: an issue plus its outgoing edges."""

    issue: Issue
    dependencies: list[Dependency] = field(default_factory=list)
    line: int | None = None


@dataclass
class RemapEntry:
    old_id: str
    new_id: str
    reference_count: int
    updated_issue_ids: list[str] = field(default_factory=list)


@dataclass
class ImportPlan:
    exact: list[str] = field(default_factory=list)
    new: list[str] = field(default_factory=list)
    collisions: list[str] = field(default_factory=list)


@dataclass
class ImportResult:
    plan: ImportPlan
    dry_run: bool = False
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    edges_added: int = 0
    remaps: dict[str, str] = field(default_factory=dict)
    remap_entries: list[RemapEntry] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.edges_added)


@dataclass
class ExportResult:
    path: Path
    issue_count: int
    dependency_count: int


# Interchange encoding


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def issue_to_record(issue: Issue, dependencies: Iterable[Dependency]) -> dict:
    """Build the interchange dict for one issue; key order is fixed."""
    return {
        "id": issue.id,
        "title": issue.title,
        "description": issue.description,
        "status": issue.status.value,
        "priority": issue.priority,
        "type": issue.type.value,
        "assignee": issue.assignee,
        "labels": sorted(issue.labels),
        "created_at": _format_datetime(issue.created_at),
        "updated_at": _format_datetime(issue.updated_at),
        "closed_at": _format_datetime(issue.closed_at),
        "close_reason": issue.close_reason,
        "design": issue.design,
        "notes": issue.notes,
        "acceptance_criteria": issue.acceptance_criteria,
        "estimated_minutes": issue.estimated_minutes,
        "actual_minutes": issue.actual_minutes,
        "dependencies": [
            {"to_id": dep.to_id, "type": dep.type.value}
            for dep in sorted(dependencies, key=lambda d: (natural_key(d.to_id), d.type.value))
        ],
    }


def _parse_datetime(value: object, field_name: str, issue_id: str) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be an ISO timestamp", field=field_name, issue_id=issue_id)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name}: {value!r}", field=field_name, issue_id=issue_id
        ) from None


def record_to_issue(data: dict, line: int | None = None) -> IssueRecord:
    """Validate one interchange dict and build an IssueRecord."""
    if not isinstance(data, dict):
        raise ValidationError("Record must be a JSON object", line=line)
    raw_id = data.get("id")
    try:
        issue_id = validate_id(raw_id)
    except ValidationError as e:
        raise ValidationError(str(e), field="id", line=line) from None

    try:
        title = clean_text(data.get("title"), "title", issue_id)
        if not title:
            raise ValidationError("Title must not be empty", field="title", issue_id=issue_id)
        now = datetime.now()
        issue = Issue(
            id=issue_id,
            title=title,
            description=clean_text(data.get("description"), "description", issue_id),
            status=parse_enum(Status, data.get("status", "open"), "status", issue_id),
            priority=validate_priority(data.get("priority", 2), issue_id),
            type=parse_enum(IssueType, data.get("type", "task"), "type", issue_id),
            assignee=data.get("assignee") or None,
            labels=normalize_labels(data.get("labels") or [], issue_id),
            design=clean_text(data.get("design"), "design", issue_id),
            notes=clean_text(data.get("notes"), "notes", issue_id),
            acceptance_criteria=clean_text(data.get("acceptance_criteria"), "acceptance_criteria", issue_id),
            estimated_minutes=validate_effort(data.get("estimated_minutes"), "estimated_minutes", issue_id),
            actual_minutes=validate_effort(data.get("actual_minutes"), "actual_minutes", issue_id),
            close_reason=clean_text(data.get("close_reason"), "close_reason", issue_id),
            created_at=_parse_datetime(data.get("created_at"), "created_at", issue_id) or now,
            updated_at=_parse_datetime(data.get("updated_at"), "updated_at", issue_id) or now,
            closed_at=_parse_datetime(data.get("closed_at"), "closed_at", issue_id),
        )

        dependencies = []
        raw_deps = data.get("dependencies") or []
        if not isinstance(raw_deps, list):
            raise ValidationError("dependencies must be a list", field="dependencies", issue_id=issue_id)
        for raw in raw_deps:
            if not isinstance(raw, dict) or not isinstance(raw.get("to_id"), str):
                raise ValidationError(
                    f"Invalid dependency entry: {raw!r}", field="dependencies", issue_id=issue_id
                )
            dep_type = parse_enum(DependencyType, raw.get("type", "blocks"), "dependency type", issue_id)
            dependencies.append(Dependency(issue_id, raw["to_id"], dep_type))
    except ValidationError as e:
        if e.line is not None or line is None:
            raise
        raise ValidationError(str(e), field=e.field, issue_id=e.issue_id, line=line) from None

    return IssueRecord(issue=issue, dependencies=dependencies, line=line)


def parse_jsonl(text: str) -> list[IssueRecord]:
    """Parse interchange text. Blank lines are skipped; duplicate ids are rejected."""
    records: list[IssueRecord] = []
    seen: dict[str, int] = {}
    for number, raw in enumerate(text.splitlines(), start=1):
        raw = raw.strip()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Malformed JSON: {e.msg}", line=number) from None
        record = record_to_issue(data, line=number)
        if record.issue.id in seen:
            raise ValidationError(
                f"Duplicate id {record.issue.id} (first seen on line {seen[record.issue.id]})",
                field="id",
                issue_id=record.issue.id,
                line=number,
            )
        seen[record.issue.id] = number
        records.append(record)
    return records


# Collision resolution


def mention_pattern(ids: Iterable[str]) -> re.Pattern[str]:
    """Regex matching any of ids as a whole token, never as part of a longer id."""
    alternatives = "|".join(re.escape(i) for i in sorted(ids, key=len, reverse=True))
    return re.compile(rf"(?<![{_ID_CHARS}.])(?:{alternatives})(?![{_ID_CHARS}])")


def count_references(records: list[IssueRecord], issue_id: str) -> int:
    """Edges pointing at issue_id plus whole-token text mentions of it."""
    pattern = mention_pattern([issue_id])
    count = 0
    for record in records:
        count += sum(1 for dep in record.dependencies if dep.to_id == issue_id)
        for name in TEXT_FIELDS:
            count += len(pattern.findall(getattr(record.issue, name)))
    return count


def remap_records(records: list[IssueRecord], remaps: dict[str, str]) -> dict[str, list[str]]:
    """Rewrite ids, edges and text mentions in place in one pass.

    Returns, per old id, the (new) ids of records that were touched.
    """
    if not remaps:
        return {}
    pattern = mention_pattern(remaps)
    touched: dict[str, set[str]] = {old: set() for old in remaps}

    for record in records:
        hits: set[str] = set()

        def substitute(match: re.Match[str]) -> str:
            hits.add(match.group(0))
            return remaps[match.group(0)]

        issue = record.issue
        for name in TEXT_FIELDS:
            setattr(issue, name, pattern.sub(substitute, getattr(issue, name)))

        new_deps = []
        for dep in record.dependencies:
            if dep.to_id in remaps:
                hits.add(dep.to_id)
            if dep.from_id in remaps:
                hits.add(dep.from_id)
            new_deps.append(
                Dependency(
                    remaps.get(dep.from_id, dep.from_id),
                    remaps.get(dep.to_id, dep.to_id),
                    dep.type,
                )
            )
        record.dependencies = new_deps

        if issue.id in remaps:
            hits.add(issue.id)
            issue.id = remaps[issue.id]

        for old in hits:
            touched[old].add(issue.id)

    return {old: sorted(ids, key=natural_key) for old, ids in touched.items()}


def plan_collision_remaps(
    records: list[IssueRecord],
    collisions: list[str],
    taken: set[str],
) -> list[RemapEntry]:
    """Assign fresh ids to colliding records, least-referenced first.

    Ties on reference count are broken by natural id order. Fresh ids keep
    the colliding id's prefix and are absent from both the store and the
    batch.
    """
    counts = {issue_id: count_references(records, issue_id) for issue_id in collisions}
    order = sorted(collisions, key=lambda i: (counts[i], natural_key(i)))
    taken = set(taken)
    entries = []
    for old_id in order:
        prefix = old_id.rpartition("-")[0]
        new_id = generate_id(prefix, taken)
        taken.add(new_id)
        entries.append(RemapEntry(old_id=old_id, new_id=new_id, reference_count=counts[old_id]))
    return entries


# Engine


class SyncEngine:
    """Moves data between an IssueService's store and its JSONL file."""

    def __init__(self, service: IssueService, clock=time.monotonic):
        self.service = service
        self.storage = service.storage
        self.debouncer = Debouncer(
            service.config.export_debounce_seconds, self._debounced_export, clock=clock
        )
        self._auto_export = False

    @property
    def jsonl_path(self) -> Path:
        return self.service.jsonl_path

    # Export

    def export(self, path: Path | None = None, filter: IssueFilter | None = None) -> ExportResult:
        """Write issues to path as sorted JSONL, one issue per line.

        A full export to the store's own JSONL file also clears the dirty flag.
        """
        target = path or self.jsonl_path
        full = filter is None and target == self.jsonl_path

        with self.service.lock.exclusive():
            issues = self.storage.read_all_issues()
            graph = self.service.load_graph()
            if filter is not None:
                issues = [i for i in issues if filter.matches(i)]
            issues.sort(key=lambda i: natural_key(i.id))
            if filter is not None and filter.limit is not None:
                issues = issues[: filter.limit]

            lines = []
            dep_count = 0
            for issue in issues:
                deps = graph.edges_from(issue.id)
                dep_count += len(deps)
                lines.append(json.dumps(issue_to_record(issue, deps), ensure_ascii=False))

            target.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(target, "".join(f"{line}\n" for line in lines))
            if full:
                self.storage.update_metadata(dirty=False, last_export_at=time.time())

        log.info("Exported %d issue(s) to %s", len(issues), target)
        return ExportResult(path=target, issue_count=len(issues), dependency_count=dep_count)

    def _debounced_export(self) -> None:
        self.export()

    def start_auto_export(self, background: bool = True) -> None:
        """Schedule a debounced export after every mutation of the store."""
        if self._auto_export:
            return
        self._auto_export = True
        self.service.add_mutation_listener(self.debouncer.trigger)
        if background:
            self.debouncer.start()

    def shutdown(self) -> None:
        """Stop scheduling and flush a pending export synchronously."""
        if self._auto_export:
            self.service.remove_mutation_listener(self.debouncer.trigger)
            self._auto_export = False
        self.debouncer.stop(flush=True)

    # Import

    def classify(self, records: list[IssueRecord], existing: dict[str, Issue]) -> ImportPlan:
        plan = ImportPlan()
        for record in sorted(records, key=lambda r: natural_key(r.issue.id)):
            current = existing.get(record.issue.id)
            if current is None:
                plan.new.append(record.issue.id)
            elif current.content_hash == record.issue.content_hash:
                plan.exact.append(record.issue.id)
            else:
                plan.collisions.append(record.issue.id)
        return plan

    def import_file(self, path: Path | None = None, **options: bool) -> ImportResult:
        """Import a JSONL file. See import_records for options."""
        source = path or self.jsonl_path
        records = parse_jsonl(source.read_text(encoding="utf-8"))
        return self.import_records(records, **options)

    def import_records(
        self,
        records: list[IssueRecord],
        skip_existing: bool = False,
        dry_run: bool = False,
        resolve_collisions: bool = False,
        strict: bool = False,
    ) -> ImportResult:
        """Merge records into the store as one all-or-nothing transaction.

        Modes:
            plain: create new ids, overwrite colliding ids (last writer wins).
            strict: raise CollisionError instead of overwriting.
            skip_existing: only create new ids.
            resolve_collisions: give colliding records fresh ids and rewrite
                every reference to them inside the batch.
            dry_run: classify (and plan remaps) without touching the store.

        Raises:
            ValidationError: For malformed records, dangling edges or bad option combos.
            CollisionError: In strict mode when any collision is found.
        """
        if skip_existing and resolve_collisions:
            raise ValidationError("skip_existing and resolve_collisions cannot be combined")

        with self.service.lock.exclusive():
            existing = {issue.id: issue for issue in self.storage.read_all_issues()}
            plan = self.classify(records, existing)
            result = ImportResult(plan=plan, dry_run=dry_run)

            if strict and plan.collisions and not resolve_collisions and not dry_run:
                raise CollisionError(plan.collisions)

            if resolve_collisions and plan.collisions:
                records = [self._copy_record(r) for r in records]
                taken = set(existing) | {r.issue.id for r in records}
                entries = plan_collision_remaps(records, plan.collisions, taken)
                result.remaps = {e.old_id: e.new_id for e in entries}
                touched = remap_records(records, result.remaps)
                for entry in entries:
                    entry.updated_issue_ids = touched[entry.old_id]
                result.remap_entries = entries

            batch_ids = {r.issue.id for r in records}
            self._validate_references(records, set(existing) | batch_ids)

            if dry_run:
                log.info(
                    "Dry run: %d new, %d exact, %d collision(s)",
                    len(plan.new), len(plan.exact), len(plan.collisions),
                )
                return result

            graph = self.service.load_graph()
            remapped_new = set(result.remaps.values())
            with self.storage.transaction() as txn:
                for record in sorted(records, key=lambda r: natural_key(r.issue.id)):
                    issue_id = record.issue.id
                    if issue_id in remapped_new or issue_id not in existing:
                        txn.write_issue(record.issue)
                        result.created.append(issue_id)
                    elif skip_existing:
                        result.skipped.append(issue_id)
                        continue
                    elif existing[issue_id].content_hash == record.issue.content_hash:
                        result.unchanged.append(issue_id)
                    else:
                        txn.write_issue(record.issue)
                        result.updated.append(issue_id)

                    for dep in record.dependencies:
                        if graph.insert_unchecked(dep):
                            result.edges_added += 1

                if result.edges_added:
                    txn.write_dependencies(graph.all_edges())

            self.storage.update_metadata(last_import_at=time.time())
            if result.changed:
                self.service._mark_dirty()

        result.cycles = find_cycles(graph)
        log.info(
            "Imported: %d created, %d updated, %d unchanged, %d skipped, %d remapped",
            len(result.created), len(result.updated), len(result.unchanged),
            len(result.skipped), len(result.remaps),
        )
        for old_id, new_id in result.remaps.items():
            log.info("Remapped %s -> %s", old_id, new_id)
        return result

    def _copy_record(self, record: IssueRecord) -> IssueRecord:
        issue = replace(record.issue, labels=list(record.issue.labels))
        return IssueRecord(issue=issue, dependencies=list(record.dependencies), line=record.line)

    def _validate_references(self, records: list[IssueRecord], known_ids: set[str]) -> None:
        for record in records:
            for dep in record.dependencies:
                if dep.to_id == dep.from_id:
                    raise ValidationError(
                        f"Issue {dep.from_id} cannot depend on itself",
                        field="dependencies",
                        issue_id=dep.from_id,
                        line=record.line,
                    )
                if dep.to_id not in known_ids:
                    raise ValidationError(
                        f"Dependency {dep.from_id} -> {dep.to_id} references an unknown issue",
                        field="dependencies",
                        issue_id=dep.from_id,
                        line=record.line,
                    )

    def needs_import(self) -> bool:
        """Whether the JSONL file changed after the store last synced with it."""
        if not self.jsonl_path.exists():
            return False
        metadata = self.storage.load_metadata()
        last_sync = max(metadata.get("last_import_at") or 0, metadata.get("last_export_at") or 0)
        return self.jsonl_path.stat().st_mtime > last_sync

    def auto_import(self) -> ImportResult | None:
        """Plain-import the JSONL file if it is newer than the last sync."""
        if not self.needs_import():
            return None
        log.info("%s is newer than the store, importing", self.jsonl_path)
        return self.import_file(self.jsonl_path)
