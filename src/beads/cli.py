"""CLI interface for the beads issue tracker."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from beads.config import BeadsConfig, save_config
from beads.errors import BeadsError
from beads.models import DependencyType, Issue, IssueFilter, IssueType, Status
from beads.service import IssueService, TreeNode
from beads.storage import MarkdownStorage
from beads.sync import SyncEngine

console = Console()

BEADS_DIR = ".beads"
TYPE_CHOICES = [t.value for t in IssueType]
STATUS_CHOICES = [s.value for s in Status]
DEP_TYPE_CHOICES = [t.value for t in DependencyType]


class BeadsCommandError(click.ClickException):
    """ClickException carrying the exit code of a BeadsError."""

    def __init__(self, error: BeadsError):
        super().__init__(str(error))
        self.exit_code = error.exit_code


@contextmanager
def handle_errors() -> Iterator[None]:
    try:
        yield
    except BeadsError as e:
        raise BeadsCommandError(e) from e


def find_beads_root() -> Path | None:
    """Walk up from cwd to find .beads directory."""
    path = Path.cwd()
    while True:
        if (path / BEADS_DIR).is_dir():
            return path / BEADS_DIR
        if path == path.parent:
            return None
        path = path.parent


def get_service(ctx: click.Context) -> IssueService:
    """Get service from context."""
    return ctx.obj["service"]


def get_engine(ctx: click.Context) -> SyncEngine:
    return ctx.obj["engine"]


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Beads - dependency-aware issue tracking."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    if ctx.invoked_subcommand == "init":
        return

    root = find_beads_root()
    if root is None:
        raise click.ClickException("Not in a beads project. Run 'bd init' first.")

    with handle_errors():
        service = IssueService.open(root)
        engine = SyncEngine(service)
        ctx.obj["service"] = service
        ctx.obj["engine"] = engine

        if service.config.auto_import and ctx.invoked_subcommand not in ("import", "export"):
            result = engine.auto_import()
            if result is not None and result.changed:
                console.print(
                    f"[dim]Auto-imported {len(result.created)} new, "
                    f"{len(result.updated)} updated issue(s)[/dim]"
                )
        if service.config.auto_export:
            engine.start_auto_export(background=False)

    def flush() -> None:
        with handle_errors():
            engine.shutdown()

    ctx.call_on_close(flush)


@cli.command()
@click.option("--prefix", default="bd", help="Issue id prefix")
def init(prefix: str) -> None:
    """Initialize a new beads project."""
    root = Path.cwd() / BEADS_DIR
    if root.exists():
        console.print("[yellow]Beads already initialized[/yellow]")
        return
    with handle_errors():
        config = BeadsConfig(id_prefix=prefix).validate()
        storage = MarkdownStorage(root)
        storage.ensure_initialized()
        save_config(root, config)
    console.print(f"Initialized beads in {root}")


@cli.command()
@click.argument("title")
@click.option("-t", "--type", "issue_type", type=click.Choice(TYPE_CHOICES), default="task", help="Issue type")
@click.option("-p", "--priority", type=int, default=2, help="Priority (0=critical, 4=low)")
@click.option("-a", "--assignee", help="Assignee")
@click.option("-l", "--label", "labels", multiple=True, help="Add label (repeatable)")
@click.option("--id", "issue_id", help="Explicit issue id")
@click.option("-d", "--description", default="", help="Issue description")
@click.option(
    "-f",
    "--file",
    "file_path",
    type=click.Path(exists=False),
    help="Read description from file (use '-' for stdin)",
)
@click.option("--design", default="", help="Design notes")
@click.option("--acceptance", default="", help="Acceptance criteria")
@click.option(
    "--deps",
    multiple=True,
    help="Dependency as ID or TYPE:ID, e.g. blocks:bd-1 (repeatable)",
)
@click.pass_context
def create(
    ctx: click.Context,
    title: str,
    issue_type: str,
    priority: int,
    assignee: str | None,
    labels: tuple[str, ...],
    issue_id: str | None,
    description: str,
    file_path: str | None,
    design: str,
    acceptance: str,
    deps: tuple[str, ...],
) -> None:
    """Create a new issue."""
    service = get_service(ctx)

    if file_path:
        if file_path == "-":
            description = sys.stdin.read()
        else:
            path = Path(file_path)
            if not path.exists():
                raise click.ClickException(f"File not found: {file_path}")
            description = path.read_text()

    with handle_errors():
        issue = service.create_issue(
            title=title,
            description=description,
            priority=priority,
            type=issue_type,
            assignee=assignee,
            labels=list(labels),
            issue_id=issue_id,
            design=design,
            acceptance_criteria=acceptance,
            deps=[_parse_dep_spec(spec) for spec in deps],
        )
    console.print(f"Created [cyan]{issue.id}[/cyan]: {issue.title}")


def _parse_dep_spec(spec: str) -> tuple[str, str]:
    """'bd-1' -> ('bd-1', 'blocks'); 'related:bd-1' -> ('bd-1', 'related')."""
    dep_type, sep, target = spec.partition(":")
    if not sep:
        return spec, DependencyType.BLOCKS.value
    return target, dep_type


@cli.command()
@click.argument("issue_id")
@click.pass_context
def show(ctx: click.Context, issue_id: str) -> None:
    """Show issue details."""
    service = get_service(ctx)
    with handle_errors():
        issue = service.get_issue(issue_id)
        deps = service.get_dependencies(issue_id)
        dependents = service.get_dependents(issue_id)
        ready = service.is_ready(issue_id)

    console.print(f"[bold cyan]{issue.id}[/bold cyan]: {issue.title}")
    console.print(
        f"Status: {issue.status.value}  Priority: P{issue.priority}  Type: {issue.type.value}"
        + ("  [green]ready[/green]" if ready else "")
    )
    if issue.assignee:
        console.print(f"Assignee: {issue.assignee}")
    if issue.labels:
        console.print(f"Labels: {', '.join(issue.labels)}")
    if issue.closed_at:
        console.print(f"Closed: {issue.closed_at:%Y-%m-%d %H:%M} ({issue.close_reason})")
    for dep in deps:
        console.print(f"Depends on: {dep.to_id} ({dep.type.value})")
    for dep in dependents:
        console.print(f"Dependent: {dep.from_id} ({dep.type.value})")
    if issue.description:
        console.print(f"\n{issue.description}")
    if issue.design:
        console.print(f"\n[bold]Design[/bold]\n{issue.design}")
    if issue.notes:
        console.print(f"\n[bold]Notes[/bold]\n{issue.notes}")
    if issue.acceptance_criteria:
        console.print(f"\n[bold]Acceptance Criteria[/bold]\n{issue.acceptance_criteria}")


def _build_filter(
    status: str | None,
    priority: int | None,
    assignee: str | None,
    issue_type: str | None,
    labels: tuple[str, ...],
    limit: int | None,
) -> IssueFilter:
    return IssueFilter(
        status=Status(status) if status else None,
        priority=priority,
        assignee=assignee,
        type=IssueType(issue_type) if issue_type else None,
        labels=list(labels),
        limit=limit,
    )


def filter_options(func):
    """Shared filter options for list/ready/export."""
    func = click.option("-n", "--limit", type=int, help="Max number of issues")(func)
    func = click.option("-l", "--label", "labels", multiple=True, help="Filter by label")(func)
    func = click.option("-t", "--type", "issue_type", type=click.Choice(TYPE_CHOICES), help="Filter by type")(func)
    func = click.option("-a", "--assignee", help="Filter by assignee")(func)
    func = click.option("-p", "--priority", type=int, help="Filter by priority")(func)
    return func


@cli.command("list")
@click.option("-s", "--status", type=click.Choice(STATUS_CHOICES), help="Filter by status")
@filter_options
@click.pass_context
def list_issues(
    ctx: click.Context,
    status: str | None,
    priority: int | None,
    assignee: str | None,
    issue_type: str | None,
    labels: tuple[str, ...],
    limit: int | None,
) -> None:
    """List issues with optional filters."""
    service = get_service(ctx)
    with handle_errors():
        issues = service.list_issues(_build_filter(status, priority, assignee, issue_type, labels, limit))
    if not issues:
        console.print("No issues found.")
        return
    _print_issue_table(issues)


@cli.command()
@filter_options
@click.pass_context
def ready(
    ctx: click.Context,
    priority: int | None,
    assignee: str | None,
    issue_type: str | None,
    labels: tuple[str, ...],
    limit: int | None,
) -> None:
    """List unblocked issues ready for work."""
    service = get_service(ctx)
    with handle_errors():
        issues = service.get_ready_issues(_build_filter(None, priority, assignee, issue_type, labels, limit))
    if not issues:
        console.print("No ready issues found.")
        return
    _print_issue_table(issues)


@cli.command()
@click.pass_context
def blocked(ctx: click.Context) -> None:
    """List open issues that are blocked, with their blockers."""
    service = get_service(ctx)
    with handle_errors():
        entries = service.get_blocked_issues()
    if not entries:
        console.print("No blocked issues.")
        return

    table = Table()
    table.add_column("ID", style="cyan")
    table.add_column("P", justify="center")
    table.add_column("Title")
    table.add_column("Blocked by")
    table.add_column("Blocked ancestors")
    for entry in entries:
        table.add_row(
            entry.issue.id,
            str(entry.issue.priority),
            entry.issue.title[:50],
            ", ".join(entry.blockers),
            ", ".join(entry.blocked_ancestors),
        )
    console.print(table)


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show issue counts."""
    service = get_service(ctx)
    with handle_errors():
        result = service.stats()
    console.print(f"Total: {result.total}")
    console.print(f"Open: {result.open}  (ready: {result.ready}, blocked: {result.blocked})")
    console.print(f"In progress: {result.in_progress}")
    console.print(f"Marked blocked: {result.blocked_status}")
    console.print(f"Closed: {result.closed}")


@cli.command()
@click.argument("issue_id")
@click.option("--title", help="New title")
@click.option("-s", "--status", type=click.Choice([s for s in STATUS_CHOICES if s != "closed"]), help="New status")
@click.option("-p", "--priority", type=int, help="New priority")
@click.option("-t", "--type", "issue_type", type=click.Choice(TYPE_CHOICES), help="New type")
@click.option("-a", "--assignee", help="New assignee")
@click.option("-d", "--description", help="New description")
@click.option("--design", help="New design notes")
@click.option("--notes", help="New notes")
@click.option("--acceptance", help="New acceptance criteria")
@click.option("--estimate", type=float, help="Estimated minutes")
@click.pass_context
def update(
    ctx: click.Context,
    issue_id: str,
    title: str | None,
    status: str | None,
    priority: int | None,
    issue_type: str | None,
    assignee: str | None,
    description: str | None,
    design: str | None,
    notes: str | None,
    acceptance: str | None,
    estimate: float | None,
) -> None:
    """Update fields of an issue."""
    service = get_service(ctx)
    fields = {
        "title": title,
        "status": status,
        "priority": priority,
        "type": issue_type,
        "assignee": assignee,
        "description": description,
        "design": design,
        "notes": notes,
        "acceptance_criteria": acceptance,
        "estimated_minutes": estimate,
    }
    fields = {name: value for name, value in fields.items() if value is not None}
    if not fields:
        raise click.UsageError("Nothing to update.")
    with handle_errors():
        issue = service.update_issue(issue_id, **fields)
    console.print(f"Updated [cyan]{issue.id}[/cyan]: {issue.title}")


@cli.command()
@click.argument("issue_id")
@click.option("-r", "--reason", required=True, help="Why the issue is closed")
@click.pass_context
def close(ctx: click.Context, issue_id: str, reason: str) -> None:
    """Close an issue."""
    service = get_service(ctx)
    with handle_errors():
        issue = service.close_issue(issue_id, reason)
    console.print(f"Closed [cyan]{issue.id}[/cyan]: {issue.title}")


@cli.command()
@click.argument("issue_id")
@click.pass_context
def reopen(ctx: click.Context, issue_id: str) -> None:
    """Reopen a closed issue."""
    service = get_service(ctx)
    with handle_errors():
        issue = service.reopen_issue(issue_id)
    console.print(f"Reopened [cyan]{issue.id}[/cyan]: {issue.title}")


@cli.group()
def dep() -> None:
    """Manage issue dependencies."""
    pass


@dep.command("add")
@click.argument("from_id")
@click.argument("to_id")
@click.option("-t", "--type", "dep_type", type=click.Choice(DEP_TYPE_CHOICES), default="blocks", help="Edge type")
@click.pass_context
def dep_add(ctx: click.Context, from_id: str, to_id: str, dep_type: str) -> None:
    """Add edge FROM_ID -> TO_ID (for blocks: FROM_ID is blocked by TO_ID)."""
    service = get_service(ctx)
    with handle_errors():
        added = service.add_dependency(from_id, to_id, dep_type)
    if added:
        console.print(f"Added [cyan]{from_id}[/cyan] -> [cyan]{to_id}[/cyan] ({dep_type})")
    else:
        console.print(f"[yellow]{from_id} -> {to_id} ({dep_type}) already exists[/yellow]")


@dep.command("remove")
@click.argument("from_id")
@click.argument("to_id")
@click.pass_context
def dep_remove(ctx: click.Context, from_id: str, to_id: str) -> None:
    """Remove every edge FROM_ID -> TO_ID."""
    service = get_service(ctx)
    with handle_errors():
        removed = service.remove_dependency(from_id, to_id)
    types = ", ".join(dep.type.value for dep in removed)
    console.print(f"Removed [cyan]{from_id}[/cyan] -> [cyan]{to_id}[/cyan] ({types})")


@dep.command("tree")
@click.argument("issue_id")
@click.option("--max-depth", type=int, default=50, help="Maximum depth to show")
@click.pass_context
def dep_tree(ctx: click.Context, issue_id: str, max_depth: int) -> None:
    """Show what ISSUE_ID is blocked by, recursively."""
    service = get_service(ctx)
    with handle_errors():
        root = service.dependency_tree(issue_id, max_depth=max_depth)
    tree = Tree(_tree_label(root))
    _add_tree_children(tree, root)
    console.print(tree)


def _tree_label(node: TreeNode) -> str:
    marker = " [green]ready[/green]" if node.ready else ""
    repeated = " [dim](shown above)[/dim]" if node.repeated else ""
    return f"[cyan]{node.issue.id}[/cyan] {node.issue.title} [{node.issue.status.value}]{marker}{repeated}"


def _add_tree_children(tree: Tree, node: TreeNode) -> None:
    for child in node.children:
        _add_tree_children(tree.add(_tree_label(child)), child)


@dep.command("cycles")
@click.pass_context
def dep_cycles(ctx: click.Context) -> None:
    """Scan for dependency cycles among blocks edges."""
    service = get_service(ctx)
    with handle_errors():
        cycles = service.find_cycles()
    if not cycles:
        console.print("No dependency cycles found.")
        return
    console.print(f"[red]Found {len(cycles)} cycle(s):[/red]")
    for cycle in cycles:
        console.print("  " + " -> ".join(cycle + cycle[:1]))
    ctx.exit(7)


@cli.command("export")
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), help="Output file (default: .beads/issues.jsonl)")
@click.option("-s", "--status", type=click.Choice(STATUS_CHOICES), help="Filter by status")
@filter_options
@click.pass_context
def export_cmd(
    ctx: click.Context,
    output: Path | None,
    status: str | None,
    priority: int | None,
    assignee: str | None,
    issue_type: str | None,
    labels: tuple[str, ...],
    limit: int | None,
) -> None:
    """Export issues to JSONL."""
    engine = get_engine(ctx)
    filtered = any([status, priority is not None, assignee, issue_type, labels, limit is not None])
    with handle_errors():
        issue_filter = _build_filter(status, priority, assignee, issue_type, labels, limit) if filtered else None
        result = engine.export(output, issue_filter)
    console.print(f"Exported {result.issue_count} issue(s) to {result.path}")


@cli.command("import")
@click.option("-i", "--input", "input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Input file (default: .beads/issues.jsonl)")
@click.option("--skip-existing", is_flag=True, help="Only create issues whose ids are new")
@click.option("--dry-run", is_flag=True, help="Report what would change without applying")
@click.option("--resolve-collisions", is_flag=True, help="Give colliding issues fresh ids")
@click.option("--strict", is_flag=True, help="Fail on collisions instead of overwriting")
@click.pass_context
def import_cmd(
    ctx: click.Context,
    input_path: Path | None,
    skip_existing: bool,
    dry_run: bool,
    resolve_collisions: bool,
    strict: bool,
) -> None:
    """Import issues from JSONL."""
    engine = get_engine(ctx)
    with handle_errors():
        result = engine.import_file(
            input_path,
            skip_existing=skip_existing,
            dry_run=dry_run,
            resolve_collisions=resolve_collisions,
            strict=strict,
        )

    plan = result.plan
    if dry_run:
        console.print("[bold]Dry run[/bold] - no changes applied")
    console.print(f"New: {len(plan.new)}  Exact matches: {len(plan.exact)}  Collisions: {len(plan.collisions)}")
    for issue_id in plan.collisions:
        console.print(f"  collision: [yellow]{issue_id}[/yellow]")
    for entry in result.remap_entries:
        console.print(
            f"  remap: [yellow]{entry.old_id}[/yellow] -> [cyan]{entry.new_id}[/cyan] "
            f"({entry.reference_count} reference(s))"
        )
    if not dry_run:
        console.print(
            f"Created {len(result.created)}, updated {len(result.updated)}, "
            f"unchanged {len(result.unchanged)}, skipped {len(result.skipped)}"
        )
    if result.cycles:
        console.print(f"[red]Warning: {len(result.cycles)} dependency cycle(s) after import; run 'bd dep cycles'[/red]")


def _print_issue_table(issues: list[Issue]) -> None:
    """Print issues as a formatted table."""
    table = Table()
    table.add_column("ID", style="cyan")
    table.add_column("P", justify="center")
    table.add_column("Status")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Assignee")
    table.add_column("Labels")

    for issue in issues:
        table.add_row(
            issue.id,
            str(issue.priority),
            issue.status.value,
            issue.type.value,
            issue.title[:50],
            issue.assignee or "",
            ", ".join(issue.labels),
        )
    console.print(table)


if __name__ == "__main__":
    cli()
