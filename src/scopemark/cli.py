"""CLI interface for scopemark."""

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from scopemark import doctor, scope, syntax
from scopemark.config import CONFIG_FILENAME, generate_default_file, set_option
from scopemark.context import ProjectContext, find_project_root
from scopemark.errors import ScopemarkError, UnresolvableError
from scopemark.index import MAX_KEY_LENGTH, MIN_KEY_LENGTH
from scopemark.log import setup_logging
from scopemark.models import DESCRIPTION_BLOCK, Issue, Location, ScopeReference, Status
from scopemark.prompt import ClickPrompter
from scopemark.service import IssueService

console = Console()


def get_project(ctx: click.Context) -> ProjectContext:
    """Get the project context from the click context."""
    return ctx.obj["project"]


def get_service(ctx: click.Context) -> IssueService:
    """Get service from context."""
    return ctx.obj["service"]


@click.group(invoke_without_command=True)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging on stderr")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """scopemark - code review issues pinned to functions and classes, not lines."""
    ctx.ensure_object(dict)
    root = find_project_root()
    if root is None:
        if ctx.invoked_subcommand not in ("init", None):
            raise click.ClickException("Not in a scopemark project. Run 'scopemark init' first.")
        ctx.obj["project"] = None
        ctx.obj["service"] = None
    else:
        try:
            project = ProjectContext.load(root)
        except ScopemarkError as e:
            raise click.ClickException(str(e))
        setup_logging(project.config, project.root, console=Console(stderr=True), verbose=verbose)
        ctx.obj["project"] = project
        ctx.obj["service"] = IssueService(project.storage, project.index)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@cli.command()
def init() -> None:
    """Initialize a new scopemark project in the current directory."""
    root = Path.cwd()
    config_path = root / CONFIG_FILENAME
    if config_path.exists():
        console.print("[yellow]scopemark already initialized[/yellow]")
        return
    config_path.write_text(generate_default_file(), encoding="utf-8")
    project = ProjectContext.load(root)
    try:
        project.storage.ensure_initialized()
    except ScopemarkError as e:
        raise click.ClickException(str(e))
    console.print(f"Initialized scopemark in {escape(str(root))} (issues in {escape(project.config.issue_dir)}/)")


def _project_path(project: ProjectContext, file: str) -> str:
    """Project-relative form of a path given on the command line."""
    path = Path(file)
    if not path.is_absolute():
        path = Path.cwd() / path
    relative = project.relative_path(path)
    if Path(relative).is_absolute():
        raise click.ClickException(f"{file} is outside the project at {project.root}")
    return relative


def _parse_tree(project: ProjectContext, filepath: str) -> syntax.SyntaxTree:
    try:
        return syntax.parse_file(project.absolute_path(filepath))
    except ScopemarkError as e:
        raise click.ClickException(str(e))


def _parse_range(value: str) -> tuple[int, int]:
    start, sep, end = value.partition(":")
    if not sep or not start.isdigit() or not end.isdigit() or int(start) < 1 or int(end) < int(start):
        raise click.BadParameter("expected START:END line numbers, e.g. 10:24", param_hint="--range")
    return int(start), int(end)


def _read_description(description: str, file_path: str | None) -> str:
    # File/stdin takes precedence over -d flag
    if not file_path:
        return description
    if file_path == "-":
        return sys.stdin.read()
    path = Path(file_path)
    if not path.exists():
        raise click.ClickException(f"File not found: {file_path}")
    return path.read_text(encoding="utf-8")


@cli.command()
@click.argument("file")
@click.option("-l", "--line", type=click.IntRange(min=1), help="Line of the cursor (1-based)")
@click.option("-c", "--column", type=click.IntRange(min=1), default=1, help="Column of the cursor (1-based)")
@click.option("-r", "--range", "line_range", help="Selected lines START:END (1-based, inclusive)")
@click.option("-d", "--description", default="", help="Issue description")
@click.option(
    "-f",
    "--file",
    "file_path",
    type=click.Path(exists=False),
    help="Read description from file (use '-' for stdin)",
)
@click.pass_context
def create(
    ctx: click.Context,
    file: str,
    line: int | None,
    column: int,
    line_range: str | None,
    description: str,
    file_path: str | None,
) -> None:
    """Create an issue on FILE.

    With --line the issue is attached to the scopes enclosing that position;
    with --range, to the innermost scope of every selected line. Without
    either the issue is file-scoped.
    """
    project = get_project(ctx)
    service = get_service(ctx)
    if line is not None and line_range is not None:
        raise click.UsageError("--line and --range are mutually exclusive")

    filepath = _project_path(project, file)
    if not project.absolute_path(filepath).is_file():
        raise click.ClickException(f"File not found: {file}")
    description = _read_description(description, file_path)

    references: list[ScopeReference] = []
    if line is not None or line_range is not None:
        try:
            tree = syntax.parse_file(project.absolute_path(filepath))
        except UnresolvableError as e:
            console.print(f"[yellow]{escape(str(e))}; creating a file-scoped issue[/yellow]")
        else:
            if line_range is not None:
                start, end = _parse_range(line_range)
                references = scope.from_range(tree, start - 1, end - 1)
            else:
                references = scope.from_position(tree, line - 1, column - 1)

    try:
        issue = service.create_issue(Location(filepath=filepath, reference=references), description)
    except ScopemarkError as e:
        raise click.ClickException(str(e))
    console.print(f"Created [cyan]{issue.id}[/cyan] on {escape(filepath)} ({escape(_scope_label(issue))})")


def _scope_label(issue: Issue) -> str:
    if issue.location.is_file_scoped:
        return "file"
    return issue.location.reference[0].symbol


@cli.command()
@click.argument("issue_id")
@click.pass_context
def show(ctx: click.Context, issue_id: str) -> None:
    """Show issue details."""
    service = get_service(ctx)
    try:
        issue = service.get_issue(issue_id)
    except ScopemarkError as e:
        raise click.ClickException(str(e))

    console.print(f"[bold cyan]{issue.id}[/bold cyan]  {issue.status.value}")
    console.print(f"File: {escape(issue.location.filepath)}")
    if issue.location.is_file_scoped:
        console.print("Scope: (whole file)")
    else:
        console.print("Scope:")
        for reference in issue.location.reference:
            console.print(f"  - {reference}", markup=False)
    for label, content in issue.blocks.items():
        console.print(f"\n[bold]{escape(label)}[/bold]")
        console.print(content, markup=False)


@cli.command("list")
@click.option("--file", "file", help="Only issues on this file (uses the index)")
@click.option("-l", "--line", type=click.IntRange(min=1), help="With --file: only issues under the cursor at this line (1-based)")
@click.option("-c", "--column", type=click.IntRange(min=1), default=1, help="Cursor column (1-based)")
@click.option("-s", "--status", type=click.Choice(["open", "closed"]), help="Filter by status")
@click.pass_context
def list_issues(ctx: click.Context, file: str | None, line: int | None, column: int, status: str | None) -> None:
    """List issues with optional filters.

    With --file and --line, only file-scoped issues and issues referencing a
    scope that encloses the cursor are listed.
    """
    project = get_project(ctx)
    service = get_service(ctx)
    if line is not None and not file:
        raise click.UsageError("--line requires --file")
    wanted = Status.from_index_value(status) if status else None
    if file:
        filepath = _project_path(project, file)
        issues = service.issues_for_file(filepath, wanted)
        if line is not None:
            tree = _parse_tree(project, filepath)
            cursor_refs = set(scope.from_position(tree, line - 1, column - 1))
            issues = [i for i in issues if scope.is_relevant(i, cursor_refs)]
    else:
        issues = service.list_issues(wanted)
    if not issues:
        console.print("No issues found.")
        return
    _print_issue_table(issues, project.config.description_length)


@cli.command()
@click.argument("issue_id")
@click.option("-m", "--message", default="", help="Resolution note")
@click.pass_context
def resolve(ctx: click.Context, issue_id: str, message: str) -> None:
    """Close an open issue."""
    service = get_service(ctx)
    try:
        issue = service.resolve_issue(issue_id, message)
    except ScopemarkError as e:
        raise click.ClickException(str(e))
    console.print(f"Resolved [cyan]{issue.id}[/cyan]")


@cli.command()
@click.argument("issue_id")
@click.pass_context
def reopen(ctx: click.Context, issue_id: str) -> None:
    """Reopen a closed issue."""
    service = get_service(ctx)
    try:
        issue = service.reopen_issue(issue_id)
    except ScopemarkError as e:
        raise click.ClickException(str(e))
    console.print(f"Reopened [cyan]{issue.id}[/cyan]")


@cli.command()
@click.argument("issue_id")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, issue_id: str, yes: bool) -> None:
    """Delete an issue."""
    service = get_service(ctx)
    if not yes:
        click.confirm(f"Delete issue {issue_id}?", abort=True)
    try:
        removed_dir = service.delete_issue(issue_id)
    except ScopemarkError as e:
        raise click.ClickException(str(e))
    console.print(f"Deleted [cyan]{issue_id}[/cyan]")
    if not removed_dir:
        console.print("[yellow]Other files remain in the issue directory and were kept[/yellow]")


@cli.command()
@click.argument("issue_id")
@click.option("--label", default=DESCRIPTION_BLOCK, show_default=True, help="Block to edit")
@click.pass_context
def edit(ctx: click.Context, issue_id: str, label: str) -> None:
    """Edit a body block of an issue in $EDITOR. Saving it empty removes the block."""
    service = get_service(ctx)
    try:
        issue = service.get_issue(issue_id)
        edited = click.edit(issue.blocks.get(label, ""), extension=".md")
        if edited is None:
            console.print("No changes.")
            return
        content = edited.strip("\n")
        if content:
            service.set_block(issue_id, label, content)
            console.print(f"Updated [bold]{escape(label)}[/bold] of [cyan]{issue_id}[/cyan]")
        else:
            service.remove_block(issue_id, label)
            console.print(f"Removed [bold]{escape(label)}[/bold] from [cyan]{issue_id}[/cyan]")
    except (ValueError, ScopemarkError) as e:
        raise click.ClickException(str(e))


@cli.group()
def ref() -> None:
    """Manage the scope references of an issue."""
    pass


@ref.command("add")
@click.argument("issue_id")
@click.argument("reference")
@click.pass_context
def ref_add(ctx: click.Context, issue_id: str, reference: str) -> None:
    """Attach REFERENCE (kind|symbol) to ISSUE_ID."""
    service = get_service(ctx)
    try:
        issue = service.add_reference(issue_id, ScopeReference.parse(reference))
    except ScopemarkError as e:
        raise click.ClickException(str(e))
    console.print(f"{issue.id} references: {_references_text(issue)}", markup=False)


@ref.command("rm")
@click.argument("issue_id")
@click.argument("reference")
@click.pass_context
def ref_rm(ctx: click.Context, issue_id: str, reference: str) -> None:
    """Detach REFERENCE (kind|symbol) from ISSUE_ID."""
    service = get_service(ctx)
    try:
        issue = service.remove_reference(issue_id, ScopeReference.parse(reference))
    except ScopemarkError as e:
        raise click.ClickException(str(e))
    console.print(f"{issue.id} references: {_references_text(issue)}", markup=False)


def _references_text(issue: Issue) -> str:
    if issue.location.is_file_scoped:
        return "(file-scoped)"
    return ", ".join(str(r) for r in issue.location.reference)


@cli.command()
@click.argument("file")
@click.option("-l", "--line", type=click.IntRange(min=1), help="Show the chain enclosing this line (1-based)")
@click.option("-c", "--column", type=click.IntRange(min=1), default=1, help="Column (1-based)")
@click.pass_context
def scopes(ctx: click.Context, file: str, line: int | None, column: int) -> None:
    """List the named scopes in FILE, or the chain at a position."""
    project = get_project(ctx)
    tree = _parse_tree(project, _project_path(project, file))
    if line is not None:
        refs = scope.from_position(tree, line - 1, column - 1)
        if not refs:
            console.print("(file scope)")
    else:
        refs = scope.all_scope_references(tree)
    for reference in refs:
        console.print(str(reference), markup=False)


@cli.command()
@click.argument("file")
@click.pass_context
def annotate(ctx: click.Context, file: str) -> None:
    """Show where each issue on FILE lands in the current source."""
    project = get_project(ctx)
    service = get_service(ctx)
    filepath = _project_path(project, file)
    tree = _parse_tree(project, filepath)
    annotations = service.annotations(filepath, tree)
    if not annotations:
        console.print("No issues found.")
        return

    table = Table()
    table.add_column("Line", justify="right")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Scope")
    table.add_column("Summary")
    for note in annotations:
        scope_text = escape(_scope_label(note.issue))
        if not note.resolved:
            scope_text = f"[red]{scope_text} (unresolved)[/red]"
        table.add_row(
            str(note.line + 1),
            note.issue.id,
            note.issue.status.value,
            scope_text,
            escape(note.issue.summary(project.config.description_length)),
        )
    console.print(table)


@cli.command("doctor")
@click.option("--repair", is_flag=True, help="Interactively fix the problems found")
@click.option("--evict", is_flag=True, help="Drop index entries whose issue no longer exists")
@click.pass_context
def doctor_cmd(ctx: click.Context, repair: bool, evict: bool) -> None:
    """Check issues against the index and the source files."""
    project = get_project(ctx)
    try:
        if evict:
            eviction = doctor.evict_stale_index(project)
            console.print(
                f"Checked {eviction.checked} index entr(ies), evicted {len(eviction.evicted)}"
            )
        results = doctor.scan(project)
        _print_scan(results)
        if repair and results.problem_count:
            report = doctor.repair(project, results, ClickPrompter(console))
            _print_repair(report)
            results = doctor.scan(project)
    except ScopemarkError as e:
        raise click.ClickException(str(e))

    if results.problem_count or results.errors:
        ctx.exit(1)


def _print_scan(results: doctor.ScanResults) -> None:
    console.print(f"Scanned {results.total} issue(s): {len(results.healthy)} healthy")
    table = Table()
    table.add_column("Problem")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("File")
    table.add_column("Details")
    for finding in results.missing_file:
        table.add_row("missing file", finding.issue_id, escape(finding.filepath), "")
    for finding in results.broken_refs:
        table.add_row(
            "broken references",
            finding.issue_id,
            escape(finding.filepath),
            escape(", ".join(str(r) for r in finding.broken_refs)),
        )
    for finding in results.missing_index:
        table.add_row("not indexed", finding.issue_id, escape(finding.filepath), "")
    for issue_id, message in results.errors:
        table.add_row("[red]unreadable[/red]", issue_id, "", escape(message))
    if table.row_count:
        console.print(table)


def _print_repair(report: doctor.RepairReport) -> None:
    for label, ids in (
        ("Re-indexed", report.reindexed),
        ("Relocated", report.relocated),
        ("Replaced references in", report.references_replaced),
        ("Made file-scoped", report.file_scoped),
        ("Deleted", report.deleted),
        ("Skipped", report.skipped),
    ):
        if ids:
            console.print(f"{label}: {', '.join(sorted(set(ids)))}")


@cli.group("index")
def index_group() -> None:
    """Maintain the file path index."""
    pass


@index_group.command("rebuild")
@click.pass_context
def index_rebuild(ctx: click.Context) -> None:
    """Rebuild the index from the issue files."""
    service = get_service(ctx)
    try:
        count = service.rebuild_index()
    except ScopemarkError as e:
        raise click.ClickException(str(e))
    console.print(f"Indexed {count} issue(s)")


@index_group.command("migrate")
@click.argument("length", type=click.IntRange(MIN_KEY_LENGTH, MAX_KEY_LENGTH))
@click.pass_context
def index_migrate(ctx: click.Context, length: int) -> None:
    """Re-shard the index with a new hash key LENGTH and save it to the config."""
    project = get_project(ctx)
    try:
        set_option(project.root, "index", "key_length", length)
    except ScopemarkError as e:
        raise click.ClickException(str(e))
    try:
        collided = project.index.migrate_key_length(length)
    except ScopemarkError as e:
        raise click.ClickException(
            f"{e}\n{CONFIG_FILENAME} now sets key_length = {length}; run 'scopemark index rebuild' to regenerate the index."
        )
    console.print(f"Index key length is now {length}")
    if collided:
        console.print("[yellow]Some shards still hold more than one file[/yellow]")


def _print_issue_table(issues: list[Issue], description_length: int) -> None:
    """Print issues as a formatted table."""
    table = Table()
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("File")
    table.add_column("Scope")
    table.add_column("Summary")

    for issue in issues:
        table.add_row(
            issue.id,
            issue.status.value,
            escape(issue.location.filepath),
            escape(_scope_label(issue)),
            escape(issue.summary(description_length)),
        )
    console.print(table)


if __name__ == "__main__":
    cli()
