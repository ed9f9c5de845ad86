"""ThreatLink - Command Line Interface."""

import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError

from . import __version__
from .config import Settings, get_settings
from .diff import diff_models
from .errors import ThreatLinkError
from .logging_config import setup_logging
from .merge import diff_merged_reports, merge_reports
from .parser import ProjectParseResult, parse_project
from .report_generator import (
    format_diff, format_diff_markdown, format_merge_diff, format_merge_summary, format_model_summary,
)
from .schemas import MergedReport, ReportMetadata, ThreatModel
from .validate import find_accepted_without_audit, find_dangling_refs, find_unmitigated_exposures
from .workspace import WorkspaceConfigError, find_workspace_config, load_report, load_workspace_config


@click.group()
@click.version_option(version=__version__)
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
              help='Override THREATLINK_LOG_LEVEL')
@click.option('--log-format', type=click.Choice(['json', 'console']), help='Override THREATLINK_LOG_FORMAT')
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str], log_format: Optional[str]):
    """ThreatLink - threat models from security annotations in source code."""
    try:
        settings = get_settings()
    except ValidationError as e:
        click.echo(click.style(f'Invalid configuration: {e}', fg='red'), err=True)
        sys.exit(2)
    setup_logging(log_level or settings.log_level, log_format or settings.log_format)
    ctx.obj = settings


def _scan(
    settings: Settings,
    project_root: str,
    project: Optional[str],
    include: tuple[str, ...] = (),
    exclude: tuple[str, ...] = (),
    workers: Optional[int] = None,
) -> ProjectParseResult:
    return parse_project(
        project_root,
        include=list(include) or settings.include,
        exclude=list(exclude) or settings.exclude,
        project=project or Path(project_root).resolve().name,
        workers=workers or settings.parse_workers,
        coverage_window=settings.coverage_window,
    )


def _load_model(settings: Settings, target: str) -> ThreatModel:
    """A directory is scanned; a file is read as a saved report."""
    path = Path(target)
    if path.is_dir():
        return _scan(settings, target, None).model
    return load_report(path).model


def _print_diagnostics(diagnostics) -> None:
    for d in diagnostics:
        color = 'red' if d.level == 'error' else 'yellow'
        click.echo(click.style(f'  {d.level}: {d.file}:{d.line} {d.message}', fg=color), err=True)


@cli.command()
@click.argument('project_root', type=click.Path(exists=True, file_okay=False, dir_okay=True))
@click.option('--project', '-p', help='Project name (default: directory name)')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write the report JSON here')
@click.option('--format', '-f', 'output_format', type=click.Choice(['json', 'summary']), default='json')
@click.option('--include', multiple=True, help='Glob of files to scan (repeatable)')
@click.option('--exclude', multiple=True, help='Glob of files to skip (repeatable)')
@click.option('--workers', type=click.IntRange(1, 64), help='Parallel file parsers')
@click.option('--repo', help='Repository name recorded in report metadata')
@click.option('--commit', 'commit_sha', help='Commit identifier recorded in report metadata')
@click.option('--branch', help='Branch recorded in report metadata')
@click.pass_obj
def parse(settings: Settings, project_root: str, project: Optional[str], output: Optional[str],
          output_format: str, include: tuple, exclude: tuple, workers: Optional[int],
          repo: Optional[str], commit_sha: Optional[str], branch: Optional[str]):
    """Extract the threat model from a source tree."""
    try:
        result = _scan(settings, project_root, project, include, exclude, workers)
    except ThreatLinkError as e:
        click.echo(click.style(f'Parse failed: {e}', fg='red'), err=True)
        sys.exit(1)
    try:
        workspace = find_workspace_config(project_root)
    except WorkspaceConfigError:
        # already reported as a diagnostic
        workspace = None

    model = result.model
    metadata = ReportMetadata(
        tool_version=__version__,
        repo=repo or (workspace.this_repo if workspace else model.project),
        commit_sha=commit_sha,
        branch=branch,
        generated_at=model.generated_at,
        workspace=workspace.workspace if workspace else None,
    )
    model = model.model_copy(update={'metadata': metadata})

    if output_format == 'summary':
        click.echo(format_model_summary(model, result.diagnostics), nl=False)
    elif output:
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        Path(output).write_text(model.model_dump_json(indent=2), encoding='utf-8')
        click.echo(click.style('Threat model extracted!', fg='green'))
        click.echo(f'  Output: {output}')
        click.echo(f'  Annotations: {model.annotations_parsed}')
    else:
        click.echo(model.model_dump_json(indent=2))

    if output_format != 'summary' and result.diagnostics:
        click.echo(f'{len(result.diagnostics)} diagnostic(s):', err=True)
        _print_diagnostics(result.diagnostics)


@cli.command()
@click.argument('project_root', type=click.Path(exists=True, file_okay=False, dir_okay=True))
@click.option('--strict', is_flag=True, help='Also fail on unmitigated exposures')
@click.pass_obj
def validate(settings: Settings, project_root: str, strict: bool):
    """Validate annotations: syntax, dangling references, governance gaps."""
    try:
        result = _scan(settings, project_root, None)
    except ThreatLinkError as e:
        click.echo(click.style(f'Validation failed: {e}', fg='red'), err=True)
        sys.exit(1)

    model = result.model
    diagnostics = sorted(
        [*result.diagnostics, *find_dangling_refs(model), *find_accepted_without_audit(model)],
        key=lambda d: (d.file, d.line),
    )
    unmitigated = find_unmitigated_exposures(model)
    errors = [d for d in diagnostics if d.level == 'error']

    if diagnostics:
        _print_diagnostics(diagnostics)
    if unmitigated:
        click.echo(click.style(f'{len(unmitigated)} unmitigated exposure(s):', fg='yellow'))
        for e in unmitigated:
            click.echo(f'  [{e.severity or "unset"}] {e.asset} -> {e.threat} ({e.location.file}:{e.location.line})')

    if errors or (strict and unmitigated):
        click.echo(click.style(
            f'Validation failed: {len(errors)} error(s), {len(unmitigated)} unmitigated exposure(s)', fg='red',
        ), err=True)
        sys.exit(1)

    click.echo(click.style('Validation successful!', fg='green'))
    click.echo(f'  Annotations: {model.annotations_parsed}')
    click.echo(f'  Warnings: {len(diagnostics)}')


@cli.command()
@click.argument('previous', type=click.Path(exists=True))
@click.argument('current', type=click.Path(exists=True))
@click.option('--markdown', is_flag=True, help='Markdown output for pull request comments')
@click.option('--json', 'as_json', is_flag=True, help='Machine-readable output')
@click.option('--fail-on-new', is_flag=True, help='Exit 1 when new unmitigated exposures appear')
@click.pass_obj
def diff(settings: Settings, previous: str, current: str, markdown: bool, as_json: bool, fail_on_new: bool):
    """Compare two threat models (project directories or saved report JSON files)."""
    try:
        before = _load_model(settings, previous)
        after = _load_model(settings, current)
    except ThreatLinkError as e:
        click.echo(click.style(f'Diff failed: {e}', fg='red'), err=True)
        sys.exit(1)

    result = diff_models(before, after)
    if as_json:
        click.echo(result.model_dump_json(indent=2))
    elif markdown:
        click.echo(format_diff_markdown(result), nl=False)
    else:
        click.echo(format_diff(result), nl=False)

    if fail_on_new and result.new_unmitigated_exposures:
        sys.exit(1)


@cli.command()
@click.argument('reports', nargs=-1, type=click.Path())
@click.option('--manifest', type=click.Path(exists=True, dir_okay=False), help='Workspace manifest listing expected repos')
@click.option('--workspace', '-w', help='Workspace name')
@click.option('--stale-hours', type=float, help='Flag reports older than this (default from settings)')
@click.option('--tie-break', type=click.Choice(['input_order', 'alphabetical']), default='input_order',
              help='Owner of a contested tag when no repo name matches its prefix')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write the merged report JSON here')
@click.option('--summary', is_flag=True, help='Print a markdown summary instead of JSON')
@click.pass_obj
def merge(settings: Settings, reports: tuple, manifest: Optional[str], workspace: Optional[str],
          stale_hours: Optional[float], tie_break: str, output: Optional[str], summary: bool):
    """Merge per-repository report JSON files into one workspace report."""
    expected = None
    if manifest:
        try:
            config = load_workspace_config(manifest)
        except ThreatLinkError as e:
            click.echo(click.style(f'Merge failed: {e}', fg='red'), err=True)
            sys.exit(1)
        expected = config.repo_names
        workspace = workspace or config.workspace

    if not reports and not expected:
        click.echo(click.style('No report files given.', fg='yellow'), err=True)
        sys.exit(1)

    merged = merge_reports(
        list(reports),
        workspace=workspace,
        expected_repos=expected,
        stale_threshold_hours=stale_hours or settings.stale_threshold_hours,
        tie_break=tie_break,
    )

    if output:
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        Path(output).write_text(merged.model_dump_json(indent=2), encoding='utf-8')
    if summary:
        click.echo(format_merge_summary(merged), nl=False)
    elif output:
        t = merged.totals
        click.echo(click.style('Merge complete!', fg='green'))
        click.echo(f'  Output: {output}')
        click.echo(f'  Repos: {t.repos_loaded}/{t.repos} loaded')
        click.echo(f'  Warnings: {len(merged.warnings)}')
    else:
        click.echo(merged.model_dump_json(indent=2))

    if merged.totals.repos_loaded == 0:
        sys.exit(1)


def _load_merged(path: str) -> MergedReport:
    try:
        return MergedReport.model_validate_json(Path(path).read_text(encoding='utf-8'))
    except (OSError, ValidationError) as e:
        click.echo(click.style(f'Cannot load merged report {path}: {e}', fg='red'), err=True)
        sys.exit(1)


@cli.command('merge-diff')
@click.argument('current', type=click.Path(exists=True, dir_okay=False))
@click.argument('previous', type=click.Path(exists=True, dir_okay=False))
@click.option('--json', 'as_json', is_flag=True, help='Machine-readable output')
def merge_diff(current: str, previous: str, as_json: bool):
    """Summarize what changed between two merged reports."""
    current_report = _load_merged(current)
    previous_report = _load_merged(previous)
    summary = diff_merged_reports(current_report, previous_report)
    if as_json:
        click.echo(summary.model_dump_json(indent=2))
    else:
        click.echo(format_merge_diff(summary, current_report.workspace), nl=False)


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
