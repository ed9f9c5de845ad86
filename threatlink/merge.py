"""Merge per-repository threat models into one workspace-wide report.

Pipeline: load reports (failures are recorded, never raised), build the
tag registry, resolve ``#tag`` references against it, combine the models,
then attach totals and quality warnings.
"""

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Literal, Optional, Sequence, Union

from .logging_config import get_logger
from .normalize import strip_tag
from .schemas import (
    SCHEMA_VERSION, Coverage, DefinitionKind, MergeDiffSummary, MergedReport, MergeTotals,
    MergeWarning, RepoStatus, SourceLocation, TagOwnership, ThreatModel, UnresolvedRef,
)
from .validate import classify_exposures
from .workspace import LoadedReport, LoadFailure, LoadResult, load_reports


logger = get_logger(__name__)

DEFAULT_STALE_HOURS = 168

SERVICE_SUFFIX = re.compile(r'-(?:service|svc|lib|api|worker)$')

TieBreak = Literal['input_order', 'alphabetical']

DEFINITION_COLLECTIONS: tuple[tuple[str, DefinitionKind], ...] = (
    ('assets', 'asset'),
    ('threats', 'threat'),
    ('controls', 'control'),
)

RELATIONSHIP_COLLECTIONS = (
    'mitigations', 'exposures', 'acceptances', 'transfers', 'flows', 'boundaries',
    'validations', 'audits', 'ownership', 'data_handling', 'assumptions', 'shields', 'comments',
)


# Ownership

def tag_prefix(tag: str) -> Optional[str]:
    """``#payment-svc.refund`` -> ``payment-svc``; None for undotted tags."""
    prefix, dot, _ = strip_tag(tag).partition('.')
    return prefix if dot and prefix else None


def infer_owner_from_prefix(tag: str, repo_names: Iterable[str]) -> Optional[str]:
    """Guess which repository a tag belongs to from its dotted prefix.

    An exact name match wins. Otherwise the first repository (in the given
    order) where one name starts with the other, or where both are equal
    once a ``-service``/``-svc``/``-lib``/``-api``/``-worker`` suffix is
    dropped. Returns None when nothing matches.
    """
    prefix = tag_prefix(tag)
    if prefix is None:
        return None
    names = list(dict.fromkeys(repo_names))
    if prefix in names:
        return prefix

    stripped = SERVICE_SUFFIX.sub('', prefix)
    for repo in names:
        if repo.startswith(prefix) or prefix.startswith(repo):
            return repo
        if SERVICE_SUFFIX.sub('', repo) == stripped:
            return repo
    return None


def _definitions(report: LoadedReport) -> Iterable[tuple[str, DefinitionKind]]:
    for collection, kind in DEFINITION_COLLECTIONS:
        for entry in getattr(report.model, collection):
            if entry.id:
                yield strip_tag(entry.id), kind


def build_tag_registry(
    reports: Sequence[LoadedReport],
    tie_break: TieBreak = 'input_order',
) -> tuple[list[TagOwnership], list[MergeWarning]]:
    """Decide which repository owns every id-bearing definition.

    A tag defined by one repository belongs to it. When several define it,
    the defining repository matched by the tag prefix wins; failing that the
    first definition wins, first meaning earliest in ``reports`` or, with
    ``tie_break='alphabetical'``, lowest repository name. Each contested tag
    yields a ``duplicate_tag`` warning listing the owner first.
    """
    # tag -> [(repo, kind)], one entry per repository
    candidates: dict[str, list[tuple[str, DefinitionKind]]] = {}
    for report in reports:
        for tag, kind in _definitions(report):
            defs = candidates.setdefault(tag, [])
            if all(repo != report.repo for repo, _ in defs):
                defs.append((report.repo, kind))

    registry: list[TagOwnership] = []
    warnings: list[MergeWarning] = []
    for tag, defs in candidates.items():
        if tie_break == 'alphabetical':
            defs = sorted(defs, key=lambda d: d[0])
        if len(defs) == 1:
            owner, kind = defs[0]
            registry.append(TagOwnership(tag=tag, owner_repo=owner, kind=kind))
            continue

        inferred = infer_owner_from_prefix(tag, [repo for repo, _ in defs])
        owner, kind = next((d for d in defs if d[0] == inferred), defs[0])
        registry.append(TagOwnership(tag=tag, owner_repo=owner, kind=kind))

        others = [repo for repo, _ in defs if repo != owner]
        warnings.append(MergeWarning(
            level='warning',
            code='duplicate_tag',
            message=f'Tag "#{tag}" defined in {owner} (owner) and also in: {", ".join(others)}',
            repos=[owner, *others],
            tag=f'#{tag}',
        ))
    return registry, warnings


# Reference resolution

def _prefix_location(location: SourceLocation, repo: str) -> SourceLocation:
    return location.model_copy(update={'file': f'{repo}/{location.file}'})


def resolve_references(
    reports: Sequence[LoadedReport],
    registry: Sequence[TagOwnership],
    repo_names: Sequence[str],
) -> tuple[list[UnresolvedRef], list[MergeWarning]]:
    """Find ``#tag`` references that no repository defines.

    Only ``#``-prefixed reference slots are checked; plain names are
    descriptive. Unresolved references are grouped into one warning per
    tag. Dotted registry tags whose prefix names no known repository get an
    informational ``tag_prefix_mismatch``.
    """
    owners = {entry.tag for entry in registry}
    unresolved: list[UnresolvedRef] = []
    for report in reports:
        for value, verb, location in report.model.references():
            if not value.startswith('#') or strip_tag(value) in owners:
                continue
            unresolved.append(UnresolvedRef(
                tag=value,
                context_verb=verb,
                location=_prefix_location(location, report.repo),
                source_repo=report.repo,
                inferred_repo=infer_owner_from_prefix(value, repo_names),
            ))

    warnings: list[MergeWarning] = []
    by_tag: dict[str, list[UnresolvedRef]] = {}
    for ref in unresolved:
        by_tag.setdefault(ref.tag, []).append(ref)
    for tag, refs in by_tag.items():
        repos = list(dict.fromkeys(r.source_repo for r in refs))
        inferred = refs[0].inferred_repo
        detail = f' (prefix suggests repo "{inferred}" but no definition found)' if inferred else ''
        warnings.append(MergeWarning(
            level='warning',
            code='unresolved_ref',
            message=f'Tag "{tag}" referenced in {", ".join(repos)} but not defined in any repo{detail}',
            repos=repos,
            tag=tag,
        ))

    for entry in registry:
        prefix = tag_prefix(entry.tag)
        if prefix is None or infer_owner_from_prefix(entry.tag, repo_names):
            continue
        warnings.append(MergeWarning(
            level='info',
            code='tag_prefix_mismatch',
            message=f'Tag "#{entry.tag}" has prefix "{prefix}" which doesn\'t match any workspace repo',
            repos=[entry.owner_repo],
            tag=f'#{entry.tag}',
        ))
    return unresolved, warnings


def count_resolved_references(reports: Sequence[LoadedReport], registry: Sequence[TagOwnership]) -> int:
    """References that resolve to a definition owned by another repository."""
    owner_of = {entry.tag: entry.owner_repo for entry in registry}
    count = 0
    for report in reports:
        for value, _, _ in report.model.references():
            if not value.startswith('#'):
                continue
            owner = owner_of.get(strip_tag(value))
            if owner is not None and owner != report.repo:
                count += 1
    return count


# Combination

def combine_models(
    reports: Sequence[LoadedReport],
    registry: Sequence[TagOwnership],
    project: str = 'workspace',
    now: Optional[datetime] = None,
) -> ThreatModel:
    """Concatenate models, prefixing every file path with ``<repo>/``.

    Id-bearing definitions are kept only from the repository the registry
    names as owner (its first definition). Relationships are never
    deduplicated. Coverage counts are summed and the percentage recomputed.
    """
    owner_of = {entry.tag: entry.owner_repo for entry in registry}
    kept_ids: set[tuple[str, str]] = set()

    collections: dict[str, list] = {name: [] for name, _ in DEFINITION_COLLECTIONS}
    collections.update({name: [] for name in RELATIONSHIP_COLLECTIONS})
    source_files = 0
    annotations = 0
    annotated_files: list[str] = []
    unannotated_files: list[str] = []
    external_refs = []
    total_symbols = 0
    annotated_symbols = 0
    misses = []

    for report in reports:
        repo, model = report.repo, report.model

        def moved(entry):
            return entry.model_copy(update={'location': _prefix_location(entry.location, repo)})

        source_files += model.source_files
        annotations += model.annotations_parsed
        annotated_files.extend(f'{repo}/{f}' for f in model.annotated_files)
        unannotated_files.extend(f'{repo}/{f}' for f in model.unannotated_files)
        external_refs.extend(moved(ref) for ref in model.external_refs)

        for name, _ in DEFINITION_COLLECTIONS:
            for entry in getattr(model, name):
                if entry.id:
                    tag = strip_tag(entry.id)
                    if owner_of.get(tag, repo) != repo or (name, tag) in kept_ids:
                        continue
                    kept_ids.add((name, tag))
                collections[name].append(moved(entry))

        for name in RELATIONSHIP_COLLECTIONS:
            collections[name].extend(moved(entry) for entry in getattr(model, name))

        total_symbols += model.coverage.total_symbols
        annotated_symbols += model.coverage.annotated_symbols
        misses.extend(
            miss.model_copy(update={'file': f'{repo}/{miss.file}'})
            for miss in model.coverage.unannotated_critical
        )

    coverage = Coverage(
        total_symbols=total_symbols,
        annotated_symbols=annotated_symbols,
        coverage_percent=round(100 * annotated_symbols / total_symbols) if total_symbols else 0,
        unannotated_critical=misses,
    )
    return ThreatModel(
        project=project,
        generated_at=now or datetime.now(timezone.utc),
        source_files=source_files,
        annotations_parsed=annotations,
        annotated_files=annotated_files,
        unannotated_files=unannotated_files,
        coverage=coverage,
        external_refs=external_refs,
        **collections,
    )


def compute_totals(
    model: ThreatModel,
    statuses: Sequence[RepoStatus],
    resolved: int,
    unresolved: int,
) -> MergeTotals:
    return MergeTotals(
        repos=len(statuses),
        repos_loaded=sum(1 for s in statuses if s.loaded),
        annotations=model.annotations_parsed,
        assets=len(model.assets),
        threats=len(model.threats),
        controls=len(model.controls),
        mitigations=len(model.mitigations),
        exposures=len(model.exposures),
        unmitigated_exposures=len(classify_exposures(model).open),
        acceptances=len(model.acceptances),
        flows=len(model.flows),
        boundaries=len(model.boundaries),
        external_refs_resolved=resolved,
        external_refs_unresolved=unresolved,
    )


# Quality signals

def _status(result: LoadResult) -> RepoStatus:
    if isinstance(result, LoadFailure):
        return RepoStatus(name=result.name, loaded=False, error=result.error)
    model = result.model
    meta = model.metadata
    return RepoStatus(
        name=result.repo,
        loaded=True,
        generated_at=meta.generated_at if meta else model.generated_at,
        commit_sha=meta.commit_sha if meta else None,
        annotation_count=model.annotations_parsed,
        schema_version=model.schema_version,
    )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def detect_stale_reports(
    statuses: Sequence[RepoStatus],
    threshold_hours: float,
    now: datetime,
) -> list[MergeWarning]:
    warnings = []
    threshold = timedelta(hours=threshold_hours)
    for status in statuses:
        if not status.loaded or status.generated_at is None:
            continue
        age = _aware(now) - _aware(status.generated_at)
        if age <= threshold:
            continue
        days = round(age.total_seconds() / 86400)
        warnings.append(MergeWarning(
            level='warning',
            code='stale_report',
            message=f'Repo "{status.name}" report is {days} day(s) old (generated {status.generated_at.isoformat()})',
            repos=[status.name],
        ))
    return warnings


def detect_schema_mismatch(reports: Sequence[LoadedReport]) -> list[MergeWarning]:
    versions = list(dict.fromkeys(r.model.schema_version for r in reports))
    if len(versions) <= 1:
        return []
    return [MergeWarning(
        level='warning',
        code='schema_mismatch',
        message=f'Reports use different schema versions: {", ".join(versions)}. Results may be inconsistent.',
        repos=[r.repo for r in reports],
    )]


def missing_repo_warnings(statuses: Sequence[RepoStatus]) -> list[MergeWarning]:
    return [
        MergeWarning(
            level='warning',
            code='missing_repo',
            message=f'Repo "{s.name}" report not loaded: {s.error or "unknown error"}',
            repos=[s.name],
        )
        for s in statuses if not s.loaded
    ]


# Orchestration

def merge_loaded(
    results: Sequence[LoadResult],
    workspace: Optional[str] = None,
    stale_threshold_hours: float = DEFAULT_STALE_HOURS,
    tie_break: TieBreak = 'input_order',
    now: Optional[datetime] = None,
) -> MergedReport:
    """Merge already-loaded results; failures are carried as unloaded statuses."""
    now = now or datetime.now(timezone.utc)
    reports = [r for r in results if isinstance(r, LoadedReport)]
    statuses = [_status(r) for r in results]

    workspace_name = workspace or next(
        (r.model.metadata.workspace for r in reports if r.model.metadata and r.model.metadata.workspace),
        'workspace',
    )
    logger.info('merge_started', workspace=workspace_name, loaded=len(reports), failed=len(results) - len(reports))

    registry, tag_warnings = build_tag_registry(reports, tie_break=tie_break)
    # only loaded repositories count as known owners
    repo_names = list(dict.fromkeys(r.repo for r in reports))
    unresolved, ref_warnings = resolve_references(reports, registry, repo_names)
    model = combine_models(reports, registry, project=workspace_name, now=now)

    warnings = [
        *tag_warnings,
        *ref_warnings,
        *detect_stale_reports(statuses, stale_threshold_hours, now),
        *detect_schema_mismatch(reports),
        *missing_repo_warnings(statuses),
    ]
    merged = MergedReport(
        workspace=workspace_name,
        merged_at=now,
        schema_version=SCHEMA_VERSION,
        repo_statuses=statuses,
        tag_registry=registry,
        unresolved_refs=unresolved,
        warnings=warnings,
        totals=compute_totals(model, statuses, count_resolved_references(reports, registry), len(unresolved)),
        model=model,
    )
    logger.info(
        'merge_finished', workspace=workspace_name, tags=len(registry),
        unresolved=len(unresolved), warnings=len(warnings),
    )
    return merged


def merge_models(
    models: Sequence[ThreatModel],
    repo_names: Optional[Sequence[str]] = None,
    workspace: Optional[str] = None,
    expected_repos: Optional[Sequence[str]] = None,
    stale_threshold_hours: float = DEFAULT_STALE_HOURS,
    tie_break: TieBreak = 'input_order',
    now: Optional[datetime] = None,
) -> MergedReport:
    """Merge in-memory models.

    Repository names come from ``repo_names`` when given, otherwise from each
    model's metadata or project name.
    """
    if repo_names is not None and len(repo_names) != len(models):
        raise ValueError('repo_names must name every model')

    results: list[LoadResult] = []
    for i, model in enumerate(models):
        if repo_names is not None:
            repo = repo_names[i]
        else:
            repo = (model.metadata.repo if model.metadata else None) or model.project
        results.append(LoadedReport(repo=repo, model=model, source_path=f'<memory:{repo}>'))

    if expected_repos:
        present = {r.repo for r in results}
        results.extend(
            LoadFailure(name=name, error='No report file provided')
            for name in expected_repos if name not in present
        )
    return merge_loaded(results, workspace, stale_threshold_hours, tie_break, now)


def merge_reports(
    paths: Sequence[Union[str, Path]],
    workspace: Optional[str] = None,
    expected_repos: Optional[Sequence[str]] = None,
    stale_threshold_hours: float = DEFAULT_STALE_HOURS,
    tie_break: TieBreak = 'input_order',
    now: Optional[datetime] = None,
) -> MergedReport:
    """Load report JSON files and merge them. One bad file never aborts the merge."""
    results = load_reports(paths, expected_repos)
    return merge_loaded(results, workspace, stale_threshold_hours, tie_break, now)


# Merge diff

def _delta(current: int, previous: int) -> tuple[int, int]:
    return max(0, current - previous), max(0, previous - current)


def diff_merged_reports(current: MergedReport, previous: MergedReport) -> MergeDiffSummary:
    """Numeric and repository-set deltas between two merged reports."""
    c, p = current.totals, previous.totals
    prev_status = {s.name: s for s in previous.repo_statuses}
    curr_names = [s.name for s in current.repo_statuses]

    changed = [
        s.name for s in current.repo_statuses
        if s.name in prev_status and (
            s.annotation_count != prev_status[s.name].annotation_count
            or s.commit_sha != prev_status[s.name].commit_sha
        )
    ]

    assets_added, assets_removed = _delta(c.assets, p.assets)
    threats_added, threats_removed = _delta(c.threats, p.threats)
    mitigations_added, mitigations_removed = _delta(c.mitigations, p.mitigations)
    exposures_added, exposures_removed = _delta(c.exposures, p.exposures)
    new_unmitigated, resolved_unmitigated = _delta(c.unmitigated_exposures, p.unmitigated_exposures)
    new_flows, removed_flows = _delta(c.flows, p.flows)
    new_unresolved, resolved_refs = _delta(c.external_refs_unresolved, p.external_refs_unresolved)

    if new_unmitigated:
        risk = 'increased'
    elif resolved_unmitigated:
        risk = 'decreased'
    else:
        risk = 'unchanged'

    return MergeDiffSummary(
        previous_merged_at=previous.merged_at,
        current_merged_at=current.merged_at,
        assets_added=assets_added,
        assets_removed=assets_removed,
        threats_added=threats_added,
        threats_removed=threats_removed,
        mitigations_added=mitigations_added,
        mitigations_removed=mitigations_removed,
        exposures_added=exposures_added,
        exposures_removed=exposures_removed,
        new_unmitigated=new_unmitigated,
        resolved_unmitigated=resolved_unmitigated,
        risk_delta=risk,
        new_flows=new_flows,
        removed_flows=removed_flows,
        new_unresolved_refs=new_unresolved,
        resolved_refs=resolved_refs,
        repos_added=[n for n in curr_names if n not in prev_status],
        repos_removed=[n for n in prev_status if n not in set(curr_names)],
        repos_with_changes=changed,
    )
