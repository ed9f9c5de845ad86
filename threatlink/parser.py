"""Project-level parser: walks a source tree and assembles a ThreatModel."""

import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Optional, Sequence, Union

from .coverage import DEFAULT_WINDOW, FileCoverageInput, SymbolScanner, compute_coverage
from .errors import ThreatLinkError
from .grammar import comment_prefixes_for, parse_line, strip_comment_prefix
from .logging_config import get_logger
from .normalize import strip_tag
from .schemas import (
    REFERENCE_FIELDS, CrossRepoRef, Entry, ParseDiagnostic, Shield, SourceLocation, ThreatModel,
    WorkspaceConfig,
)
from .workspace import WORKSPACE_FILE, WorkspaceConfigError, find_workspace_config


logger = get_logger(__name__)


DEFAULT_INCLUDE = [
    '**/*.ts', '**/*.tsx', '**/*.js', '**/*.jsx', '**/*.mjs',
    '**/*.py', '**/*.rb', '**/*.go', '**/*.rs', '**/*.php',
    '**/*.java', '**/*.kt', '**/*.scala',
    '**/*.c', '**/*.cpp', '**/*.cc', '**/*.h', '**/*.hpp',
    '**/*.cs', '**/*.swift', '**/*.dart',
    '**/*.sql', '**/*.lua', '**/*.hs',
    '**/*.tf', '**/*.hcl',
    '**/*.yaml', '**/*.yml',
    '**/*.sh', '**/*.bash',
    '**/*.html', '**/*.xml', '**/*.svg',
    '**/*.css',
    '**/*.ex', '**/*.exs',
]

DEFAULT_EXCLUDE = [
    '**/node_modules/**', '**/dist/**', '**/build/**', '**/.git/**',
    '**/__pycache__/**', '**/target/**', '**/vendor/**', '**/.next/**',
    '**/.venv/**', '**/venv/**',
    '**/tests/**', '**/test/**', '**/__tests__/**',
]

# Verb -> ThreatModel collection
COLLECTIONS = {
    'asset': 'assets',
    'threat': 'threats',
    'control': 'controls',
    'mitigates': 'mitigations',
    'exposes': 'exposures',
    'accepts': 'acceptances',
    'transfers': 'transfers',
    'flows': 'flows',
    'boundary': 'boundaries',
    'validates': 'validations',
    'audit': 'audits',
    'owns': 'ownership',
    'handles': 'data_handling',
    'assumes': 'assumptions',
    'comment': 'comments',
    'shield': 'shields',
    'shield:begin': 'shields',
    'shield:end': 'shields',
}

WORKSPACE_DIR = '.threatlink'


class ThreatModelParseError(ThreatLinkError):
    """Raised when a project cannot be parsed at all (e.g. missing root)."""
    pass


@dataclass
class ParsedAnnotation:
    verb: str
    entry: Entry

    @property
    def location(self) -> SourceLocation:
        return self.entry.location


@dataclass
class FileParseResult:
    """Annotations, diagnostics and coverage inputs for one file."""
    file: str
    annotations: list[ParsedAnnotation] = field(default_factory=list)
    diagnostics: list[ParseDiagnostic] = field(default_factory=list)
    shield_regions: list[tuple[int, int]] = field(default_factory=list)
    coverage: Optional[FileCoverageInput] = None


@dataclass
class ProjectParseResult:
    model: ThreatModel
    diagnostics: list[ParseDiagnostic]


def split_lines(content: str) -> list[str]:
    """Physical lines: split on ``\\n`` only, dropping a trailing ``\\r``.

    Form feeds and other characters ``str.splitlines`` treats as breaks stay
    inside their line so line numbers match editors and compilers.
    """
    lines = [line[:-1] if line.endswith('\r') else line for line in content.split('\n')]
    if lines and lines[-1] == '':
        lines.pop()
    return lines


def parse_string(content: str, file_path: str = '<input>', scanner: Optional[SymbolScanner] = None) -> FileParseResult:
    """Parse source text and return every annotation found in it.

    Continuation lines (``-- "..."``) extend the description of the
    annotation on the line directly above; the chain breaks on any other
    line. Annotations inside ``shield:begin``/``shield:end`` are dropped,
    only the markers themselves are kept.
    """
    file_path = file_path.replace('\\', '/')
    prefixes = comment_prefixes_for(file_path)
    lines = split_lines(content)
    result = FileParseResult(file=file_path)
    last: Optional[ParsedAnnotation] = None
    shield_start: Optional[int] = None

    for number, raw_line in enumerate(lines, start=1):
        inner = strip_comment_prefix(raw_line, prefixes)
        if inner is None:
            last = None
            continue

        location = SourceLocation(file=file_path, line=number)
        parsed = parse_line(inner, location)

        if parsed.verb == 'shield:begin' or parsed.verb == 'shield:end':
            if parsed.entry is not None:
                result.annotations.append(ParsedAnnotation(parsed.verb, parsed.entry))
            elif parsed.diagnostic is not None:
                result.diagnostics.append(parsed.diagnostic)
                last = None
                continue
            if parsed.verb == 'shield:begin':
                if shield_start is not None:
                    result.diagnostics.append(_warning(location, 'Nested @shield:begin; previous region still open', inner))
                else:
                    shield_start = number
            elif shield_start is None:
                result.diagnostics.append(_warning(location, '@shield:end without matching @shield:begin', inner))
            else:
                result.shield_regions.append((shield_start, number))
                shield_start = None
            last = None
            continue

        if shield_start is not None:
            continue

        if parsed.continuation is not None:
            if last is not None:
                last.entry = _append_description(last.entry, parsed.continuation)
            continue

        if parsed.entry is not None:
            last = ParsedAnnotation(parsed.verb, parsed.entry)
            result.annotations.append(last)
            continue

        if parsed.diagnostic is not None:
            result.diagnostics.append(parsed.diagnostic)
        last = None

    if shield_start is not None:
        result.diagnostics.append(_warning(
            SourceLocation(file=file_path, line=shield_start),
            '@shield:begin is never closed; region extends to end of file',
        ))
        result.shield_regions.append((shield_start, max(len(lines), shield_start)))

    scanner = scanner or SymbolScanner()
    result.coverage = FileCoverageInput(
        file=file_path,
        symbols=scanner.scan(file_path, lines),
        annotation_lines=[a.location.line for a in result.annotations],
        shield_regions=list(result.shield_regions),
    )
    return result


def parse_file(path: Path, rel_path: Optional[str] = None) -> FileParseResult:
    """Read and parse one file. Undecodable files yield a warning and no annotations."""
    rel = rel_path or Path(path).as_posix()
    try:
        content = Path(path).read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        logger.warning('file_unreadable', file=rel, error=str(e))
        return FileParseResult(
            file=rel,
            diagnostics=[ParseDiagnostic(level='warning', file=rel, line=1, message=f'Could not read file: {e}')],
        )
    return parse_string(content, rel)


def _warning(location: SourceLocation, message: str, raw: Optional[str] = None) -> ParseDiagnostic:
    return ParseDiagnostic(level='warning', file=location.file, line=location.line, message=message, raw=raw)


def _append_description(entry: Entry, text: str) -> Entry:
    if isinstance(entry, Shield):
        joined = f'{entry.reason} {text}' if entry.reason else text
        return entry.model_copy(update={'reason': joined})
    joined = f'{entry.description} {text}' if entry.description else text
    return entry.model_copy(update={'description': joined})


@lru_cache(maxsize=256)
def glob_regex(pattern: str) -> re.Pattern:
    """Compile a path glob.

    ``*`` and ``?`` never cross a ``/``; ``**/`` spans zero or more
    directories and a bare ``**`` matches anything.
    """
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith('**/', i):
            out.append('(?:[^/]*/)*')
            i += 3
        elif pattern.startswith('**', i):
            out.append('.*')
            i += 2
        elif pattern[i] == '*':
            out.append('[^/]*')
            i += 1
        elif pattern[i] == '?':
            out.append('[^/]')
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile(''.join(out))


def _matches(rel_path: str, patterns: Sequence[str]) -> bool:
    return any(glob_regex(pattern).fullmatch(rel_path) for pattern in patterns)


def is_workspace_file(rel_path: str) -> bool:
    return rel_path.startswith(f'{WORKSPACE_DIR}/')


def discover_files(root: Path, include: Sequence[str], exclude: Sequence[str]) -> list[str]:
    """Relative POSIX paths under ``root`` matching ``include`` and not ``exclude``.

    Files under ``.threatlink/`` (shared definitions) are scanned like any
    other; only the workspace manifest itself is skipped.
    """
    manifest = WORKSPACE_FILE.as_posix()
    found = []
    for path in root.rglob('*'):
        if not path.is_file():
            continue
        rel = path.relative_to(root).as_posix()
        if rel == manifest:
            continue
        if _matches(rel, include) and not _matches(rel, exclude):
            found.append(rel)
    return sorted(found)


class ProjectParser:
    """Parses every matching file of a project into a single ThreatModel."""

    def __init__(
        self,
        root: Path,
        include: Optional[Sequence[str]] = None,
        exclude: Optional[Sequence[str]] = None,
        project: str = 'unknown',
        workers: int = 1,
        coverage_window: int = DEFAULT_WINDOW,
    ):
        self.root = Path(root)
        self.include = list(include) if include else list(DEFAULT_INCLUDE)
        self.exclude = list(exclude) if exclude is not None else list(DEFAULT_EXCLUDE)
        self.project = project
        self.workers = max(1, workers)
        self.coverage_window = coverage_window
        self._validate_root()

    def _validate_root(self) -> None:
        if not self.root.exists():
            raise ThreatModelParseError(f'Project root does not exist: {self.root}')
        if not self.root.is_dir():
            raise ThreatModelParseError(f'Project root is not a directory: {self.root}')

    def _parse_one(self, rel: str) -> FileParseResult:
        return parse_file(self.root / rel, rel)

    def parse(self, now: Optional[datetime] = None) -> ProjectParseResult:
        diagnostics: list[ParseDiagnostic] = []
        config = self._load_workspace_config(diagnostics)
        files = discover_files(self.root, self.include, self.exclude)
        shared = self._shared_definitions(config)
        if shared and shared not in files:
            files = sorted([*files, shared])
        logger.info('scan_started', root=str(self.root), files=len(files), workers=self.workers)

        if self.workers > 1 and len(files) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                results = list(pool.map(self._parse_one, files))
        else:
            results = [self._parse_one(rel) for rel in files]

        annotations: list[ParsedAnnotation] = []
        scanned: list[str] = []
        annotated: set[str] = set()
        for result in results:
            diagnostics.extend(result.diagnostics)
            if result.coverage is None:
                continue
            scanned.append(result.file)
            annotations.extend(result.annotations)
            if result.annotations:
                annotated.add(result.file)

        annotations.sort(key=lambda a: (a.location.file, a.location.line))
        diagnostics.extend(_duplicate_id_diagnostics(annotations))

        model = assemble_model(
            annotations,
            project=self.project,
            scanned_files=scanned,
            annotated_files=sorted(annotated),
            definition_files=[f for f in scanned if is_workspace_file(f) or f == shared],
            coverage_inputs=[r.coverage for r in results if r.coverage is not None],
            coverage_window=self.coverage_window,
            workspace=config,
            now=now,
        )
        diagnostics.sort(key=lambda d: (d.file, d.line))
        logger.info(
            'scan_finished', root=str(self.root), annotations=model.annotations_parsed,
            errors=sum(1 for d in diagnostics if d.level == 'error'),
        )
        return ProjectParseResult(model=model, diagnostics=diagnostics)

    def _load_workspace_config(self, diagnostics: list[ParseDiagnostic]) -> Optional[WorkspaceConfig]:
        try:
            return find_workspace_config(self.root)
        except WorkspaceConfigError as e:
            diagnostics.append(ParseDiagnostic(
                level='warning', file=f'{WORKSPACE_DIR}/workspace.yaml', line=1, message=str(e),
            ))
            return None

    def _shared_definitions(self, config: Optional[WorkspaceConfig]) -> Optional[str]:
        """Relative path of the manifest's shared definitions file, when it exists."""
        if config is None or not config.shared_definitions:
            return None
        rel = PurePosixPath(config.shared_definitions.replace('\\', '/')).as_posix()
        if not (self.root / rel).is_file():
            logger.warning('shared_definitions_missing', path=rel)
            return None
        return rel


def _definition_id(entry: Entry) -> Optional[str]:
    return getattr(entry, 'id', None)


def _duplicate_id_diagnostics(annotations: list[ParsedAnnotation]) -> list[ParseDiagnostic]:
    diagnostics = []
    first_seen: dict[str, SourceLocation] = {}
    for ann in annotations:
        tag = _definition_id(ann.entry)
        if not tag:
            continue
        prev = first_seen.get(tag)
        if prev is None:
            first_seen[tag] = ann.location
            continue
        diagnostics.append(ParseDiagnostic(
            level='error',
            file=ann.location.file,
            line=ann.location.line,
            message=f'Duplicate identifier #{tag} (first defined at {prev.file}:{prev.line})',
            raw=ann.location.raw,
        ))
    return diagnostics


def assemble_model(
    annotations: list[ParsedAnnotation],
    project: str,
    scanned_files: Sequence[str],
    annotated_files: Sequence[str],
    definition_files: Sequence[str] = (),
    coverage_inputs: Sequence[FileCoverageInput] = (),
    coverage_window: int = DEFAULT_WINDOW,
    workspace: Optional[WorkspaceConfig] = None,
    now: Optional[datetime] = None,
) -> ThreatModel:
    """Fold parsed annotations into a ThreatModel."""
    collections: dict[str, list] = {name: [] for name in set(COLLECTIONS.values())}
    for ann in annotations:
        collections[COLLECTIONS[ann.verb]].append(ann.entry)

    # Exposures without inline severity inherit it from the referenced threat
    threat_severity = {t.id: t.severity for t in collections['threats'] if t.id and t.severity}
    collections['exposures'] = [
        e if e.severity or not e.threat.startswith('#') or strip_tag(e.threat) not in threat_severity
        else e.model_copy(update={'severity': threat_severity[strip_tag(e.threat)]})
        for e in collections['exposures']
    ]

    annotated = set(annotated_files)
    skipped = annotated | set(definition_files)
    unannotated = sorted(f for f in scanned_files if f not in skipped)
    external_refs = detect_cross_repo_refs(collections, workspace) if workspace else []

    return ThreatModel(
        project=project,
        generated_at=now or datetime.now(timezone.utc),
        source_files=len(scanned_files),
        annotations_parsed=len(annotations),
        annotated_files=sorted(annotated),
        unannotated_files=unannotated,
        coverage=compute_coverage(coverage_inputs, window=coverage_window),
        external_refs=external_refs,
        **collections,
    )


def detect_cross_repo_refs(collections: dict[str, list], workspace: WorkspaceConfig) -> list[CrossRepoRef]:
    """Tags whose dotted prefix names a sibling repository and that are not defined here.

    ``#auth-lib.verify`` is external when ``auth-lib`` is another repository
    of the workspace and no local asset/threat/control carries that id.
    """
    siblings = set(workspace.sibling_names)
    if not siblings:
        return []

    local_ids = {
        entry.id
        for name in ('assets', 'threats', 'controls')
        for entry in collections.get(name, [])
        if entry.id
    }

    refs: list[CrossRepoRef] = []
    seen: set[tuple[str, str, int]] = set()
    for collection, (verb, fields) in REFERENCE_FIELDS.items():
        for entry in collections.get(collection, []):
            for field_name in fields:
                tag = getattr(entry, field_name)
                if not tag or not tag.startswith('#'):
                    continue
                bare = strip_tag(tag)
                key = (tag, entry.location.file, entry.location.line)
                if bare in local_ids or key in seen:
                    continue
                prefix, dot, _ = bare.partition('.')
                if not dot or prefix not in siblings:
                    continue
                seen.add(key)
                refs.append(CrossRepoRef(
                    tag=tag, context_verb=verb, location=entry.location, inferred_repo=prefix,
                ))
    refs.sort(key=lambda r: (r.location.file, r.location.line))
    return refs


def parse_project(
    root: Union[str, Path],
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    project: str = 'unknown',
    workers: int = 1,
    coverage_window: int = DEFAULT_WINDOW,
    now: Optional[datetime] = None,
) -> ProjectParseResult:
    """Parse a project directory into a ThreatModel plus diagnostics.

    Diagnostics are returned, never raised; only an unusable ``root``
    raises ThreatModelParseError.
    """
    parser = ProjectParser(
        Path(root), include=include, exclude=exclude, project=project,
        workers=workers, coverage_window=coverage_window,
    )
    return parser.parse(now=now)
