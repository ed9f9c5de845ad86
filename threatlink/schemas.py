"""Pydantic models for the annotation-derived threat model and merged reports."""

from datetime import datetime
from typing import Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


SCHEMA_VERSION = '1.1.0'

Severity = Literal['critical', 'high', 'medium', 'low']
DataClassification = Literal['pii', 'phi', 'financial', 'secrets', 'internal', 'public']
DiagnosticLevel = Literal['error', 'warning']
DefinitionKind = Literal['asset', 'threat', 'control']


class FrozenModel(BaseModel):
    """Base for snapshot records; nothing mutates them after construction."""
    model_config = ConfigDict(frozen=True)


class SourceLocation(FrozenModel):
    """Where an annotation was found, relative to the project root."""
    file: str
    line: int = Field(..., ge=1)
    raw: Optional[str] = None

    @field_validator('file')
    @classmethod
    def normalize_separators(cls, v: str) -> str:
        return v.replace('\\', '/')


class ParseDiagnostic(FrozenModel):
    """Uniform error/warning record produced by parsing and validation."""
    level: DiagnosticLevel
    file: str
    line: int
    message: str
    raw: Optional[str] = None


class ModelEntry(FrozenModel):
    """Shared base of every definition and relationship."""
    location: SourceLocation
    description: Optional[str] = None


# Definitions

class Asset(ModelEntry):
    path: list[str]
    id: Optional[str] = None

    @property
    def dotted_path(self) -> str:
        return '.'.join(self.path)


class Threat(ModelEntry):
    name: str
    canonical_name: str
    id: Optional[str] = None
    severity: Optional[Severity] = None
    external_refs: list[str] = Field(default_factory=list)


class Control(ModelEntry):
    name: str
    canonical_name: str
    id: Optional[str] = None


# Relationships

class Mitigation(ModelEntry):
    asset: str
    threat: str
    control: Optional[str] = None


class Exposure(ModelEntry):
    asset: str
    threat: str
    severity: Optional[Severity] = None
    external_refs: list[str] = Field(default_factory=list)


class Acceptance(ModelEntry):
    threat: str
    asset: str


class Transfer(ModelEntry):
    threat: str
    source: str
    target: str


class Flow(ModelEntry):
    source: str
    target: str
    mechanism: Optional[str] = None


class Boundary(ModelEntry):
    asset_a: str
    asset_b: str
    id: Optional[str] = None


class Validation(ModelEntry):
    control: str
    asset: str


class Audit(ModelEntry):
    asset: str


class Ownership(ModelEntry):
    owner: str
    asset: str


class DataHandling(ModelEntry):
    classification: DataClassification
    asset: str


class Assumption(ModelEntry):
    asset: str


class Shield(ModelEntry):
    """A shield marker. ``kind`` distinguishes single-line shields from region bounds."""
    kind: Literal['shield', 'begin', 'end'] = 'shield'
    reason: Optional[str] = None


class Comment(ModelEntry):
    pass


Entry = Union[
    Asset, Threat, Control, Mitigation, Exposure, Acceptance, Transfer, Flow,
    Boundary, Validation, Audit, Ownership, DataHandling, Assumption, Shield, Comment,
]


# Coverage

class UnannotatedSymbol(FrozenModel):
    file: str
    line: int
    kind: str
    name: str


class Coverage(FrozenModel):
    total_symbols: int = Field(default=0, ge=0)
    annotated_symbols: int = Field(default=0, ge=0)
    coverage_percent: int = Field(default=0, ge=0, le=100)
    unannotated_critical: list[UnannotatedSymbol] = Field(default_factory=list)


# Relationship collection -> (verb, fields that may hold a reference)
REFERENCE_FIELDS: dict[str, tuple[str, tuple[str, ...]]] = {
    'mitigations': ('mitigates', ('asset', 'threat', 'control')),
    'exposures': ('exposes', ('asset', 'threat')),
    'acceptances': ('accepts', ('asset', 'threat')),
    'transfers': ('transfers', ('threat', 'source', 'target')),
    'flows': ('flows', ('source', 'target')),
    'boundaries': ('boundary', ('asset_a', 'asset_b')),
    'validations': ('validates', ('control', 'asset')),
    'audits': ('audit', ('asset',)),
    'ownership': ('owns', ('asset',)),
    'data_handling': ('handles', ('asset',)),
    'assumptions': ('assumes', ('asset',)),
}


class CrossRepoRef(FrozenModel):
    """A tag reference that points at a sibling repository's definition."""
    tag: str
    context_verb: str
    location: SourceLocation
    inferred_repo: Optional[str] = None


class ReportMetadata(FrozenModel):
    """Provenance block written alongside a per-repository report."""
    schema_version: str = SCHEMA_VERSION
    tool_version: str
    repo: str
    commit_sha: Optional[str] = None
    branch: Optional[str] = None
    generated_at: datetime
    workspace: Optional[str] = None


class ThreatModel(FrozenModel):
    """Complete threat model assembled from one project's annotations."""
    version: str = SCHEMA_VERSION
    project: str
    generated_at: datetime
    source_files: int = 0
    annotations_parsed: int = 0
    annotated_files: list[str] = Field(default_factory=list)
    unannotated_files: list[str] = Field(default_factory=list)

    assets: list[Asset] = Field(default_factory=list)
    threats: list[Threat] = Field(default_factory=list)
    controls: list[Control] = Field(default_factory=list)
    mitigations: list[Mitigation] = Field(default_factory=list)
    exposures: list[Exposure] = Field(default_factory=list)
    acceptances: list[Acceptance] = Field(default_factory=list)
    transfers: list[Transfer] = Field(default_factory=list)
    flows: list[Flow] = Field(default_factory=list)
    boundaries: list[Boundary] = Field(default_factory=list)
    validations: list[Validation] = Field(default_factory=list)
    audits: list[Audit] = Field(default_factory=list)
    ownership: list[Ownership] = Field(default_factory=list)
    data_handling: list[DataHandling] = Field(default_factory=list)
    assumptions: list[Assumption] = Field(default_factory=list)
    shields: list[Shield] = Field(default_factory=list)
    comments: list[Comment] = Field(default_factory=list)

    coverage: Coverage = Field(default_factory=Coverage)
    metadata: Optional[ReportMetadata] = None
    external_refs: list[CrossRepoRef] = Field(default_factory=list)

    @property
    def schema_version(self) -> str:
        if self.metadata is not None:
            return self.metadata.schema_version
        return self.version

    def references(self) -> Iterator[tuple[str, str, SourceLocation]]:
        """Yield ``(value, verb, location)`` for every reference slot in use."""
        for collection, (verb, fields) in REFERENCE_FIELDS.items():
            for entry in getattr(self, collection):
                for name in fields:
                    value = getattr(entry, name)
                    if value:
                        yield value, verb, entry.location


# Workspace manifest

class WorkspaceRepo(FrozenModel):
    name: str
    registry: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('Repository name cannot be empty')
        return v.strip()


class WorkspaceConfig(FrozenModel):
    """Contents of ``.threatlink/workspace.yaml``."""
    workspace: str
    this_repo: str
    repos: list[WorkspaceRepo] = Field(default_factory=list)
    shared_definitions: Optional[str] = None

    @property
    def repo_names(self) -> list[str]:
        return [r.name for r in self.repos]

    @property
    def sibling_names(self) -> list[str]:
        return [r.name for r in self.repos if r.name != self.this_repo]


# Merge output

MergeWarningCode = Literal[
    'duplicate_tag', 'unresolved_ref', 'missing_repo',
    'schema_mismatch', 'tag_prefix_mismatch', 'stale_report',
]


class TagOwnership(FrozenModel):
    tag: str
    owner_repo: str
    kind: DefinitionKind


class UnresolvedRef(FrozenModel):
    tag: str
    context_verb: str
    location: SourceLocation
    source_repo: str
    inferred_repo: Optional[str] = None


class MergeWarning(FrozenModel):
    level: Literal['error', 'warning', 'info']
    code: MergeWarningCode
    message: str
    repos: list[str] = Field(default_factory=list)
    tag: Optional[str] = None


class RepoStatus(FrozenModel):
    name: str
    loaded: bool
    generated_at: Optional[datetime] = None
    commit_sha: Optional[str] = None
    annotation_count: Optional[int] = None
    schema_version: Optional[str] = None
    error: Optional[str] = None


class MergeTotals(FrozenModel):
    repos: int = 0
    repos_loaded: int = 0
    annotations: int = 0
    assets: int = 0
    threats: int = 0
    controls: int = 0
    mitigations: int = 0
    exposures: int = 0
    unmitigated_exposures: int = 0
    acceptances: int = 0
    flows: int = 0
    boundaries: int = 0
    external_refs_resolved: int = 0
    external_refs_unresolved: int = 0


class MergedReport(FrozenModel):
    """Unified view over several per-repository threat models."""
    workspace: str
    merged_at: datetime
    schema_version: str = SCHEMA_VERSION
    repo_statuses: list[RepoStatus] = Field(default_factory=list)
    tag_registry: list[TagOwnership] = Field(default_factory=list)
    unresolved_refs: list[UnresolvedRef] = Field(default_factory=list)
    warnings: list[MergeWarning] = Field(default_factory=list)
    totals: MergeTotals = Field(default_factory=MergeTotals)
    model: ThreatModel


class MergeDiffSummary(FrozenModel):
    """Numeric delta between two merged reports."""
    previous_merged_at: datetime
    current_merged_at: datetime

    assets_added: int = 0
    assets_removed: int = 0
    threats_added: int = 0
    threats_removed: int = 0
    mitigations_added: int = 0
    mitigations_removed: int = 0
    exposures_added: int = 0
    exposures_removed: int = 0

    new_unmitigated: int = 0
    resolved_unmitigated: int = 0
    risk_delta: Literal['increased', 'decreased', 'unchanged'] = 'unchanged'

    new_flows: int = 0
    removed_flows: int = 0
    new_unresolved_refs: int = 0
    resolved_refs: int = 0

    repos_added: list[str] = Field(default_factory=list)
    repos_removed: list[str] = Field(default_factory=list)
    repos_with_changes: list[str] = Field(default_factory=list)
