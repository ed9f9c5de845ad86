"""Structural comparison of two ThreatModel snapshots.

Entities are matched by identity keys (ids where present, otherwise
normalized names or composite relationship keys), so moving an annotation
to another line or file is not reported as a change.
"""

from typing import Callable, Literal, Optional, Sequence, TypeVar

from pydantic import Field

from .normalize import exposure_key, normalize
from .schemas import (
    Acceptance, Asset, Boundary, Control, Entry, Exposure, Flow, FrozenModel,
    Mitigation, ThreatModel, Threat, Transfer,
)
from .validate import classify_exposures


ChangeKind = Literal['added', 'removed', 'modified']
RiskDelta = Literal['increased', 'decreased', 'unchanged']

T = TypeVar('T')


class Change(FrozenModel):
    kind: ChangeKind
    item: Entry
    previous: Optional[Entry] = None
    details: Optional[str] = None


class DiffSummary(FrozenModel):
    total_changes: int = 0
    added: int = 0
    removed: int = 0
    modified: int = 0
    new_unmitigated: int = 0
    resolved_unmitigated: int = 0
    risk_delta: RiskDelta = 'unchanged'


class ThreatModelDiff(FrozenModel):
    """Per-collection deltas plus the exposures that matter for a CI gate."""
    summary: DiffSummary = Field(default_factory=DiffSummary)
    assets: list[Change] = Field(default_factory=list)
    threats: list[Change] = Field(default_factory=list)
    controls: list[Change] = Field(default_factory=list)
    mitigations: list[Change] = Field(default_factory=list)
    exposures: list[Change] = Field(default_factory=list)
    acceptances: list[Change] = Field(default_factory=list)
    transfers: list[Change] = Field(default_factory=list)
    flows: list[Change] = Field(default_factory=list)
    boundaries: list[Change] = Field(default_factory=list)
    new_unmitigated_exposures: list[Exposure] = Field(default_factory=list)
    resolved_exposures: list[Exposure] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.summary.total_changes > 0


# Identity keys

def asset_key(a: Asset) -> str:
    return a.id or normalize(a.dotted_path)


def threat_key(t: Threat) -> str:
    return t.id or t.canonical_name


def control_key(c: Control) -> str:
    return c.id or c.canonical_name


def mitigation_key(m: Mitigation) -> str:
    return f'{exposure_key(m.asset, m.threat)}::{normalize(m.control or "")}'


def exposure_identity(e: Exposure) -> str:
    return exposure_key(e.asset, e.threat)


def acceptance_key(a: Acceptance) -> str:
    return exposure_key(a.asset, a.threat)


def flow_key(f: Flow) -> str:
    return f'{normalize(f.source)}->{normalize(f.target)}'


def boundary_key(b: Boundary) -> str:
    return b.id or f'{normalize(b.asset_a)}::{normalize(b.asset_b)}'


def transfer_key(t: Transfer) -> str:
    return f'{normalize(t.source)}->{normalize(t.target)}::{normalize(t.threat)}'


# Change detection

def _severity_change(a, b) -> Optional[str]:
    if a.severity != b.severity:
        return f'severity: {a.severity or "unset"} -> {b.severity or "unset"}'
    return None


def _description_change(a, b) -> Optional[str]:
    if a.description != b.description:
        return 'description changed'
    return None


def _join(*parts: Optional[str]) -> Optional[str]:
    found = [p for p in parts if p]
    return '; '.join(found) if found else None


def asset_changed(a: Asset, b: Asset) -> Optional[str]:
    path = None
    if a.path != b.path:
        path = f'path: {a.dotted_path} -> {b.dotted_path}'
    return _join(path, _description_change(a, b))


def threat_changed(a: Threat, b: Threat) -> Optional[str]:
    refs = 'external refs changed' if a.external_refs != b.external_refs else None
    return _join(_severity_change(a, b), _description_change(a, b), refs)


def control_changed(a: Control, b: Control) -> Optional[str]:
    return _description_change(a, b)


def exposure_changed(a: Exposure, b: Exposure) -> Optional[str]:
    refs = 'external refs changed' if a.external_refs != b.external_refs else None
    return _join(_severity_change(a, b), _description_change(a, b), refs)


def flow_changed(a: Flow, b: Flow) -> Optional[str]:
    mechanism = None
    if a.mechanism != b.mechanism:
        mechanism = f'mechanism: {a.mechanism or "none"} -> {b.mechanism or "none"}'
    return _join(mechanism, _description_change(a, b))


def diff_by_key(
    previous: Sequence[T],
    current: Sequence[T],
    key: Callable[[T], str],
    changed: Optional[Callable[[T, T], Optional[str]]] = None,
) -> list[Change]:
    """Removed items first, then added/modified, each in collection order.

    Items sharing a key collapse onto the last one seen.
    """
    before = {key(item): item for item in previous}
    after = {key(item): item for item in current}

    changes = [Change(kind='removed', item=item) for k, item in before.items() if k not in after]
    for k, item in after.items():
        prev = before.get(k)
        if prev is None:
            changes.append(Change(kind='added', item=item))
            continue
        if changed is None:
            continue
        details = changed(prev, item)
        if details:
            changes.append(Change(kind='modified', item=item, previous=prev, details=details))
    return changes


def diff_models(previous: ThreatModel, current: ThreatModel) -> ThreatModelDiff:
    """Compare two models, typically a historical snapshot and the working tree.

    ``new_unmitigated_exposures`` holds exposures that are open in ``current``
    and whose asset/threat pair did not appear at all in ``previous``.
    ``resolved_exposures`` holds exposures that were open in ``previous`` and
    are no longer open in ``current``.
    """
    collections = {
        'assets': diff_by_key(previous.assets, current.assets, asset_key, asset_changed),
        'threats': diff_by_key(previous.threats, current.threats, threat_key, threat_changed),
        'controls': diff_by_key(previous.controls, current.controls, control_key, control_changed),
        'mitigations': diff_by_key(previous.mitigations, current.mitigations, mitigation_key),
        'exposures': diff_by_key(previous.exposures, current.exposures, exposure_identity, exposure_changed),
        'acceptances': diff_by_key(previous.acceptances, current.acceptances, acceptance_key),
        'transfers': diff_by_key(previous.transfers, current.transfers, transfer_key),
        'flows': diff_by_key(previous.flows, current.flows, flow_key, flow_changed),
        'boundaries': diff_by_key(previous.boundaries, current.boundaries, boundary_key),
    }

    previous_open = classify_exposures(previous).open
    current_open = classify_exposures(current).open
    previous_keys = {exposure_identity(e) for e in previous.exposures}
    current_open_keys = {exposure_identity(e) for e in current_open}

    new_unmitigated = [e for e in current_open if exposure_identity(e) not in previous_keys]
    resolved = [e for e in previous_open if exposure_identity(e) not in current_open_keys]

    all_changes = [c for changes in collections.values() for c in changes]
    delta = len(current_open) - len(previous_open)
    summary = DiffSummary(
        total_changes=len(all_changes),
        added=sum(1 for c in all_changes if c.kind == 'added'),
        removed=sum(1 for c in all_changes if c.kind == 'removed'),
        modified=sum(1 for c in all_changes if c.kind == 'modified'),
        new_unmitigated=len(new_unmitigated),
        resolved_unmitigated=len(resolved),
        risk_delta=_risk_delta(delta),
    )
    return ThreatModelDiff(
        summary=summary,
        new_unmitigated_exposures=new_unmitigated,
        resolved_exposures=resolved,
        **collections,
    )


def _risk_delta(delta: int) -> RiskDelta:
    if delta > 0:
        return 'increased'
    if delta < 0:
        return 'decreased'
    return 'unchanged'
