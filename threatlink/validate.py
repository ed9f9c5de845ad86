"""Checks over a completed ThreatModel.

Every function here is pure: it reads the model and returns findings,
nothing is raised and nothing is mutated.
"""

from dataclasses import dataclass, field

from .normalize import exposure_key, normalize, severity_rank, strip_tag
from .schemas import Acceptance, Exposure, ParseDiagnostic, ThreatModel


@dataclass
class ExposureStatus:
    """Partition of a model's exposures; every exposure is in exactly one list."""
    mitigated: list[Exposure] = field(default_factory=list)
    accepted: list[Exposure] = field(default_factory=list)
    open: list[Exposure] = field(default_factory=list)


def defined_ids(model: ThreatModel) -> set[str]:
    ids = set()
    for collection in (model.assets, model.threats, model.controls, model.boundaries):
        ids.update(entry.id for entry in collection if entry.id)
    return ids


def find_dangling_refs(model: ThreatModel) -> list[ParseDiagnostic]:
    """One warning per ``#id`` occurrence that no definition declares."""
    ids = defined_ids(model)
    diagnostics = []
    for value, verb, location in model.references():
        if not value.startswith('#'):
            continue
        tag = strip_tag(value)
        if tag in ids:
            continue
        diagnostics.append(ParseDiagnostic(
            level='warning',
            file=location.file,
            line=location.line,
            message=f'Dangling reference: #{tag} is never defined (in @{verb})',
            raw=location.raw,
        ))
    return diagnostics


def _keys(entries) -> set[str]:
    return {exposure_key(e.asset, e.threat) for e in entries}


def classify_exposures(model: ThreatModel) -> ExposureStatus:
    """Split exposures into mitigated, accepted (and not mitigated) and open."""
    mitigated = _keys(model.mitigations)
    accepted = _keys(model.acceptances)
    status = ExposureStatus()
    for exposure in model.exposures:
        key = exposure_key(exposure.asset, exposure.threat)
        if key in mitigated:
            status.mitigated.append(exposure)
        elif key in accepted:
            status.accepted.append(exposure)
        else:
            status.open.append(exposure)
    return status


def find_unmitigated_exposures(model: ThreatModel) -> list[Exposure]:
    """Open exposures, most severe first, then by file and line."""
    return sorted(
        classify_exposures(model).open,
        key=lambda e: (severity_rank(e.severity), e.location.file, e.location.line),
    )


def find_accepted_exposures(model: ThreatModel) -> list[Exposure]:
    return classify_exposures(model).accepted


def find_accepted_without_audit(model: ThreatModel) -> list[ParseDiagnostic]:
    """Acceptances on assets that carry no ``@audit``.

    Risk acceptance is a human decision; an acceptance without an audit
    trail on the same asset is flagged for review.
    """
    audited = {normalize(a.asset) for a in model.audits}
    diagnostics = []
    for acceptance in model.acceptances:
        if normalize(acceptance.asset) in audited:
            continue
        diagnostics.append(_acceptance_warning(acceptance))
    return diagnostics


def _acceptance_warning(acceptance: Acceptance) -> ParseDiagnostic:
    loc = acceptance.location
    return ParseDiagnostic(
        level='warning',
        file=loc.file,
        line=loc.line,
        message=(
            f'Risk acceptance of {acceptance.threat} on {acceptance.asset} has no @audit trail; '
            'confirm it was made by a human reviewer'
        ),
        raw=loc.raw,
    )
