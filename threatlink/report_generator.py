"""Text and markdown reports for models, diffs and merged reports."""

from functools import lru_cache
from pathlib import Path
from typing import Callable, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .diff import Change, ThreatModelDiff
from .schemas import MergeDiffSummary, MergedReport, ParseDiagnostic, SourceLocation, ThreatModel
from .validate import find_unmitigated_exposures


def _loc(location: SourceLocation) -> str:
    return f'{location.file}:{location.line}'


def _severity_suffix(item) -> str:
    return f' [{item.severity}]' if item.severity else ''


# (collection, label, describe)
DIFF_SECTIONS: list[tuple[str, str, Callable]] = [
    ('assets', 'Assets', lambda a: a.id or a.dotted_path),
    ('threats', 'Threats', lambda t: f'{t.id or t.canonical_name}{_severity_suffix(t)}'),
    ('controls', 'Controls', lambda c: c.id or c.canonical_name),
    ('mitigations', 'Mitigations', lambda m: f'{m.asset} ← {m.control or "?"} against {m.threat}'),
    ('exposures', 'Exposures', lambda e: f'{e.asset} → {e.threat}{_severity_suffix(e)}'),
    ('acceptances', 'Acceptances', lambda a: f'{a.asset} accepts {a.threat}'),
    ('flows', 'Flows', lambda f: f'{f.source} → {f.target}' + (f' via {f.mechanism}' if f.mechanism else '')),
    ('boundaries', 'Boundaries', lambda b: f'{b.asset_a} ↔ {b.asset_b}'),
    ('transfers', 'Transfers', lambda t: f'{t.source} → {t.target} ({t.threat})'),
]

CHANGE_MARKS = {'added': '+', 'removed': '-', 'modified': '~'}


def _change_line(change: Change, describe: Callable) -> str:
    line = f'{CHANGE_MARKS[change.kind]} {describe(change.item)}'
    if change.details:
        line += f' ({change.details})'
    return line


class ReportGenerator:
    """Renders reports from the bundled jinja2 templates."""

    def __init__(self, template_dir: Optional[Path] = None):
        if template_dir is None:
            template_dir = Path(__file__).parent / 'templates'
        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=select_autoescape(['html', 'xml']),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters['loc'] = _loc

    def _render(self, name: str, **context) -> str:
        return self.env.get_template(name).render(**context).rstrip() + '\n'

    def _diff_sections(self, diff: ThreatModelDiff) -> list[dict]:
        sections = []
        for collection, label, describe in DIFF_SECTIONS:
            changes = getattr(diff, collection)
            if changes:
                sections.append({
                    'label': label,
                    'lines': [_change_line(c, describe) for c in changes],
                })
        return sections

    def render_diff(self, diff: ThreatModelDiff) -> str:
        return self._render(
            'diff.txt.j2',
            summary=diff.summary,
            new_unmitigated=diff.new_unmitigated_exposures,
            resolved=diff.resolved_exposures,
            sections=self._diff_sections(diff),
        )

    def render_diff_markdown(self, diff: ThreatModelDiff) -> str:
        s = diff.summary
        if s.new_unmitigated:
            badge = '🔴'
        elif s.resolved_unmitigated:
            badge = '🟢'
        else:
            badge = '⚪'
        return self._render(
            'diff.md.j2',
            summary=s,
            badge=badge,
            new_unmitigated=diff.new_unmitigated_exposures,
            resolved=diff.resolved_exposures,
        )

    def render_model_summary(
        self,
        model: ThreatModel,
        diagnostics: Sequence[ParseDiagnostic] = (),
    ) -> str:
        return self._render(
            'model_summary.txt.j2',
            model=model,
            unmitigated=find_unmitigated_exposures(model),
            diagnostics=list(diagnostics),
        )

    def render_merge_summary(self, merged: MergedReport) -> str:
        problems = [w for w in merged.warnings if w.level == 'error']
        problems += [w for w in merged.warnings if w.level == 'warning']
        return self._render(
            'merge_summary.md.j2',
            merged=merged,
            totals=merged.totals,
            problems=problems,
        )

    def render_merge_diff(self, diff: MergeDiffSummary, workspace: str) -> str:
        counted = [
            (diff.assets_added, '+{} new asset(s)'),
            (diff.assets_removed, '-{} removed asset(s)'),
            (diff.threats_added, '+{} new threat(s)'),
            (diff.threats_removed, '-{} removed threat(s)'),
            (diff.mitigations_added, '+{} new mitigation(s)'),
            (diff.mitigations_removed, '-{} removed mitigation(s)'),
            (diff.exposures_added, '+{} new exposure(s)'),
            (diff.exposures_removed, '-{} resolved exposure(s)'),
            (diff.new_flows, '+{} new data flow(s)'),
            (diff.removed_flows, '-{} removed data flow(s)'),
        ]
        deltas = [template.format(n) for n, template in counted if n]
        return self._render('merge_diff.md.j2', diff=diff, workspace=workspace, deltas=deltas)


@lru_cache(maxsize=1)
def _default_generator() -> ReportGenerator:
    return ReportGenerator()


def format_diff(diff: ThreatModelDiff) -> str:
    return _default_generator().render_diff(diff)


def format_diff_markdown(diff: ThreatModelDiff) -> str:
    """Markdown suitable for a pull request comment."""
    return _default_generator().render_diff_markdown(diff)


def format_model_summary(model: ThreatModel, diagnostics: Sequence[ParseDiagnostic] = ()) -> str:
    return _default_generator().render_model_summary(model, diagnostics)


def format_merge_summary(merged: MergedReport) -> str:
    return _default_generator().render_merge_summary(merged)


def format_merge_diff(diff: MergeDiffSummary, workspace: str) -> str:
    return _default_generator().render_merge_diff(diff, workspace)
