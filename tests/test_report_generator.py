"""Tests for text and markdown rendering."""

from datetime import timedelta

from threatlink.diff import diff_models
from threatlink.merge import diff_merged_reports, merge_models
from threatlink.report_generator import (
    format_diff, format_diff_markdown, format_merge_diff, format_merge_summary, format_model_summary,
)
from threatlink.schemas import ParseDiagnostic


class TestDiffFormatting:
    def test_no_changes(self, make_model, scenario_a):
        model = make_model(scenario_a)
        assert format_diff(diff_models(model, model)) == 'No threat model changes detected.\n'
        assert 'No threat model changes' in format_diff_markdown(diff_models(model, model))

    def test_new_exposure_listed(self, make_model, scenario_b):
        before = make_model(scenario_b)
        after = make_model(scenario_b + '# @exposes api.auth to XSS [high]\n')
        text = format_diff(diff_models(before, after))
        assert '1 NEW unmitigated exposure(s), risk increased' in text
        assert 'api.auth → XSS [high] (app.py:4)' in text
        assert '── Exposures ──' in text

    def test_markdown_table(self, make_model, scenario_b):
        before = make_model(scenario_b)
        after = make_model(scenario_b + '# @exposes api.auth to XSS [high]\n')
        markdown = format_diff_markdown(diff_models(before, after))
        assert markdown.startswith('### 🔴 Threat Model Delta')
        assert '| high | api.auth | XSS | `app.py:4` |' in markdown

    def test_resolved_exposure(self, make_model, scenario_a, scenario_b):
        text = format_diff(diff_models(make_model(scenario_a), make_model(scenario_b)))
        assert '1 exposure(s) resolved, risk decreased' in text
        assert '✓ api.auth → SQLi (app.py:2)' in text


class TestModelSummary:
    def test_summary_lists_open_exposures_and_diagnostics(self, make_model, scenario_a):
        diagnostics = [ParseDiagnostic(level='error', file='x.py', line=3, message='Malformed @flows annotation')]
        text = format_model_summary(make_model(scenario_a, project='demo'), diagnostics)
        assert text.startswith('Threat model: demo')
        assert '[critical] api.auth → SQLi (app.py:2)' in text
        assert 'error: x.py:3 Malformed @flows annotation' in text


class TestMergeFormatting:
    def test_merge_summary(self, make_model, now):
        model = make_model('# @exposes #x.one to #x.two\n', repo='svc-a')
        merged = merge_models([model], workspace='acme', expected_repos=['svc-a', 'svc-b'], now=now)
        text = format_merge_summary(merged)
        assert text.startswith('# acme: Threat Model Summary')
        assert '**Repos:** 1/2 loaded' in text
        assert '| Unmitigated | 1 |' in text
        assert '✓ **svc-a**: 1 annotations' in text
        assert '✗ **svc-b**: MISSING, No report file provided' in text
        assert '`#x.one` referenced in svc-a' in text

    def test_merge_diff(self, make_model, now):
        before = merge_models([make_model('# @asset a\n', repo='svc-a')], workspace='acme', now=now)
        after = merge_models(
            [make_model('# @asset a\n# @exposes a to b\n', repo='svc-a'),
             make_model('# @asset c\n', repo='svc-b')],
            workspace='acme', now=now + timedelta(days=7),
        )
        text = format_merge_diff(diff_merged_reports(after, before), 'acme')
        assert text.startswith('# acme: Threat Model Changes')
        assert '**Risk trend:** increased' in text
        assert '- +1 new asset(s)' in text
        assert '- +1 new exposure(s)' in text
        assert '- 1 new unmitigated exposure(s)' in text
        assert '- svc-b (new)' in text
        assert '- svc-a (updated)' in text

    def test_quiet_merge_diff(self, make_model, now):
        merged = merge_models([make_model('# @asset a\n', repo='svc-a')], now=now)
        text = format_merge_diff(diff_merged_reports(merged, merged), 'workspace')
        assert 'No annotation changes this period.' in text
        assert '## Repos' not in text
