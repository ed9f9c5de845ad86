"""Tests for workspace manifests and report loading."""

import pytest

from threatlink.workspace import (
    LoadedReport, LoadFailure, ReportLoadError, WorkspaceConfigError, find_workspace_config,
    load_report, load_reports, load_workspace_config,
)


MANIFEST = '''\
workspace: acme
this_repo: web
repos:
  - name: web
  - name: auth-lib
    registry: github.com/acme/auth-lib
  - name: payments-svc
'''


class TestWorkspaceConfig:
    def test_load_manifest(self, tmp_path):
        path = tmp_path / 'workspace.yaml'
        path.write_text(MANIFEST, encoding='utf-8')
        config = load_workspace_config(path)
        assert config.workspace == 'acme'
        assert config.this_repo == 'web'
        assert config.repo_names == ['web', 'auth-lib', 'payments-svc']
        assert config.sibling_names == ['auth-lib', 'payments-svc']
        assert config.repos[1].registry == 'github.com/acme/auth-lib'

    def test_find_returns_none_without_manifest(self, tmp_path):
        assert find_workspace_config(tmp_path) is None

    def test_find_reads_dot_directory(self, write_tree):
        root = write_tree({'.threatlink/workspace.yaml': MANIFEST})
        assert find_workspace_config(root).workspace == 'acme'

    @pytest.mark.parametrize('content,message', [
        ('repos: [\n', 'YAML parse error'),
        ('', 'empty or not a mapping'),
        ('- just\n- a list\n', 'empty or not a mapping'),
        ('workspace: acme\n', 'validation error'),
        ('workspace: acme\nthis_repo: web\nrepos:\n  - name: "  "\n', 'validation error'),
    ])
    def test_malformed_manifest(self, tmp_path, content, message):
        path = tmp_path / 'workspace.yaml'
        path.write_text(content, encoding='utf-8')
        with pytest.raises(WorkspaceConfigError, match=message):
            load_workspace_config(path)

    def test_unreadable_manifest(self, tmp_path):
        with pytest.raises(WorkspaceConfigError, match='Cannot read'):
            load_workspace_config(tmp_path / 'nope.yaml')


class TestLoadReport:
    def test_repo_name_from_metadata(self, tmp_path, make_model):
        path = tmp_path / 'threatlink-report-ignored.json'
        path.write_text(make_model('# @asset a\n', repo='svc-a').model_dump_json(), encoding='utf-8')
        report = load_report(path)
        assert report.repo == 'svc-a'
        assert report.model.assets[0].path == ['a']
        assert report.source_path == path.as_posix()

    def test_repo_name_falls_back_to_project(self, tmp_path, make_model):
        path = tmp_path / 'r.json'
        path.write_text(make_model('# @asset a\n', project='billing').model_dump_json(), encoding='utf-8')
        assert load_report(path).repo == 'billing'

    def test_missing_file(self, tmp_path):
        with pytest.raises(ReportLoadError, match='Cannot read report'):
            load_report(tmp_path / 'gone.json')

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'bad.json'
        path.write_text('{"project": ', encoding='utf-8')
        with pytest.raises(ReportLoadError, match='Invalid JSON'):
            load_report(path)

    def test_json_that_is_not_a_model(self, tmp_path):
        path = tmp_path / 'other.json'
        path.write_text('{"hello": "world"}', encoding='utf-8')
        with pytest.raises(ReportLoadError, match='not a valid threat model'):
            load_report(path)


class TestLoadReports:
    def test_failures_are_recorded_in_order(self, tmp_path, make_model):
        good = tmp_path / 'good.json'
        good.write_text(make_model('# @asset a\n', repo='svc-a').model_dump_json(), encoding='utf-8')
        bad = tmp_path / 'threatlink-report-svc-b.json'
        bad.write_text('[]', encoding='utf-8')

        results = load_reports([bad, good], expected_repos=['svc-a', 'svc-b', 'svc-c'])
        assert [type(r) for r in results] == [LoadFailure, LoadedReport, LoadFailure]
        assert results[0].name == 'svc-b'
        assert results[0].source_path == bad.as_posix()
        assert results[2].name == 'svc-c'
        assert results[2].error == 'No report file provided'

    def test_no_expected_repos(self, tmp_path):
        assert load_reports([]) == []
