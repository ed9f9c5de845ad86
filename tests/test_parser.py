"""Tests for the project-level model builder."""

from textwrap import dedent

import pytest

from threatlink.parser import (
    DEFAULT_EXCLUDE, DEFAULT_INCLUDE, ThreatModelParseError, discover_files, glob_regex, parse_file,
    parse_project, parse_string,
)
from threatlink.validate import find_dangling_refs, find_unmitigated_exposures


class TestParseString:
    def test_continuation_extends_previous_description(self):
        result = parse_string(dedent('''\
            # @threat SQL Injection (#sqli) [P0] -- "first"
            # -- "second"
            # -- "third"
        '''), 'app.py')
        assert len(result.annotations) == 1
        threat = result.annotations[0].entry
        assert threat.description == 'first second third'
        assert threat.location.line == 1

    def test_continuation_must_follow_immediately(self):
        result = parse_string(dedent('''\
            # @asset api (#api) -- "first"

            # -- "orphan"
        '''), 'app.py')
        assert result.annotations[0].entry.description == 'first'
        assert result.diagnostics == []

    def test_continuation_without_description_starts_one(self):
        result = parse_string('// @audit #api\n// -- "checked by sec team"\n', 'a.ts')
        assert result.annotations[0].entry.description == 'checked by sec team'

    def test_malformed_line_does_not_stop_the_scan(self):
        result = parse_string(dedent('''\
            # @exposes api.auth
            # @asset api (#api)
        '''), 'app.py')
        assert [a.verb for a in result.annotations] == ['asset']
        assert len(result.diagnostics) == 1
        assert result.diagnostics[0].level == 'error'
        assert result.diagnostics[0].line == 1

    def test_doc_comments_are_ignored(self):
        result = parse_string(dedent('''\
            /**
             * Handles login.
             * @param user the user
             * @returns a token
             * @exposes #api to #brute-force [high]
             */
        '''), 'auth.ts')
        assert [a.verb for a in result.annotations] == ['exposes']
        assert result.diagnostics == []

    def test_shield_region_excludes_inner_annotations(self):
        result = parse_string(dedent('''\
            # @shield:begin -- "vendored code"
            def decrypt_blob(x):
                pass
            # @exposes api to XSS
            # @shield:end
            # @asset api (#api)
        '''), 'vendor.py')
        verbs = [a.verb for a in result.annotations]
        assert verbs == ['shield:begin', 'shield:end', 'asset']
        assert result.shield_regions == [(1, 5)]
        assert result.diagnostics == []

    def test_unterminated_shield_warns_and_runs_to_eof(self):
        result = parse_string('# @shield:begin\n# @asset api\nx = 1\n', 'a.py')
        assert [a.verb for a in result.annotations] == ['shield:begin']
        assert result.shield_regions == [(1, 3)]
        assert len(result.diagnostics) == 1
        assert result.diagnostics[0].level == 'warning'
        assert 'never closed' in result.diagnostics[0].message

    def test_stray_shield_end_warns(self):
        result = parse_string('# @shield:end\n', 'a.py')
        assert result.diagnostics[0].level == 'warning'
        assert 'without matching' in result.diagnostics[0].message

    def test_locations_use_forward_slashes(self):
        result = parse_string('# @asset api\n', 'src\\win\\app.py')
        assert result.annotations[0].entry.location.file == 'src/win/app.py'

    def test_form_feed_and_crlf_keep_line_numbers(self):
        result = parse_string('x = 1\x0c\n# @asset api\r\n', 'app.py')
        location = result.annotations[0].entry.location
        assert location.line == 2
        assert location.raw == '@asset api'

    def test_unicode_line_separator_is_not_a_break(self):
        result = parse_string('s = "a\u2028b"\n\n# @asset api\n', 'app.py')
        assert result.annotations[0].entry.location.line == 3


class TestParseFile:
    def test_undecodable_file_yields_warning(self, tmp_path):
        path = tmp_path / 'blob.py'
        path.write_bytes(b'\xff\xfe\x00\x80 # @asset api')
        result = parse_file(path, 'blob.py')
        assert result.annotations == []
        assert result.coverage is None
        assert result.diagnostics[0].level == 'warning'


class TestDiscovery:
    def test_default_globs(self, write_tree):
        root = write_tree({
            'app.py': '# @asset api\n',
            'src/handlers/login.ts': '// @asset login\n',
            'node_modules/lib/index.js': '// @asset vendored\n',
            'tests/test_app.py': '# @asset test\n',
            'README.txt': '@asset nope\n',
            '.threatlink/workspace.yaml': 'workspace: acme\n',
        })
        assert discover_files(root, DEFAULT_INCLUDE, DEFAULT_EXCLUDE) == ['app.py', 'src/handlers/login.ts']

    def test_single_star_stays_in_one_directory(self, write_tree):
        root = write_tree({'src/a.py': '', 'src/sub/b.py': '', 'c.py': ''})
        assert discover_files(root, ['src/*.py'], []) == ['src/a.py']

    def test_double_star_matches_zero_or_more_directories(self, write_tree):
        root = write_tree({'c.py': '', 'src/sub/b.py': '', '.threatlink/defs.py': ''})
        assert discover_files(root, ['**/*.py'], []) == ['.threatlink/defs.py', 'c.py', 'src/sub/b.py']

    def test_definitions_under_threatlink_dir_are_scanned(self, write_tree):
        root = write_tree({
            '.threatlink/workspace.yaml': 'workspace: acme\nthis_repo: web\n',
            '.threatlink/definitions.ts': '// @asset api (#api)\n',
        })
        assert discover_files(root, DEFAULT_INCLUDE, DEFAULT_EXCLUDE) == ['.threatlink/definitions.ts']

    @pytest.mark.parametrize('pattern,path,expected', [
        ('src/?.py', 'src/a.py', True),
        ('src/?.py', 'src/ab.py', False),
        ('**/tests/**', 'tests/test_app.py', True),
        ('**/tests/**', 'pkg/tests/deep/x.py', True),
        ('*.py', 'pkg/a.py', False),
        ('src/a+b.py', 'src/a+b.py', True),
    ])
    def test_glob_regex(self, pattern, path, expected):
        assert bool(glob_regex(pattern).fullmatch(path)) is expected


class TestParseProject:
    def test_missing_root_is_fatal(self, tmp_path):
        with pytest.raises(ThreatModelParseError):
            parse_project(tmp_path / 'nope')

    def test_root_must_be_directory(self, tmp_path):
        path = tmp_path / 'file.py'
        path.write_text('')
        with pytest.raises(ThreatModelParseError, match='not a directory'):
            parse_project(path)

    def test_scenario_a_end_to_end(self, write_tree, scenario_a, now):
        root = write_tree({'src/app.py': scenario_a, 'src/util.py': 'x = 1\n'})
        result = parse_project(root, project='demo', now=now)
        model = result.model

        assert result.diagnostics == []
        assert model.project == 'demo'
        assert model.generated_at == now
        assert model.source_files == 2
        assert model.annotations_parsed == 2
        assert model.annotated_files == ['src/app.py']
        assert model.unannotated_files == ['src/util.py']

        unmitigated = find_unmitigated_exposures(model)
        assert len(unmitigated) == 1
        assert unmitigated[0].severity == 'critical'
        assert unmitigated[0].external_refs == ['cwe:CWE-89']
        assert unmitigated[0].location.file == 'src/app.py'

    def test_duplicate_id_is_an_error(self, write_tree):
        root = write_tree({
            'a.py': '# @asset api (#api)\n',
            'b.py': '\n\n# @asset api.v2 (#api)\n',
        })
        result = parse_project(root)
        errors = [d for d in result.diagnostics if d.level == 'error']
        assert len(errors) == 1
        assert errors[0].file == 'b.py'
        assert errors[0].line == 3
        assert 'a.py:1' in errors[0].message

    def test_exposure_inherits_threat_severity(self, write_tree):
        root = write_tree({'app.py': '''\
            # @threat SQL Injection (#sqli) [high]
            # @exposes #api to #sqli
            # @exposes #api to #xss [low]
        '''})
        exposures = parse_project(root).model.exposures
        assert [e.severity for e in exposures] == ['high', 'low']

    def test_collections_sorted_by_file_and_line(self, write_tree):
        root = write_tree({
            'b.py': '# @asset b\n',
            'a.py': '\n# @asset a2\n',
            'a/z.py': '# @asset az\n',
        })
        assets = parse_project(root).model.assets
        assert [(a.location.file, a.location.line) for a in assets] == [('a.py', 2), ('a/z.py', 1), ('b.py', 1)]

    def test_worker_pool_gives_identical_results(self, write_tree, now):
        files = {f'pkg/mod{i}.py': f'# @asset m{i} (#m{i})\n# @exposes #m{i} to #bad\nbroken = 1\n# @flows #m{i}\n'
                 for i in range(12)}
        root = write_tree(files)
        serial = parse_project(root, workers=1, now=now)
        pooled = parse_project(root, workers=4, now=now)
        assert pooled.model == serial.model
        assert pooled.diagnostics == serial.diagnostics
        assert len(serial.diagnostics) == 12

    def test_custom_include(self, write_tree):
        root = write_tree({'a.py': '# @asset a\n', 'b.rb': '# @asset b\n'})
        model = parse_project(root, include=['**/*.rb']).model
        assert [a.path for a in model.assets] == [['b']]

    def test_cross_repo_refs_with_workspace_manifest(self, write_tree):
        root = write_tree({
            '.threatlink/workspace.yaml': '''\
                workspace: acme
                this_repo: web
                repos:
                  - name: web
                  - name: auth-lib
            ''',
            'app.py': '''\
                # @asset web.login (#login)
                # @mitigates #login against #auth-lib.token-theft using #auth-lib.verify
                # @flows #login -> #payments.api
            ''',
        })
        result = parse_project(root)
        refs = result.model.external_refs
        assert [r.tag for r in refs] == ['#auth-lib.token-theft', '#auth-lib.verify']
        assert all(r.inferred_repo == 'auth-lib' and r.context_verb == 'mitigates' for r in refs)

    def test_threatlink_definitions_resolve_references(self, write_tree):
        root = write_tree({
            '.threatlink/workspace.yaml': 'workspace: acme\nthis_repo: web\n',
            '.threatlink/definitions.ts': '// @asset api (#api)\n',
            'app.py': '# @exposes #api to XSS\n',
            'util.py': 'x = 1\n',
        })
        model = parse_project(root).model
        assert find_dangling_refs(model) == []
        assert [a.location.file for a in model.assets] == ['.threatlink/definitions.ts']
        assert model.unannotated_files == ['util.py']

    def test_shared_definitions_outside_include_are_scanned(self, write_tree):
        root = write_tree({
            '.threatlink/workspace.yaml': '''\
                workspace: acme
                this_repo: web
                shared_definitions: vendor/defs.ts
            ''',
            'vendor/defs.ts': '// @threat Token theft (#token-theft) [high]\n',
            'app.py': '# @exposes api to #token-theft\n',
        })
        model = parse_project(root).model
        assert find_dangling_refs(model) == []
        assert model.exposures[0].severity == 'high'
        assert 'vendor/defs.ts' not in model.unannotated_files

    def test_missing_shared_definitions_is_ignored(self, write_tree):
        root = write_tree({
            '.threatlink/workspace.yaml': 'workspace: acme\nthis_repo: web\nshared_definitions: gone.ts\n',
            'app.py': '# @asset api\n',
        })
        result = parse_project(root)
        assert result.diagnostics == []
        assert result.model.source_files == 1

    def test_malformed_manifest_becomes_warning(self, write_tree):
        root = write_tree({'.threatlink/workspace.yaml': 'repos: [\n', 'app.py': '# @asset a\n'})
        result = parse_project(root)
        assert result.model.external_refs == []
        assert any(d.file == '.threatlink/workspace.yaml' for d in result.diagnostics)

    def test_coverage_percent_bounds(self, write_tree):
        root = write_tree({'svc.py': '''\
            # @exposes #api to #sqli
            def run_query(sql):
                pass

            def verify_token(t):
                pass
        '''})
        coverage = parse_project(root).model.coverage
        assert coverage.total_symbols == 2
        assert coverage.annotated_symbols == 1
        assert coverage.coverage_percent == 50
        assert 0 <= coverage.coverage_percent <= 100
