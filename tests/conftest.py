"""Shared fixtures for threatlink tests."""

from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent

import pytest

from threatlink.parser import assemble_model, parse_string
from threatlink.schemas import ReportMetadata


FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def build_model(source: str, file_path: str = 'app.py', project: str = 'test', repo=None,
                generated_at: datetime = FIXED_NOW):
    """Parse one in-memory file into a ThreatModel."""
    result = parse_string(dedent(source), file_path)
    model = assemble_model(
        result.annotations,
        project=project,
        scanned_files=[file_path],
        annotated_files=[file_path] if result.annotations else [],
        coverage_inputs=[result.coverage],
        now=generated_at,
    )
    if repo:
        model = model.model_copy(update={'metadata': ReportMetadata(
            tool_version='1.0.0', repo=repo, generated_at=generated_at,
        )})
    return model


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def make_model():
    """Factory building a ThreatModel from annotated source text."""
    return build_model


@pytest.fixture
def write_tree(tmp_path):
    """Write ``{relative_path: content}`` under tmp_path and return the root."""
    def _write(files: dict) -> Path:
        for rel, content in files.items():
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(dedent(content), encoding='utf-8')
        return tmp_path
    return _write


SCENARIO_A = '''\
# @asset api.auth (#api)
# @exposes api.auth to SQLi [critical] cwe:CWE-89 -- "desc"
'''

SCENARIO_B = SCENARIO_A + '''\
# @mitigates api.auth against SQLi using Input_Validation
'''


@pytest.fixture
def scenario_a():
    return SCENARIO_A


@pytest.fixture
def scenario_b():
    return SCENARIO_B
