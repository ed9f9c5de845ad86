"""Workspace manifest and per-repository report loading."""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

import yaml
from pydantic import ValidationError

from .errors import ThreatLinkError
from .logging_config import get_logger
from .schemas import ThreatModel, WorkspaceConfig


logger = get_logger(__name__)

WORKSPACE_FILE = Path('.threatlink') / 'workspace.yaml'
REPORT_PREFIX = 'threatlink-report'


class WorkspaceConfigError(ThreatLinkError):
    """Raised when a workspace manifest exists but cannot be used."""
    pass


class ReportLoadError(ThreatLinkError):
    """Raised when a single report file is missing or not a valid ThreatModel."""
    pass


def load_workspace_config(path: Union[str, Path]) -> WorkspaceConfig:
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise WorkspaceConfigError(f"Cannot read workspace manifest {path}: {e}")
    except yaml.YAMLError as e:
        raise WorkspaceConfigError(f"YAML parse error in {path}: {e}")

    if not isinstance(data, dict):
        raise WorkspaceConfigError(f"Workspace manifest {path} is empty or not a mapping")
    try:
        return WorkspaceConfig(**data)
    except ValidationError as e:
        raise WorkspaceConfigError(f"Workspace manifest validation error: {e}")


def find_workspace_config(root: Union[str, Path]) -> Optional[WorkspaceConfig]:
    """Load ``.threatlink/workspace.yaml`` under ``root``; None when there is none."""
    path = Path(root) / WORKSPACE_FILE
    if not path.is_file():
        return None
    return load_workspace_config(path)


@dataclass
class LoadedReport:
    repo: str
    model: ThreatModel
    source_path: str


@dataclass
class LoadFailure:
    name: str
    error: str
    source_path: Optional[str] = None


LoadResult = Union[LoadedReport, LoadFailure]


def _name_from_path(path: Path) -> str:
    stem = path.stem
    if stem.startswith(REPORT_PREFIX):
        stem = stem[len(REPORT_PREFIX):].lstrip('-')
    return stem or path.name


def load_report(path: Union[str, Path]) -> LoadedReport:
    """Load one report JSON file.

    The repository name is taken from ``metadata.repo``, then the model's
    project name, then the file name (with a ``threatlink-report-`` prefix
    removed).

    Raises:
        ReportLoadError: the file is missing, unreadable or not a ThreatModel.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise ReportLoadError(f"Cannot read report {path}: {e}")
    try:
        model = ThreatModel.model_validate_json(raw)
    except ValidationError as e:
        # Distinguish plain JSON syntax errors for a friendlier message
        try:
            json.loads(raw)
        except json.JSONDecodeError as je:
            raise ReportLoadError(f"Invalid JSON in {path}: {je}")
        raise ReportLoadError(f"Report {path} is not a valid threat model: {e.error_count()} validation error(s)")

    repo = (model.metadata.repo if model.metadata else None) or model.project or _name_from_path(path)
    return LoadedReport(repo=repo, model=model, source_path=path.as_posix())


def load_reports(
    paths: Sequence[Union[str, Path]],
    expected_repos: Optional[Sequence[str]] = None,
) -> list[LoadResult]:
    """Load every report, recording failures instead of raising.

    Results keep the order of ``paths``; expected repositories without a
    report are appended as failures.
    """
    results: list[LoadResult] = []
    for raw_path in paths:
        path = Path(raw_path)
        try:
            report = load_report(path)
        except ReportLoadError as e:
            logger.warning('report_load_failed', path=str(path), error=str(e))
            results.append(LoadFailure(name=_name_from_path(path), error=str(e), source_path=path.as_posix()))
            continue
        logger.debug('report_loaded', path=str(path), repo=report.repo)
        results.append(report)

    if expected_repos:
        seen = {r.repo if isinstance(r, LoadedReport) else r.name for r in results}
        for repo in expected_repos:
            if repo not in seen:
                results.append(LoadFailure(name=repo, error='No report file provided'))
    return results
