"""Name, reference and severity normalization helpers."""

import re
import unicodedata
from typing import Optional

from .schemas import Severity


SEVERITY_ALIASES: dict[str, Severity] = {
    'p0': 'critical', 'critical': 'critical',
    'p1': 'high', 'high': 'high',
    'p2': 'medium', 'medium': 'medium',
    'p3': 'low', 'low': 'low',
}

# critical < high < medium < low < unset
SEVERITY_ORDER: dict[Optional[str], int] = {
    'critical': 0,
    'high': 1,
    'medium': 2,
    'low': 3,
    None: 4,
}

_WHITESPACE = re.compile(r'\s+')
_UNDERSCORES = re.compile(r'_+')


def resolve_severity(raw: Optional[str]) -> Optional[Severity]:
    """Map a severity word or P0-P3 alias onto the canonical level.

    Returns None for absent or unknown input.
    """
    if raw is None:
        return None
    return SEVERITY_ALIASES.get(raw.strip().lower())


def severity_rank(severity: Optional[str]) -> int:
    """Sort key where the most severe level comes first and unset last."""
    return SEVERITY_ORDER.get(severity, SEVERITY_ORDER[None])


def normalize(ref: str) -> str:
    """Matching form of an asset/threat reference.

    Strips the leading ``#``, folds case and collapses whitespace, so that
    ``#SQLi``, ``sqli`` and `` SQLi `` all compare equal. Idempotent.
    """
    value = ref.strip().lstrip('#')
    return _WHITESPACE.sub(' ', value).strip().casefold()


def exposure_key(asset: str, threat: str) -> str:
    return f'{normalize(asset)}::{normalize(threat)}'


def normalize_name(name: str) -> str:
    """Canonical form of a threat or control name: ``SQL-Injection`` -> ``sql_injection``."""
    value = unicodedata.normalize('NFKC', name).lower()
    value = _WHITESPACE.sub('_', value)
    value = value.replace('-', '_')
    value = _UNDERSCORES.sub('_', value)
    return value.strip('_')


def strip_tag(tag: str) -> str:
    return tag[1:] if tag.startswith('#') else tag


def unescape_description(raw: str) -> str:
    r"""Undo description escaping: ``\"`` -> ``"`` and ``\\`` -> ``\``."""
    out = []
    i = 0
    while i < len(raw):
        ch = raw[i]
        if ch == '\\' and i + 1 < len(raw) and raw[i + 1] in '"\\':
            out.append(raw[i + 1])
            i += 2
            continue
        out.append(ch)
        i += 1
    return ''.join(out)
