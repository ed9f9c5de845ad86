"""Annotation coverage over security-relevant symbols.

A lightweight structural pass: no real language parsing, just declaration
patterns for common languages and a name heuristic for what counts as
security-relevant.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .schemas import Coverage, UnannotatedSymbol


DEFAULT_WINDOW = 3


@dataclass(frozen=True)
class Symbol:
    """A function/method/handler declaration found in a source file."""
    file: str
    line: int
    kind: str
    name: str


@dataclass
class FileCoverageInput:
    """Everything the coverage pass needs from one parsed file."""
    file: str
    symbols: list[Symbol] = field(default_factory=list)
    annotation_lines: list[int] = field(default_factory=list)
    shield_regions: list[tuple[int, int]] = field(default_factory=list)


class SymbolScanner:
    """Finds declarations whose names look security-relevant."""

    SECURITY_KEYWORDS = (
        'auth', 'login', 'logout', 'signin', 'signup', 'token', 'password', 'passwd',
        'secret', 'credential', 'session', 'cookie', 'jwt', 'oauth', 'saml',
        'crypt', 'cipher', 'hash', 'sign', 'verify', 'permission', 'privilege',
        'role', 'admin', 'acl', 'sanitize', 'escape', 'validate',
        'query', 'sql', 'exec', 'spawn', 'shell', 'command', 'eval', 'system',
        'upload', 'download', 'deserialize', 'unserialize', 'pickle', 'unmarshal',
        'redirect', 'webhook', 'payment', 'charge', 'refund',
    )

    HANDLER_HINTS = ('handler', 'handle', 'route', 'endpoint', 'controller', 'middleware')

    CONTROL_WORDS = frozenset({
        'if', 'for', 'while', 'switch', 'catch', 'return', 'function', 'else',
        'elif', 'with', 'new', 'typeof', 'sizeof', 'await',
    })

    # (pattern, kind) - the first group is the symbol name
    DECLARATIONS = [
        (re.compile(r'^(?P<indent>\s*)(?:async\s+)?def\s+(?P<name>\w+)\s*\('), 'function'),
        (re.compile(r'^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(?P<name>\w+)\s*\('), 'function'),
        (re.compile(r'^\s*(?:export\s+)?(?:const|let|var)\s+(?P<name>\w+)\s*(?::[^=]+)?=\s*(?:async\s+)?(?:function\b|\([^)]*\)\s*(?::[^=]+)?=>|\w+\s*=>)'), 'function'),
        (re.compile(r'^\s*func\s+(?:\([^)]*\)\s*)?(?P<name>\w+)\s*\('), 'function'),
        (re.compile(r'^\s*(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+(?P<name>\w+)'), 'function'),
        (re.compile(r'^\s*(?:(?:public|private|protected|internal|static|final|override|suspend|open|abstract|async|synchronized|virtual)\s+)*fun\s+(?P<name>\w+)\s*\('), 'function'),
        (re.compile(r'^\s*(?:(?:public|private|protected|internal|static|final|override|abstract|async|synchronized|virtual|readonly)\s+)+[\w<>\[\],.?\s]*?\b(?P<name>\w+)\s*\([^;]*$'), 'method'),
        (re.compile(r'^\s+(?:async\s+)?(?P<name>[A-Za-z_]\w*)\s*\([^)]*\)\s*(?::\s*[^{;]+)?\{\s*$'), 'method'),
        (re.compile(r'^\s*(?:def|sub)\s+(?P<name>\w+)'), 'function'),
    ]

    def scan(self, file: str, lines: list[str]) -> list[Symbol]:
        symbols = []
        for number, line in enumerate(lines, start=1):
            symbol = self._match(file, number, line)
            if symbol is not None:
                symbols.append(symbol)
        return symbols

    def _match(self, file: str, number: int, line: str) -> Optional[Symbol]:
        for pattern, kind in self.DECLARATIONS:
            m = pattern.match(line)
            if not m:
                continue
            name = m.group('name')
            if name in self.CONTROL_WORDS:
                return None
            if kind == 'function' and m.groupdict().get('indent'):
                kind = 'method'
            if any(hint in name.lower() for hint in self.HANDLER_HINTS):
                kind = 'handler'
            return Symbol(file=file, line=number, kind=kind, name=name)
        return None

    def is_security_relevant(self, name: str) -> bool:
        lowered = name.lower()
        return any(keyword in lowered for keyword in self.SECURITY_KEYWORDS)


def _in_regions(line: int, regions: Iterable[tuple[int, int]]) -> bool:
    return any(start <= line <= end for start, end in regions)


def compute_coverage(
    files: Iterable[FileCoverageInput],
    window: int = DEFAULT_WINDOW,
    scanner: Optional[SymbolScanner] = None,
) -> Coverage:
    """Count security-relevant symbols and how many of them are annotated.

    A symbol counts when its name matches the security heuristic or it sits
    inside a ``shield:begin``/``shield:end`` region. It is annotated when an
    annotation lies on its line or up to ``window`` lines above it, or when it
    is shielded.
    """
    scanner = scanner or SymbolScanner()
    total = 0
    annotated = 0
    misses: list[UnannotatedSymbol] = []

    for entry in files:
        for symbol in entry.symbols:
            shielded = _in_regions(symbol.line, entry.shield_regions)
            if not shielded and not scanner.is_security_relevant(symbol.name):
                continue
            total += 1
            near = any(symbol.line - window <= ln <= symbol.line for ln in entry.annotation_lines)
            if shielded or near:
                annotated += 1
            else:
                misses.append(UnannotatedSymbol(
                    file=symbol.file, line=symbol.line, kind=symbol.kind, name=symbol.name,
                ))

    misses.sort(key=lambda s: (s.file, s.line))
    percent = round(100 * annotated / total) if total else 0
    return Coverage(
        total_symbols=total,
        annotated_symbols=annotated,
        coverage_percent=percent,
        unannotated_critical=misses,
    )
