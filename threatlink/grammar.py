"""Line grammar for security annotations embedded in source comments.

A line is only treated as an annotation when, after its comment prefix is
stripped, it starts with ``@<verb>`` for a verb in the closed vocabulary.
Everything else (``@param``, ``@returns``, prose) is ignored. Lines that do
carry a known verb but cannot be parsed produce an error diagnostic instead
of raising, so one bad annotation never stops a scan.

Annotation shape::

    @<verb> <args> [severity] [scheme:value ...] [-- "description"]
"""

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable, Optional

from .normalize import normalize_name, resolve_severity, unescape_description
from .schemas import (
    Acceptance, Asset, Assumption, Audit, Boundary, Comment, Control, DataHandling,
    Entry, Exposure, Flow, Mitigation, Ownership, ParseDiagnostic, Shield,
    SourceLocation, Threat, Transfer, Validation,
)


VERBS = frozenset({
    'asset', 'threat', 'control',
    'mitigates', 'exposes', 'accepts', 'transfers', 'flows', 'boundary',
    'validates', 'audit', 'owns', 'handles', 'assumes',
    'comment', 'shield', 'shield:begin', 'shield:end',
    # legacy spellings
    'review', 'connects',
})

PREPOSITIONS = frozenset({'to', 'against', 'using', 'on', 'from', 'via', 'and', 'between', 'for', 'with'})

DATA_CLASSIFICATIONS = ('pii', 'phi', 'financial', 'secrets', 'internal', 'public')


# Comment prefixes

_COMMENT_STYLES: dict[str, re.Pattern] = {
    '//': re.compile(r'^//+\s*(.*)$'),
    '#': re.compile(r'^#+\s*(.*)$'),
    '--': re.compile(r'^--\s*(.*)$'),
    '%': re.compile(r'^%+\s*(.*)$'),
    ';': re.compile(r'^;+\s*(.*)$'),
    'REM': re.compile(r'^REM(?:\s+(.*))?$', re.IGNORECASE),
    "'": re.compile(r"^'\s*(.*)$"),
    '*': re.compile(r'^\*(?!/)\s*(.*?)\s*(?:\*/)?$'),
    '<!--': re.compile(r'^<!--\s*(.*?)\s*(?:-->)?$'),
    '/*': re.compile(r'^/\*+\s*(.*?)\s*(?:\*+/)?$'),
    '{-': re.compile(r'^\{-\s*(.*?)\s*(?:-\})?$'),
    '(*': re.compile(r'^\(\*\s*(.*?)\s*(?:\*\))?$'),
}

ALL_PREFIXES = tuple(_COMMENT_STYLES)

_C_LIKE = ('//', '/*', '*')
_HASH = ('#',)

EXTENSION_PREFIXES: dict[str, tuple[str, ...]] = {
    **dict.fromkeys([
        '.ts', '.tsx', '.js', '.jsx', '.mjs', '.cjs', '.java', '.c', '.h', '.cpp',
        '.cc', '.hpp', '.cs', '.go', '.rs', '.swift', '.kt', '.scala', '.dart',
    ], _C_LIKE),
    '.php': ('//', '#', '/*', '*'),
    **dict.fromkeys([
        '.py', '.rb', '.sh', '.bash', '.zsh', '.yml', '.yaml', '.r', '.ex', '.exs',
        '.nim', '.pl', '.toml',
    ], _HASH),
    '.tf': ('#', '//', '/*', '*'),
    '.hcl': ('#', '//', '/*', '*'),
    '.sql': ('--', '/*', '*'),
    '.lua': ('--',),
    '.ada': ('--',),
    '.hs': ('--', '{-'),
    **dict.fromkeys(['.html', '.htm', '.xml', '.svg', '.md'], ('<!--',)),
    '.css': ('/*', '*'),
    **dict.fromkeys(['.tex', '.erl', '.m'], ('%',)),
    **dict.fromkeys(['.lisp', '.cl', '.clj', '.asm'], (';',)),
    **dict.fromkeys(['.bat', '.cmd'], ('REM',)),
    **dict.fromkeys(['.vb', '.bas'], ("'",)),
    '.ml': ('(*',),
}


def comment_prefixes_for(path: str) -> tuple[str, ...]:
    """Comment prefixes recognised for a file, chosen by extension.

    Unknown extensions accept every known style.
    """
    return EXTENSION_PREFIXES.get(PurePosixPath(path).suffix.lower(), ALL_PREFIXES)


def strip_comment_prefix(line: str, prefixes: tuple[str, ...] = ALL_PREFIXES) -> Optional[str]:
    """Return the text inside a comment line, or None if the line is not a comment."""
    trimmed = line.strip()
    for prefix in prefixes:
        m = _COMMENT_STYLES[prefix].match(trimmed)
        if m:
            return (m.group(1) or '').strip()
    return None


# Line parsing

_VERB = re.compile(r'^@([A-Za-z]+(?::[A-Za-z]+)?)(?=\s|$)')
_DESC = re.compile(r'(?:^|\s)--\s*"((?:[^"\\]|\\.)*)"\s*$')
_DESC_START = re.compile(r'(?:^|\s)--\s*"')
_CONTINUATION = re.compile(r'^--\s*"((?:[^"\\]|\\.)*)"\s*$')
_ID_DEF = re.compile(r'\(#([A-Za-z0-9_][\w.\-]*)\)')
_BRACKET = re.compile(r'\[([^\]]*)\]')
_SEVERITY_KV = re.compile(r'(?:^|(?<=\s))severity:(\S+)', re.IGNORECASE)
_EXT_REF = re.compile(r'^[A-Za-z]+:[A-Za-z0-9_:.\-]+$')
_TAG = r'#[A-Za-z0-9_][\w.\-]*'
_REF = re.compile(rf'^(?:{_TAG}|[A-Za-z_][\w\-]*(?:\.[A-Za-z_][\w\-]*)*)$')
_PATH = re.compile(r'^[A-Za-z_][\w\-]*(?:\.[A-Za-z_][\w\-]*)*$')
_NAME_TOKEN = re.compile(r'^[A-Za-z0-9_][\w\-.]*$')
_TAG_ONLY = re.compile(rf'^{_TAG}$')
_WORD = re.compile(r'^[\w\-]+$')


class AnnotationSyntaxError(ValueError):
    """Raised inside the grammar for a recognised verb with bad arguments."""


@dataclass
class LineResult:
    """Outcome of parsing one comment line.

    Exactly one of ``entry``, ``diagnostic`` or ``continuation`` is set for
    annotation-related lines; all are None for ordinary comments.
    """
    verb: Optional[str] = None
    entry: Optional[Entry] = None
    diagnostic: Optional[ParseDiagnostic] = None
    continuation: Optional[str] = None


@dataclass(frozen=True)
class Slot:
    name: str
    kind: str  # ref | path | name | word | text
    separators: frozenset = frozenset()
    optional: bool = False


@dataclass
class Parts:
    """Pieces of an annotation after qualifiers and description are split off."""
    slots: dict[str, str] = field(default_factory=dict)
    id: Optional[str] = None
    severity: Optional[str] = None
    external_refs: list[str] = field(default_factory=list)
    description: Optional[str] = None


def _slots(*slots: Slot) -> tuple[Slot, ...]:
    return slots


def _sep(*words: str) -> frozenset:
    return frozenset(words)


@dataclass(frozen=True)
class VerbRule:
    slots: tuple[Slot, ...]
    builder: Callable[[Parts, SourceLocation], Entry]
    canonical: Optional[str] = None
    allows_id: bool = False
    allows_severity: bool = False
    allows_external_refs: bool = False
    leading: frozenset = frozenset()


def _asset(p: Parts, loc: SourceLocation) -> Entry:
    return Asset(path=p.slots['path'].split('.'), id=p.id, description=p.description, location=loc)


def _threat(p: Parts, loc: SourceLocation) -> Entry:
    name = p.slots['name']
    return Threat(
        name=name, canonical_name=normalize_name(name), id=p.id, severity=p.severity,
        external_refs=p.external_refs, description=p.description, location=loc,
    )


def _control(p: Parts, loc: SourceLocation) -> Entry:
    name = p.slots['name']
    return Control(name=name, canonical_name=normalize_name(name), id=p.id,
                   description=p.description, location=loc)


def _mitigates(p: Parts, loc: SourceLocation) -> Entry:
    return Mitigation(asset=p.slots['asset'], threat=p.slots['threat'], control=p.slots.get('control'),
                      description=p.description, location=loc)


def _exposes(p: Parts, loc: SourceLocation) -> Entry:
    return Exposure(asset=p.slots['asset'], threat=p.slots['threat'], severity=p.severity,
                    external_refs=p.external_refs, description=p.description, location=loc)


def _accepts(p: Parts, loc: SourceLocation) -> Entry:
    return Acceptance(threat=p.slots['threat'], asset=p.slots['asset'], description=p.description, location=loc)


def _transfers(p: Parts, loc: SourceLocation) -> Entry:
    return Transfer(threat=p.slots['threat'], source=p.slots['source'], target=p.slots['target'],
                    description=p.description, location=loc)


def _flows(p: Parts, loc: SourceLocation) -> Entry:
    return Flow(source=p.slots['source'], target=p.slots['target'], mechanism=p.slots.get('mechanism'),
                description=p.description, location=loc)


def _boundary(p: Parts, loc: SourceLocation) -> Entry:
    return Boundary(asset_a=p.slots['asset_a'], asset_b=p.slots['asset_b'], id=p.id,
                    description=p.description, location=loc)


def _validates(p: Parts, loc: SourceLocation) -> Entry:
    return Validation(control=p.slots['control'], asset=p.slots['asset'], description=p.description, location=loc)


def _audit(p: Parts, loc: SourceLocation) -> Entry:
    return Audit(asset=p.slots['asset'], description=p.description, location=loc)


def _owns(p: Parts, loc: SourceLocation) -> Entry:
    return Ownership(owner=p.slots['owner'], asset=p.slots['asset'], description=p.description, location=loc)


def _handles(p: Parts, loc: SourceLocation) -> Entry:
    classification = p.slots['classification'].lower()
    if classification not in DATA_CLASSIFICATIONS:
        raise AnnotationSyntaxError(
            f"unknown data classification '{p.slots['classification']}' "
            f"(expected one of: {', '.join(DATA_CLASSIFICATIONS)})"
        )
    return DataHandling(classification=classification, asset=p.slots['asset'],
                        description=p.description, location=loc)


def _assumes(p: Parts, loc: SourceLocation) -> Entry:
    return Assumption(asset=p.slots['asset'], description=p.description, location=loc)


def _comment(p: Parts, loc: SourceLocation) -> Entry:
    return Comment(description=p.description, location=loc)


def _shield(kind: str) -> Callable[[Parts, SourceLocation], Entry]:
    def build(p: Parts, loc: SourceLocation) -> Entry:
        return Shield(kind=kind, reason=p.description, location=loc)
    return build


RULES: dict[str, VerbRule] = {
    'asset': VerbRule(_slots(Slot('path', 'path')), _asset, allows_id=True),
    'threat': VerbRule(_slots(Slot('name', 'name')), _threat, allows_id=True,
                       allows_severity=True, allows_external_refs=True),
    'control': VerbRule(_slots(Slot('name', 'name')), _control, allows_id=True),
    'mitigates': VerbRule(_slots(
        Slot('asset', 'ref'),
        Slot('threat', 'name', _sep('against')),
        Slot('control', 'name', _sep('using', 'with'), optional=True),
    ), _mitigates),
    'exposes': VerbRule(_slots(
        Slot('asset', 'ref'),
        Slot('threat', 'name', _sep('to')),
    ), _exposes, allows_severity=True, allows_external_refs=True),
    'accepts': VerbRule(_slots(
        Slot('threat', 'name'),
        Slot('asset', 'ref', _sep('on', 'to')),
    ), _accepts),
    'transfers': VerbRule(_slots(
        Slot('threat', 'name'),
        Slot('source', 'ref', _sep('from')),
        Slot('target', 'ref', _sep('to')),
    ), _transfers),
    'flows': VerbRule(_slots(
        Slot('source', 'ref'),
        Slot('target', 'ref', _sep('->', 'to')),
        Slot('mechanism', 'text', _sep('via'), optional=True),
    ), _flows),
    'connects': VerbRule(_slots(
        Slot('source', 'ref'),
        Slot('target', 'ref', _sep('to')),
    ), _flows, canonical='flows'),
    'boundary': VerbRule(_slots(
        Slot('asset_a', 'ref'),
        Slot('asset_b', 'ref', _sep('and', '|')),
    ), _boundary, allows_id=True, leading=_sep('between')),
    'validates': VerbRule(_slots(
        Slot('control', 'name'),
        Slot('asset', 'ref', _sep('for')),
    ), _validates),
    'audit': VerbRule(_slots(Slot('asset', 'ref')), _audit),
    'review': VerbRule(_slots(Slot('asset', 'ref')), _audit, canonical='audit'),
    'owns': VerbRule(_slots(
        Slot('owner', 'word'),
        Slot('asset', 'ref', _sep('for')),
    ), _owns),
    'handles': VerbRule(_slots(
        Slot('classification', 'word'),
        Slot('asset', 'ref', _sep('on')),
    ), _handles),
    'assumes': VerbRule(_slots(Slot('asset', 'ref')), _assumes),
    'comment': VerbRule((), _comment),
    'shield': VerbRule((), _shield('shield')),
    'shield:begin': VerbRule((), _shield('begin')),
    'shield:end': VerbRule((), _shield('end')),
}


def _split_description(body: str) -> tuple[str, Optional[str]]:
    m = _DESC.search(body)
    if m:
        return body[:m.start()].strip(), unescape_description(m.group(1))
    if _DESC_START.search(body):
        raise AnnotationSyntaxError('unterminated or misplaced description (expected -- "..." at end of line)')
    return body.strip(), None


def _extract_id(head: str, verb: str, rule: VerbRule) -> tuple[str, Optional[str]]:
    ids = _ID_DEF.findall(head)
    if not ids:
        return head, None
    if not rule.allows_id:
        raise AnnotationSyntaxError(f'@{verb} does not take an identifier definition')
    if len(ids) > 1:
        raise AnnotationSyntaxError('more than one identifier definition')
    return _ID_DEF.sub(' ', head), ids[0]


def _split_text_slot(head: str, rule: VerbRule) -> tuple[str, str]:
    """Cut a trailing free-text slot (``via <mechanism>``) off the head.

    Ids and qualifiers are only read from the part before it, so brackets in
    free text are kept as written.
    """
    slot = next((s for s in rule.slots if s.kind == 'text'), None)
    if slot is None:
        return head, ''
    words = '|'.join(re.escape(w) for w in sorted(slot.separators))
    m = re.search(rf'(?:^|(?<=\s))(?:{words})(?=\s|$)', head, re.IGNORECASE)
    if m is None:
        return head, ''
    return head[:m.start()], head[m.start():]


def _extract_severity(head: str, verb: str, rule: VerbRule) -> tuple[str, Optional[str]]:
    raw_values = _BRACKET.findall(head) + _SEVERITY_KV.findall(head)
    if not raw_values:
        return head, None
    if not rule.allows_severity:
        raise AnnotationSyntaxError(f'@{verb} does not take a severity qualifier')
    if len(raw_values) > 1:
        raise AnnotationSyntaxError('more than one severity qualifier')
    severity = resolve_severity(raw_values[0])
    if severity is None:
        raise AnnotationSyntaxError(f"unknown severity qualifier '{raw_values[0]}'")
    head = _SEVERITY_KV.sub(' ', _BRACKET.sub(' ', head))
    return head, severity


def _tokenize(head: str, verb: str) -> list[str]:
    if verb == 'boundary':
        head = head.replace('|', ' | ')
    elif verb in ('flows', 'connects'):
        head = head.replace('->', ' -> ')
    return head.split()


def _assign_slots(tokens: list[str], rule: VerbRule) -> dict[str, str]:
    if tokens and rule.leading and tokens[0].lower() in rule.leading:
        tokens = tokens[1:]
    if not rule.slots:
        if tokens:
            raise AnnotationSyntaxError(f"unexpected text '{' '.join(tokens)}'")
        return {}

    groups: list[tuple[Slot, list[str]]] = []
    start = 0
    current = rule.slots[0]
    for slot in rule.slots[1:]:
        cut = next(
            (i for i in range(start + 1, len(tokens)) if tokens[i].lower() in slot.separators),
            None,
        )
        if cut is None:
            if slot.optional:
                break
            expected = '/'.join(sorted(slot.separators))
            raise AnnotationSyntaxError(f"missing {slot.name} (expected '{expected} <{slot.name}>')")
        groups.append((current, tokens[start:cut]))
        start = cut + 1
        current = slot
    groups.append((current, tokens[start:]))

    values: dict[str, str] = {}
    for slot, words in groups:
        values[slot.name] = _check_slot(slot, words)
    return values


def _check_slot(slot: Slot, words: list[str]) -> str:
    if not words:
        raise AnnotationSyntaxError(f'missing {slot.name}')
    text = ' '.join(words)
    if slot.kind == 'text':
        return text
    if slot.kind in ('ref', 'path', 'word'):
        pattern = {'ref': _REF, 'path': _PATH, 'word': _WORD}[slot.kind]
        if len(words) != 1 or not pattern.match(words[0]):
            raise AnnotationSyntaxError(f"invalid {slot.name} '{text}'")
        return words[0]
    # name: a single #tag or one or more plain words
    if len(words) == 1 and _TAG_ONLY.match(words[0]):
        return words[0]
    if not all(_NAME_TOKEN.match(w) for w in words):
        raise AnnotationSyntaxError(f"invalid {slot.name} '{text}'")
    return text


def parse_continuation(text: str) -> Optional[str]:
    """Return the unescaped description of a ``-- "..."`` continuation line."""
    m = _CONTINUATION.match(text.strip())
    if m:
        return unescape_description(m.group(1))
    return None


def parse_line(text: str, location: SourceLocation) -> LineResult:
    """Parse the inner text of one comment line.

    ``text`` has already had its comment prefix removed. The returned entry's
    location carries the trimmed annotation text as ``raw``.
    """
    trimmed = text.strip()
    if not trimmed.startswith('@'):
        cont = parse_continuation(trimmed)
        if cont is not None:
            return LineResult(continuation=cont)
        return LineResult()

    m = _VERB.match(trimmed)
    if not m or m.group(1) not in VERBS:
        return LineResult()

    verb = m.group(1)
    rule = RULES[verb]
    location = location.model_copy(update={'raw': trimmed})
    try:
        head, description = _split_description(trimmed[m.end():])
        head, text_tail = _split_text_slot(head, rule)
        head, tag_id = _extract_id(head, verb, rule)
        head, severity = _extract_severity(head, verb, rule)
        tokens = _tokenize(head, verb) + text_tail.split()
        external_refs: list[str] = []
        if rule.allows_external_refs:
            external_refs = [t for t in tokens if _EXT_REF.match(t)]
            tokens = [t for t in tokens if not _EXT_REF.match(t)]
        parts = Parts(
            slots=_assign_slots(tokens, rule), id=tag_id, severity=severity,
            external_refs=external_refs, description=description,
        )
        entry = rule.builder(parts, location)
    except AnnotationSyntaxError as e:
        return LineResult(
            verb=verb,
            diagnostic=ParseDiagnostic(
                level='error',
                file=location.file,
                line=location.line,
                message=f'Malformed @{verb} annotation: {e}',
                raw=trimmed,
            ),
        )
    return LineResult(verb=rule.canonical or verb, entry=entry)
