"""Build configuration documents and chainctl output interpretation.

chainctl edits a repository's build configuration through an interactive
editor session and reports what it did as free text. Everything that depends
on that text format lives here:

- naming a custom image from a human-readable request name
- rendering the declarative build configuration we hand to the editor
- extracting the `packages:` list from a configuration dump
- classifying the outcome of an edit from stdout
"""

from __future__ import annotations

import enum
import re
from typing import Iterable

from imagegate.core.errors import ParseError

MAX_CUSTOM_NAME_CHARS = 50

_DISALLOWED_NAME_CHARS = re.compile(r'[^a-z0-9\s-]')
_WHITESPACE_RUN = re.compile(r'\s+')

_KEY_LINE = re.compile(r'^(?P<indent>\s*)(?P<key>[A-Za-z0-9_.-]+):(?:\s+(?P<rest>.*))?\s*$')
_ITEM_LINE = re.compile(r'^(?P<indent>\s*)-(?:\s+(?P<value>.*))?\s*$')


class AssemblyOutcome(str, enum.Enum):
    CREATED = 'created'
    NO_CHANGE = 'no_change'
    UNCLASSIFIED = 'unclassified'


def sanitize_custom_name(request_name: str) -> str:
    """Turn a request name into a repository name.

    Lower-cases, drops anything outside [a-z0-9 -], collapses whitespace runs
    to single hyphens and truncates to 50 characters. Registry repository
    names must start and end with a letter or digit, so leading and trailing
    whitespace is ignored and hyphens left at either end (including one exposed
    by truncation) are trimmed.
    """
    kept = _DISALLOWED_NAME_CHARS.sub('', request_name.lower()).strip()
    name = _WHITESPACE_RUN.sub('-', kept)[:MAX_CUSTOM_NAME_CHARS]
    return name.strip('-')


def render_build_config(description: str, packages: Iterable[str]) -> str:
    lines = ['# Custom Assembly Build Configuration']
    for text in (description or '').splitlines() or ['']:
        lines.append(f'# {text}'.rstrip())
    lines += ['', 'contents:', '  packages:']
    lines += [f'    - {pkg}' for pkg in packages]
    return '\n'.join(lines) + '\n'


def classify_assembly_output(stdout: str) -> AssemblyOutcome:
    """Single place where chainctl's edit output is interpreted."""
    text = stdout.lower()
    if 'creating new repo' in text or 'applying build config' in text:
        return AssemblyOutcome.CREATED
    if 'no changes detected' in text:
        return AssemblyOutcome.NO_CHANGE
    return AssemblyOutcome.UNCLASSIFIED


def _is_blank_or_comment(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith('#')


def _clean_value(raw: str) -> str:
    value = re.sub(r'\s+#.*$', '', raw).strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        value = value[1:-1].strip()
    return value


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip())


def _collect_items(lines: list[str], key_indent: int, first_line_no: int) -> list[str]:
    packages: list[str] = []
    for offset, line in enumerate(lines):
        if _is_blank_or_comment(line):
            continue
        indent = _indent_of(line)
        item = _ITEM_LINE.match(line)
        if item and indent >= key_indent:
            value = _clean_value(item.group('value') or '')
            if not value or value.endswith(':'):
                raise ParseError(
                    f'Malformed package entry on line {first_line_no + offset}: {line.strip()!r}'
                )
            packages.append(value)
            continue
        if indent <= key_indent:
            break
        raise ParseError(
            f'Unexpected content in packages section on line {first_line_no + offset}: {line.strip()!r}'
        )
    return packages


def _flow_items(rest: str, line_no: int) -> list[str]:
    inner = rest[1:-1].strip()
    if not inner:
        return []
    values = [_clean_value(v) for v in inner.split(',')]
    if any(not v for v in values):
        raise ParseError(f'Malformed inline package list on line {line_no}: {rest!r}')
    return values


def parse_package_section(text: str) -> list[str]:
    """Extract the `packages:` list from a build configuration dump.

    Content outside the packages section is ignored, so tool chatter around
    the document does not matter. A document with a `contents:` key but no
    packages yields an empty list.

    Raises:
        ParseError: Empty input, no configuration document at all, or a
            packages section that is not a list of names.
    """
    if not text or not text.strip():
        raise ParseError('Build configuration output is empty')

    lines = text.splitlines()
    saw_contents = False

    for index, line in enumerate(lines):
        if _is_blank_or_comment(line):
            continue
        match = _KEY_LINE.match(line)
        if match is None:
            continue
        key = match.group('key')
        if key == 'contents':
            saw_contents = True
            continue
        if key != 'packages':
            continue

        rest = _clean_value(match.group('rest') or '')
        line_no = index + 1
        if not rest:
            return _collect_items(lines[index + 1:], len(match.group('indent')), line_no + 1)
        if rest.startswith('[') and rest.endswith(']'):
            return _flow_items(rest, line_no)
        raise ParseError(f'packages on line {line_no} is not a list: {rest!r}')

    if saw_contents:
        return []
    raise ParseError('Output does not contain a build configuration')
