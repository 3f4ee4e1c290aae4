"""Package search.

Looks packages up in the Wolfi repository with `apk search`. The lookup is
bounded (10 seconds by default); on timeout, failure or an empty answer we
fall back to a fixed catalogue of common packages instead of surfacing an
error to the requester.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from imagegate.core.errors import ExternalToolError
from imagegate.observability.tracing import command_span, log_event, new_trace_id
from imagegate.tools.base import CommandRunner
from imagegate.tools.subprocess_runner import SubprocessCommandRunner

WOLFI_REPOSITORY = 'https://packages.wolfi.dev/os'
MAX_RESULTS = 20

_APK_LINE = re.compile(r'^(?P<name>[a-z0-9\-_.+]+)-(?P<version>\d+[^\s]*)\s*(?P<description>.*)$')

COMMON_PACKAGES: tuple[tuple[str, str], ...] = (
    ('curl', 'Command line tool for transferring data with URLs'),
    ('wget', 'Network utility to retrieve files from the Web'),
    ('git', 'Distributed version control system'),
    ('bash', 'GNU Bourne Again shell'),
    ('python-3.13', 'Python programming language (3.13)'),
    ('python-3.14', 'Python programming language (3.14)'),
    ('nodejs-22', 'Node.js JavaScript runtime (v22)'),
    ('nodejs-25', 'Node.js JavaScript runtime (v25)'),
    ('go', 'Go programming language'),
    ('jq', 'Command-line JSON processor'),
    ('vim', 'Vi IMproved text editor'),
    ('nano', 'Simple text editor'),
    ('openssh', 'OpenSSH client and server'),
    ('openssl', 'Toolkit for SSL/TLS protocols'),
    ('postgresql', 'PostgreSQL database'),
    ('redis', 'In-memory data structure store'),
    ('nginx', 'HTTP and reverse proxy server'),
    ('gcc', 'GNU Compiler Collection'),
    ('make', 'GNU Make build automation tool'),
    ('cmake', 'Cross-platform build system'),
)

POPULAR_PACKAGES: dict[str, list[str]] = {
    'Development Tools': ['git', 'vim', 'nano', 'curl', 'wget', 'jq', 'make', 'gcc', 'cmake'],
    'Programming Languages': ['python-3.14', 'python-3.13', 'nodejs-25', 'nodejs-22', 'go', 'ruby', 'php'],
    'Databases': ['postgresql', 'mysql', 'redis', 'mongodb'],
    'Web Servers': ['nginx', 'apache', 'caddy'],
    'Security': ['openssl', 'openssh', 'gnupg'],
}


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str
    description: str = ''


@dataclass(frozen=True)
class PackageSearchResult:
    search_term: str
    packages: list[PackageInfo] = field(default_factory=list)
    total: int = 0
    fallback: bool = False


def parse_apk_output(stdout: str) -> list[PackageInfo]:
    """Parse `apk search -v` lines: `<name>-<version> <description>`."""
    packages = []
    for line in stdout.splitlines():
        match = _APK_LINE.match(line.strip())
        if match:
            packages.append(
                PackageInfo(
                    name=match.group('name'),
                    version=match.group('version'),
                    description=match.group('description').strip(),
                )
            )
    return packages


def search_catalogue(term: str) -> list[PackageInfo]:
    needle = term.lower()
    return [
        PackageInfo(name=name, version='latest', description=description)
        for name, description in COMMON_PACKAGES
        if needle in name or needle in description.lower()
    ]


def popular_packages() -> dict[str, list[str]]:
    return {category: list(names) for category, names in POPULAR_PACKAGES.items()}


class PackageSearch:
    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        timeout: float = 10.0,
        executable: str = 'apk',
        repository: str = WOLFI_REPOSITORY,
    ) -> None:
        self._runner = runner or SubprocessCommandRunner()
        self._timeout = timeout
        self._executable = executable
        self._repository = repository

    async def search(self, term: str) -> PackageSearchResult:
        trace_id = new_trace_id()
        term = term.strip()
        if not term:
            return PackageSearchResult(search_term=term)

        command = [self._executable, 'search', '-v', term, '--repository', self._repository]
        try:
            with command_span(command, trace_id=trace_id) as span:
                result = await self._runner.run(command, timeout=self._timeout)
                span.attributes['returncode'] = result.returncode
        except ExternalToolError as exc:
            log_event('packages.search.unavailable', trace_id=trace_id, term=term, error=str(exc))
            return self._fallback(term)

        packages = parse_apk_output(result.stdout) if result.ok else []
        if not packages:
            log_event('packages.search.empty', trace_id=trace_id, term=term, returncode=result.returncode)
            return self._fallback(term)

        log_event('packages.search.ok', trace_id=trace_id, term=term, total=len(packages))
        return PackageSearchResult(
            search_term=term,
            packages=packages[:MAX_RESULTS],
            total=len(packages),
        )

    @staticmethod
    def _fallback(term: str) -> PackageSearchResult:
        matches = search_catalogue(term)
        return PackageSearchResult(
            search_term=term,
            packages=matches,
            total=len(matches),
            fallback=True,
        )
