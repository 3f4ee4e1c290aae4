"""chainctl gateway.

Translates domain intents into non-interactive chainctl invocations:
- create a custom image from a base repository plus extra packages
- read a repository's build configuration (packages)
- list repositories, images and build history

chainctl only offers an interactive `build edit` session for configuration.
We satisfy it by pointing EDITOR at a throwaway script that either copies a
pre-rendered document into place (write) or dumps the current document to
stderr and aborts (read).
"""

from __future__ import annotations

import enum
import json
import os
import shlex
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from imagegate.core.errors import ExternalToolError, ParseError
from imagegate.domain.requests.entities import ImageRequest
from imagegate.observability.tracing import command_span, log_event, new_trace_id
from imagegate.tools.base import CommandResult, CommandRunner
from imagegate.tools.build_config import (
    AssemblyOutcome,
    classify_assembly_output,
    parse_package_section,
    render_build_config,
    sanitize_custom_name,
)
from imagegate.tools.subprocess_runner import SubprocessCommandRunner

# Answers for every confirmation prompt chainctl may show.
_AUTO_CONFIRM = 'y\n' * 64


class BuildResult(str, enum.Enum):
    SUCCESS = 'Success'
    FAILURE = 'Failure'
    PENDING = 'Pending'

    @classmethod
    def parse(cls, value: Any) -> 'BuildResult':
        for member in cls:
            if isinstance(value, str) and value.lower() == member.value.lower():
                return member
        return cls.PENDING


@dataclass(frozen=True)
class BuildRecord:
    """One historical build of a repository, derived from `build list`."""
    repo_name: str
    completion_time: datetime | None
    result: BuildResult


@dataclass(frozen=True)
class BuildConfig:
    repo_name: str
    packages: frozenset[str]


@dataclass(frozen=True)
class AssemblyResult:
    created: bool
    no_change: bool
    image_url: str
    custom_name: str
    assembly_id: str
    raw_output: str
    raw_stderr: str = ''


@dataclass(frozen=True)
class ToolStatus:
    installed: bool
    version: str | None = None
    error: str | None = None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@contextmanager
def _editor_workspace(script: str, document: str | None = None) -> Iterator[tuple[Path, Path | None]]:
    """Temp dir holding the stand-in editor (and optional document).

    Removed on exit, whatever happened inside.
    """
    with tempfile.TemporaryDirectory(prefix='imagegate-') as tmp:
        workdir = Path(tmp)
        config_path: Path | None = None
        if document is not None:
            config_path = workdir / 'build.yaml'
            config_path.write_text(document, encoding='utf-8')
            script = script.format(config=shlex.quote(str(config_path)))
        editor_path = workdir / 'editor.sh'
        editor_path.write_text(script, encoding='utf-8')
        editor_path.chmod(0o755)
        yield editor_path, config_path


_COPY_EDITOR = '#!/bin/sh\ncp {config} "$1"\n'
_DUMP_EDITOR = '#!/bin/sh\ncat "$1" 1>&2\nexit 1\n'


class ChainctlGateway:
    """Runs chainctl for one organization."""

    def __init__(
        self,
        *,
        org_id: str,
        registry: str,
        api_token: str = '',
        runner: CommandRunner | None = None,
        executable: str = 'chainctl',
        timeout: float = 120.0,
    ) -> None:
        """Create a gateway.

        Args:
            org_id: Organization passed as --parent.
            registry: Registry host used to build image URLs (e.g. cgr.dev).
            api_token: Exported to chainctl as CHAINCTL_TOKEN when set.
            runner: Optional injected runner for testing.
            executable: chainctl binary name or path.
            timeout: Upper bound in seconds for every invocation.
        """
        self._org_id = org_id
        self._registry = registry.rstrip('/')
        self._api_token = api_token
        self._runner = runner or SubprocessCommandRunner()
        self._executable = executable
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Any, runner: CommandRunner | None = None) -> 'ChainctlGateway':
        return cls(
            org_id=settings.chainguard_org_id,
            registry=settings.chainguard_registry,
            api_token=settings.chainguard_api_token,
            runner=runner,
            executable=settings.chainctl_path,
            timeout=settings.chainctl_timeout_seconds,
        )

    def image_url(self, repo_name: str) -> str:
        return f'{self._registry}/{repo_name}:latest'

    # ------------------------------
    # Build configuration
    # ------------------------------

    async def create_assembly(self, request: ImageRequest) -> AssemblyResult:
        """Save the base repository's config plus the requested packages as a new repo.

        Raises:
            ValueError: The request name leaves nothing after sanitizing.
            ExternalToolError: chainctl failed or could not be started.
        """
        custom_name = sanitize_custom_name(request.request_name)
        if not custom_name:
            raise ValueError(f'Request name {request.request_name!r} does not yield an image name')

        document = render_build_config(request.description, request.packages)
        args = self._edit_args(request.image_name) + ['--save-as', custom_name]

        log_event(
            'chainctl.assembly.start',
            trace_id=request.id,
            repo=request.image_name,
            custom_name=custom_name,
            packages=list(request.packages),
        )

        with _editor_workspace(_COPY_EDITOR, document) as (editor, _config):
            result = await self._run(
                args,
                trace_id=request.id,
                env=self._env(editor=editor),
                stdin=_AUTO_CONFIRM,
            )

        if not result.ok:
            raise ExternalToolError(
                f'chainctl build edit failed with exit code {result.returncode}',
                raw_stderr=result.stderr,
                returncode=result.returncode,
            )

        outcome = classify_assembly_output(result.stdout)
        log_event(
            'chainctl.assembly.done',
            trace_id=request.id,
            custom_name=custom_name,
            outcome=outcome.value,
        )

        return AssemblyResult(
            created=outcome == AssemblyOutcome.CREATED,
            no_change=outcome == AssemblyOutcome.NO_CHANGE,
            image_url=self.image_url(custom_name),
            custom_name=custom_name,
            assembly_id=f'custom-{uuid.uuid4().hex[:12]}',
            raw_output=result.stdout,
            raw_stderr=result.stderr,
        )

    async def get_build_config(self, repo_name: str) -> BuildConfig:
        """Read a repository's package list.

        The stand-in editor always fails, so chainctl's exit code carries no
        information here. Unparseable output degrades to an empty package set.

        Raises:
            ExternalToolError: chainctl could not be started or timed out.
        """
        trace_id = new_trace_id()
        with _editor_workspace(_DUMP_EDITOR) as (editor, _config):
            result = await self._run(
                self._edit_args(repo_name),
                trace_id=trace_id,
                env=self._env(editor=editor),
            )

        dump = result.stderr or result.stdout
        try:
            packages = parse_package_section(dump)
        except ParseError as exc:
            log_event(
                'chainctl.config.unparseable',
                trace_id=trace_id,
                repo=repo_name,
                error=str(exc),
            )
            packages = []

        return BuildConfig(repo_name=repo_name, packages=frozenset(packages))

    # ------------------------------
    # Listings
    # ------------------------------

    async def list_repos(self) -> dict[str, Any]:
        return await self._run_json(['images', 'repos', 'list', '--parent', self._org_id, '-o', 'json'])

    async def list_repo_names(self) -> list[str]:
        payload = await self.list_repos()
        items = payload.get('items') or []
        return [item['name'] for item in items if isinstance(item, dict) and item.get('name')]

    async def list_images(self) -> dict[str, Any]:
        return await self._run_json(['images', 'list', '--parent', self._org_id, '-o', 'json'])

    async def list_builds(self, repo_name: str) -> dict[str, Any]:
        return await self._run_json(
            ['images', 'repos', 'build', 'list', '--parent', self._org_id, '--repo', repo_name, '-o', 'json']
        )

    async def list_build_records(self, repo_name: str) -> list[BuildRecord]:
        payload = await self.list_builds(repo_name)
        reports = payload.get('reports') or []
        return [
            BuildRecord(
                repo_name=repo_name,
                completion_time=parse_timestamp(report.get('completionTime')),
                result=BuildResult.parse(report.get('result')),
            )
            for report in reports
            if isinstance(report, dict)
        ]

    async def get_build_logs(self, repo_name: str) -> str:
        args = ['images', 'repos', 'build', 'logs', '--parent', self._org_id, '--repo', repo_name]
        result = await self._run(args, trace_id=new_trace_id(), env=self._env())
        self._raise_for_status(result, args)
        return result.stdout

    async def check_installed(self) -> ToolStatus:
        try:
            result = await self._run(['version'], trace_id=new_trace_id(), env=self._env())
        except ExternalToolError as exc:
            return ToolStatus(installed=False, error=str(exc))
        if not result.ok:
            return ToolStatus(installed=False, error=result.stderr.strip() or None)
        return ToolStatus(installed=True, version=result.stdout.strip())

    # ------------------------------
    # Helpers
    # ------------------------------

    def _edit_args(self, repo_name: str) -> list[str]:
        return ['images', 'repos', 'build', 'edit', '--parent', self._org_id, '--repo', repo_name]

    def _env(self, *, editor: Path | None = None) -> dict[str, str]:
        env = dict(os.environ)
        if self._api_token:
            env['CHAINCTL_TOKEN'] = self._api_token
        if editor is not None:
            env['EDITOR'] = str(editor)
        return env

    async def _run(
        self,
        args: list[str],
        *,
        trace_id: str,
        env: dict[str, str],
        stdin: str | None = None,
    ) -> CommandResult:
        command = [self._executable, *args]
        with command_span(command, trace_id=trace_id) as span:
            result = await self._runner.run(
                command,
                env=env,
                stdin=stdin,
                timeout=self._timeout,
            )
            span.attributes['returncode'] = result.returncode
        return result

    async def _run_json(self, args: list[str]) -> dict[str, Any]:
        result = await self._run(args, trace_id=new_trace_id(), env=self._env())
        self._raise_for_status(result, args)
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise ParseError(f"chainctl {' '.join(args[:4])} returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ParseError(f"chainctl {' '.join(args[:4])} returned {type(payload).__name__}, expected object")
        return payload

    @staticmethod
    def _raise_for_status(result: CommandResult, args: list[str]) -> None:
        if not result.ok:
            raise ExternalToolError(
                f"chainctl {' '.join(args[:4])} failed with exit code {result.returncode}",
                raw_stderr=result.stderr,
                returncode=result.returncode,
            )
