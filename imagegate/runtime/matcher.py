"""Duplicate-image matcher.

Before building a new custom image we look for an existing repository in the
organization whose build configuration already contains every requested
package. Finding one saves a build and avoids near-identical images.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol

from imagegate.core.errors import ExternalToolError, ParseError
from imagegate.observability.tracing import log_event, new_trace_id
from imagegate.tools.chainctl import BuildConfig


class ConfigSource(Protocol):
    async def list_repo_names(self) -> list[str]: ...

    async def get_build_config(self, repo_name: str) -> BuildConfig: ...


@dataclass(frozen=True)
class MatchResult:
    repo_name: str
    packages: frozenset[str]
    exact_match: bool


def select_match(matches: Iterable[MatchResult]) -> MatchResult | None:
    """First exact match, otherwise the first superset match."""
    matches = list(matches)
    for match in matches:
        if match.exact_match:
            return match
    return matches[0] if matches else None


class ImageMatcher:
    def __init__(self, gateway: ConfigSource) -> None:
        self._gateway = gateway

    async def find_matches(
        self,
        base_repo: str,
        requested_packages: Iterable[str],
        *,
        trace_id: str | None = None,
    ) -> list[MatchResult]:
        """
        Scan every repository except `base_repo` for a package superset.

        Repositories are visited in name order so results do not depend on
        chainctl's listing order. A repository whose configuration cannot be
        read is skipped; a failed listing yields no matches. An empty request
        is covered by every repository.
        """
        trace_id = trace_id or new_trace_id()
        requested = frozenset(requested_packages)

        try:
            repo_names = await self._gateway.list_repo_names()
        except (ExternalToolError, ParseError) as exc:
            log_event('matcher.list_failed', trace_id=trace_id, error=str(exc))
            return []

        matches: list[MatchResult] = []
        for repo_name in sorted(set(repo_names)):
            if repo_name == base_repo:
                continue
            try:
                config = await self._gateway.get_build_config(repo_name)
            except (ExternalToolError, ParseError) as exc:
                log_event('matcher.repo_skipped', trace_id=trace_id, repo=repo_name, error=str(exc))
                continue

            if requested <= config.packages:
                matches.append(
                    MatchResult(
                        repo_name=repo_name,
                        packages=config.packages,
                        exact_match=len(config.packages) == len(requested),
                    )
                )

        log_event(
            'matcher.done',
            trace_id=trace_id,
            base_repo=base_repo,
            scanned=len(repo_names),
            matches=[m.repo_name for m in matches],
        )
        return matches
