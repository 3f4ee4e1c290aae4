from __future__ import annotations

import pytest

from imagegate.core.errors import ExternalToolError
from imagegate.runtime.matcher import ImageMatcher, MatchResult, select_match

from tests.fixtures.fake_gateway import FakeGateway


@pytest.mark.asyncio
async def test_exact_match_is_selected_when_scanned_first() -> None:
    gateway = FakeGateway({
        "a-tools": {"curl", "jq"},
        "b-tools": {"curl", "jq", "vim"},
    })

    matches = await ImageMatcher(gateway).find_matches("python", ["curl", "jq"])

    assert [m.repo_name for m in matches] == ["a-tools", "b-tools"]
    assert matches[0].exact_match is True
    assert matches[1].exact_match is False
    assert select_match(matches).repo_name == "a-tools"


@pytest.mark.asyncio
async def test_exact_match_is_preferred_when_superset_scanned_first() -> None:
    gateway = FakeGateway({
        "a-tools": {"curl", "jq", "vim"},
        "b-tools": {"curl", "jq"},
    })

    matches = await ImageMatcher(gateway).find_matches("python", ["curl", "jq"])

    assert [m.repo_name for m in matches] == ["a-tools", "b-tools"]
    assert select_match(matches) == MatchResult("b-tools", frozenset({"curl", "jq"}), True)


@pytest.mark.asyncio
async def test_traversal_order_does_not_depend_on_listing_order() -> None:
    gateway = FakeGateway({
        "zeta": {"curl", "jq", "vim"},
        "alpha": {"curl", "jq", "git"},
    })

    matches = await ImageMatcher(gateway).find_matches("python", ["curl"])

    assert [m.repo_name for m in matches] == ["alpha", "zeta"]
    assert select_match(matches).repo_name == "alpha"


@pytest.mark.asyncio
async def test_superset_is_used_when_no_exact_match_exists() -> None:
    gateway = FakeGateway({"tools": {"curl", "jq", "vim"}})

    match = select_match(await ImageMatcher(gateway).find_matches("python", ["jq"]))

    assert match.repo_name == "tools"
    assert match.exact_match is False


@pytest.mark.asyncio
async def test_base_repo_is_never_matched_or_fetched() -> None:
    gateway = FakeGateway({"python": {"curl"}, "other": {"git"}})

    matches = await ImageMatcher(gateway).find_matches("python", ["curl"])

    assert matches == []
    assert "python" not in gateway.config_calls


@pytest.mark.asyncio
async def test_failed_config_fetch_is_skipped_and_scan_continues() -> None:
    gateway = FakeGateway(
        {"a-broken": {"curl"}, "b-good": {"curl"}},
        failing_repos={"a-broken"},
    )

    matches = await ImageMatcher(gateway).find_matches("python", ["curl"])

    assert [m.repo_name for m in matches] == ["b-good"]
    assert gateway.config_calls == ["a-broken", "b-good"]


@pytest.mark.asyncio
async def test_partial_overlap_is_not_a_match() -> None:
    gateway = FakeGateway({"tools": {"curl"}})

    assert await ImageMatcher(gateway).find_matches("python", ["curl", "jq"]) == []


@pytest.mark.asyncio
async def test_empty_request_is_covered_by_every_repository() -> None:
    gateway = FakeGateway({"python": set(), "tools": {"curl"}, "empty": set()})

    matches = await ImageMatcher(gateway).find_matches("python", [])

    assert matches == [
        MatchResult("empty", frozenset(), True),
        MatchResult("tools", frozenset({"curl"}), False),
    ]
    assert select_match(matches).repo_name == "empty"
    assert gateway.config_calls == ["empty", "tools"]


@pytest.mark.asyncio
async def test_failed_repository_listing_yields_no_matches() -> None:
    gateway = FakeGateway({"tools": {"curl"}})

    async def broken_listing() -> list[str]:
        raise ExternalToolError("chainctl not authenticated")

    gateway.list_repo_names = broken_listing

    assert await ImageMatcher(gateway).find_matches("python", ["curl"]) == []


def test_select_match_without_matches() -> None:
    assert select_match([]) is None
