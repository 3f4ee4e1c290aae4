from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from imagegate.core.errors import (
    ExternalToolError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
)
from imagegate.domain.requests.entities import NewImageRequest, RequestStatus
from imagegate.domain.requests.repository import InMemoryRequestStore
from imagegate.runtime.build_monitor import BuildMonitor
from imagegate.runtime.matcher import ImageMatcher
from imagegate.runtime.scheduler import Scheduler
from imagegate.runtime.workflow import ApprovalWorkflow
from imagegate.tools.chainctl import BuildRecord, BuildResult, ChainctlGateway
from imagegate.tools.subprocess_runner import SubprocessCommandRunner

from tests.fixtures.fake_clock import FakeClock
from tests.fixtures.fake_command_runner import ScriptedCommandRunner
from tests.fixtures.fake_gateway import FakeGateway
from tests.fixtures.recording_event_sink import RecordingEventSink


def build_workflow(gateway: FakeGateway, approvers=("APPROVER",)):
    clock = FakeClock()
    store = InMemoryRequestStore()
    scheduler = Scheduler(clock=clock.monotonic)
    monitor = BuildMonitor(gateway=gateway, store=store, scheduler=scheduler, now=clock.now)
    events = RecordingEventSink()
    workflow = ApprovalWorkflow(
        store=store,
        gateway=gateway,
        matcher=ImageMatcher(gateway),
        monitor=monitor,
        events=events,
        approver_ids=approvers,
    )
    return workflow, monitor, scheduler, clock, events


def submission(packages=("curl", "jq")) -> NewImageRequest:
    return NewImageRequest.from_submission(
        request_name="My App",
        base_repo="python",
        registry="cgr.dev",
        packages=packages,
        description="Tools for the data team",
        justification="Needed for ETL jobs",
        requester_id="U_REQUESTER",
    )


@pytest.mark.asyncio
async def test_approve_builds_new_image_and_starts_monitoring() -> None:
    # Arrange
    gateway = FakeGateway({"python": {"curl", "jq"}, "other": {"git"}})
    workflow, monitor, scheduler, clock, events = build_workflow(gateway)
    request = await workflow.submit(submission())

    # Act
    result = await workflow.approve(request.id, "APPROVER")

    # Assert
    assert result.status == RequestStatus.COMPLETED
    assert result.approver_id == "APPROVER"
    assert result.custom_name == "my-app"
    assert result.image_url == "cgr.dev/my-app:latest"
    assert result.assembly_id == "custom-test"
    assert result.completed_at is not None
    assert result.chainctl_output.startswith("Applying build config")
    assert result.monitored_repo == "my-app"
    assert monitor.active_request_ids == {request.id}
    assert events.types == [
        "request.submitted",
        "request.approved",
        "request.checking",
        "request.building",
        "request.completed",
    ]
    assert events.events[0].data["approvers"] == ["APPROVER"]


@pytest.mark.asyncio
async def test_new_build_moves_request_to_build_complete() -> None:
    gateway = FakeGateway({})
    workflow, monitor, scheduler, clock, events = build_workflow(gateway)
    request = await workflow.submit(submission())
    await workflow.approve(request.id, "APPROVER")

    gateway.builds["my-app"] = [
        BuildRecord("my-app", clock.now() + timedelta(seconds=30), BuildResult.SUCCESS),
    ]
    for _ in range(3):
        clock.advance(300)
        await scheduler.run_pending()

    final = workflow.store.get(request.id)
    assert final.status == RequestStatus.BUILD_COMPLETE
    assert events.types.count("request.build_complete") == 1
    assert events.events[-1].data["repo"] == "my-app"
    assert monitor.active_request_ids == set()


@pytest.mark.asyncio
async def test_existing_image_short_circuits_build() -> None:
    gateway = FakeGateway({
        "python": {"curl", "jq"},
        "tools-plus": {"curl", "jq", "vim"},
        "tools": {"curl", "jq"},
    })
    workflow, monitor, _, _, events = build_workflow(gateway)
    request = await workflow.submit(submission())

    result = await workflow.approve(request.id, "APPROVER")

    assert result.status == RequestStatus.EXISTING_IMAGE_FOUND
    assert result.existing_image == "tools"
    assert result.image_url == "cgr.dev/tools:latest"
    assert gateway.assembly_calls == []
    assert monitor.active_request_ids == set()
    assert events.events[-1].data == {"packages": ["curl", "jq"], "exact_match": True}


@pytest.mark.asyncio
async def test_chainctl_failure_marks_request_failed() -> None:
    gateway = FakeGateway(
        {},
        assembly_error=ExternalToolError("chainctl exited with 1", raw_stderr="permission denied", returncode=1),
    )
    workflow, monitor, _, _, events = build_workflow(gateway)
    request = await workflow.submit(submission())

    result = await workflow.approve(request.id, "APPROVER")

    assert result.status == RequestStatus.FAILED
    assert "chainctl exited with 1" in result.error
    assert events.events[-1].type == "request.failed"
    assert events.events[-1].data["stderr"] == "permission denied"
    assert monitor.active_request_ids == set()


@pytest.mark.asyncio
async def test_unchanged_configuration_ends_in_no_changes() -> None:
    gateway = FakeGateway({}, assembly_output="No changes detected\n")
    workflow, monitor, _, _, _ = build_workflow(gateway)
    request = await workflow.submit(submission())

    result = await workflow.approve(request.id, "APPROVER")

    assert result.status == RequestStatus.NO_CHANGES
    assert monitor.active_request_ids == set()


@pytest.mark.asyncio
async def test_reject_records_reason() -> None:
    workflow, _, _, _, events = build_workflow(FakeGateway({}))
    request = await workflow.submit(submission())

    result = await workflow.reject(request.id, "APPROVER", "Use the existing image")

    assert result.status == RequestStatus.REJECTED
    assert result.rejected_by == "APPROVER"
    assert result.rejection_reason == "Use the existing image"
    assert result.rejected_at is not None
    assert events.types[-1] == "request.rejected"


@pytest.mark.asyncio
async def test_second_decision_is_refused() -> None:
    gateway = FakeGateway({})
    workflow, _, _, _, _ = build_workflow(gateway)
    request = await workflow.submit(submission())
    await workflow.reject(request.id, "APPROVER", "no")

    with pytest.raises(InvalidStateError) as exc_info:
        await workflow.approve(request.id, "APPROVER")

    assert exc_info.value.current == "rejected"
    assert gateway.assembly_calls == []
    assert workflow.store.get(request.id).status == RequestStatus.REJECTED


@pytest.mark.asyncio
async def test_concurrent_approve_and_reject_has_one_winner() -> None:
    gateway = FakeGateway({})
    workflow, _, _, _, _ = build_workflow(gateway)
    request = await workflow.submit(submission())

    results = await asyncio.gather(
        workflow.approve(request.id, "APPROVER"),
        workflow.reject(request.id, "APPROVER", "too late"),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], InvalidStateError)
    assert workflow.store.get(request.id).status in {RequestStatus.COMPLETED, RequestStatus.REJECTED}


@pytest.mark.asyncio
async def test_unknown_request_raises_not_found() -> None:
    workflow, _, _, _, _ = build_workflow(FakeGateway({}))

    with pytest.raises(NotFoundError):
        await workflow.approve("req_missing", "APPROVER")
    with pytest.raises(NotFoundError):
        await workflow.reject("req_missing", "APPROVER", "no")


@pytest.mark.asyncio
async def test_only_configured_approvers_may_decide() -> None:
    workflow, _, _, _, _ = build_workflow(FakeGateway({}))
    request = await workflow.submit(submission())

    with pytest.raises(NotAuthorizedError):
        await workflow.approve(request.id, "U_REQUESTER")
    with pytest.raises(NotAuthorizedError):
        await workflow.reject(request.id, "U_REQUESTER", "no")

    assert workflow.store.get(request.id).status == RequestStatus.PENDING


@pytest.mark.asyncio
async def test_anyone_may_decide_without_configured_approvers() -> None:
    workflow, _, _, _, _ = build_workflow(FakeGateway({}), approvers=())
    request = await workflow.submit(submission())

    result = await workflow.approve(request.id, "U_ANYONE")

    assert result.status == RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_requested_package_order_reaches_chainctl() -> None:
    gateway = FakeGateway({})
    workflow, _, _, _, _ = build_workflow(gateway)
    request = await workflow.submit(submission(packages=["zsh", "curl", "bash"]))

    await workflow.approve(request.id, "APPROVER")

    assert gateway.assembly_calls[0].packages == ("zsh", "curl", "bash")


@pytest.mark.asyncio
async def test_failing_event_sink_does_not_break_lifecycle() -> None:
    class BrokenSink:
        async def publish(self, event) -> None:
            raise RuntimeError("webhook down")

    gateway = FakeGateway({})
    workflow, _, _, _, _ = build_workflow(gateway)
    workflow._events = BrokenSink()
    request = await workflow.submit(submission())

    result = await workflow.approve(request.id, "APPROVER")

    assert result.status == RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_unexpected_error_while_scanning_marks_request_failed() -> None:
    runner = ScriptedCommandRunner(error=OSError(8, "Exec format error"))
    gateway = ChainctlGateway(org_id="org-test", registry="cgr.dev", runner=runner)
    workflow, monitor, _, _, events = build_workflow(gateway)
    request = await workflow.submit(submission())

    result = await workflow.approve(request.id, "APPROVER")

    assert result.status == RequestStatus.FAILED
    assert "Exec format error" in result.error
    assert events.types[-2:] == ["request.checking", "request.failed"]
    assert monitor.active_request_ids == set()


@pytest.mark.asyncio
async def test_unrunnable_chainctl_marks_request_failed(tmp_path) -> None:
    binary = tmp_path / "chainctl"
    binary.write_bytes(b"\x7fELF\x02\x01\x01\x00not really an executable")
    binary.chmod(0o755)
    gateway = ChainctlGateway(
        org_id="org-test",
        registry="cgr.dev",
        runner=SubprocessCommandRunner(),
        executable=str(binary),
        timeout=10,
    )
    workflow, _, _, _, _ = build_workflow(gateway)
    request = await workflow.submit(submission())

    result = await workflow.approve(request.id, "APPROVER")

    assert result.status == RequestStatus.FAILED
    assert "Unable to start" in result.error


@pytest.mark.asyncio
async def test_empty_package_list_reuses_any_repository() -> None:
    gateway = FakeGateway({"python": set(), "tools": {"curl"}})
    workflow, _, _, _, _ = build_workflow(gateway)
    request = await workflow.submit(submission(packages=()))

    result = await workflow.approve(request.id, "APPROVER")

    assert result.status == RequestStatus.EXISTING_IMAGE_FOUND
    assert result.existing_image == "tools"
    assert gateway.assembly_calls == []
