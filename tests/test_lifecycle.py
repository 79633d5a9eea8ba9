import asyncio
import base64
import uuid

import pytest

from vmload.control import VMControlClient
from vmload.failures import (
    ConnectFailed,
    CreateFailed,
    DeleteFailed,
    DigestMismatch,
)
from vmload.lifecycle import (
    DEFAULT_IMAGE,
    LifecycleConfig,
    LifecycleExecutor,
    Outcome,
    load_startup_script,
)
from vmload.ramp.collector import ResultCollector

SCRIPT = "echo hello\n"


def make_executor(control: VMControlClient, **overrides) -> LifecycleExecutor:
    overrides.setdefault("startup_script", SCRIPT)
    overrides.setdefault("connect_timeout", 5.0)
    return LifecycleExecutor(control, LifecycleConfig(**overrides))


async def test_full_lifecycle_passes(control, orchestrator):
    run = await make_executor(control).run("vm-happy")

    assert run.outcome is Outcome.PASSED
    assert run.failure is None
    assert run.create_status == 200
    assert run.delete_status == 200
    assert run.tunnel is not None and run.tunnel.passed
    assert run.tunnel.bytes_received == 65536
    assert run.duration_s is not None and run.duration_s >= 0

    assert orchestrator.created == [
        {
            "name": "vm-happy",
            "image": DEFAULT_IMAGE,
            "headless": True,
            "startup_script": {"script_content": SCRIPT},
        }
    ]
    assert [pf["name"] for pf in orchestrator.port_forwards] == ["vm-happy"]
    assert orchestrator.deleted == ["vm-happy"]


async def test_generated_names_are_prefixed_uuids(control, orchestrator):
    run = await make_executor(control, name_prefix="k6").run()

    prefix, _, suffix = run.name.partition("-")
    assert prefix == "k6"
    uuid.UUID(suffix)
    assert orchestrator.deleted == [run.name]


async def test_create_failure_skips_tunnel_but_still_deletes(control, orchestrator):
    orchestrator.create_status = 500

    run = await make_executor(control).run("vm-create-500")

    assert run.outcome is Outcome.FAILED
    assert run.failure == CreateFailed(500)
    assert run.create_status == 500
    assert run.tunnel is None
    assert orchestrator.port_forwards == []
    assert orchestrator.deleted == ["vm-create-500"]
    assert run.delete_attempted


async def test_tunnel_after_failed_create_is_opt_in(control, orchestrator):
    orchestrator.create_status = 500

    run = await make_executor(control, tunnel_after_failed_create=True).run("vm-retry")

    assert run.failure == CreateFailed(500)
    assert run.tunnel is not None
    assert [pf["name"] for pf in orchestrator.port_forwards] == ["vm-retry"]
    assert orchestrator.deleted == ["vm-retry"]


async def test_delete_failure_is_reported_when_nothing_else_failed(control, orchestrator):
    orchestrator.delete_status = 500

    run = await make_executor(control).run("vm-delete-500")

    assert run.outcome is Outcome.FAILED
    assert run.failure == DeleteFailed(500)
    assert run.delete_failure == DeleteFailed(500)
    assert run.tunnel.passed


async def test_delete_failure_does_not_mask_the_first_failure(control, orchestrator):
    orchestrator.peer = "mutate"
    orchestrator.delete_status = 503

    run = await make_executor(control).run("vm-both")

    assert isinstance(run.failure, DigestMismatch)
    assert run.delete_failure == DeleteFailed(503)
    assert orchestrator.deleted == ["vm-both"]


async def test_unreachable_control_api(http_session, unreachable_url):
    control = VMControlClient(http_session, base_url=unreachable_url)

    run = await make_executor(control).run("vm-offline")

    assert isinstance(run.failure, CreateFailed)
    assert run.failure.status is None
    assert run.failure.cause
    assert isinstance(run.delete_failure, DeleteFailed)
    assert run.delete_attempted
    assert run.tunnel is None


async def test_service_account_is_sent_on_every_request(authed_control, orchestrator):
    run = await make_executor(authed_control).run("vm-auth")

    expected = "Basic " + base64.b64encode(b"load-tester:s3cret").decode()
    assert run.outcome is Outcome.PASSED
    assert orchestrator.authorizations == [expected, expected, expected]


async def test_no_auth_header_without_credentials(control, orchestrator):
    await make_executor(control).run("vm-anon")

    assert orchestrator.authorizations == [None, None, None]


async def test_cancelled_lifecycle_still_deletes_its_vm(control, orchestrator):
    orchestrator.peer = "silent"
    task = asyncio.create_task(make_executor(control).run("vm-stuck"))

    for _ in range(200):
        if orchestrator.port_forwards:
            break
        await asyncio.sleep(0.01)
    assert orchestrator.port_forwards
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert orchestrator.deleted == ["vm-stuck"]


async def test_failing_runs_do_not_affect_concurrent_runs(control, orchestrator):
    orchestrator.peer_overrides = {"bad-": "reject"}
    executor = make_executor(control)
    collector = ResultCollector()
    names = [f"good-{i}" for i in range(15)] + [f"bad-{i}" for i in range(5)]

    runs = await asyncio.gather(*(executor.run(name) for name in names))
    for run in runs:
        collector.record(run)

    for run in runs:
        if run.name.startswith("bad-"):
            assert isinstance(run.failure, ConnectFailed)
        else:
            assert run.outcome is Outcome.PASSED
    result = collector.snapshot()
    assert result.passed == 15
    assert result.failed == 5
    assert result.failures_by_reason == {"connect_failed": 5}
    assert sorted(orchestrator.deleted) == sorted(names)


def test_default_startup_script_ships_with_the_package():
    script = load_startup_script()

    assert script.startswith("Lorem ipsum")
    assert "ut interdum lacus pretium." in script
