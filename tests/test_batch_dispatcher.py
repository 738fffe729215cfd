"""批量调度测试：结果顺序、失败隔离、跳过、安全策略、超时与并发上限。"""
import asyncio

import httpx
import pytest_asyncio

from pvehub.models.batch import BackupAction, BatchSummary, BatchTarget, PowerAction, ShellAction
from pvehub.models.event import EventKind
from pvehub.models.snapshot import GuestKind
from pvehub.services.cluster_manager import ClusterManager


def _vm(vmid, endpoint_id="lab", node="pve1", **kw):
    return BatchTarget(endpoint_id=endpoint_id, node=node, vmid=vmid, **kw)


@pytest_asyncio.fixture
async def polled(manager, make_endpoint):
    manager.add_endpoint(make_endpoint())
    assert await manager.poll_endpoint("lab")
    return manager


class TestDispatch:
    async def test_empty_batch(self, polled, fake_pve):
        assert await polled.dispatch_batch([], PowerAction(name="start")) == []
        assert fake_pve.actions == []

    async def test_results_in_input_order_with_isolated_failures(self, polled, fake_pve):
        targets = [
            _vm(101),
            _vm(999),
            BatchTarget(endpoint_id="ghost", node="pve1", vmid=100),
            _vm(100, node="pve9"),
        ]
        results = await polled.dispatch_batch(targets, PowerAction(name="stop"))

        assert [r.target for r in results] == targets
        # 101 已停止：跳过；100 在 pve9 上不存在
        assert results[0].success and results[0].skipped
        assert [r.error_code for r in results[1:]] == ["not_found"] * 3
        assert all(r.error for r in results[1:])
        assert fake_pve.actions == []
        assert BatchSummary.from_results(results).model_dump() == {
            "total": 4, "succeeded": 0, "skipped": 1, "failed": 3,
        }

    async def test_power_action_reaches_endpoint(self, polled, fake_pve):
        result = await polled.dispatch_action(_vm(101), PowerAction(name="start"))
        assert result.success and not result.skipped
        assert result.output.startswith("UPID:pve1")
        assert fake_pve.actions == [("start", "pve1", 101)]
        assert result.finished_at >= result.started_at

    async def test_start_on_running_is_skipped(self, polled, fake_pve):
        result = await polled.dispatch_action(_vm(100), PowerAction(name="start"))
        assert result.success is True
        assert result.skipped is True
        assert result.output == "already running"
        assert fake_pve.actions == []

    async def test_resume_is_never_skipped(self, polled, fake_pve):
        result = await polled.dispatch_action(_vm(100), PowerAction(name="resume"))
        assert result.success and not result.skipped
        assert fake_pve.actions == [("resume", "pve1", 100)]

    async def test_container_uses_lxc_path(self, polled, fake_pve):
        result = await polled.dispatch_action(_vm(200), PowerAction(name="shutdown"))
        assert result.success
        assert "/nodes/pve1/lxc/200/status/shutdown" in fake_pve.calls("POST")

    async def test_container_suspend_rejected(self, polled, fake_pve):
        result = await polled.dispatch_action(_vm(200), PowerAction(name="suspend"))
        assert result.success is False
        assert result.error_code == "validation_error"
        assert fake_pve.actions == []

    async def test_power_action_requires_vmid(self, polled):
        target = BatchTarget(endpoint_id="lab", node="pve1")
        result = await polled.dispatch_action(target, PowerAction(name="start"))
        assert result.error_code == "validation_error"

    async def test_backup(self, polled, fake_pve):
        action = BackupAction(storage="local", notes="{{guestname}} nightly")
        result = await polled.dispatch_action(_vm(100), action)
        assert result.success
        assert result.action == "backup"
        _, node, vmid, body = fake_pve.actions[0]
        assert (node, vmid) == ("pve1", 100)
        assert body["storage"] == "local"
        assert body["mode"] == "snapshot"
        assert body["notes-template"] == "{{guestname}} nightly"


class TestShell:
    async def test_node_command(self, polled, fake_pve):
        target = BatchTarget(endpoint_id="lab", node="pve1")
        result = await polled.dispatch_action(target, ShellAction(command="uptime"))
        assert result.success
        assert "uptime" in result.output
        assert fake_pve.actions == [("execute", "pve1", "uptime")]

    async def test_dangerous_command_never_sent(self, polled, fake_pve):
        target = BatchTarget(endpoint_id="lab", node="pve1")
        before = len(fake_pve.requests)
        result = await polled.dispatch_action(target, ShellAction(command="rm -rf / --no-preserve-root"))
        assert result.success is False
        assert result.error_code == "policy_violation"
        assert len(fake_pve.requests) == before

    async def test_unknown_node_rejected(self, polled):
        target = BatchTarget(endpoint_id="lab", node="nope")
        result = await polled.dispatch_action(target, ShellAction(command="uptime"))
        assert result.error_code == "not_found"

    async def test_unsupported_execute(self, polled, fake_pve):
        fake_pve.unsupported_execute = True
        target = BatchTarget(endpoint_id="lab", node="pve1")
        result = await polled.dispatch_action(target, ShellAction(command="uptime"))
        assert result.success is False
        assert result.error_code == "remote_api_error"
        assert "does not support remote command execution" in result.error


class TestEventsAndDeadline:
    async def test_every_result_is_published(self, polled):
        sub = polled.subscribe()
        await polled.dispatch_batch([_vm(101), _vm(999)], PowerAction(name="start"))
        events = []
        while (event := sub.get_nowait()) is not None:
            if event.kind == EventKind.COMMAND_RESULT:
                events.append((event.action, event.key))
        assert sorted(events) == [("completed", "lab/pve1/101"), ("failed", "lab/pve1/999")]

    async def test_batch_deadline(self, polled, fake_pve):
        fake_pve.action_delay = 5
        polled.dispatcher.batch_timeout = 0.1
        sub = polled.subscribe()
        results = await polled.dispatch_batch([_vm(101), _vm(100)], PowerAction(name="start"))

        assert results[0].error_code == "batch_timeout"
        assert results[0].success is False
        # 100 已在运行，不受截止时间影响
        assert results[1].skipped is True
        failed = []
        while (event := sub.get_nowait()) is not None:
            if event.kind == EventKind.COMMAND_RESULT and event.action == "failed":
                failed.append(event.key)
        assert failed == ["lab/pve1/101"]


class TestConcurrency:
    async def test_semaphore_bounds_in_flight_calls(self, test_settings, fake_pve, make_endpoint):
        for vmid in range(300, 310):
            fake_pve.add_guest("pve1", "qemu", vmid, f"vm{vmid}", status="stopped")
        in_flight = {"now": 0, "max": 0}

        async def counting(request):
            is_action = request.method == "POST" and "/status/" in request.url.path
            if is_action:
                in_flight["now"] += 1
                in_flight["max"] = max(in_flight["max"], in_flight["now"])
                await asyncio.sleep(0.02)
            try:
                return await fake_pve.handler(request)
            finally:
                if is_action:
                    in_flight["now"] -= 1

        settings = test_settings.model_copy(update={"batch_concurrency": 3})
        manager = ClusterManager(settings, transport_factory=lambda config: httpx.MockTransport(counting))
        try:
            manager.add_endpoint(make_endpoint())
            await manager.poll_endpoint("lab")
            targets = [_vm(vmid, kind=GuestKind.QEMU) for vmid in range(300, 310)]
            results = await manager.dispatch_batch(targets, PowerAction(name="start"))
        finally:
            await manager.stop()

        assert all(r.success for r in results)
        assert in_flight["max"] == 3
