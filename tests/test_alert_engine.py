"""告警引擎单元测试。"""
import asyncio
import contextlib
from datetime import timedelta

import pytest

from pvehub.core.exceptions import ConflictError, NotFoundError, ValidationError
from pvehub.models.alert import AlertKind, AlertLevel, AlertStatus, Thresholds
from pvehub.models.event import EventKind
from pvehub.models.snapshot import GuestKind, NodeSnapshot, VMSnapshot
from pvehub.services.alert_engine import AlertEngine
from pvehub.services.broadcaster import Broadcaster
from pvehub.tasks.alert_cleanup import alert_cleanup_loop


def _node(mem=40, status="online", cpu=0.1, disk=10, name="pve1"):
    return NodeSnapshot(
        endpoint_id="lab", node=name, status=status, cpu=cpu, mem=mem, maxmem=100, disk=disk, maxdisk=100,
    )


def _vm(vmid=100, status="running", mem=10, netin=0, netout=0, template=False):
    return VMSnapshot(
        endpoint_id="lab", node="pve1", vmid=vmid, name="web", kind=GuestKind.QEMU, status=status,
        cpu=0.05, mem=mem, maxmem=100, disk=1, maxdisk=100, netin=netin, netout=netout, template=template,
    )


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def engine(broadcaster):
    return AlertEngine(broadcaster)


class TestThresholds:
    def test_strictly_greater(self):
        t = Thresholds(critical=95, warning=85)
        assert t.level_for(85) is None
        assert t.level_for(85.1) == (AlertLevel.WARNING, 85)
        assert t.level_for(96) == (AlertLevel.CRITICAL, 95)
        assert t.level_for(None) is None

    def test_disabled(self):
        assert Thresholds().enabled is False


class TestEvaluate:
    def test_healthy_cluster_fires_nothing(self, engine):
        engine.evaluate("lab", [_node()], [_vm()])
        assert engine.list() == []

    def test_escalation_creates_second_record(self, engine):
        engine.evaluate("lab", [_node(mem=88)], [])
        engine.evaluate("lab", [_node(mem=97)], [])

        records = engine.list(kind=AlertKind.MEMORY)
        assert [(r.level, r.status) for r in records] == [
            (AlertLevel.CRITICAL, AlertStatus.ACTIVE),
            (AlertLevel.WARNING, AlertStatus.RESOLVED),
        ]
        assert records[0].metric_value == 97
        assert records[0].threshold == 95

    def test_same_level_does_not_duplicate(self, engine):
        engine.evaluate("lab", [_node(mem=88)], [])
        engine.evaluate("lab", [_node(mem=89)], [])
        assert len(engine.list()) == 1

    def test_auto_resolve_when_back_to_normal(self, engine):
        engine.evaluate("lab", [_node(disk=95)], [])
        engine.evaluate("lab", [_node(disk=20)], [])
        [record] = engine.list(kind=AlertKind.DISK)
        assert record.status == AlertStatus.RESOLVED
        assert record.resolved_at is not None
        assert engine.open_alerts() == []

    def test_node_offline(self, engine):
        engine.evaluate("lab", [_node(status="offline")], [])
        [record] = engine.open_alerts()
        assert record.kind == AlertKind.NODE_OFFLINE
        assert record.level == AlertLevel.CRITICAL
        engine.evaluate("lab", [_node()], [])
        assert engine.open_alerts() == []

    def test_vm_unsettled_status(self, engine):
        engine.evaluate("lab", [_node()], [_vm(status="paused")])
        [record] = engine.open_alerts()
        assert record.kind == AlertKind.VM_STATUS
        assert record.level == AlertLevel.WARNING
        assert record.source.vmid == 100

    def test_templates_ignored(self, engine):
        engine.evaluate("lab", [], [_vm(status="unknown", template=True)])
        assert engine.list() == []

    def test_vanished_resource_resolved(self, engine):
        engine.evaluate("lab", [_node()], [_vm(mem=99)])
        assert len(engine.open_alerts()) == 1
        engine.evaluate("lab", [_node()], [])
        assert engine.open_alerts() == []

    def test_unknown_node_neither_fires_nor_resolves(self, engine):
        engine.evaluate("lab", [_node()], [_vm(mem=99)])
        [record] = engine.open_alerts()
        # 节点的客户机列表本轮没拿到，沿用的旧数据不参与评估
        engine.evaluate("lab", [_node()], [_vm(mem=10)], unknown_nodes={"pve1"})
        engine.evaluate("lab", [_node()], [], unknown_nodes={"pve1"})
        assert engine.open_alerts() == [record]
        assert record.status == AlertStatus.ACTIVE

        engine.evaluate("lab", [_node()], [_vm(vmid=101, mem=99)], unknown_nodes={"pve1"})
        assert engine.open_alerts() == [record]

    def test_stopped_vm_metric_alert_resolved(self, engine):
        engine.evaluate("lab", [_node()], [_vm(mem=99)])
        engine.evaluate("lab", [_node()], [_vm(status="stopped", mem=0)])
        assert engine.open_alerts() == []

    def test_other_endpoints_untouched(self, engine):
        engine.evaluate("lab", [_node(mem=99)], [])
        engine.evaluate("other", [], [])
        assert len(engine.open_alerts()) == 1

    def test_network_rate(self, broadcaster):
        engine = AlertEngine(broadcaster, {AlertKind.NETWORK: Thresholds(warning=1000)})
        previous = [_vm(netin=0, netout=0)]
        # 首轮没有上一代计数器，无法计算速率
        engine.evaluate("lab", [], previous)
        assert engine.open_alerts() == []

        engine.evaluate("lab", [], [_vm(netin=20000, netout=10000)], previous_vms=previous, elapsed=10)
        [record] = engine.open_alerts()
        assert record.kind == AlertKind.NETWORK
        assert record.metric_value == 3000

    def test_counter_reset_is_unknown(self, broadcaster):
        engine = AlertEngine(broadcaster, {AlertKind.NETWORK: Thresholds(warning=1000)})
        engine.evaluate(
            "lab", [], [_vm(netin=50000)], previous_vms=[_vm(netin=0)], elapsed=1,
        )
        assert len(engine.open_alerts()) == 1
        # 计数器回退：数据未知，不解除
        engine.evaluate("lab", [], [_vm(netin=10)], previous_vms=[_vm(netin=50000)], elapsed=1)
        assert len(engine.open_alerts()) == 1

    def test_events_published(self, engine, broadcaster):
        sub = broadcaster.subscribe()
        engine.evaluate("lab", [_node(mem=99)], [])
        engine.evaluate("lab", [_node()], [])
        events = []
        while (event := sub.get_nowait()) is not None:
            assert event.kind == EventKind.ALERT
            events.append(event.action)
        assert events == ["created", "resolved"]


class TestConnectionLost:
    def test_raised_once_and_resolved_on_recovery(self, engine):
        engine.record_poll_failure("lab", "ConnectError")
        engine.record_poll_failure("lab", "ConnectError")
        [record] = engine.open_alerts()
        assert record.kind == AlertKind.CONNECTION_LOST
        assert record.level == AlertLevel.CRITICAL
        assert record.description == "ConnectError"

        engine.record_recovery("lab")
        assert engine.open_alerts() == []

    def test_evaluate_leaves_connection_alert_alone(self, engine):
        engine.record_poll_failure("lab", "timeout")
        engine.evaluate("lab", [_node()], [])
        assert len(engine.open_alerts()) == 1

    async def test_endpoint_removal_resolves_everything(self, engine):
        engine.evaluate("lab", [_node(mem=99)], [])
        engine.record_poll_failure("lab", "timeout")
        await engine.on_endpoint_removed("lab")
        assert engine.open_alerts() == []
        assert all(r.status == AlertStatus.RESOLVED for r in engine.list())


class TestOperatorActions:
    @pytest.fixture
    def alert_id(self, engine):
        engine.evaluate("lab", [_node(mem=99)], [])
        return engine.open_alerts()[0].id

    def test_acknowledge(self, engine, alert_id):
        record = engine.acknowledge(alert_id, by="ops")
        assert record.status == AlertStatus.ACKNOWLEDGED
        assert record.acknowledged_by == "ops"
        assert record.acknowledged_at is not None
        with pytest.raises(ConflictError):
            engine.acknowledge(alert_id)

    def test_acknowledged_alert_still_auto_resolves(self, engine, alert_id):
        engine.acknowledge(alert_id)
        engine.evaluate("lab", [_node()], [])
        assert engine.get(alert_id).status == AlertStatus.RESOLVED

    def test_resolve_is_idempotent(self, engine, alert_id):
        first = engine.resolve(alert_id)
        second = engine.resolve(alert_id)
        assert first.resolved_at == second.resolved_at
        with pytest.raises(ConflictError):
            engine.acknowledge(alert_id)

    def test_manual_resolve_then_breach_creates_new_record(self, engine, alert_id):
        engine.resolve(alert_id)
        engine.evaluate("lab", [_node(mem=99)], [])
        assert len(engine.list()) == 2
        assert engine.open_alerts()[0].id != alert_id

    def test_get_and_delete(self, engine, alert_id):
        assert engine.get(alert_id).id == alert_id
        engine.delete(alert_id)
        with pytest.raises(NotFoundError):
            engine.get(alert_id)
        assert engine.open_alerts() == []

    def test_bulk(self, engine, alert_id):
        result = engine.bulk("acknowledge", [alert_id, "alert-missing"])
        assert result["processed"] == 1
        assert result["failed"] == [{"id": "alert-missing", "error": "Alert 'alert-missing' not found"}]

    def test_bulk_validation(self, engine, alert_id):
        with pytest.raises(ValidationError):
            engine.bulk("explode", [alert_id])
        with pytest.raises(ValidationError):
            engine.bulk("resolve", [])

    def test_list_filters_and_limit(self, engine):
        engine.evaluate("lab", [_node(mem=99, disk=85, name="a"), _node(mem=88, name="b")], [])
        assert len(engine.list()) == 3
        assert len(engine.list(level=AlertLevel.CRITICAL)) == 1
        assert len(engine.list(kind=AlertKind.MEMORY)) == 2
        assert len(engine.list(endpoint_id="other")) == 0
        assert len(engine.list(limit=2)) == 2

    def test_stats(self, engine, alert_id):
        engine.evaluate("lab", [_node(mem=99, disk=85)], [])
        engine.acknowledge(alert_id)
        stats = engine.stats()
        assert stats["total"] == 2
        assert stats["critical"] == 1
        assert stats["warning"] == 1
        assert stats["acknowledged"] == 1
        assert stats["active"] == 1
        assert stats["resolved"] == 0

    def test_cleanup_resolved(self, engine, alert_id):
        record = engine.resolve(alert_id)
        assert engine.cleanup_resolved(30) == 0
        record.resolved_at = record.resolved_at - timedelta(days=31)
        assert engine.cleanup_resolved(30) == 1
        assert engine.list() == []


class TestCleanupLoop:
    async def test_loop_removes_expired_alerts(self, engine, broadcaster):
        engine.evaluate("lab", [_node(mem=99)], [])
        record = engine.resolve(engine.open_alerts()[0].id)
        record.resolved_at = record.resolved_at - timedelta(days=40)

        task = asyncio.create_task(alert_cleanup_loop(engine, retention_days=30, interval=3600))
        await asyncio.sleep(0.01)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        assert engine.list() == []
