"""
告警引擎 (Alert Engine)

每次轮询成功后评估节点和虚拟机指标：越限则触发告警，恢复正常则自动解除。
同一 (资源, 维度) 同一时刻最多一条未关闭告警；级别变化时先解除旧告警再以新级别创建新告警。
轮询失败时不触发也不解除任何资源告警，只为该端点记录一条 connection_lost 告警，
直到下一次成功轮询调用 record_recovery。

Evaluates node/VM metrics after every successful poll, fires alerts on threshold
breach and resolves them when the value recovers. A failed poll is "unknown",
never a breach: only connection_lost is raised for it.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from pvehub.core.exceptions import ConflictError, NotFoundError, ValidationError
from pvehub.models.alert import (
    AlertKind,
    AlertLevel,
    AlertRecord,
    AlertSource,
    AlertStatus,
    Thresholds,
)
from pvehub.models.event import EventKind
from pvehub.models.snapshot import NodeSnapshot, VMSnapshot
from pvehub.services.broadcaster import Broadcaster

logger = logging.getLogger(__name__)

AlertKey = Tuple[AlertSource, AlertKind]

DEFAULT_THRESHOLDS: Dict[AlertKind, Thresholds] = {
    AlertKind.CPU: Thresholds(warning=90),
    AlertKind.MEMORY: Thresholds(critical=95, warning=85),
    AlertKind.DISK: Thresholds(critical=90, warning=80),
    AlertKind.NETWORK: Thresholds(),
}

METRIC_LABELS = {
    AlertKind.CPU: "CPU usage",
    AlertKind.MEMORY: "Memory usage",
    AlertKind.DISK: "Disk usage",
    AlertKind.NETWORK: "Network throughput",
}

VM_SETTLED_STATUSES = {"running", "stopped"}

BULK_ACTIONS = ("acknowledge", "resolve", "delete")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_value(kind: AlertKind, value: float) -> str:
    if kind == AlertKind.NETWORK:
        return f"{value:.0f} B/s"
    return f"{value:.1f}%"


class AlertEngine:
    def __init__(
        self,
        broadcaster: Broadcaster,
        thresholds: Optional[Dict[AlertKind, Thresholds]] = None,
    ):
        self.broadcaster = broadcaster
        self.thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self._records: Dict[str, AlertRecord] = {}
        self._open: Dict[AlertKey, str] = {}

    # ------------------------------------------------------------------
    # 评估 (evaluation)
    # ------------------------------------------------------------------

    def evaluate(
        self,
        endpoint_id: str,
        nodes: Iterable[NodeSnapshot],
        vms: Iterable[VMSnapshot],
        previous_vms: Optional[Iterable[VMSnapshot]] = None,
        elapsed: Optional[float] = None,
        unknown_nodes: Optional[Iterable[str]] = None,
    ) -> None:
        """用一次成功轮询的新鲜数据评估该端点的全部资源。

        unknown_nodes 中的节点本轮没有客户机数据，其上虚拟机的告警保持原状，既不触发也不解除。
        """
        seen: set = set()
        unknown = set(unknown_nodes or ())
        previous = {(v.node, v.vmid): v for v in previous_vms or ()}

        for node in nodes:
            source = AlertSource(endpoint_id=endpoint_id, resource_type="node", node=node.node)
            offline_key = (source, AlertKind.NODE_OFFLINE)
            seen.add(offline_key)
            if node.status != "online":
                self._breach(
                    offline_key,
                    AlertLevel.CRITICAL,
                    title=f"Node {node.node} is {node.status}",
                    description=f"Node {node.node} on {endpoint_id} reports status '{node.status}'",
                )
            else:
                self._clear(offline_key)
            self._evaluate_metrics(
                source,
                f"node {node.node}",
                {
                    AlertKind.CPU: node.cpu_percent,
                    AlertKind.MEMORY: node.mem_percent,
                    AlertKind.DISK: node.disk_percent,
                },
                seen,
            )

        for vm in vms:
            if vm.template or vm.node in unknown:
                continue
            source = AlertSource(
                endpoint_id=endpoint_id, resource_type="vm", node=vm.node, vmid=vm.vmid
            )
            status_key = (source, AlertKind.VM_STATUS)
            seen.add(status_key)
            if vm.status not in VM_SETTLED_STATUSES:
                self._breach(
                    status_key,
                    AlertLevel.WARNING,
                    title=f"VM {vm.label} status is {vm.status}",
                    description=f"VM {vm.label} on {endpoint_id}/{vm.node} reports status '{vm.status}'",
                )
            else:
                self._clear(status_key)

            if vm.status == "running":
                values = {
                    AlertKind.CPU: vm.cpu_percent,
                    AlertKind.MEMORY: vm.mem_percent,
                    AlertKind.DISK: vm.disk_percent,
                    AlertKind.NETWORK: self._network_rate(vm, previous.get((vm.node, vm.vmid)), elapsed),
                }
                self._evaluate_metrics(source, f"VM {vm.label}", values, seen)

        # 本轮没有观测到的 (资源, 维度)：资源消失、虚拟机停机或阈值被关闭
        for key in list(self._open):
            source, kind = key
            if source.endpoint_id != endpoint_id or source.resource_type == "endpoint":
                continue
            if source.resource_type == "vm" and source.node in unknown:
                continue
            if key not in seen:
                self._resolve_key(key, reason="no longer observed")

    def _evaluate_metrics(self, source: AlertSource, label: str, values: dict, seen: set) -> None:
        for kind, value in values.items():
            thresholds = self.thresholds.get(kind)
            if thresholds is None or not thresholds.enabled:
                continue
            key = (source, kind)
            seen.add(key)
            if value is None:
                # 数据缺失：既不触发也不解除
                continue
            hit = thresholds.level_for(value)
            if hit is None:
                self._clear(key)
                continue
            level, limit = hit
            self._breach(
                key,
                level,
                title=f"{METRIC_LABELS[kind]} of {label} is {_format_value(kind, value)}",
                description=f"{METRIC_LABELS[kind]} {_format_value(kind, value)} exceeds "
                            f"{level.value} threshold {_format_value(kind, limit)}",
                metric_value=round(value, 2),
                threshold=limit,
            )

    @staticmethod
    def _network_rate(
        vm: VMSnapshot, previous: Optional[VMSnapshot], elapsed: Optional[float]
    ) -> Optional[float]:
        """按两次轮询之间 netin+netout 计数器差值计算吞吐 (bytes/s)。"""
        if previous is None or not elapsed or elapsed <= 0:
            return None
        delta = (vm.netin + vm.netout) - (previous.netin + previous.netout)
        # 计数器回绕或虚拟机重启
        if delta < 0:
            return None
        return delta / elapsed

    def record_poll_failure(self, endpoint_id: str, cause: str) -> None:
        key = (AlertSource(endpoint_id=endpoint_id, resource_type="endpoint"), AlertKind.CONNECTION_LOST)
        if key in self._open:
            return
        self._create(
            key,
            AlertLevel.CRITICAL,
            title=f"Connection to {endpoint_id} lost",
            description=cause,
        )

    def record_recovery(self, endpoint_id: str) -> None:
        key = (AlertSource(endpoint_id=endpoint_id, resource_type="endpoint"), AlertKind.CONNECTION_LOST)
        self._resolve_key(key, reason="connection recovered")

    async def on_endpoint_removed(self, endpoint_id: str) -> None:
        for key in list(self._open):
            if key[0].endpoint_id == endpoint_id:
                self._resolve_key(key, reason="endpoint removed")

    # ------------------------------------------------------------------
    # 状态转换 (state transitions)
    # ------------------------------------------------------------------

    def _breach(
        self,
        key: AlertKey,
        level: AlertLevel,
        title: str,
        description: str = "",
        metric_value: Optional[float] = None,
        threshold: Optional[float] = None,
    ) -> None:
        open_id = self._open.get(key)
        if open_id is not None:
            if self._records[open_id].level == level:
                return
            self._resolve_key(key, reason=f"level changed to {level.value}")
        self._create(key, level, title, description, metric_value, threshold)

    def _clear(self, key: AlertKey) -> None:
        if key in self._open:
            self._resolve_key(key, reason="value back to normal")

    def _create(
        self,
        key: AlertKey,
        level: AlertLevel,
        title: str,
        description: str = "",
        metric_value: Optional[float] = None,
        threshold: Optional[float] = None,
    ) -> AlertRecord:
        source, kind = key
        now = _now()
        record = AlertRecord(
            id=f"alert-{uuid.uuid4().hex}",
            level=level,
            kind=kind,
            title=title,
            description=description,
            source=source,
            metric_value=metric_value,
            threshold=threshold,
            created_at=now,
            updated_at=now,
        )
        self._records[record.id] = record
        self._open[key] = record.id
        logger.warning("Alert fired [%s] %s: %s", level.value, source.label, title)
        self._publish("created", record)
        return record

    def _resolve_key(self, key: AlertKey, reason: str) -> None:
        alert_id = self._open.pop(key, None)
        if alert_id is None:
            return
        record = self._records.get(alert_id)
        if record is not None:
            self._mark_resolved(record)
            logger.info("Alert resolved (%s): %s", reason, record.title)

    def _mark_resolved(self, record: AlertRecord) -> None:
        now = _now()
        record.status = AlertStatus.RESOLVED
        record.resolved_at = now
        record.updated_at = now
        self._publish("resolved", record)

    def _publish(self, action: str, record: AlertRecord) -> None:
        self.broadcaster.publish(
            EventKind.ALERT,
            action,
            endpoint_id=record.source.endpoint_id,
            key=record.id,
            data=record.model_dump(mode="json"),
        )

    # ------------------------------------------------------------------
    # 运维操作 (operator actions)
    # ------------------------------------------------------------------

    def list(
        self,
        level: Optional[AlertLevel] = None,
        kind: Optional[AlertKind] = None,
        status: Optional[AlertStatus] = None,
        endpoint_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AlertRecord]:
        """按条件过滤告警，新的在前。"""
        result: List[AlertRecord] = []
        for record in reversed(list(self._records.values())):
            if level is not None and record.level != level:
                continue
            if kind is not None and record.kind != kind:
                continue
            if status is not None and record.status != status:
                continue
            if endpoint_id is not None and record.source.endpoint_id != endpoint_id:
                continue
            result.append(record)
            if len(result) >= limit:
                break
        return result

    def open_alerts(self) -> List[AlertRecord]:
        return [self._records[alert_id] for alert_id in self._open.values()]

    def get(self, alert_id: str) -> AlertRecord:
        record = self._records.get(alert_id)
        if record is None:
            raise NotFoundError(f"Alert '{alert_id}' not found")
        return record

    def acknowledge(self, alert_id: str, by: str = "system") -> AlertRecord:
        record = self.get(alert_id)
        if record.status == AlertStatus.RESOLVED:
            raise ConflictError("Alert already resolved")
        if record.status == AlertStatus.ACKNOWLEDGED:
            raise ConflictError("Alert already acknowledged")
        now = _now()
        record.status = AlertStatus.ACKNOWLEDGED
        record.acknowledged_at = now
        record.acknowledged_by = by
        record.updated_at = now
        logger.info("Alert %s acknowledged by %s", alert_id, by)
        self._publish("acknowledged", record)
        return record

    def resolve(self, alert_id: str) -> AlertRecord:
        """手动解除，对已解除的告警是幂等的。"""
        record = self.get(alert_id)
        if record.status == AlertStatus.RESOLVED:
            return record
        self._drop_index(alert_id)
        self._mark_resolved(record)
        logger.info("Alert %s resolved manually", alert_id)
        return record

    def delete(self, alert_id: str) -> None:
        record = self.get(alert_id)
        self._drop_index(alert_id)
        del self._records[alert_id]
        self._publish("deleted", record)

    def bulk(self, action: str, ids: Iterable[str]) -> dict:
        """批量 acknowledge / resolve / delete，单条失败不影响其他。"""
        if action not in BULK_ACTIONS:
            raise ValidationError(f"Unsupported bulk action '{action}'")
        ids = list(ids)
        if not ids:
            raise ValidationError("Alert id list must not be empty")
        handlers = {
            "acknowledge": self.acknowledge,
            "resolve": self.resolve,
            "delete": self.delete,
        }
        processed = 0
        failed = []
        for alert_id in ids:
            try:
                handlers[action](alert_id)
                processed += 1
            except (NotFoundError, ConflictError) as e:
                failed.append({"id": alert_id, "error": e.message})
        return {"action": action, "processed": processed, "failed": failed}

    def stats(self) -> dict:
        records = list(self._records.values())
        result = {"total": len(records)}
        for level in AlertLevel:
            result[level.value] = sum(1 for r in records if r.level == level)
        for status in AlertStatus:
            result[status.value] = sum(1 for r in records if r.status == status)
        return result

    def cleanup_resolved(self, older_than_days: int = 30) -> int:
        """删除解除时间早于 N 天的告警，返回删除条数。"""
        cutoff = _now() - timedelta(days=older_than_days)
        stale = [
            alert_id
            for alert_id, record in self._records.items()
            if record.status == AlertStatus.RESOLVED and record.resolved_at and record.resolved_at < cutoff
        ]
        for alert_id in stale:
            del self._records[alert_id]
        return len(stale)

    def _drop_index(self, alert_id: str) -> None:
        for key, open_id in list(self._open.items()):
            if open_id == alert_id:
                del self._open[key]
