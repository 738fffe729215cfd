"""PVE REST 路径封装，所有调用都经由 RequestExecutor 执行。"""
from typing import Any, Optional
from urllib.parse import quote

from pvehub.models.batch import BackupAction, PowerActionName
from pvehub.models.snapshot import GuestKind
from pvehub.services.request_executor import RequestExecutor


def _seg(value: Any) -> str:
    return quote(str(value), safe="")


class PVEApi:
    def __init__(self, executor: RequestExecutor):
        self.executor = executor

    async def version(self) -> dict:
        return await self.executor.execute("GET", "/version") or {}

    async def list_nodes(self) -> list[dict]:
        return await self.executor.execute("GET", "/nodes") or []

    async def list_guests(self, node: str, kind: GuestKind) -> list[dict]:
        return await self.executor.execute("GET", f"/nodes/{_seg(node)}/{kind.value}") or []

    async def guest_config(self, node: str, kind: GuestKind, vmid: int) -> dict:
        return await self.executor.execute("GET", f"/nodes/{_seg(node)}/{kind.value}/{vmid}/config") or {}

    async def update_guest_config(self, node: str, kind: GuestKind, vmid: int, changes: dict) -> Any:
        path = f"/nodes/{_seg(node)}/{kind.value}/{vmid}/config"
        return await self.executor.execute("PUT", path, body=changes)

    async def power(self, node: str, kind: GuestKind, vmid: int, action: PowerActionName) -> Any:
        """电源操作，返回 PVE 任务 UPID。"""
        path = f"/nodes/{_seg(node)}/{kind.value}/{vmid}/status/{action.value}"
        return await self.executor.execute("POST", path)

    async def backup(self, node: str, vmid: int, action: BackupAction) -> Any:
        body: dict[str, Any] = {
            "vmid": vmid,
            "mode": action.mode,
            "compress": action.compress,
        }
        if action.storage:
            body["storage"] = action.storage
        if action.notes:
            body["notes-template"] = action.notes
        return await self.executor.execute("POST", f"/nodes/{_seg(node)}/vzdump", body=body)

    async def execute_command(self, node: str, command: str, timeout: Optional[int] = None) -> Any:
        body: dict[str, Any] = {"commands": command}
        if timeout:
            body["timeout"] = timeout
        return await self.executor.execute("POST", f"/nodes/{_seg(node)}/execute", body=body)
