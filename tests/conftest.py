"""
pvehub 测试基础配置

提供基于 httpx.MockTransport 的内存级 PVE 端点模拟、ClusterManager 和异步 HTTP 测试客户端等通用 fixture。
所有测试都不访问真实网络。
"""
import asyncio
import json
from typing import AsyncGenerator, Optional
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pvehub.core.config import Settings
from pvehub.models.endpoint import EndpointConfig
from pvehub.services.cluster_manager import ClusterManager

GB = 1024 ** 3
API_PREFIX = "/api2/json"


def _node(name: str, status: str = "online", cpu: float = 0.10, mem: int = 4 * GB, disk: int = 10 * GB) -> dict:
    return {
        "node": name, "status": status, "cpu": cpu, "maxcpu": 8,
        "mem": mem, "maxmem": 16 * GB, "disk": disk, "maxdisk": 100 * GB, "uptime": 86400,
    }


def _guest(vmid: int, name: str, status: str = "running", cpu: float = 0.05, mem: int = 1 * GB,
           netin: int = 0, netout: int = 0, template: int = 0) -> dict:
    return {
        "vmid": vmid, "name": name, "status": status, "cpu": cpu, "cpus": 2,
        "mem": mem, "maxmem": 4 * GB, "disk": 2 * GB, "maxdisk": 32 * GB,
        "netin": netin, "netout": netout, "uptime": 3600, "template": template,
    }


class FakePVE:
    """内存级 PVE 端点模拟，handler 交给 httpx.MockTransport 使用。"""

    def __init__(self, username: str = "root@pam", password: str = "secret"):
        self.username = username
        self.password = password
        self.nodes: dict[str, dict] = {"pve1": _node("pve1")}
        self.guests: dict[tuple[str, str], list[dict]] = {
            ("pve1", "qemu"): [_guest(100, "web"), _guest(101, "db", status="stopped", cpu=0, mem=0)],
            ("pve1", "lxc"): [_guest(200, "proxy")],
        }
        self.configs: dict[int, dict] = {100: {"name": "web", "cores": 2, "memory": 4096}}
        self.tickets: dict[str, str] = {}
        self.unreachable = False
        self.fail_status: Optional[int] = None
        self.forbidden_nodes: set[str] = set()
        self.unsupported_execute = False
        self.action_delay = 0.0
        self.logins = 0
        self.requests: list[tuple[str, str]] = []
        self.actions: list[tuple] = []
        self._counter = 0

    # ── 测试辅助 ──

    def expire_tickets(self) -> None:
        self.tickets.clear()

    def set_node(self, name: str, **fields) -> None:
        self.nodes.setdefault(name, _node(name)).update(fields)

    def add_guest(self, node: str, kind: str, vmid: int, name: str, **fields) -> None:
        guest = _guest(vmid, name)
        guest.update(fields)
        self.guests.setdefault((node, kind), []).append(guest)

    def set_guest(self, vmid: int, **fields) -> None:
        self._find(vmid)[1].update(fields)

    def remove_guest(self, vmid: int) -> None:
        for guests in self.guests.values():
            guests[:] = [g for g in guests if g["vmid"] != vmid]

    def calls(self, method: str, prefix: str = "") -> list[str]:
        return [p for m, p in self.requests if m == method and p.startswith(prefix)]

    def _find(self, vmid: int):
        for (node, kind), guests in self.guests.items():
            for guest in guests:
                if guest["vmid"] == vmid:
                    return (node, kind), guest
        raise KeyError(vmid)

    # ── 请求处理 ──

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)

        path = request.url.path
        if path.startswith(API_PREFIX):
            path = path[len(API_PREFIX):]
        method = request.method
        self.requests.append((method, path))

        if path == "/access/ticket" and method == "POST":
            return self._login(request)

        cookie = request.headers.get("cookie", "")
        ticket = cookie.split("PVEAuthCookie=", 1)[1] if "PVEAuthCookie=" in cookie else None
        if ticket not in self.tickets:
            return httpx.Response(401, json={"data": None})
        if method in ("POST", "PUT", "DELETE") and request.headers.get("csrfpreventiontoken") != self.tickets[ticket]:
            return httpx.Response(401, json={"data": None, "message": "CSRF token mismatch"})

        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"data": None, "message": "injected failure"})

        body = json.loads(request.content) if request.content else {}
        return await self._route(method, path.strip("/").split("/"), body)

    def _login(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form.get("username") != self.username or form.get("password") != self.password:
            return httpx.Response(401, json={"data": None})
        self.logins += 1
        ticket = f"PVE:{self.username}:ticket-{self.logins}"
        csrf = f"csrf-{self.logins}"
        self.tickets[ticket] = csrf
        return httpx.Response(
            200,
            json={"data": {"ticket": ticket, "CSRFPreventionToken": csrf, "username": self.username}},
        )

    def _upid(self, node: str, what: str) -> str:
        self._counter += 1
        return f"UPID:{node}:{self._counter:08X}:{what}:root@pam:"

    async def _route(self, method: str, parts: list[str], body: dict) -> httpx.Response:
        def ok(data):
            return httpx.Response(200, json={"data": data})

        def not_found():
            return httpx.Response(404, json={"data": None, "message": "no such resource"})

        if parts == ["version"]:
            return ok({"version": "8.1.4", "release": "8.1"})
        if parts == ["nodes"]:
            return ok(list(self.nodes.values()))
        if len(parts) < 3 or parts[0] != "nodes" or parts[1] not in self.nodes:
            return not_found()

        node = parts[1]
        if len(parts) == 3 and parts[2] in ("qemu", "lxc") and method == "GET":
            if node in self.forbidden_nodes:
                return httpx.Response(403, json={"data": None, "message": "Permission check failed"})
            return ok(self.guests.get((node, parts[2]), []))

        if parts[2] == "vzdump" and method == "POST":
            self.actions.append(("vzdump", node, body.get("vmid"), body))
            return ok(self._upid(node, "vzdump"))

        if parts[2] == "execute" and method == "POST":
            if self.unsupported_execute:
                return httpx.Response(501, json={"data": None, "message": "Method not implemented"})
            self.actions.append(("execute", node, body.get("commands")))
            return ok(f"executed: {body.get('commands')}")

        if len(parts) >= 5 and parts[2] in ("qemu", "lxc"):
            vmid = int(parts[3])
            try:
                (guest_node, kind), guest = self._find(vmid)
            except KeyError:
                return not_found()
            if guest_node != node or kind != parts[2]:
                return not_found()

            if parts[4] == "config":
                if method == "GET":
                    return ok(self.configs.get(vmid, {}))
                self.configs.setdefault(vmid, {}).update(body)
                return ok(None)

            if parts[4] == "status" and len(parts) == 6:
                action = parts[5]
                if action == "current" and method == "GET":
                    return ok(guest)
                if method == "POST":
                    if self.action_delay:
                        await asyncio.sleep(self.action_delay)
                    self.actions.append((action, node, vmid))
                    if action in ("start", "resume"):
                        guest["status"] = "running"
                    elif action in ("stop", "shutdown"):
                        guest["status"] = "stopped"
                    return ok(self._upid(node, f"qm{action}"))

        return not_found()


def make_endpoint(endpoint_id: str = "lab", host: str = "pve-a.test", password: str = "secret", **kwargs) -> EndpointConfig:
    return EndpointConfig(id=endpoint_id, host=host, username="root", password=password, **kwargs)


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest.fixture
def fake_pve() -> FakePVE:
    return FakePVE()


@pytest.fixture
def fake_pve_b() -> FakePVE:
    fake = FakePVE()
    fake.nodes = {"pve-b1": _node("pve-b1")}
    fake.guests = {("pve-b1", "qemu"): [_guest(100, "web-b")]}
    return fake


@pytest.fixture
def fakes(fake_pve, fake_pve_b) -> dict[str, FakePVE]:
    """按主机名路由的模拟端点。"""
    return {"pve-a.test": fake_pve, "pve-b.test": fake_pve_b}


@pytest.fixture
def transport_factory(fakes):
    def factory(config: EndpointConfig) -> httpx.MockTransport:
        return httpx.MockTransport(fakes[config.host].handler)
    return factory


@pytest.fixture
def test_settings() -> Settings:
    """测试配置：重试无延迟，轮询间隔足够长，测试里手动 poll。"""
    return Settings(
        _env_file=None,
        retry_base_delay=0,
        max_retries=2,
        poll_interval=3600,
        batch_timeout=5,
        alert_cleanup_interval=3600,
    )


@pytest_asyncio.fixture
async def manager(test_settings, transport_factory) -> AsyncGenerator[ClusterManager, None]:
    m = ClusterManager(test_settings, transport_factory=transport_factory)
    yield m
    await m.stop()


@pytest_asyncio.fixture
async def client(manager) -> AsyncGenerator[AsyncClient, None]:
    """提供绑定到测试 ClusterManager 的异步 HTTP 测试客户端。"""
    from pvehub.main import create_app

    app = create_app(manager=manager)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture(name="make_endpoint")
def make_endpoint_fixture():
    """端点配置工厂。"""
    return make_endpoint


@pytest.fixture
def new_fake():
    """新建一个独立的模拟端点。"""
    return FakePVE
