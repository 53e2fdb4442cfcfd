"""
In-memory stand-ins shared by the test modules
"""
import asyncio
from typing import Dict, List, Optional

from common.error_handling import RemoteNotFoundError
from ledger_service.db import make_engine, make_session_factory
from ledger_service.ledger import ResourceLedger
from ledger_service.models import Base
from ledger_service.store import RecordStore
from panel_client.schemas import (
    RemoteInstanceSnapshot, CatalogItem, CatalogVariable, Limits, FeatureLimits,
)

class FakePanel:
    """Scripted panel: servers live in a dict, failures are queued per method name"""

    def __init__(self, delete_delay: float = 0.0, get_delay: float = 0.0):
        self.servers: Dict[int, RemoteInstanceSnapshot] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[tuple] = []
        self.next_id = 1000
        self.delete_delay = delete_delay
        self.get_delay = get_delay
        self.in_flight = 0
        self.max_in_flight = 0

    def fail(self, method: str, error: Exception, times: int = 1):
        self.failures.setdefault(method, []).extend([error] * times)

    def _record(self, method: str, *args):
        self.calls.append((method,) + args)
        queued = self.failures.get(method)
        if queued:
            raise queued.pop(0)

    def called(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def add_server(self, name: str, ram: int = 1024, disk: int = 2048, cpu: int = 100,
                   allocations: int = 0, databases: int = 0, user: int = 1) -> RemoteInstanceSnapshot:
        self.next_id += 1
        snapshot = RemoteInstanceSnapshot(
            id=self.next_id,
            identifier=f"srv{self.next_id}",
            name=name,
            user=user,
            node=1,
            allocation=500,
            limits=Limits(memory=ram, disk=disk, cpu=cpu),
            feature_limits=FeatureLimits(allocations=allocations, databases=databases),
        )
        self.servers[snapshot.id] = snapshot
        return snapshot

    async def create_instance(self, spec):
        self._record("create_instance", spec)
        self.next_id += 1
        snapshot = RemoteInstanceSnapshot(
            id=self.next_id,
            identifier=f"srv{self.next_id}",
            name=spec.name,
            description=spec.description,
            user=spec.user,
            allocation=spec.allocation_id,
            limits=spec.limits,
            feature_limits=spec.feature_limits,
        )
        self.servers[snapshot.id] = snapshot
        return snapshot

    async def get_instance(self, server_id: int):
        if self.get_delay:
            await asyncio.sleep(self.get_delay)
        self._record("get_instance", server_id)
        if server_id not in self.servers:
            raise RemoteNotFoundError(f"GET server {server_id} returned 404")
        return self.servers[server_id].model_copy(deep=True)

    async def patch_limits(self, server_id, allocation_id, quota, swap=None, io=None, backups=None):
        self._record("patch_limits", server_id, quota)
        current = self.servers[server_id]
        current.limits = Limits(memory=quota["ram"], disk=quota["disk"], cpu=quota["cpu"],
                                swap=swap or 0, io=io or 500)
        current.feature_limits = FeatureLimits(allocations=quota["allocations"],
                                               databases=quota["databases"], backups=backups or 0)
        return current.model_copy(deep=True)

    async def patch_details(self, server_id, user, name, description=None):
        self._record("patch_details", server_id, name, description)
        current = self.servers[server_id]
        current.name = name
        if description is not None:
            current.description = description
        return current.model_copy(deep=True)

    async def delete_instance(self, server_id: int) -> bool:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delete_delay:
                await asyncio.sleep(self.delete_delay)
            self._record("delete_instance", server_id)
            return self.servers.pop(server_id, None) is not None
        finally:
            self.in_flight -= 1

    async def list_unassigned_allocation(self, node_id: int) -> int:
        self._record("list_unassigned_allocation", node_id)
        return 500 + node_id

    async def resolve_catalog_item(self, egg_id: int) -> CatalogItem:
        self._record("resolve_catalog_item", egg_id)
        return CatalogItem(
            id=egg_id,
            nest=1,
            name="Paper",
            docker_image="ghcr.io/example/java:17",
            startup="java -jar server.jar",
            variables=[CatalogVariable(env_variable="SERVER_JARFILE", default_value="server.jar"),
                       CatalogVariable(env_variable="BUILD_NUMBER", default_value=None)],
        )

    async def get_resource_usage(self, identifier: str) -> dict:
        self._record("get_resource_usage", identifier)
        return {"current_state": "running", "resources": {"memory_bytes": 1024}}

    async def send_power_signal(self, identifier: str, signal: str) -> None:
        self._record("send_power_signal", identifier, signal)

    async def ping(self) -> bool:
        return True

class Stack:
    """A fresh in-memory database with a store, a ledger and a fake panel"""

    def __init__(self, panel: Optional[FakePanel] = None):
        self.engine = make_engine("sqlite://")
        Base.metadata.create_all(bind=self.engine)
        self.session_factory = make_session_factory(self.engine)
        self.store = RecordStore(self.session_factory)
        self.ledger = ResourceLedger(self.session_factory)
        self.panel = panel or FakePanel()

    def add_user(self, remote_id: int, root_admin: bool = False, **resources):
        user = self.store.create_user(f"user{remote_id}", f"user{remote_id}@example.com", remote_id,
                                      root_admin=root_admin)
        if resources:
            ledger = self.store.find_ledger(user.ledger_id)
            for name, value in resources.items():
                setattr(ledger, name, value)
            self.store.save_ledger(ledger)
        return user

    def resources(self, ledger_id: int) -> dict:
        row = self.store.find_ledger(ledger_id)
        return {name: getattr(row, name)
                for name in ("ram", "disk", "cpu", "allocations", "databases", "slots", "coins")}
