"""
Read side of the server service: tracked records joined with live panel data
"""
import asyncio
from typing import Optional
import logging

from common.error_handling import NotFound, RemoteError
from common.result import Ok, Err, Result
from common.schemas import LEDGER_FIELDS, AdminServerView, ResourcesOut, ServerRecordOut, ServerView
from ledger_service.models import ServerRecord
from ledger_service.store import RecordStore
from panel_client.client import PanelClient

logger = logging.getLogger(__name__)

def record_out(record: ServerRecord) -> ServerRecordOut:
    return ServerRecordOut(
        id=record.id,
        owner=record.owner,
        server_id=record.server_id,
        allocation_id=record.allocation_id,
        renew_date=record.renew_date.isoformat() if record.renew_date else None,
        created_at=record.created_at.isoformat() if record.created_at else None,
    )

class ServerInventory:
    def __init__(self, store: RecordStore, panel: PanelClient):
        self.store = store
        self.panel = panel

    async def _view(self, record: ServerRecord) -> ServerView:
        warnings = []
        remote = usage = None
        try:
            snapshot = await self.panel.get_instance(record.server_id)
            remote = snapshot.model_dump()
        except RemoteError as e:
            logger.warning(f"Could not fetch panel server {record.server_id}: {e}")
            warnings.append(f"panel details unavailable: {e.message}")
            snapshot = None
        if snapshot is not None and snapshot.identifier:
            try:
                usage = await self.panel.get_resource_usage(snapshot.identifier)
            except RemoteError as e:
                logger.warning(f"Could not fetch usage for panel server {record.server_id}: {e}")
                warnings.append(f"resource usage unavailable: {e.message}")
        return ServerView(record=record_out(record), remote=remote, usage=usage, warnings=warnings)

    async def list_for_owner(self, owner: int) -> list:
        records = self.store.find_server_records_by_owner(owner)
        return list(await asyncio.gather(*(self._view(r) for r in records)))

    async def list_all(self, page: int = 1, per_page: int = 20) -> dict:
        records = self.store.find_all_server_records(offset=(page - 1) * per_page, limit=per_page)
        total = self.store.count_server_records()
        return {
            "servers": list(await asyncio.gather(*(self._view(r) for r in records))),
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": (total + per_page - 1) // per_page,
        }

    async def get(self, record_id: int, owner: Optional[int] = None) -> Result:
        record = self.store.get_server_record(record_id)
        if record is None or (owner is not None and record.owner != owner):
            return Err(NotFound("server", record_id))
        return Ok(await self._view(record))

    async def get_with_owner(self, record_id: int) -> Result:
        """Admin view: the server plus its local owner and that owner's ledger, either may be missing"""
        found = await self.get(record_id)
        if not found.ok:
            return found
        user = self.store.find_user_by_remote_id(found.value.record.owner)
        owner = resources = None
        if user is not None:
            owner = {"id": user.id, "username": user.username, "email": user.email,
                     "remote_id": user.remote_id, "ledger_id": user.ledger_id}
            ledger = self.store.find_ledger(user.ledger_id) if user.ledger_id is not None else None
            if ledger is not None:
                resources = ResourcesOut(id=ledger.id, **{name: getattr(ledger, name) for name in LEDGER_FIELDS})
        return Ok(AdminServerView(server=found.value, owner=owner, resources=resources))

    async def send_power(self, record_id: int, owner: Optional[int], signal: str) -> Result:
        record = self.store.get_server_record(record_id)
        if record is None or (owner is not None and record.owner != owner):
            return Err(NotFound("server", record_id))
        try:
            snapshot = await self.panel.get_instance(record.server_id)
            await self.panel.send_power_signal(snapshot.identifier or str(record.server_id), signal)
        except RemoteError as e:
            logger.warning(f"Power {signal} for server {record_id} failed: {e}")
            return Err(e)
        return Ok({"server": record_id, "signal": signal})
