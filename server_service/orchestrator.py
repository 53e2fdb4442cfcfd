"""
Create, resize and delete sagas.

The ledger and the panel share no transaction, so each saga orders its steps
so that every step after the first ledger mutation has a compensating action:

- create: debit -> resolve egg/allocation -> panel create -> record.
  Any failure after the debit credits it back.
- resize: fetch live limits -> adjust ledger by the delta -> patch panel.
  A failed patch reverses the adjustment.
- delete: fetch live limits -> panel delete (404 counts) -> credit + drop record
  in one transaction. A failed panel delete leaves everything untouched.

Resize and delete of one server hold a per-record lock for the whole saga,
separate from the per-ledger lock, so neither acts on limits the other changed.

Expected failures come back as ``Err``; only programming errors raise.
"""
from dataclasses import dataclass, field, replace
from typing import Dict, Optional
import logging

from common.error_handling import (
    NotFound, ValidationError, ProvisioningFailed, UpdateFailed, DeletionFailed,
    OrphanedInstanceError, RemoteError, RemoteNotFoundError,
)
from common.locks import KeyedLocks
from common.result import Ok, Err, Result
from common.settings import settings
from common.tracing import server_tracer
from ledger_service.ledger import ResourceLedger, ResourceVector
from ledger_service.models import ServerRecord
from ledger_service.store import RecordStore
from panel_client.client import PanelClient
from panel_client.schemas import CreateInstanceSpec, Limits, FeatureLimits, RemoteInstanceSnapshot

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 191

# Held from the panel fetch to the ledger write so two sagas never act on the same stale limits
server_locks = KeyedLocks("server")

@dataclass
class ServerOrder:
    owner: int  # panel user id
    name: str
    ram: int
    disk: int
    cpu: int
    node_id: int
    egg_id: int
    allocations: int = 0
    databases: int = 0
    description: str = ""
    skip_resource_check: bool = False

    def resources(self) -> ResourceVector:
        return ResourceVector(ram=self.ram, disk=self.disk, cpu=self.cpu, allocations=self.allocations,
                              databases=self.databases, slots=1)

@dataclass
class ServerChanges:
    name: Optional[str] = None
    description: Optional[str] = None
    ram: Optional[int] = None
    disk: Optional[int] = None
    cpu: Optional[int] = None
    allocations: Optional[int] = None
    databases: Optional[int] = None

    def desired(self, current: Dict[str, int]) -> Dict[str, int]:
        return {name: current[name] if getattr(self, name) is None else getattr(self, name) for name in current}

    @property
    def touches_details(self) -> bool:
        return self.name is not None or self.description is not None

@dataclass
class ServerCreated:
    record: ServerRecord
    remote: RemoteInstanceSnapshot

@dataclass
class ServerUpdated:
    record: ServerRecord
    remote: RemoteInstanceSnapshot
    delta: ResourceVector = field(default_factory=ResourceVector)

@dataclass
class ServerDeleted:
    record: ServerRecord
    credited: Optional[ResourceVector]
    remote_existed: bool

def _check_name(name: Optional[str]) -> Optional[ValidationError]:
    if name is not None and not (1 <= len(name.strip()) <= MAX_NAME_LENGTH):
        return ValidationError("name", f"must be between 1 and {MAX_NAME_LENGTH} characters")
    return None

def _check_amounts(values: Dict[str, Optional[int]], positive: bool) -> Optional[ValidationError]:
    for name, value in values.items():
        if value is None:
            continue
        if not isinstance(value, int) or isinstance(value, bool):
            return ValidationError(name, "must be an integer")
        if positive and value <= 0:
            return ValidationError(name, "must be a positive integer")
        if not positive and value < 0:
            return ValidationError(name, "must not be negative")
    return None

class _Saga:
    def __init__(self, store: RecordStore, ledger: ResourceLedger, panel: PanelClient,
                 locks: Optional[KeyedLocks] = None):
        self.store = store
        self.ledger = ledger
        self.panel = panel
        self.locks = locks if locks is not None else server_locks

    def _owned_record(self, record_id: int, owner: Optional[int]) -> Result:
        """Record ``record_id`` if ``owner`` may touch it; admins pass ``owner=None``"""
        record = self.store.get_server_record(record_id)
        if record is None or (owner is not None and record.owner != owner):
            return Err(NotFound("server", record_id))
        return Ok(record)

    async def _give_back(self, ledger_id: int, amount: ResourceVector, reason: str) -> bool:
        result = await self.ledger.credit(ledger_id, amount)
        if result.ok:
            logger.warning(f"Compensated ledger {ledger_id} after {reason}: {amount.as_dict()}")
            return True
        logger.critical(f"Could not compensate ledger {ledger_id} after {reason}: {result.error}; "
                        f"ledger is short {amount.as_dict()}")
        return False

class ProvisioningOrchestrator(_Saga):
    async def create(self, order: ServerOrder) -> Result:
        with server_tracer.start_child_span("saga.create") as span:
            span.add_tag("owner", order.owner)
            result = await self._create(order)
            if not result.ok:
                span.set_error(result.error)
            return result

    async def create_for_user(self, user_id: int, order: ServerOrder) -> Result:
        """Admin path: provision for a local user id instead of the caller"""
        user = self.store.find_user(user_id)
        if user is None:
            return Err(NotFound("user", user_id))
        return await self.create(replace(order, owner=user.remote_id))

    async def _create(self, order: ServerOrder) -> Result:
        invalid = (_check_name(order.name)
                   or _check_amounts({"ram": order.ram, "disk": order.disk, "cpu": order.cpu}, positive=True)
                   or _check_amounts({"allocations": order.allocations, "databases": order.databases},
                                     positive=False))
        if invalid:
            return Err(invalid)

        debited = not order.skip_resource_check
        ledger_id = self.store.find_ledger_id_for_owner(order.owner)
        amount = order.resources()
        if debited:
            if ledger_id is None:
                return Err(NotFound("ledger for user", order.owner))
            result = await self.ledger.try_debit(ledger_id, amount)
            if not result.ok:
                return result

        async def compensate(reason: str):
            if debited:
                await self._give_back(ledger_id, amount, reason)

        try:
            egg = await self.panel.resolve_catalog_item(order.egg_id)
            allocation_id = await self.panel.list_unassigned_allocation(order.node_id)
        except Exception as e:
            logger.warning(f"Create for {order.owner} failed resolving egg {order.egg_id} / node {order.node_id}: {e}")
            await compensate("egg/allocation lookup failure")
            return Err(ProvisioningFailed(e))

        spec = CreateInstanceSpec(
            name=order.name.strip(),
            description=(order.description or "").strip(),
            user=order.owner,
            egg=order.egg_id,
            docker_image=egg.docker_image,
            startup=egg.startup,
            environment=egg.environment(),
            limits=Limits(memory=order.ram, swap=settings.default_swap, disk=order.disk,
                          io=settings.default_io, cpu=order.cpu),
            feature_limits=FeatureLimits(databases=order.databases, allocations=order.allocations,
                                         backups=settings.default_backups),
            allocation_id=allocation_id,
        )
        try:
            remote = await self.panel.create_instance(spec)
        except Exception as e:
            if isinstance(e, RemoteError) and e.retryable:
                # Unknown outcome: the panel may have created it anyway
                logger.error(f"Panel create for {order.owner} ({spec.name}) ended in a transient error, "
                             f"a server may exist without a record: {e}")
            else:
                logger.warning(f"Panel refused to create {spec.name} for {order.owner}: {e}")
            await compensate("panel create failure")
            return Err(ProvisioningFailed(e))

        try:
            record = self.store.create_server_record(order.owner, remote.id, allocation_id)
        except Exception as e:
            logger.critical(f"Panel server {remote.id} created for {order.owner} but recording it failed: {e}")
            cleaned_up = False
            try:
                await self.panel.delete_instance(remote.id)
                cleaned_up = True
            except RemoteError as de:
                logger.critical(f"Orphaned panel server {remote.id} could not be removed: {de}")
            if cleaned_up:
                await compensate("orphan cleanup")
            return Err(OrphanedInstanceError(remote.id, cause=e, cleaned_up=cleaned_up))

        logger.info(f"Provisioned server {record.id} (panel {remote.id}) for {order.owner} on node {order.node_id}")
        return Ok(ServerCreated(record=record, remote=remote))

class ResizeOrchestrator(_Saga):
    async def resize(self, record_id: int, owner: Optional[int], changes: ServerChanges,
                     skip_resource_check: bool = False) -> Result:
        with server_tracer.start_child_span("saga.resize") as span:
            span.add_tag("record_id", record_id)
            async with self.locks.hold(record_id):
                result = await self._resize(record_id, owner, changes, skip_resource_check)
            if not result.ok:
                span.set_error(result.error)
            return result

    async def _resize(self, record_id: int, owner: Optional[int], changes: ServerChanges,
                      skip_resource_check: bool) -> Result:
        invalid = (_check_name(changes.name)
                   or _check_amounts({"ram": changes.ram, "disk": changes.disk, "cpu": changes.cpu}, positive=True)
                   or _check_amounts({"allocations": changes.allocations, "databases": changes.databases},
                                     positive=False))
        if invalid:
            return Err(invalid)

        found = self._owned_record(record_id, owner)
        if not found.ok:
            return found
        record = found.value

        try:
            current = await self.panel.get_instance(record.server_id)
        except RemoteError as e:
            logger.warning(f"Resize of server {record_id} aborted, panel fetch failed: {e}")
            return Err(UpdateFailed(e))

        now = current.quota()
        desired = changes.desired(now)
        delta = ResourceVector.from_dict(desired) - ResourceVector.from_dict(now)
        limits_changed = not delta.is_zero()
        if not limits_changed and not changes.touches_details:
            return Ok(ServerUpdated(record=record, remote=current, delta=delta))

        adjusted = limits_changed and not skip_resource_check
        ledger_id = self.store.find_ledger_id_for_owner(record.owner)
        if adjusted:
            if ledger_id is None:
                return Err(NotFound("ledger for user", record.owner))
            result = await self.ledger.adjust(ledger_id, delta)
            if not result.ok:
                return result

        remote = current
        try:
            # Details go first: a failing details patch must not leave new limits behind a reversed ledger
            if changes.touches_details:
                remote = await self.panel.patch_details(
                    record.server_id,
                    user=current.user if current.user is not None else record.owner,
                    name=(changes.name if changes.name is not None else current.name).strip(),
                    description=(changes.description if changes.description is not None
                                 else current.description or "").strip(),
                ) or remote
            if limits_changed:
                remote = await self.panel.patch_limits(
                    record.server_id,
                    record.allocation_id if record.allocation_id is not None else current.allocation,
                    desired,
                    swap=current.limits.swap,
                    io=current.limits.io,
                    backups=current.feature_limits.backups,
                ) or remote
        except Exception as e:
            logger.warning(f"Panel patch for server {record_id} (panel {record.server_id}) failed: {e}")
            context = {}
            if adjusted:
                reversed_ok = await self._reverse(ledger_id, delta, record)
                if not reversed_ok:
                    context["compensation_failed"] = True
            return Err(UpdateFailed(e, context=context))

        logger.info(f"Resized server {record_id} (panel {record.server_id}): delta {delta.as_dict()}")
        return Ok(ServerUpdated(record=record, remote=remote, delta=delta))

    async def _reverse(self, ledger_id: int, delta: ResourceVector, record: ServerRecord) -> bool:
        result = await self.ledger.adjust(ledger_id, -delta)
        if result.ok:
            logger.warning(f"Reversed ledger {ledger_id} adjustment for server {record.id}: {(-delta).as_dict()}")
            return True
        logger.critical(f"Ledger {ledger_id} diverged from panel server {record.server_id}: "
                        f"could not reverse {delta.as_dict()}: {result.error}")
        return False

class DeprovisionOrchestrator(_Saga):
    async def delete(self, record_id: int, owner: Optional[int] = None,
                     restore_resources: bool = True) -> Result:
        with server_tracer.start_child_span("saga.delete") as span:
            span.add_tag("record_id", record_id)
            async with self.locks.hold(record_id):
                result = await self._delete(record_id, owner, restore_resources)
            if not result.ok:
                span.set_error(result.error)
            return result

    async def _delete(self, record_id: int, owner: Optional[int], restore_resources: bool) -> Result:
        found = self._owned_record(record_id, owner)
        if not found.ok:
            return found
        record = found.value

        try:
            last_known = await self.panel.get_instance(record.server_id)
        except RemoteNotFoundError:
            logger.info(f"Panel server {record.server_id} already gone, only the slot will be credited")
            last_known = None
        except RemoteError as e:
            # Without the live limits the credit would be wrong, so nothing is touched
            logger.warning(f"Delete of server {record_id} aborted, panel fetch failed: {e}")
            return Err(DeletionFailed(e))

        try:
            remote_existed = await self.panel.delete_instance(record.server_id)
        except Exception as e:
            logger.warning(f"Panel delete of server {record.server_id} failed: {e}")
            return Err(DeletionFailed(e))

        credit = ResourceVector(slots=1)
        if last_known is not None:
            credit = credit + ResourceVector.from_dict(last_known.quota())

        ledger_id = self.store.find_ledger_id_for_owner(record.owner) if restore_resources else None
        if ledger_id is not None:
            result = await self.ledger.credit(ledger_id, credit, release_record_id=record.id)
            if result.ok:
                logger.info(f"Deleted server {record.id} (panel {record.server_id}), "
                            f"credited ledger {ledger_id}: {credit.as_dict()}")
                return Ok(ServerDeleted(record=record, credited=credit, remote_existed=remote_existed))
            if getattr(result.error, "resource_kind", None) == "server":
                # Someone else finished this deletion and already credited it
                return result
            logger.warning(f"Ledger {ledger_id} vanished while deleting server {record.id}, dropping record only")

        if not self.store.delete_server_record(record.id):
            return Err(NotFound("server", record.id))
        logger.info(f"Deleted server {record.id} (panel {record.server_id}) without credit")
        return Ok(ServerDeleted(record=record, credited=None, remote_existed=remote_existed))
