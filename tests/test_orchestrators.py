#!/usr/bin/env python3
"""
Saga tests: create, resize and delete against an in-memory store and a
scripted panel
"""
import asyncio
import unittest
from unittest import mock

from sqlalchemy.exc import OperationalError

from common.error_handling import (
    InsufficientResources, NotFound, ValidationError, ProvisioningFailed, UpdateFailed,
    DeletionFailed, OrphanedInstanceError, TransientRemoteError, PermanentRemoteError,
    NoAllocationAvailable,
)
from server_service.orchestrator import (
    ProvisioningOrchestrator, ResizeOrchestrator, DeprovisionOrchestrator, ServerOrder, ServerChanges,
)
from server_service.inventory import ServerInventory
from fakes import Stack

OWNER = 3


def _order(**overrides) -> ServerOrder:
    values = dict(owner=OWNER, name="survival", ram=1024, disk=2048, cpu=100,
                  allocations=1, databases=1, node_id=1, egg_id=5)
    values.update(overrides)
    return ServerOrder(**values)


class SagaTestCase(unittest.TestCase):
    def setUp(self):
        self.stack = Stack()
        self.user = self.stack.add_user(OWNER, ram=4096, disk=8192, cpu=400, allocations=2,
                                        databases=2, slots=2, coins=0)
        self.ledger_id = self.user.ledger_id
        args = (self.stack.store, self.stack.ledger, self.stack.panel)
        self.provisioner = ProvisioningOrchestrator(*args)
        self.resizer = ResizeOrchestrator(*args)
        self.deprovisioner = DeprovisionOrchestrator(*args)

    def resources(self) -> dict:
        return self.stack.resources(self.ledger_id)

    def track(self, snapshot) -> int:
        """Record an existing panel server as owned by OWNER"""
        return self.stack.store.create_server_record(OWNER, snapshot.id, snapshot.allocation).id


class TestCreateSaga(SagaTestCase):
    """Test the create saga and its compensation"""

    def test_create_debits_once_and_records(self):
        result = asyncio.run(self.provisioner.create(_order()))
        self.assertTrue(result.ok)
        created = result.value
        self.assertEqual(self.resources(), {"ram": 3072, "disk": 6144, "cpu": 300, "allocations": 1,
                                            "databases": 1, "slots": 1, "coins": 0})
        self.assertEqual(created.record.server_id, created.remote.id)
        self.assertEqual(created.record.allocation_id, 501)
        self.assertEqual(len(self.stack.store.find_server_records_by_owner(OWNER)), 1)

        spec = self.stack.panel.called("create_instance")[0][1]
        self.assertEqual(spec.environment, {"SERVER_JARFILE": "server.jar", "BUILD_NUMBER": ""})
        self.assertEqual(spec.user, OWNER)
        self.assertEqual(spec.docker_image, "ghcr.io/example/java:17")

    def test_insufficient_makes_no_remote_call(self):
        result = asyncio.run(self.provisioner.create(_order(ram=5000, cpu=500)))
        self.assertIsInstance(result.error, InsufficientResources)
        self.assertEqual(set(result.error.fields), {"ram", "cpu"})
        self.assertEqual(self.stack.panel.calls, [])

    def test_invalid_input(self):
        for order, field in [(_order(name=""), "name"), (_order(name="x" * 192), "name"),
                             (_order(ram=0), "ram"), (_order(databases=-1), "databases")]:
            result = asyncio.run(self.provisioner.create(order))
            self.assertIsInstance(result.error, ValidationError)
            self.assertEqual(result.error.field, field)
        self.assertEqual(self.resources()["ram"], 4096)

    def test_remote_create_failure_restores_ledger(self):
        """Test that a failed panel create leaves the ledger exactly as before"""
        before = self.resources()
        self.stack.panel.fail("create_instance", PermanentRemoteError("rejected", status=422, detail=["bad"]))
        result = asyncio.run(self.provisioner.create(_order()))
        self.assertIsInstance(result.error, ProvisioningFailed)
        self.assertIn("rejected", result.error.message)
        self.assertEqual(self.resources(), before)
        self.assertEqual(self.stack.store.find_server_records_by_owner(OWNER), [])

    def test_transient_create_failure_hides_cause(self):
        self.stack.panel.fail("create_instance", TransientRemoteError("POST /servers returned 504", status=504))
        result = asyncio.run(self.provisioner.create(_order()))
        self.assertIn("temporarily unavailable", result.error.message)
        self.assertEqual(self.resources()["slots"], 2)

    def test_allocation_failure_restores_ledger(self):
        before = self.resources()
        self.stack.panel.fail("list_unassigned_allocation", NoAllocationAvailable(1))
        result = asyncio.run(self.provisioner.create(_order()))
        self.assertIsInstance(result.error, ProvisioningFailed)
        self.assertEqual(self.resources(), before)
        self.assertEqual(self.stack.panel.called("create_instance"), [])

    def test_skip_resource_check(self):
        before = self.resources()
        result = asyncio.run(self.provisioner.create(_order(ram=100000, skip_resource_check=True)))
        self.assertTrue(result.ok)
        self.assertEqual(self.resources(), before)

    def test_admin_create_for_user(self):
        result = asyncio.run(self.provisioner.create_for_user(self.user.id, _order(owner=0)))
        self.assertEqual(result.value.record.owner, OWNER)
        missing = asyncio.run(self.provisioner.create_for_user(999, _order()))
        self.assertIsInstance(missing.error, NotFound)

    def test_unknown_owner(self):
        result = asyncio.run(self.provisioner.create(_order(owner=404)))
        self.assertIsInstance(result.error, NotFound)

    def test_record_failure_reports_orphan(self):
        """Test that a lost record is surfaced and cleaned up on the panel"""
        before = self.resources()
        boom = OperationalError("INSERT", {}, Exception("disk full"))
        with mock.patch.object(self.stack.store, "create_server_record", side_effect=boom):
            result = asyncio.run(self.provisioner.create(_order()))
        self.assertIsInstance(result.error, OrphanedInstanceError)
        self.assertTrue(result.error.context["cleaned_up"])
        self.assertEqual(self.stack.panel.servers, {})
        self.assertEqual(self.resources(), before)

    def test_orphan_cleanup_failure_keeps_debit(self):
        boom = OperationalError("INSERT", {}, Exception("disk full"))
        self.stack.panel.fail("delete_instance", TransientRemoteError("down"))
        with mock.patch.object(self.stack.store, "create_server_record", side_effect=boom):
            result = asyncio.run(self.provisioner.create(_order()))
        self.assertFalse(result.error.cleaned_up)
        self.assertEqual(len(self.stack.panel.servers), 1)
        self.assertEqual(self.resources()["slots"], 1)


class TestResizeSaga(SagaTestCase):
    """Test the resize saga and its compensation"""

    def test_growth_blocked(self):
        self.stack.add_user(9, ram=500)
        remote = self.stack.panel.add_server("big", ram=1000, user=9)
        record_id = self.stack.store.create_server_record(9, remote.id, 500).id
        result = asyncio.run(self.resizer.resize(record_id, 9, ServerChanges(ram=2000)))
        self.assertEqual(result.error.fields, {"ram": {"needed": 1000, "available": 500}})
        self.assertEqual(self.stack.panel.called("patch_limits"), [])

    def test_shrink_credits_and_patches(self):
        remote = self.stack.panel.add_server("s", ram=2000)
        record_id = self.track(remote)
        result = asyncio.run(self.resizer.resize(record_id, OWNER, ServerChanges(ram=500)))
        self.assertTrue(result.ok)
        self.assertEqual(result.value.delta.ram, -1500)
        self.assertEqual(self.resources()["ram"], 4096 + 1500)
        self.assertEqual(self.stack.panel.servers[remote.id].limits.memory, 500)

    def test_shrink_then_patch_failure_nets_zero(self):
        """Test that a failed patch takes the shrink credit back"""
        remote = self.stack.panel.add_server("s", ram=2000)
        record_id = self.track(remote)
        self.stack.panel.fail("patch_limits", TransientRemoteError("down"))
        result = asyncio.run(self.resizer.resize(record_id, OWNER, ServerChanges(ram=500)))
        self.assertIsInstance(result.error, UpdateFailed)
        self.assertNotIn("compensation_failed", result.error.context)
        self.assertEqual(self.resources()["ram"], 4096)

    def test_growth_then_patch_failure_restores(self):
        remote = self.stack.panel.add_server("s", ram=1000, cpu=100)
        record_id = self.track(remote)
        before = self.resources()
        self.stack.panel.fail("patch_limits", PermanentRemoteError("rejected", status=422))
        result = asyncio.run(self.resizer.resize(record_id, OWNER, ServerChanges(ram=3000, cpu=50)))
        self.assertIsInstance(result.error, UpdateFailed)
        self.assertEqual(self.resources(), before)

    def test_details_failure_skips_limits(self):
        remote = self.stack.panel.add_server("s", ram=1000)
        record_id = self.track(remote)
        self.stack.panel.fail("patch_details", PermanentRemoteError("name taken", status=422))
        result = asyncio.run(self.resizer.resize(record_id, OWNER, ServerChanges(name="new", ram=2000)))
        self.assertIsInstance(result.error, UpdateFailed)
        self.assertEqual(self.stack.panel.called("patch_limits"), [])
        self.assertEqual(self.resources()["ram"], 4096)

    def test_unreversible_shrink_is_flagged(self):
        remote = self.stack.panel.add_server("s", ram=2000)
        record_id = self.track(remote)
        original_patch = self.stack.panel.patch_limits

        async def spend_then_fail(*args, **kwargs):
            # Credited quota is spent by another request while the patch is in flight
            await self.stack.ledger.set_values(self.ledger_id, {"ram": 0})
            raise TransientRemoteError("down")

        self.stack.panel.patch_limits = spend_then_fail
        result = asyncio.run(self.resizer.resize(record_id, OWNER, ServerChanges(ram=500)))
        self.stack.panel.patch_limits = original_patch
        self.assertTrue(result.error.context["compensation_failed"])
        self.assertEqual(self.resources()["ram"], 0)

    def test_details_only(self):
        remote = self.stack.panel.add_server("old")
        record_id = self.track(remote)
        before = self.resources()
        result = asyncio.run(self.resizer.resize(record_id, OWNER, ServerChanges(name="  renamed ")))
        self.assertTrue(result.ok)
        self.assertEqual(self.stack.panel.servers[remote.id].name, "renamed")
        self.assertEqual(self.resources(), before)

    def test_fetch_failure_has_no_side_effects(self):
        remote = self.stack.panel.add_server("s")
        record_id = self.track(remote)
        self.stack.panel.fail("get_instance", TransientRemoteError("down"))
        before = self.resources()
        result = asyncio.run(self.resizer.resize(record_id, OWNER, ServerChanges(ram=2048)))
        self.assertIsInstance(result.error, UpdateFailed)
        self.assertEqual(self.resources(), before)

    def test_other_owner_cannot_resize(self):
        remote = self.stack.panel.add_server("s")
        record_id = self.track(remote)
        result = asyncio.run(self.resizer.resize(record_id, OWNER + 1, ServerChanges(ram=2048)))
        self.assertIsInstance(result.error, NotFound)

    def test_admin_skip_resource_check(self):
        remote = self.stack.panel.add_server("s", ram=1000)
        record_id = self.track(remote)
        before = self.resources()
        result = asyncio.run(self.resizer.resize(record_id, None, ServerChanges(ram=100000),
                                                 skip_resource_check=True))
        self.assertTrue(result.ok)
        self.assertEqual(self.resources(), before)

    def test_concurrent_resizes_charge_once(self):
        """Test that two identical resizes racing on one server debit the growth once"""
        remote = self.stack.panel.add_server("s", ram=1000)
        record_id = self.track(remote)
        self.stack.panel.get_delay = 0.01

        async def race():
            return await asyncio.gather(self.resizer.resize(record_id, OWNER, ServerChanges(ram=2000)),
                                        self.resizer.resize(record_id, OWNER, ServerChanges(ram=2000)))

        results = asyncio.run(race())
        self.assertTrue(all(r.ok for r in results))
        self.assertEqual(sorted(r.value.delta.ram for r in results), [0, 1000])
        self.assertEqual(self.stack.panel.servers[remote.id].limits.memory, 2000)
        self.assertEqual(self.resources()["ram"], 4096 - 1000)
        self.assertEqual(len(self.stack.panel.called("patch_limits")), 1)

    def test_resize_racing_delete(self):
        """Test that a delete sees the limits a concurrent resize paid for"""
        remote = self.stack.panel.add_server("s", ram=1000)
        record_id = self.track(remote)
        before = self.resources()
        self.stack.panel.get_delay = 0.01

        async def race():
            return await asyncio.gather(self.resizer.resize(record_id, OWNER, ServerChanges(ram=2000)),
                                        self.deprovisioner.delete(record_id, owner=OWNER))

        resized, deleted = asyncio.run(race())
        self.assertTrue(resized.ok)
        self.assertTrue(deleted.ok)
        self.assertEqual(deleted.value.credited.ram, 2000)
        self.assertEqual(self.resources()["ram"], before["ram"] + 1000)
        self.assertEqual(self.stack.panel.servers, {})


class TestDeleteSaga(SagaTestCase):
    """Test the delete saga"""

    def test_delete_credits_limits_and_slot(self):
        remote = self.stack.panel.add_server("s", ram=1024, disk=2048, cpu=100, allocations=1, databases=1)
        record_id = self.track(remote)
        before = self.resources()
        result = asyncio.run(self.deprovisioner.delete(record_id, owner=OWNER))
        self.assertTrue(result.ok)
        after = self.resources()
        self.assertEqual(after["ram"] - before["ram"], 1024)
        self.assertEqual(after["slots"] - before["slots"], 1)
        self.assertIsNone(self.stack.store.get_server_record(record_id))
        self.assertNotIn(remote.id, self.stack.panel.servers)

    def test_already_gone_credits_slot_only(self):
        record_id = self.stack.store.create_server_record(OWNER, 9999, 1).id
        before = self.resources()
        result = asyncio.run(self.deprovisioner.delete(record_id))
        self.assertTrue(result.ok)
        self.assertFalse(result.value.remote_existed)
        self.assertEqual(self.resources()["slots"], before["slots"] + 1)
        self.assertEqual(self.resources()["ram"], before["ram"])

    def test_second_delete_does_not_credit(self):
        remote = self.stack.panel.add_server("s", ram=1024)
        record_id = self.track(remote)
        asyncio.run(self.deprovisioner.delete(record_id))
        after_first = self.resources()
        result = asyncio.run(self.deprovisioner.delete(record_id))
        self.assertIsInstance(result.error, NotFound)
        self.assertEqual(self.resources(), after_first)

    def test_concurrent_deletes_credit_once(self):
        remote = self.stack.panel.add_server("s", ram=1024)
        record_id = self.track(remote)
        before = self.resources()

        async def race():
            return await asyncio.gather(self.deprovisioner.delete(record_id),
                                        self.deprovisioner.delete(record_id))

        results = asyncio.run(race())
        self.assertEqual(sum(1 for r in results if r.ok), 1)
        self.assertEqual(self.resources()["ram"], before["ram"] + 1024)

    def test_remote_failure_touches_nothing(self):
        remote = self.stack.panel.add_server("s")
        record_id = self.track(remote)
        before = self.resources()
        self.stack.panel.fail("delete_instance", TransientRemoteError("down"))
        result = asyncio.run(self.deprovisioner.delete(record_id))
        self.assertIsInstance(result.error, DeletionFailed)
        self.assertEqual(self.resources(), before)
        self.assertIsNotNone(self.stack.store.get_server_record(record_id))

    def test_without_restore(self):
        remote = self.stack.panel.add_server("s")
        record_id = self.track(remote)
        before = self.resources()
        result = asyncio.run(self.deprovisioner.delete(record_id, restore_resources=False))
        self.assertIsNone(result.value.credited)
        self.assertEqual(self.resources(), before)
        self.assertIsNone(self.stack.store.get_server_record(record_id))

    def test_owner_without_user(self):
        remote = self.stack.panel.add_server("s", user=77)
        record_id = self.stack.store.create_server_record(77, remote.id, 1).id
        result = asyncio.run(self.deprovisioner.delete(record_id))
        self.assertTrue(result.ok)
        self.assertIsNone(result.value.credited)


class TestInventory(SagaTestCase):
    """Test the read side"""

    def test_list_with_partial_failure(self):
        ok = self.stack.panel.add_server("ok")
        self.track(ok)
        self.stack.store.create_server_record(OWNER, 4242, 1)
        inventory = ServerInventory(self.stack.store, self.stack.panel)
        views = asyncio.run(inventory.list_for_owner(OWNER))
        self.assertEqual(len(views), 2)
        self.assertEqual(views[0].remote["name"], "ok")
        self.assertEqual(views[0].usage["current_state"], "running")
        self.assertIsNone(views[1].remote)
        self.assertEqual(len(views[1].warnings), 1)

    def test_power_signal(self):
        remote = self.stack.panel.add_server("s")
        record_id = self.track(remote)
        inventory = ServerInventory(self.stack.store, self.stack.panel)
        result = asyncio.run(inventory.send_power(record_id, OWNER, "stop"))
        self.assertTrue(result.ok)
        self.assertEqual(self.stack.panel.called("send_power_signal")[0][1:], (remote.identifier, "stop"))
        denied = asyncio.run(inventory.send_power(record_id, OWNER + 1, "stop"))
        self.assertIsInstance(denied.error, NotFound)


if __name__ == "__main__":
    unittest.main()
