"""
Resource Ledger: per-user quota with atomic debit/credit.

Every check-and-apply runs under an in-process lock for the ledger id and a
``SELECT ... FOR UPDATE`` on the ledger row, so concurrent create/resize/delete
flows for one user are linearized while different users never contend. No
field is ever persisted below zero.
"""
from dataclasses import dataclass, fields, asdict
from typing import Callable, Dict, Optional
import logging

from common.error_handling import InsufficientResources, NotFound, ValidationError
from common.locks import KeyedLocks
from common.result import Ok, Err, Result
from common.schemas import LEDGER_FIELDS, STORE_ITEMS
from common.settings import settings
from ledger_service.models import Resources, ServerRecord

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class ResourceVector:
    ram: int = 0
    disk: int = 0
    cpu: int = 0
    allocations: int = 0
    databases: int = 0
    slots: int = 0
    coins: int = 0

    @classmethod
    def from_dict(cls, values: Dict[str, int]) -> "ResourceVector":
        return cls(**{name: int(values[name]) for name in LEDGER_FIELDS if values.get(name) is not None})

    @classmethod
    def of(cls, row: Resources) -> "ResourceVector":
        return cls(**{name: getattr(row, name) for name in LEDGER_FIELDS})

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    def positive_part(self) -> "ResourceVector":
        return ResourceVector(**{f.name: max(0, getattr(self, f.name)) for f in fields(self)})

    def negative_part(self) -> "ResourceVector":
        """Magnitudes of the negative fields, e.g. what a shrink gives back"""
        return ResourceVector(**{f.name: max(0, -getattr(self, f.name)) for f in fields(self)})

    def first_negative(self) -> Optional[str]:
        for f in fields(self):
            if getattr(self, f.name) < 0:
                return f.name
        return None

    def is_zero(self) -> bool:
        return all(getattr(self, f.name) == 0 for f in fields(self))

    def __add__(self, other: "ResourceVector") -> "ResourceVector":
        return ResourceVector(**{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)})

    def __sub__(self, other: "ResourceVector") -> "ResourceVector":
        return ResourceVector(**{f.name: getattr(self, f.name) - getattr(other, f.name) for f in fields(self)})

    def __neg__(self) -> "ResourceVector":
        return ResourceVector(**{f.name: -getattr(self, f.name) for f in fields(self)})

def _shortfalls(row: Resources, needed: ResourceVector) -> Dict[str, Dict[str, int]]:
    short = {}
    for name in LEDGER_FIELDS:
        amount = getattr(needed, name)
        available = getattr(row, name)
        if amount > 0 and available < amount:
            short[name] = {"needed": amount, "available": available}
    return short

def _apply(row: Resources, delta: ResourceVector):
    for name in LEDGER_FIELDS:
        setattr(row, name, getattr(row, name) + getattr(delta, name))

class ResourceLedger:
    def __init__(self, session_factory, locks: Optional[KeyedLocks] = None):
        self.session_factory = session_factory
        self.locks = locks if locks is not None else KeyedLocks("ledger")

    async def _check_and_apply(self, ledger_id: int,
                               mutate: Callable[..., Result]) -> Result:
        """Run ``mutate(db, row)`` on the locked ledger row; commit only on Ok"""
        async with self.locks.hold(ledger_id):
            with self.session_factory() as db:
                row = (db.query(Resources)
                       .filter(Resources.id == ledger_id)
                       .with_for_update()
                       .one_or_none())
                if row is None:
                    return Err(NotFound("ledger", ledger_id))
                try:
                    result = mutate(db, row)
                except Exception:
                    db.rollback()
                    raise
                if result.ok:
                    db.commit()
                else:
                    db.rollback()
                return result

    async def get(self, ledger_id: int) -> Result:
        with self.session_factory() as db:
            row = db.get(Resources, ledger_id)
            if row is None:
                return Err(NotFound("ledger", ledger_id))
            return Ok(ResourceVector.of(row))

    async def try_debit(self, ledger_id: int, delta: ResourceVector) -> Result:
        """Take ``delta`` out of the ledger, all fields or none"""
        negative = delta.first_negative()
        if negative:
            return Err(ValidationError(negative, "debit amounts must not be negative"))

        def mutate(db, row):
            short = _shortfalls(row, delta)
            if short:
                return Err(InsufficientResources(short))
            _apply(row, -delta)
            return Ok(ResourceVector.of(row))

        result = await self._check_and_apply(ledger_id, mutate)
        if result.ok:
            logger.info(f"Debited ledger {ledger_id}: {delta.as_dict()}")
        return result

    async def credit(self, ledger_id: int, delta: ResourceVector,
                     release_record_id: Optional[int] = None) -> Result:
        """Give ``delta`` back to the ledger.

        With ``release_record_id`` the server record is deleted in the same
        transaction; if it is already gone nothing is credited and NotFound is
        returned, so a deletion can never be credited twice.
        """
        negative = delta.first_negative()
        if negative:
            return Err(ValidationError(negative, "credit amounts must not be negative"))

        def mutate(db, row):
            if release_record_id is not None:
                record = db.get(ServerRecord, release_record_id)
                if record is None:
                    return Err(NotFound("server", release_record_id))
                db.delete(record)
            _apply(row, delta)
            return Ok(ResourceVector.of(row))

        result = await self._check_and_apply(ledger_id, mutate)
        if result.ok:
            logger.info(f"Credited ledger {ledger_id}: {delta.as_dict()}")
        return result

    async def adjust(self, ledger_id: int, delta: ResourceVector) -> Result:
        """Apply a signed delta: growth is checked against availability, shrinkage is credited"""
        growth = delta.positive_part()
        shrink = delta.negative_part()

        def mutate(db, row):
            short = _shortfalls(row, growth)
            if short:
                return Err(InsufficientResources(short))
            _apply(row, shrink - growth)
            return Ok(ResourceVector.of(row))

        result = await self._check_and_apply(ledger_id, mutate)
        if result.ok:
            logger.info(f"Adjusted ledger {ledger_id}: growth={growth.as_dict()} shrink={shrink.as_dict()}")
        return result

    async def purchase(self, ledger_id: int, item: str, quantity: int) -> Result:
        """Spend coins on ``quantity`` units of ``item``"""
        if item not in STORE_ITEMS:
            return Err(ValidationError("item", f"must be one of {', '.join(STORE_ITEMS)}"))
        if quantity <= 0:
            return Err(ValidationError("quantity", "must be a positive integer"))
        cost = settings.store_prices()[item] * quantity

        def mutate(db, row):
            if row.coins < cost:
                return Err(InsufficientResources({"coins": {"needed": cost, "available": row.coins}}))
            row.coins -= cost
            setattr(row, item, getattr(row, item) + quantity)
            return Ok(ResourceVector.of(row))

        result = await self._check_and_apply(ledger_id, mutate)
        if result.ok:
            logger.info(f"Ledger {ledger_id} bought {quantity} {item} for {cost} coins")
        return result

    async def set_values(self, ledger_id: int, values: Dict[str, int]) -> Result:
        for name, value in values.items():
            if name not in LEDGER_FIELDS:
                return Err(ValidationError(name, "unknown resource field"))
            if value is None or int(value) < 0:
                return Err(ValidationError(name, "must be zero or greater"))

        def mutate(db, row):
            for name, value in values.items():
                setattr(row, name, int(value))
            return Ok(ResourceVector.of(row))

        result = await self._check_and_apply(ledger_id, mutate)
        if result.ok:
            logger.info(f"Ledger {ledger_id} overwritten: {values}")
        return result
