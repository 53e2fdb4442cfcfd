"""
Record persistence for ledgers, users, server records and purge jobs.

Each call runs in its own short session; returned rows are detached
(``expire_on_commit=False``) so callers can read them after the session closes.
"""
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from sqlalchemy import func

from common.error_handling import NotFound, ValidationError
from common.schemas import LEDGER_FIELDS
from common.settings import settings
from ledger_service.models import Resources, User, ServerRecord, PurgeJob, utcnow

logger = logging.getLogger(__name__)

class RecordStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    # Ledgers

    def find_ledger(self, ledger_id: int) -> Optional[Resources]:
        with self.session_factory() as db:
            return db.get(Resources, ledger_id)

    def save_ledger(self, ledger: Resources) -> Resources:
        with self.session_factory() as db:
            merged = db.merge(ledger)
            db.commit()
            return merged

    def list_ledgers(self, offset: int = 0, limit: int = 50) -> List[Resources]:
        with self.session_factory() as db:
            return db.query(Resources).order_by(Resources.id).offset(offset).limit(limit).all()

    def ledger_stats(self) -> dict:
        """Count of ledgers plus the rounded average and the total of every field"""
        columns = [getattr(Resources, name) for name in LEDGER_FIELDS]
        aggregates = [func.count(Resources.id)]
        for column in columns:
            aggregates += [func.avg(column), func.sum(column)]
        with self.session_factory() as db:
            row = db.query(*aggregates).one()
        statistics = {}
        for i, name in enumerate(LEDGER_FIELDS):
            average, total = row[1 + 2 * i], row[2 + 2 * i]
            statistics[name] = {"average": round(float(average or 0)), "total": int(total or 0)}
        return {"total_ledgers": row[0], "statistics": statistics}

    def find_ledger_id_for_owner(self, owner: int) -> Optional[int]:
        """Ledger of the local user whose panel id is ``owner``"""
        user = self.find_user_by_remote_id(owner)
        return user.ledger_id if user else None

    # Users

    def create_user(self, username: str, email: str, remote_id: int, root_admin: bool = False) -> User:
        with self.session_factory() as db:
            if db.query(User).filter_by(remote_id=remote_id).first():
                raise ValidationError("remote_id", f"panel user {remote_id} is already linked")
            ledger = Resources(**settings.ledger_defaults())
            db.add(ledger)
            db.flush()
            user = User(username=username, email=email, remote_id=remote_id,
                        ledger_id=ledger.id, root_admin=root_admin)
            db.add(user)
            db.commit()
            logger.info(f"Created user {user.id} (panel {remote_id}) with ledger {ledger.id}")
            return user

    def delete_user(self, user_id: int) -> User:
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if not user:
                raise NotFound("user", user_id)
            if user.ledger_id is not None:
                ledger = db.get(Resources, user.ledger_id)
                if ledger:
                    db.delete(ledger)
            db.delete(user)
            db.commit()
            logger.info(f"Deleted user {user_id} and ledger {user.ledger_id}")
            return user

    def find_user(self, user_id: int) -> Optional[User]:
        with self.session_factory() as db:
            return db.get(User, user_id)

    def find_user_by_remote_id(self, remote_id: int) -> Optional[User]:
        with self.session_factory() as db:
            return db.query(User).filter_by(remote_id=remote_id).first()

    # Server records

    def create_server_record(self, owner: int, server_id: int, allocation_id: Optional[int],
                             renew_date: Optional[datetime] = None) -> ServerRecord:
        if renew_date is None:
            renew_date = utcnow() + timedelta(days=settings.server_renewal_days)
        with self.session_factory() as db:
            record = ServerRecord(owner=owner, server_id=server_id,
                                  allocation_id=allocation_id, renew_date=renew_date)
            db.add(record)
            db.commit()
            return record

    def get_server_record(self, record_id: int) -> Optional[ServerRecord]:
        with self.session_factory() as db:
            return db.get(ServerRecord, record_id)

    def delete_server_record(self, record_id: int) -> bool:
        with self.session_factory() as db:
            record = db.get(ServerRecord, record_id)
            if not record:
                return False
            db.delete(record)
            db.commit()
            return True

    def find_server_records_by_owner(self, owner: int) -> List[ServerRecord]:
        with self.session_factory() as db:
            return db.query(ServerRecord).filter_by(owner=owner).order_by(ServerRecord.id).all()

    def find_all_server_records(self, offset: int = 0, limit: Optional[int] = None) -> List[ServerRecord]:
        with self.session_factory() as db:
            query = db.query(ServerRecord).order_by(ServerRecord.id).offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def count_server_records(self) -> int:
        with self.session_factory() as db:
            return db.query(func.count(ServerRecord.id)).scalar()

    # Purge jobs

    def create_purge_job(self, user_id: Optional[int], keywords: str, batch_size: int) -> PurgeJob:
        with self.session_factory() as db:
            job = PurgeJob(user_id=user_id, keywords=keywords, batch_size=batch_size, status="started")
            db.add(job)
            db.commit()
            return job

    def update_purge_job(self, job_id: int, **patch) -> PurgeJob:
        with self.session_factory() as db:
            job = db.get(PurgeJob, job_id)
            if not job:
                raise NotFound("purge job", job_id)
            for key, value in patch.items():
                setattr(job, key, value)
            db.commit()
            return job

    def get_purge_job(self, job_id: int) -> Optional[PurgeJob]:
        with self.session_factory() as db:
            return db.get(PurgeJob, job_id)

    def find_unfinished_purge_jobs(self) -> List[PurgeJob]:
        with self.session_factory() as db:
            return (db.query(PurgeJob)
                    .filter(PurgeJob.status.in_(("started", "processing")))
                    .order_by(PurgeJob.id)
                    .all())
