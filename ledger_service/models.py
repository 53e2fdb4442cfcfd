from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, BigInteger, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

class Resources(Base):
    """A user's remaining quota. Every column stays >= 0."""
    __tablename__ = "resources"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ram = Column(BigInteger, nullable=False, default=0)
    disk = Column(BigInteger, nullable=False, default=0)
    cpu = Column(BigInteger, nullable=False, default=0)
    allocations = Column(Integer, nullable=False, default=0)
    databases = Column(Integer, nullable=False, default=0)
    slots = Column(Integer, nullable=False, default=0)
    coins = Column(BigInteger, nullable=False, default=0)

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(191), nullable=False)
    email = Column(String(191), nullable=False)
    remote_id = Column(Integer, unique=True, nullable=False)  # panel user id
    ledger_id = Column(Integer, ForeignKey("resources.id"), nullable=True)
    root_admin = Column(Boolean, nullable=False, default=False)

class ServerRecord(Base):
    __tablename__ = "servers"
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(Integer, index=True, nullable=False)  # panel user id
    server_id = Column(Integer, unique=True, nullable=False)  # panel server id
    allocation_id = Column(Integer, nullable=True)
    renew_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class PurgeJob(Base):
    __tablename__ = "purge_jobs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True)
    status = Column(String(16), nullable=False, default="started")  # started|processing|completed|failed
    keywords = Column(String(191), nullable=False)
    batch_size = Column(Integer, nullable=False, default=5)
    total_servers = Column(Integer, nullable=False, default=0)
    protected_count = Column(Integer, nullable=False, default=0)
    candidate_count = Column(Integer, nullable=False, default=0)
    processed_count = Column(Integer, nullable=False, default=0)
    deleted_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(String(1000), nullable=True)
