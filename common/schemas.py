from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Literal, Optional

LEDGER_FIELDS = ("ram", "disk", "cpu", "allocations", "databases", "slots", "coins")
STORE_ITEMS = ("ram", "cpu", "disk", "allocations", "databases", "slots")

class CreateServerRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=191)
    description: str = ""
    ram: int = Field(..., gt=0)
    disk: int = Field(..., gt=0)
    cpu: int = Field(..., gt=0)
    allocations: int = Field(0, ge=0)
    databases: int = Field(0, ge=0)
    node_id: int
    egg_id: int

class AdminCreateServerRequest(CreateServerRequest):
    user_id: int
    skip_resource_check: bool = False

class UpdateServerRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=191)
    description: Optional[str] = None
    ram: Optional[int] = Field(None, gt=0)
    disk: Optional[int] = Field(None, gt=0)
    cpu: Optional[int] = Field(None, gt=0)
    allocations: Optional[int] = Field(None, ge=0)
    databases: Optional[int] = Field(None, ge=0)

class AdminUpdateServerRequest(UpdateServerRequest):
    skip_resource_check: bool = False

class PowerActionRequest(BaseModel):
    signal: Literal["start", "stop", "restart", "kill"]

class PurgeRequest(BaseModel):
    keywords: str
    batch_size: Optional[int] = None

    @field_validator("keywords")
    @classmethod
    def keywords_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("keywords must not be blank")
        return v

class StorePurchaseRequest(BaseModel):
    item: Literal["ram", "cpu", "disk", "allocations", "databases", "slots"]
    quantity: int = Field(..., gt=0)

class ResourcesUpdate(BaseModel):
    ram: Optional[int] = Field(None, ge=0)
    disk: Optional[int] = Field(None, ge=0)
    cpu: Optional[int] = Field(None, ge=0)
    allocations: Optional[int] = Field(None, ge=0)
    databases: Optional[int] = Field(None, ge=0)
    slots: Optional[int] = Field(None, ge=0)
    coins: Optional[int] = Field(None, ge=0)

    def values(self) -> Dict[str, int]:
        return self.model_dump(exclude_none=True)

class CreateUserRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=191)
    email: str = Field(..., min_length=3, max_length=191)
    remote_id: int
    root_admin: bool = False

class ResourcesOut(BaseModel):
    id: int
    ram: int
    disk: int
    cpu: int
    allocations: int
    databases: int
    slots: int
    coins: int

class ServerRecordOut(BaseModel):
    id: int
    owner: int
    server_id: int
    allocation_id: Optional[int] = None
    renew_date: Optional[str] = None
    created_at: Optional[str] = None

class PurgeProgress(BaseModel):
    processed: int
    deleted: int
    failed: int
    total: int

class PurgeJobOut(BaseModel):
    id: int
    status: Literal["started", "processing", "completed", "failed"]
    keywords: str
    batch_size: int
    total_servers: int
    protected_count: int
    candidate_count: int
    processed_count: int
    deleted_count: int
    failed_count: int
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    progress: PurgeProgress

class ServerView(BaseModel):
    """A tracked server joined with whatever the panel reported for it"""
    record: ServerRecordOut
    remote: Optional[Dict] = None
    usage: Optional[Dict] = None
    warnings: List[str] = []

class AdminServerView(BaseModel):
    server: ServerView
    owner: Optional[Dict] = None
    resources: Optional[ResourcesOut] = None
