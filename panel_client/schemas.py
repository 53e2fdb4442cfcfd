"""
Payload models for the control panel API.

Panel responses wrap every object as ``{"object": ..., "attributes": {...}}``
with included relationships under ``attributes.relationships``.
"""
from pydantic import BaseModel, field_validator
from typing import Any, Dict, List, Optional

def _attributes(payload: Dict[str, Any]) -> Dict[str, Any]:
    return payload.get("attributes", payload) if payload else {}

def _related(attrs: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
    relation = (attrs.get("relationships") or {}).get(name) or {}
    return [_attributes(item) for item in relation.get("data", [])]

class Limits(BaseModel):
    memory: int = 0
    swap: int = 0
    disk: int = 0
    io: int = 500
    cpu: int = 0

    @field_validator("*", mode="before")
    @classmethod
    def unset_is_zero(cls, v):
        return 0 if v is None else v

class FeatureLimits(BaseModel):
    databases: int = 0
    allocations: int = 0
    backups: int = 0

    @field_validator("*", mode="before")
    @classmethod
    def unset_is_zero(cls, v):
        return 0 if v is None else v

class RemoteInstanceSnapshot(BaseModel):
    """What the panel says about a server right now. Never stored locally."""
    id: int
    uuid: Optional[str] = None
    identifier: Optional[str] = None
    name: str
    description: Optional[str] = ""
    status: Optional[str] = None
    suspended: bool = False
    user: Optional[int] = None
    node: Optional[int] = None
    allocation: Optional[int] = None
    limits: Limits = Limits()
    feature_limits: FeatureLimits = FeatureLimits()
    allocations: List[Dict[str, Any]] = []
    variables: List[Dict[str, Any]] = []

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RemoteInstanceSnapshot":
        attrs = _attributes(payload)
        return cls(
            **{k: v for k, v in attrs.items() if k in cls.model_fields and k not in ("allocations", "variables")},
            allocations=_related(attrs, "allocations"),
            variables=_related(attrs, "variables"),
        )

    def quota(self) -> Dict[str, int]:
        """The limits expressed in ledger fields"""
        return {
            "ram": self.limits.memory,
            "disk": self.limits.disk,
            "cpu": self.limits.cpu,
            "allocations": self.feature_limits.allocations,
            "databases": self.feature_limits.databases,
        }

class CatalogVariable(BaseModel):
    env_variable: str
    default_value: Optional[str] = ""
    name: Optional[str] = None

class CatalogItem(BaseModel):
    """An egg: image, startup command and declared environment variables"""
    id: int
    nest: Optional[int] = None
    name: str = ""
    docker_image: str
    startup: str
    variables: List[CatalogVariable] = []

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CatalogItem":
        attrs = _attributes(payload)
        return cls(
            id=attrs["id"],
            nest=attrs.get("nest"),
            name=attrs.get("name", ""),
            docker_image=attrs.get("docker_image", ""),
            startup=attrs.get("startup", ""),
            variables=_related(attrs, "variables"),
        )

    def environment(self) -> Dict[str, str]:
        return {v.env_variable: v.default_value or "" for v in self.variables}

class CreateInstanceSpec(BaseModel):
    name: str
    description: str = ""
    user: int
    egg: int
    docker_image: str
    startup: str
    environment: Dict[str, str] = {}
    limits: Limits
    feature_limits: FeatureLimits
    allocation_id: int

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(exclude={"allocation_id"})
        payload["allocation"] = {"default": self.allocation_id}
        return payload
