from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class TransportType(str, Enum):
    """Device management API flavours."""
    RPC = "rpc"
    REST = "rest"


# Device Schemas
class Device(BaseModel):
    name: str
    ip: str
    user: str
    password: str
    transport: TransportType = TransportType.RPC

    @field_validator("name")
    @classmethod
    def _safe_name(cls, value: str) -> str:
        if not value or value in (".", "..") or "/" in value or "\\" in value:
            raise ValueError("device name must be a plain, non-empty identifier")
        return value

    @property
    def base_url(self) -> str:
        return f"http://{self.ip}"

    @property
    def ubus_url(self) -> str:
        return f"{self.base_url}/ubus"


class StoredDevice(BaseModel):
    """Registry representation of a device; the password is Fernet-encrypted."""
    ip: str
    user: str
    password_encrypted: str
    transport: TransportType = TransportType.RPC


# Backup Schemas
class BackupRecord(BaseModel):
    id: int = Field(ge=1)
    filename: str
    created: datetime
    description: Optional[str] = None
    size: int = Field(ge=0)


journal_adapter = TypeAdapter(List[BackupRecord])


# Status Schemas
class MemoryStatus(BaseModel):
    total: int = 0
    free: int = 0
    buffered: int = 0
    cached: int = 0


class DeviceStatus(BaseModel):
    hostname: str = "Unknown"
    model: str = "Unknown"
    uptime: int = 0
    load: List[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0])
    memory: MemoryStatus = Field(default_factory=MemoryStatus)


class Session(BaseModel):
    token: str
    transport: TransportType
