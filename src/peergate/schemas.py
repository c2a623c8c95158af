from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from peergate.enums import SyncAction, SyncStatus


class HealthResponse(BaseModel):
    status: str


class RegisterRequest(BaseModel):
    device_id: str = Field(min_length=1, max_length=255)
    device_name: str | None = Field(default=None, max_length=255)
    # Filled from the request when the caller does not know its public address.
    real_ip: str | None = None
    public_key: str | None = None


class RegisterResponse(BaseModel):
    client_id: UUID
    is_new: bool
    vpn_address: str
    client_public_key: str
    server_public_key: str
    server_endpoint: str
    dns: str
    config: str


class PublicKeyUpdate(BaseModel):
    public_key: str = Field(min_length=1)


class ClientRead(BaseModel):
    id: UUID
    device_id: str
    device_name: str | None = None
    real_ip: str
    country: str | None = None
    city: str | None = None
    vpn_address: str
    public_key: str
    is_active: bool
    last_handshake_at: datetime | None = None
    bytes_sent: int
    bytes_received: int
    created_at: datetime
    updated_at: datetime


class ClientConfigRead(BaseModel):
    device_id: str
    config: str


class BulkDeactivateRequest(BaseModel):
    client_ids: list[str] = Field(min_length=1)


class BulkResultRead(BaseModel):
    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    missing: list[str] = Field(default_factory=list)
    succeeded_count: int
    failed_count: int


class LivePeerRead(BaseModel):
    public_key: str
    endpoint: str | None = None
    allowed_ips: list[str] = Field(default_factory=list)
    last_handshake: str
    bytes_received: str
    bytes_sent: str


class LiveStatsRead(BaseModel):
    interface: str
    total_peers: int
    peers: list[LivePeerRead] = Field(default_factory=list)
    error: str | None = None


class SyncEntryRead(BaseModel):
    status: SyncStatus
    action: SyncAction
    public_key: str
    client_id: UUID | None = None
    device_id: str | None = None
    in_config_file: bool


class SyncReportRead(BaseModel):
    generated_at: datetime
    counts: dict[str, int]
    entries: list[SyncEntryRead] = Field(default_factory=list)
    file_only: list[str] = Field(default_factory=list)
    config_errors: list[str] = Field(default_factory=list)
    config_warnings: list[str] = Field(default_factory=list)
    config_error: str | None = None
    live_error: str | None = None


class HealResponse(BaseModel):
    report: SyncReportRead
    result: BulkResultRead


class OverviewRead(BaseModel):
    total: int
    active: int
    inactive: int
    by_country: dict[str, int] = Field(default_factory=dict)
    recent: list[ClientRead] = Field(default_factory=list)
