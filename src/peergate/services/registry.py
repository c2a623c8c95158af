from __future__ import annotations

import uuid
from collections.abc import Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from peergate.enums import ClientStatusFilter
from peergate.models import ClientPeer, utcnow


def _parse_uuid(value: str | uuid.UUID) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except ValueError:
        return None


class ClientRegistry:
    """Durable store of client identities. Each mutation commits one entity."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_by_device_id(self, device_id: str) -> ClientPeer | None:
        return await self.session.scalar(select(ClientPeer).where(ClientPeer.device_id == device_id))

    async def find_by_id(self, client_id: str | uuid.UUID) -> ClientPeer | None:
        parsed = _parse_uuid(client_id)
        if parsed is None:
            return None
        return await self.session.get(ClientPeer, parsed)

    async def find_by_public_key(self, public_key: str) -> ClientPeer | None:
        key = (public_key or "").strip()
        if not key:
            return None
        return await self.session.scalar(select(ClientPeer).where(ClientPeer.public_key == key))

    async def find_all_addresses(self) -> set[str]:
        rows = (await self.session.execute(select(ClientPeer.vpn_address))).scalars().all()
        return {row for row in rows if row}

    async def all_clients(self) -> list[ClientPeer]:
        rows = (await self.session.execute(select(ClientPeer).order_by(ClientPeer.created_at.asc()))).scalars().all()
        return list(rows)

    async def create(self, client: ClientPeer) -> ClientPeer:
        self.session.add(client)
        await self.session.commit()
        await self.session.refresh(client)
        return client

    async def update(self, client: ClientPeer) -> ClientPeer:
        client.updated_at = utcnow()
        await self.session.commit()
        return client

    async def delete(self, client: ClientPeer) -> None:
        await self.session.delete(client)
        await self.session.commit()

    async def soft_deactivate(self, client: ClientPeer) -> ClientPeer:
        client.is_active = False
        return await self.update(client)

    async def bulk_set_active(self, client_ids: Sequence[str | uuid.UUID], active: bool) -> list[ClientPeer]:
        """Flip `is_active` for every known id in one statement; returns the affected rows."""
        parsed = [p for p in (_parse_uuid(v) for v in client_ids) if p is not None]
        if not parsed:
            return []
        await self.session.execute(
            update(ClientPeer)
            .where(ClientPeer.id.in_(parsed))
            .values(is_active=active, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        stmt = select(ClientPeer).where(ClientPeer.id.in_(parsed)).execution_options(populate_existing=True)
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_clients(
        self,
        query: str | None = None,
        status: ClientStatusFilter | None = None,
        limit: int | None = None,
    ) -> list[ClientPeer]:
        stmt = select(ClientPeer)
        needle = (query or "").strip()
        if needle:
            pattern = f"%{needle.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(ClientPeer.device_name).like(pattern),
                    func.lower(ClientPeer.country).like(pattern),
                    func.lower(ClientPeer.city).like(pattern),
                    func.lower(ClientPeer.real_ip).like(pattern),
                    func.lower(ClientPeer.device_id).like(pattern),
                )
            )
        if status == ClientStatusFilter.ACTIVE:
            stmt = stmt.where(ClientPeer.is_active.is_(True))
        elif status == ClientStatusFilter.INACTIVE:
            stmt = stmt.where(ClientPeer.is_active.is_(False))
        stmt = stmt.order_by(ClientPeer.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        return list((await self.session.execute(stmt)).scalars().all())

    async def count_by_status(self) -> dict[bool, int]:
        rows = (
            await self.session.execute(select(ClientPeer.is_active, func.count()).group_by(ClientPeer.is_active))
        ).all()
        return {bool(active): int(count) for active, count in rows}

    async def count_by_country(self) -> dict[str, int]:
        rows = (
            await self.session.execute(
                select(ClientPeer.country, func.count())
                .where(ClientPeer.is_active.is_(True))
                .group_by(ClientPeer.country)
                .order_by(func.count().desc())
            )
        ).all()
        return {(country or "Unknown"): int(count) for country, count in rows}
