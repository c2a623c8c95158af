from fastapi import APIRouter, Depends

from peergate.api.deps import to_http_error, vpn_service
from peergate.api.routers.vpn import bulk_result_read
from peergate.enums import ClientStatusFilter
from peergate.errors import PeergateError
from peergate.schemas import BulkDeactivateRequest, BulkResultRead, ClientRead, OverviewRead
from peergate.security import require_api_token
from peergate.services.clients import VpnService

router = APIRouter(prefix="/clients", tags=["clients"], dependencies=[Depends(require_api_token)])


@router.get("", response_model=list[ClientRead])
async def list_clients(
    q: str | None = None,
    status: ClientStatusFilter | None = None,
    service: VpnService = Depends(vpn_service),
) -> list[ClientRead]:
    rows = await service.list_clients(query=q, status=status)
    return [ClientRead.model_validate(row, from_attributes=True) for row in rows]


@router.get("/overview", response_model=OverviewRead)
async def overview(service: VpnService = Depends(vpn_service)) -> OverviewRead:
    data = await service.overview()
    return OverviewRead(
        total=data.total,
        active=data.active,
        inactive=data.inactive,
        by_country=data.by_country,
        recent=[ClientRead.model_validate(row, from_attributes=True) for row in data.recent],
    )


@router.post("/bulk-deactivate", response_model=BulkResultRead)
async def bulk_deactivate(
    payload: BulkDeactivateRequest,
    service: VpnService = Depends(vpn_service),
) -> BulkResultRead:
    try:
        result = await service.bulk_deactivate(payload.client_ids)
    except PeergateError as exc:
        raise to_http_error(exc) from exc
    return bulk_result_read(result)


@router.get("/{client_id}", response_model=ClientRead)
async def get_client(client_id: str, service: VpnService = Depends(vpn_service)) -> ClientRead:
    try:
        row = await service.get_client(client_id)
    except PeergateError as exc:
        raise to_http_error(exc) from exc
    return ClientRead.model_validate(row, from_attributes=True)


@router.post("/{client_id}/activate", response_model=ClientRead)
async def activate(client_id: str, service: VpnService = Depends(vpn_service)) -> ClientRead:
    try:
        row = await service.activate(client_id)
    except PeergateError as exc:
        raise to_http_error(exc) from exc
    return ClientRead.model_validate(row, from_attributes=True)
