from fastapi import APIRouter, Depends, Request

from peergate.api.deps import to_http_error, vpn_service
from peergate.errors import PeergateError
from peergate.schemas import (
    BulkResultRead,
    ClientConfigRead,
    ClientRead,
    HealResponse,
    LivePeerRead,
    LiveStatsRead,
    PublicKeyUpdate,
    RegisterRequest,
    RegisterResponse,
    SyncEntryRead,
    SyncReportRead,
)
from peergate.security import require_api_token
from peergate.services.clients import VpnService
from peergate.services.reconcile import BulkResult, SyncReport

router = APIRouter(prefix="/vpn", tags=["vpn"], dependencies=[Depends(require_api_token)])


def bulk_result_read(result: BulkResult) -> BulkResultRead:
    return BulkResultRead(
        succeeded=result.succeeded,
        failed=result.failed,
        missing=result.missing,
        succeeded_count=result.succeeded_count,
        failed_count=result.failed_count,
    )


def sync_report_read(report: SyncReport) -> SyncReportRead:
    entries = [
        SyncEntryRead(
            status=entry.status,
            action=entry.action,
            public_key=entry.public_key,
            client_id=entry.client.id if entry.client is not None else None,
            device_id=entry.client.device_id if entry.client is not None else None,
            in_config_file=entry.in_config_file,
        )
        for entry in report.entries
    ]
    return SyncReportRead(
        generated_at=report.generated_at,
        counts=report.counts(),
        entries=entries,
        file_only=report.file_only,
        config_errors=report.config.errors if report.config else [],
        config_warnings=report.config.warnings if report.config else [],
        config_error=report.config_error,
        live_error=report.live_error,
    )


def _caller_ip(request: Request) -> str:
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else ""


@router.post("/register", response_model=RegisterResponse)
async def register(
    payload: RegisterRequest,
    request: Request,
    service: VpnService = Depends(vpn_service),
) -> RegisterResponse:
    try:
        registration = await service.register(
            device_id=payload.device_id,
            real_ip=payload.real_ip or _caller_ip(request),
            device_name=payload.device_name,
            public_key=payload.public_key,
        )
    except PeergateError as exc:
        raise to_http_error(exc) from exc

    client = registration.client
    return RegisterResponse(
        client_id=client.id,
        is_new=registration.is_new,
        vpn_address=client.vpn_address,
        client_public_key=client.public_key,
        server_public_key=registration.server_public_key,
        server_endpoint=registration.server_endpoint,
        dns=registration.dns,
        config=registration.config_text,
    )


@router.post("/clients/{device_id}/rotate", response_model=ClientRead)
async def rotate_keys(device_id: str, service: VpnService = Depends(vpn_service)) -> ClientRead:
    try:
        client = await service.rotate_keys(device_id)
    except PeergateError as exc:
        raise to_http_error(exc) from exc
    return ClientRead.model_validate(client, from_attributes=True)


@router.put("/clients/{device_id}/public-key", response_model=ClientRead)
async def set_public_key(
    device_id: str,
    payload: PublicKeyUpdate,
    service: VpnService = Depends(vpn_service),
) -> ClientRead:
    try:
        client = await service.set_public_key(device_id, payload.public_key)
    except PeergateError as exc:
        raise to_http_error(exc) from exc
    return ClientRead.model_validate(client, from_attributes=True)


@router.post("/clients/{device_id}/deactivate", response_model=BulkResultRead)
async def deactivate(device_id: str, service: VpnService = Depends(vpn_service)) -> BulkResultRead:
    try:
        result = await service.deactivate(device_id)
    except PeergateError as exc:
        raise to_http_error(exc) from exc
    return bulk_result_read(result)


@router.get("/clients/{device_id}/config", response_model=ClientConfigRead)
async def client_config(device_id: str, service: VpnService = Depends(vpn_service)) -> ClientConfigRead:
    try:
        text = await service.client_config(device_id)
    except PeergateError as exc:
        raise to_http_error(exc) from exc
    return ClientConfigRead(device_id=device_id, config=text)


@router.get("/stats", response_model=LiveStatsRead)
async def live_stats(service: VpnService = Depends(vpn_service)) -> LiveStatsRead:
    stats = await service.get_live_stats()
    return LiveStatsRead(
        interface=stats.interface,
        total_peers=stats.total_peers,
        peers=[LivePeerRead.model_validate(peer, from_attributes=True) for peer in stats.peers],
        error=stats.error,
    )


@router.get("/reconcile", response_model=SyncReportRead)
async def reconcile(service: VpnService = Depends(vpn_service)) -> SyncReportRead:
    return sync_report_read(await service.reconcile())


@router.post("/heal", response_model=HealResponse)
async def heal(prune_unknown: bool = False, service: VpnService = Depends(vpn_service)) -> HealResponse:
    report, result = await service.heal(prune_unknown=prune_unknown)
    return HealResponse(report=sync_report_read(report), result=bulk_result_read(result))
