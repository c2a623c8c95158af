import pytest
from fastapi import HTTPException

from peergate.api.deps import to_http_error
from peergate.errors import (
    AddressSpaceExhausted,
    ConfigValidationFailed,
    ExternalUtilityUnavailable,
    NotFoundError,
    ValidationError,
)
from peergate.security import require_api_token
from peergate.settings import get_settings


@pytest.fixture
def api_token(monkeypatch):
    monkeypatch.setenv("API_INTERNAL_TOKEN", "s3cret")
    get_settings.cache_clear()
    yield "s3cret"
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_accepts_header_and_bearer(api_token) -> None:
    await require_api_token(x_api_token=api_token, authorization=None)
    await require_api_token(x_api_token=None, authorization=f"Bearer {api_token}")


@pytest.mark.asyncio
async def test_rejects_missing_and_wrong_token(api_token) -> None:
    with pytest.raises(HTTPException) as missing:
        await require_api_token(x_api_token=None, authorization=None)
    with pytest.raises(HTTPException) as wrong:
        await require_api_token(x_api_token="nope", authorization=None)

    assert missing.value.status_code == 401
    assert wrong.value.detail == "Invalid API token"


@pytest.mark.asyncio
async def test_rejects_everything_when_token_not_configured(monkeypatch) -> None:
    monkeypatch.setenv("API_INTERNAL_TOKEN", "")
    get_settings.cache_clear()
    try:
        with pytest.raises(HTTPException) as exc:
            await require_api_token(x_api_token="", authorization=None)
    finally:
        get_settings.cache_clear()

    assert exc.value.detail == "API token is not configured"


@pytest.mark.parametrize(
    "error,status",
    [
        (ValidationError("bad"), 400),
        (NotFoundError("missing"), 404),
        (AddressSpaceExhausted("full"), 409),
        (ConfigValidationFailed(["peer #1 is missing PublicKey"]), 422),
        (ExternalUtilityUnavailable("wg binary not found"), 503),
    ],
)
def test_domain_errors_map_to_http_status(error, status) -> None:
    assert to_http_error(error).status_code == status


def test_config_validation_detail_lists_errors() -> None:
    detail = to_http_error(ConfigValidationFailed(["a", "b"])).detail

    assert detail["errors"] == ["a", "b"]


def test_app_mounts_every_router() -> None:
    from peergate.api.main import app

    paths = {getattr(route, "path", "") for route in app.routes}
    assert "/health" in paths
    assert "/metrics" in paths
    assert any(path.startswith("/vpn") for path in paths)
    assert any(path.startswith("/clients") for path in paths)
