from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"

    # Any SQLAlchemy async URL works (postgresql+asyncpg://... in production).
    database_url: str = "sqlite+aiosqlite:///./peergate.db"

    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_internal_token: str = ""

    # Local WireGuard interface managed by this gateway.
    wg_interface: str = "wg0"
    wg_config_dir: str = "/etc/wireguard"
    wg_binary: str = "wg"
    wg_quick_binary: str = "wg-quick"
    # When enabled, external commands are logged but never executed.
    wg_dry_run: bool = False
    wg_command_timeout_seconds: float = 15.0
    # Upper bound of concurrent `wg` / `wg-quick` processes.
    wg_max_concurrency: int = 4

    # Overlay network handed out to clients. The gateway keeps the first host.
    vpn_network: str = "172.16.0.0/16"
    vpn_gateway: str = "172.16.0.1"
    vpn_server_public_ip: str = ""
    vpn_server_port: int = 51820
    vpn_client_dns: str = "8.8.8.8, 8.8.4.4"

    # Optional ipgeolocation.io key; free endpoints are used when empty.
    ip_geolocation_api_key: str = ""
    geolocation_timeout_seconds: float = 5.0

    # Pause between removing the old peer and adding the new one during key rotation.
    rotation_settle_seconds: float = 0.5
    bulk_concurrency: int = 4
    # Periodic live stats fold-in + reconciliation (0 disables the loop).
    stats_sync_interval_seconds: int = 300

    @property
    def wg_config_path(self) -> Path:
        return Path(self.wg_config_dir) / f"{self.wg_interface}.conf"

    @property
    def vpn_server_endpoint(self) -> str:
        return f"{self.vpn_server_public_ip}:{self.vpn_server_port}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
