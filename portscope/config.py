"""Configuration management for portscope."""

import logging
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Collector settings."""

    model_config = SettingsConfigDict(
        env_prefix="PORTSCOPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = "portscope"
    debug: bool = False
    json_logs: bool = False

    # Port this service itself listens on (used to attribute our own socket)
    self_port: int = 4999
    self_container_hint: str = "portscope"

    # Cache (seconds). 0 bypasses the cache for that operation.
    disable_cache: bool = False
    default_cache_ttl: float = 30.0
    system_info_ttl: float = 15.0
    os_ports_ttl: float = 5.0
    container_ports_ttl: float = 4.0
    containers_ttl: float = 45.0
    windows_ports_ttl: float = 5.0
    management_ttl: float = 30.0

    # OS socket enumeration
    include_udp: bool = False
    min_proc_entries: int = 2  # /proc tier needs this many distinct sockets
    command_timeout: float = 10.0
    proc_root: str = "/proc"

    # Container runtime
    docker_socket: str = "/var/run/docker.sock"
    docker_host: str | None = None  # e.g. tcp://127.0.0.1:2375, overrides the socket
    docker_timeout: float = 10.0

    # Hypervisor management API
    hypervisor_api_url: str = "http://localhost"
    hypervisor_api_key: str | None = None
    hypervisor_verify_ssl: bool = True
    management_timeout: float = 90.0  # whole enhanced pass
    management_system_info_timeout: float = 30.0
    management_app_query_timeout: float = 20.0
    management_vm_query_timeout: float = 15.0
    management_container_query_timeout: float = 15.0

    @field_validator("hypervisor_api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Validate management API URL format."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("Management API URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator("docker_host")
    @classmethod
    def validate_docker_host(cls, v: str | None) -> str | None:
        """Validate docker host format (tcp://, http:// or unix://)."""
        if v and not v.startswith(("tcp://", "http://", "https://", "unix://")):
            raise ValueError("Docker host must start with tcp://, http://, https:// or unix://")
        return v

    @field_validator(
        "default_cache_ttl",
        "system_info_ttl",
        "os_ports_ttl",
        "container_ports_ttl",
        "containers_ttl",
        "windows_ports_ttl",
        "management_ttl",
    )
    @classmethod
    def validate_ttl(cls, v: float) -> float:
        """Cache TTLs cannot be negative."""
        if v < 0:
            raise ValueError("TTL must be >= 0 (0 disables caching)")
        return v

    @field_validator("self_port")
    @classmethod
    def validate_self_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("self_port must be between 1 and 65535")
        return v


settings = Settings()


def get_config_dict(current: Settings | None = None) -> dict[str, Any]:
    """Get config as dict for diagnostics output."""
    current = current or settings
    return {
        "app_name": current.app_name,
        "debug": current.debug,
        "disable_cache": current.disable_cache,
        "include_udp": current.include_udp,
        "self_port": current.self_port,
        "docker_endpoint": current.docker_host or f"unix://{current.docker_socket}",
        "management_enabled": bool(current.hypervisor_api_key),
    }


def validate_critical_settings(current: Settings | None = None) -> None:
    """Validate critical settings and log warnings for potential issues."""
    current = current or settings

    if current.disable_cache:
        logger.warning(
            "Caching is disabled (PORTSCOPE_DISABLE_CACHE=true) - every collection "
            "re-runs all probes."
        )

    if current.hypervisor_api_key and not current.hypervisor_verify_ssl:
        logger.warning(
            "Management API SSL verification is disabled. "
            "Only use this with self-signed certificates on trusted networks."
        )

    if current.management_timeout < current.management_system_info_timeout:
        logger.warning(
            f"management_timeout ({current.management_timeout}s) is shorter than "
            f"management_system_info_timeout ({current.management_system_info_timeout}s); "
            "enhanced features will usually be marked degraded."
        )
