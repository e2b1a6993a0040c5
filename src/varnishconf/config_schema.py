from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from varnishconf.domain.durations import to_seconds

BUNDLED_TEMPLATE = Path(__file__).resolve().parent / "templates" / "default.vcl.j2"

DEFAULT_PURGE_ACL_NAME = "acl_purge"
DEFAULT_PURGE_ACL_ENTRIES = [
    "# localhost",
    "localhost",
    "127.0.0.1",
    "::1",
    "# Private networks",
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
]

DEFAULT_PARAMETERS: dict[str, str | int | float | bool] = {
    "feature": "+http2,+esi_disable_xml_check",
    "default_grace": to_seconds("24h"),
    "default_keep": to_seconds("1h"),
    "default_ttl": to_seconds("4m"),
    "backend_idle_timeout": 65,
    "timeout_idle": 60,
    "syslog_cli_traffic": "off",
}

Duration = str | int | float


def _as_seconds_string(value: Duration | None) -> str | None:
    seconds = to_seconds(value)
    return None if seconds is None else f"{seconds}s"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VclSource(_CamelModel):
    name: str
    src: str
    dest: str | None = None
    top: bool = False


class AclSource(_CamelModel):
    name: str
    entries: list[str] = Field(default_factory=list)


class ProbeSource(_CamelModel):
    name: str
    url: str = "/status"
    request: list[str] = Field(default_factory=list)
    interval: str | None = None
    timeout: str | None = None
    window: int | None = None
    threshold: int | None = None
    initial: int | None = None
    expected_response: int | None = None

    @field_validator("interval", "timeout", mode="before")
    @classmethod
    def _normalize_duration(cls, value: Duration | None) -> str | None:
        return _as_seconds_string(value)


class ClusterSource(_CamelModel):
    name: str
    address: str | None = None
    addresses: list[str] = Field(default_factory=list)
    probe: str | None = None
    max_connections: int | None = None
    first_byte_timeout: str | None = None
    between_bytes_timeout: str | None = None
    connect_timeout: str | None = None

    @field_validator("first_byte_timeout", "between_bytes_timeout", "connect_timeout", mode="before")
    @classmethod
    def _normalize_duration(cls, value: Duration | None) -> str | None:
        return _as_seconds_string(value)

    @field_validator("addresses", mode="before")
    @classmethod
    def _single_address_as_list(cls, value: Any) -> Any:
        return [value] if isinstance(value, str) else value

    @model_validator(mode="after")
    def _merge_address(self) -> "ClusterSource":
        if self.address:
            self.addresses = [self.address, *self.addresses]
            self.address = None
        if not self.addresses:
            raise ValueError(f"cluster '{self.name}' requires at least one address")
        return self


class SourceConfig(_CamelModel):
    """Schema of ``config.yaml`` / ``config.json`` (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    listen_address: str = "0.0.0.0:8080,HTTP"
    admin_listen_address: str = "0.0.0.0:2000"
    prometheus_listen_address: str | None = "0.0.0.0:9131"
    storage: str = "default,512m"
    varnish_runtime_parameters: list[str] = Field(default_factory=list)
    admin_secret_file: str | None = None
    admin_secret: str | None = None
    varnish_access_logs: bool = True
    shutdown_delay: Duration | None = "5s"
    watch_files: bool = True
    watch_dns: bool = True
    vcl: list[VclSource] = Field(
        default_factory=lambda: [VclSource(name="default", src=str(BUNDLED_TEMPLATE))]
    )
    acl: list[AclSource] = Field(default_factory=list)
    fetch_retries: int = 1
    clusters: list[ClusterSource] = Field(default_factory=list)
    probes: list[ProbeSource] = Field(default_factory=list)
    parameters: dict[str, str | int | float | bool] = Field(default_factory=dict)
    x_served_by: str = "{{host}}"

    @field_validator("shutdown_delay", mode="before")
    @classmethod
    def _delay_in_seconds(cls, value: Duration | None) -> float:
        seconds = to_seconds(value)
        return 5 if seconds is None else seconds

    @model_validator(mode="after")
    def _apply_defaults(self) -> "SourceConfig":
        if not self.vcl:
            raise ValueError("The array config.vcl must include at least one varnish vcl")
        if not self.clusters:
            raise ValueError("The array config.clusters must include at least one backend")

        if not any(unit.top for unit in self.vcl):
            self.vcl[-1].top = True

        if not any(acl.name == DEFAULT_PURGE_ACL_NAME for acl in self.acl):
            self.acl.append(AclSource(name=DEFAULT_PURGE_ACL_NAME, entries=list(DEFAULT_PURGE_ACL_ENTRIES)))

        self.parameters = {**DEFAULT_PARAMETERS, **self.parameters}
        return self
