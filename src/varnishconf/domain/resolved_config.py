import re
from dataclasses import asdict, dataclass, field
from typing import Any

from varnishconf.domain.reload_config import ReloadConfig

_PORT_PATTERN = re.compile(r":(\d+)")


def port_of(address: str | None) -> int | None:
    if not address:
        return None
    match = _PORT_PATTERN.search(address)
    return int(match.group(1)) if match else None


@dataclass(frozen=True)
class Backend:
    name: str
    host: str | None = None
    port: int | None = None
    path: str | None = None


@dataclass(frozen=True)
class Cluster:
    name: str
    backends: tuple[Backend, ...] = ()
    probe: str | None = None
    max_connections: int | None = None
    first_byte_timeout: str | None = None
    between_bytes_timeout: str | None = None
    connect_timeout: str | None = None


@dataclass(frozen=True)
class Probe:
    name: str
    url: str = "/status"
    request: tuple[str, ...] = ()
    interval: str | None = None
    timeout: str | None = None
    window: int | None = None
    threshold: int | None = None
    initial: int | None = None
    expected_response: int | None = None


@dataclass(frozen=True)
class Acl:
    name: str
    entries: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResolvedConfig:
    reload: ReloadConfig
    listen_address: str
    admin_listen_address: str
    admin_secret_file: str
    storage: str
    clusters: tuple[Cluster, ...] = ()
    probes: tuple[Probe, ...] = ()
    acls: tuple[Acl, ...] = ()
    prometheus_listen_address: str | None = None
    varnish_runtime_parameters: tuple[str, ...] = ()
    varnish_access_logs: bool = True
    shutdown_delay: float = 5
    watch_files: bool = True
    watch_dns: bool = True
    fetch_retries: int = 1
    x_served_by: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def listen_port(self) -> int | None:
        return port_of(self.listen_address)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
