import asyncio
import ipaddress
import logging
import re
import secrets
import socket
import urllib.parse
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from varnishconf.config import Settings
from varnishconf.config_schema import ClusterSource, SourceConfig
from varnishconf.domain.errors import ConfigError
from varnishconf.domain.reload_config import ReloadConfig, VclUnit
from varnishconf.domain.resolved_config import Acl, Backend, Cluster, Probe, ResolvedConfig

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".j2"
SECRET_BYTES = 36

_HOST_PLACEHOLDER = re.compile(r"{{\s*host(?:name)?\s*}}")
_SCHEME_PREFIX = re.compile(r"^https?://")

Resolver = Callable[[str], Awaitable[list[str]]]


@dataclass(frozen=True)
class BackendAddress:
    hostname: str | None = None
    port: int | None = None
    path: str | None = None


def parse_address(address: str) -> BackendAddress:
    if address.startswith("/"):
        return BackendAddress(path=address)

    try:
        parsed = urllib.parse.urlsplit("http://" + _SCHEME_PREFIX.sub("", address))
        port = parsed.port or 80
    except ValueError as exc:
        raise ConfigError(f"Invalid hostname in cluster.addresses: {address!r}") from exc
    if not parsed.hostname:
        raise ConfigError(f"Invalid hostname in cluster.addresses: {address!r}")
    return BackendAddress(hostname=parsed.hostname, port=port)


def collect_addresses(clusters: list[ClusterSource]) -> dict[str, BackendAddress]:
    addresses: dict[str, BackendAddress] = {}
    for cluster in clusters:
        for address in cluster.addresses:
            if address not in addresses:
                addresses[address] = parse_address(address)
    return addresses


def is_ipv4(hostname: str) -> bool:
    try:
        ipaddress.IPv4Address(hostname)
    except ValueError:
        return False
    return True


async def resolve_ipv4(hostname: str) -> list[str]:
    infos = await asyncio.get_running_loop().getaddrinfo(
        hostname, None, family=socket.AF_INET, type=socket.SOCK_STREAM
    )
    return sorted({info[4][0] for info in infos})


class FileConfigSource:
    """Loads ``config.yaml``/``config.json`` from the source directory and resolves it."""

    def __init__(
        self,
        settings: Settings,
        resolver: Resolver = resolve_ipv4,
        hostname: str | None = None,
    ) -> None:
        self._settings = settings
        self._resolver = resolver
        self._hostname = hostname or socket.gethostname()
        self._yaml_path = settings.source_directory / "config.yaml"
        self._json_path = settings.source_directory / "config.json"
        self._config_path = self._json_path if settings.prefers_json else self._yaml_path
        self._first_load = True

        self._source: SourceConfig | None = None
        self._units: tuple[VclUnit, ...] = ()
        self._addresses: dict[str, BackendAddress] = {}
        self._resolved: dict[str, list[str]] = {}

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def source_directory(self) -> Path:
        return self._settings.source_directory

    async def load(self) -> ResolvedConfig:
        try:
            raw = await asyncio.to_thread(self._read_raw)
            source = self._validate(raw)
            if self._first_load:
                await asyncio.to_thread(self._prepare_output, source)
                self._first_load = False
            units = self._build_units(source)
            addresses = collect_addresses(source.clusters)
            resolved = await self._resolve_all(addresses, retries=1)
        except ConfigError as exc:
            raise ConfigError(f"Failed to load config: {exc}") from exc

        self._source = source
        self._units = units
        self._addresses = addresses
        self._resolved = resolved
        return self._build(source, units, resolved)

    async def refresh_dns(self) -> ResolvedConfig | None:
        if self._source is None:
            return None
        resolved = await self._resolve_all(self._addresses, retries=0)
        if resolved == self._resolved:
            return None
        self._resolved = resolved
        return self._build(self._source, self._units, resolved)

    def _read_raw(self) -> dict[str, Any]:
        try:
            content = self._read_config_file()
        except FileNotFoundError:
            self._config_path = self._yaml_path
            logger.warning(
                "Neither of config.yaml or config.json exist in %s. Falling back to defaults.",
                self.source_directory,
            )
            content = "{}"
        except OSError as exc:
            raise ConfigError(f"Failed to read config file {self._config_path}: {exc}") from exc

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Failed to parse config file {self._config_path}: {exc}") from exc

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self._config_path} must contain a mapping")
        return data

    def _read_config_file(self) -> str:
        try:
            return self._config_path.read_text()
        except FileNotFoundError:
            other = self._yaml_path if self._config_path == self._json_path else self._json_path
            content = other.read_text()
            self._config_path = other
            return content

    def _validate(self, raw: dict[str, Any]) -> SourceConfig:
        data = dict(raw)
        settings = self._settings
        if settings.listen:
            data.setdefault("listenAddress", settings.listen)
        if settings.storage:
            data.setdefault("storage", settings.storage)
        if settings.backend:
            data.setdefault("clusters", [{"name": "delivery", "addresses": [settings.backend]}])
        data.setdefault("adminSecretFile", str(self._settings.output_directory / "secret"))

        try:
            return SourceConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc

    def _prepare_output(self, source: SourceConfig) -> None:
        output = self._settings.output_directory
        try:
            output.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"Failed to create directory {output}: {exc}") from exc

        secret_file = Path(source.admin_secret_file)
        if secret_file.exists():
            return
        secret = source.admin_secret or secrets.token_hex(SECRET_BYTES)
        try:
            secret_file.write_text(secret)
            secret_file.chmod(0o600)
        except OSError as exc:
            raise ConfigError(f"Failed to write admin secret file {secret_file}: {exc}") from exc
        logger.info("Generated admin secret file %s", secret_file)

    def _build_units(self, source: SourceConfig) -> tuple[VclUnit, ...]:
        units = []
        for index, vcl in enumerate(source.vcl):
            template = (self.source_directory / vcl.src).resolve()
            if not template.is_file():
                raise ConfigError(f"Could not read VCL file {template}: File does not exist")

            if vcl.dest:
                dest = (self.source_directory / vcl.dest).resolve()
            else:
                dest = self._settings.output_directory / template.name.removesuffix(TEMPLATE_SUFFIX)

            try:
                units.append(
                    VclUnit(name=vcl.name, source_path=str(template), dest_path=str(dest), is_top=vcl.top)
                )
            except ValueError as exc:
                raise ConfigError(f"The config.vcl[{index}] config is invalid: {exc}") from exc
        return tuple(units)

    async def _resolve_all(
        self, addresses: dict[str, BackendAddress], retries: int
    ) -> dict[str, list[str]]:
        while True:
            try:
                return await self._resolve_once(addresses)
            except OSError as exc:
                if not retries:
                    raise ConfigError(f"Failed to resolve DNS: {exc}") from exc
                retries -= 1
                logger.warning(
                    "Failed to resolve DNS. Retrying in %.0fs: %s", self._settings.dns_retry_delay, exc
                )
                await asyncio.sleep(self._settings.dns_retry_delay)

    async def _resolve_once(self, addresses: dict[str, BackendAddress]) -> dict[str, list[str]]:
        resolved: dict[str, list[str]] = {}
        lookups = {}
        for key, address in addresses.items():
            if address.path:
                resolved[key] = [address.path]
            elif is_ipv4(address.hostname):
                resolved[key] = [address.hostname]
            else:
                lookups[key] = self._resolver(address.hostname)

        results = await asyncio.gather(*lookups.values())
        for key, result in zip(lookups, results):
            if not result:
                raise OSError(f"No addresses found for {addresses[key].hostname}")
            resolved[key] = sorted(result)
        return resolved

    def _build(
        self,
        source: SourceConfig,
        units: tuple[VclUnit, ...],
        resolved: dict[str, list[str]],
    ) -> ResolvedConfig:
        clusters = []
        for cluster in source.clusters:
            backends: list[Backend] = []
            for key in cluster.addresses:
                address = self._addresses_for_build(key)
                for entry in resolved[key]:
                    name = f"{cluster.name}_{len(backends)}"
                    if address.path:
                        backends.append(Backend(name=name, path=entry))
                    else:
                        backends.append(Backend(name=name, host=entry, port=address.port))
            clusters.append(
                Cluster(
                    name=cluster.name,
                    backends=tuple(backends),
                    probe=cluster.probe,
                    max_connections=cluster.max_connections,
                    first_byte_timeout=cluster.first_byte_timeout,
                    between_bytes_timeout=cluster.between_bytes_timeout,
                    connect_timeout=cluster.connect_timeout,
                )
            )

        probes = tuple(
            Probe(
                name=probe.name,
                url=probe.url,
                request=tuple(probe.request),
                interval=probe.interval,
                timeout=probe.timeout,
                window=probe.window,
                threshold=probe.threshold,
                initial=probe.initial,
                expected_response=probe.expected_response,
            )
            for probe in source.probes
        )

        return ResolvedConfig(
            reload=ReloadConfig(units=units, parameters=source.parameters),
            listen_address=source.listen_address,
            admin_listen_address=source.admin_listen_address,
            admin_secret_file=source.admin_secret_file,
            storage=source.storage,
            clusters=tuple(clusters),
            probes=probes,
            acls=tuple(Acl(name=acl.name, entries=tuple(acl.entries)) for acl in source.acl),
            prometheus_listen_address=source.prometheus_listen_address or None,
            varnish_runtime_parameters=tuple(source.varnish_runtime_parameters),
            varnish_access_logs=source.varnish_access_logs,
            shutdown_delay=source.shutdown_delay,
            watch_files=source.watch_files,
            watch_dns=source.watch_dns,
            fetch_retries=source.fetch_retries,
            x_served_by=_HOST_PLACEHOLDER.sub(self._hostname, source.x_served_by),
            extra=dict(source.model_extra or {}),
        )

    def _addresses_for_build(self, key: str) -> BackendAddress:
        address = self._addresses.get(key)
        return address if address is not None else parse_address(key)
