import logging

from varnishconf.adapters.config_watcher import ConfigWatcher
from varnishconf.adapters.file_config_source import FileConfigSource
from varnishconf.adapters.process_supervisor import ProcessSupervisor
from varnishconf.adapters.unix_control import UnixSocketControlServer
from varnishconf.adapters.varnish_admin import VarnishAdminClient
from varnishconf.adapters.vcl_renderer import JinjaVclRenderer
from varnishconf.config import Settings
from varnishconf.domain.coordinator import EventListener, HotReloadCoordinator
from varnishconf.domain.reload_config import GenerationClock
from varnishconf.domain.resolved_config import ResolvedConfig
from varnishconf.ports.config_source import ChangeCallback, ConfigSourcePort
from varnishconf.ports.control import ControlHandler, ControlPort

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_PORT = 2000
_WILDCARD_HOSTS = {"", "0.0.0.0", "*"}
_WILDCARD_HOSTS_V6 = {"::", "[::]"}


def admin_target(address: str) -> tuple[str, int]:
    """Where to connect for an admin listen address such as ``0.0.0.0:2000``."""
    host, _, port = address.rpartition(":")
    if not port.isdigit():
        host, port = address, str(DEFAULT_ADMIN_PORT)
    if host in _WILDCARD_HOSTS:
        host = "127.0.0.1"
    elif host in _WILDCARD_HOSTS_V6:
        host = "::1"
    return host.strip("[]"), int(port)


def create_config_source(settings: Settings) -> FileConfigSource:
    return FileConfigSource(settings)


def create_admin_client(settings: Settings, config: ResolvedConfig) -> VarnishAdminClient:
    host, port = admin_target(config.admin_listen_address)
    return VarnishAdminClient(
        host=host,
        port=port,
        secret=settings.read_secret(config.admin_secret_file),
        reconnect_delay=settings.reconnect_delay,
        connect_timeout=settings.connect_timeout,
        response_timeout=settings.response_timeout,
    )


def create_renderer() -> JinjaVclRenderer:
    return JinjaVclRenderer()


def create_coordinator(
    settings: Settings,
    client: VarnishAdminClient,
    renderer: JinjaVclRenderer,
    clock: GenerationClock | None = None,
    listener: EventListener | None = None,
) -> HotReloadCoordinator:
    return HotReloadCoordinator(
        client=client,
        writer=renderer,
        clock=clock,
        retry_delay=settings.retry_delay,
        listener=listener,
    )


def create_watcher(
    settings: Settings,
    source: ConfigSourcePort,
    on_change: ChangeCallback,
) -> ConfigWatcher:
    return ConfigWatcher(
        source=source,
        on_change=on_change,
        watch_path=settings.source_directory,
        debounce=settings.file_debounce,
        dns_interval=settings.dns_interval,
    )


def create_supervisor(settings: Settings, config: ResolvedConfig) -> ProcessSupervisor:
    return ProcessSupervisor(
        listen_address=config.listen_address,
        shutdown_delay=config.shutdown_delay,
        kill_timeout=settings.kill_timeout,
    )


def create_control_server(settings: Settings, handler: ControlHandler) -> ControlPort:
    return UnixSocketControlServer(handler=handler, socket_path=settings.control_socket)
