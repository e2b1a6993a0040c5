import re
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_CONFIG_FILE_SUFFIX = re.compile(r"/config\.(yaml|json)$")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VARNISHCONF_")

    config_source: str = "/etc/varnish/source"
    config_output: str = "/etc/varnish"

    listen: str | None = None
    backend: str | None = None
    storage: str | None = None

    varnishd_path: str = "/usr/sbin/varnishd"
    varnishncsa_path: str = "/usr/bin/varnishncsa"
    prometheus_exporter_path: str = "/usr/local/bin/prometheus_varnish_exporter"

    control_socket: str = "/tmp/varnishconf.sock"

    reconnect_delay: float = 0.3
    connect_timeout: float = 5.0
    response_timeout: float = 30.0
    retry_delay: float = 5.0
    startup_timeout: float = 20.0
    dns_interval: float = 5.0
    dns_retry_delay: float = 1.0
    file_debounce: float = 0.05
    kill_timeout: float = 5.0

    log_level: str | None = None

    @property
    def source_directory(self) -> Path:
        return Path(_CONFIG_FILE_SUFFIX.sub("", self.config_source))

    @property
    def output_directory(self) -> Path:
        return (self.source_directory / self.config_output).resolve()

    @property
    def prefers_json(self) -> bool:
        return self.config_source.endswith(".json")

    def read_secret(self, path: str) -> str:
        if not path:
            return ""
        try:
            with open(path) as f:
                return f.read()
        except FileNotFoundError:
            return ""
