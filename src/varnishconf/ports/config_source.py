from collections.abc import Callable
from typing import Protocol

from varnishconf.domain.resolved_config import ResolvedConfig

ChangeCallback = Callable[[ResolvedConfig, str], None]


class ConfigSourcePort(Protocol):
    async def load(self) -> ResolvedConfig: ...
    async def refresh_dns(self) -> ResolvedConfig | None: ...
