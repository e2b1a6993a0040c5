from typing import Protocol

from varnishconf.domain.resolved_config import ResolvedConfig


class VclWriterPort(Protocol):
    async def write(self, config: ResolvedConfig) -> None: ...
