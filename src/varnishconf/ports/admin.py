from typing import Protocol

from varnishconf.domain.admin_protocol import AdminResponse


class AdminPort(Protocol):
    async def request(self, command: str) -> AdminResponse: ...
    async def close(self) -> None: ...
