import logging
from collections.abc import Mapping
from typing import Any

from varnishconf.domain.admin_protocol import AdminResponse
from varnishconf.domain.errors import AdminError, ReloadStepError
from varnishconf.domain.reload_config import ParameterValue, ReloadConfig
from varnishconf.ports.admin import AdminPort

logger = logging.getLogger(__name__)

LIST_COMMAND = "vcl.list -j"
# vcl.list -j prefixes the entries with [version, argv, timestamp]
LIST_HEADER_LENGTH = 3
ACTIVE_STATUS = "active"


def format_parameter_value(value: ParameterValue) -> str:
    if isinstance(value, bool):
        return "on" if value else "off"
    return str(value)


def active_units(listing: Any) -> list[dict]:
    if not isinstance(listing, list):
        raise ValueError(f"Unexpected vcl.list response: {listing!r}")
    return [
        entry
        for entry in listing[LIST_HEADER_LENGTH:]
        if isinstance(entry, Mapping) and entry.get("status") == ACTIVE_STATUS
    ]


class ReloadSequencer:
    """Drives one load / activate / discard / param.set reload over an admin client.

    The client's lifecycle belongs to the caller.
    """

    async def run(
        self,
        client: AdminPort,
        config: ReloadConfig,
        start_daemon: bool | None = None,
    ) -> None:
        if not config.is_stamped:
            raise ValueError("VCL units must carry generated ids before a reload")

        if config.units:
            previously_active = await self._previously_active(client)
            await self._load_units(client, config)

            top = config.top
            await self._step(client, "activating top configuration", f"vcl.use {top.generated_id}")

            for entry in previously_active:
                await self._discard(client, entry)

        for name, value in config.parameters.items():
            await self._step(
                client,
                f"setting parameter {name}",
                f"param.set {name} {format_parameter_value(value)}",
            )

        should_start = config.first_start if start_daemon is None else start_daemon
        if should_start:
            await self._step(client, "starting daemon", "start")

        logger.info(
            "Varnish reloaded: %d unit(s), %d parameter(s)",
            len(config.units),
            len(config.parameters),
        )

    async def _previously_active(self, client: AdminPort) -> list[dict]:
        step = "listing loaded configurations"
        response = await self._step(client, step, LIST_COMMAND)
        try:
            return active_units(response.body)
        except ValueError as exc:
            raise ReloadStepError(step, exc) from exc

    async def _load_units(self, client: AdminPort, config: ReloadConfig) -> None:
        for unit in config.units:
            await self._step(
                client,
                f"loading configuration {unit.generated_id}",
                f"vcl.load {unit.generated_id} {unit.dest_path}",
            )
            if not unit.is_top:
                await self._step(
                    client,
                    f"labelling configuration {unit.generated_id}",
                    f"vcl.label {unit.name} {unit.generated_id}",
                )

    async def _discard(self, client: AdminPort, entry: Mapping) -> None:
        name = entry.get("name")
        if not name:
            return
        try:
            await client.request(f"vcl.discard {name}")
        except AdminError as exc:
            logger.warning("Failed to discard the old vcl %s: %s", name, exc)

    async def _step(self, client: AdminPort, step: str, command: str) -> AdminResponse:
        logger.debug("Sending '%s'", command)
        try:
            return await client.request(command)
        except AdminError as exc:
            raise ReloadStepError(step, exc) from exc
