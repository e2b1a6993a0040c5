import asyncio
import json
import logging
import os
from pathlib import Path

from varnishconf.ports.control import ControlCommand, ControlHandler

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/varnishconf.sock"
READ_TIMEOUT_SECONDS = 5.0
RESPONSE_TIMEOUT_SECONDS = 30.0


class UnixSocketControlServer:
    def __init__(self, handler: ControlHandler, socket_path: str = DEFAULT_SOCKET_PATH) -> None:
        self._handler = handler
        self._socket_path = socket_path
        self._server: asyncio.Server | None = None

    @property
    def socket_path(self) -> str:
        return self._socket_path

    async def start(self) -> None:
        socket_file = Path(self._socket_path)
        if socket_file.exists():
            socket_file.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=self._socket_path,
        )
        os.chmod(self._socket_path, 0o600)
        logger.info("Control socket listening at %s", self._socket_path)

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        socket_file = Path(self._socket_path)
        if socket_file.exists():
            socket_file.unlink()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT_SECONDS)
            if not raw:
                return

            request = json.loads(raw.decode().strip())
            if not isinstance(request, dict):
                raise ValueError("Control request must be a JSON object")

            command = ControlCommand(action=request.get("action", ""), payload=request.get("payload"))
            response = await self._dispatch(command)
            writer.write((json.dumps(response) + "\n").encode())
            await writer.drain()
        except asyncio.TimeoutError:
            logger.warning("Client connection timed out")
        except ValueError:
            logger.warning("Invalid request from client")
        except Exception:
            logger.exception("Error handling control client")
        finally:
            writer.close()
            await writer.wait_closed()

    async def _dispatch(self, command: ControlCommand) -> dict:
        try:
            result = await self._handler(command)
        except Exception as exc:
            logger.exception("Control command '%s' failed", command.action)
            return {"status": "error", "action": command.action, "error": str(exc)}
        return {"status": "ok", "action": command.action, **result}


class UnixSocketControlClient:
    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH) -> None:
        self._socket_path = socket_path

    async def send_command(self, action: str, payload: dict | None = None) -> dict:
        reader, writer = await asyncio.open_unix_connection(self._socket_path)
        try:
            request = {"action": action}
            if payload:
                request["payload"] = payload
            writer.write((json.dumps(request) + "\n").encode())
            await writer.drain()

            raw = await asyncio.wait_for(reader.readline(), timeout=RESPONSE_TIMEOUT_SECONDS)
            return json.loads(raw.decode().strip())
        finally:
            writer.close()
            await writer.wait_closed()
