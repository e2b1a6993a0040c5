import asyncio
import json
from pathlib import Path

import pytest

from varnishconf.domain.admin_protocol import AdminResponse, auth_line
from varnishconf.domain.errors import CommandError
from varnishconf.domain.reload_config import ReloadConfig, VclUnit
from varnishconf.domain.resolved_config import Backend, Cluster, ResolvedConfig

CHALLENGE = "deadbeefdeadbeefdeadbeefdeadbeef"
SECRET = "s3cret"


def vcl_listing(*entries: tuple[str, str]) -> list:
    header = [2, ["vcl.list", "-j"], 1629933022.312]
    return header + [{"status": status, "name": name} for name, status in entries]


def make_unit(name: str, is_top: bool = False, generation: int | None = None) -> VclUnit:
    unit = VclUnit(
        name=name,
        source_path=f"/etc/varnish/source/{name}.vcl.j2",
        dest_path=f"/etc/varnish/{name}.vcl",
        is_top=is_top,
    )
    return unit.stamped(generation) if generation is not None else unit


def make_resolved_config(
    units: tuple[VclUnit, ...] | None = None,
    parameters: dict | None = None,
    **overrides,
) -> ResolvedConfig:
    if units is None:
        units = (make_unit("default", is_top=True),)
    values = dict(
        reload=ReloadConfig(units=units, parameters=parameters or {}),
        listen_address="0.0.0.0:8080,HTTP",
        admin_listen_address="127.0.0.1:2000",
        admin_secret_file="/etc/varnish/secret",
        storage="default,512m",
        clusters=(
            Cluster(
                name="delivery",
                backends=(Backend(name="delivery_0", host="10.0.0.1", port=80),),
            ),
        ),
    )
    values.update(overrides)
    return ResolvedConfig(**values)


class FakeAdminClient:
    """Records commands and answers them from a prefix table."""

    def __init__(self, listing: list | None = None) -> None:
        self.commands: list[str] = []
        self.closed = False
        self._listing = listing if listing is not None else vcl_listing()
        self._failures: dict[str, Exception] = {}
        self._gate: asyncio.Event | None = None

    def fail_on(self, prefix: str, error: Exception | None = None) -> None:
        self._failures[prefix] = error or CommandError(106, f"{prefix} failed")

    def clear_failures(self) -> None:
        self._failures.clear()

    def hold(self) -> asyncio.Event:
        self._gate = asyncio.Event()
        return self._gate

    async def request(self, command: str) -> AdminResponse:
        self.commands.append(command)
        if self._gate is not None:
            await self._gate.wait()
        for prefix, error in self._failures.items():
            if command.startswith(prefix):
                raise error
        if command == "vcl.list -j":
            return AdminResponse(status=200, body=self._listing)
        return AdminResponse(status=200, body="")

    async def close(self) -> None:
        self.closed = True


class FakeVclWriter:
    def __init__(self) -> None:
        self.written: list[ResolvedConfig] = []
        self.error: Exception | None = None

    async def write(self, config: ResolvedConfig) -> None:
        self.written.append(config)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error


class FakeAdminServer:
    """In-process stand-in for the daemon's admin socket."""

    def __init__(self, secret: str | None = SECRET, challenge: str = CHALLENGE) -> None:
        self.secret = secret
        self.challenge = challenge
        self.commands: list[str] = []
        self.auth_lines: list[str] = []
        self.connections = 0
        self.responses: dict[str, tuple[int, str]] = {}
        self.held: dict[str, asyncio.Event] = {}
        self.port = 0
        self._server: asyncio.Server | None = None
        self._writers: list[asyncio.StreamWriter] = []

    async def start(self, port: int = 0) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            self.drop_connections()
            await self._server.wait_closed()
            self._server = None

    def drop_connections(self) -> None:
        for writer in self._writers:
            writer.close()
        self._writers.clear()

    def respond(self, command: str, status: int, body: str = "") -> None:
        self.responses[command] = (status, body)

    def hold(self, command: str) -> asyncio.Event:
        event = asyncio.Event()
        self.held[command] = event
        return event

    async def wait_for_commands(self, count: int, timeout: float = 2.0) -> None:
        async def _poll() -> None:
            while len(self.commands) < count:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.append(writer)
        try:
            if self.secret is None:
                self._send(writer, 200, "-----------------------------\nVarnish Cache CLI 1.0")
            else:
                self._send(writer, 107, f"{self.challenge}\n\nAuthentication required.")
                line = (await reader.readline()).decode()
                self.auth_lines.append(line)
                if line != auth_line(self.challenge, self.secret):
                    self._send(writer, 107, f"{self.challenge}\n\nAuthentication required.")
                    return
                self._send(writer, 200, "-----------------------------\nVarnish Cache CLI 1.0")

            while True:
                raw = await reader.readline()
                if not raw:
                    return
                command = raw.decode().rstrip("\n")
                self.commands.append(command)
                if command in self.held:
                    await self.held.pop(command).wait()
                status, body = self.responses.get(command, (200, ""))
                self._send(writer, status, body)
        except (ConnectionError, asyncio.IncompleteReadError):
            return
        finally:
            writer.close()

    def _send(self, writer: asyncio.StreamWriter, status: int, body: str) -> None:
        data = body.encode()
        writer.write(f"{status:<3d} {len(data):<8d}\n".encode() + data + b"\n")


@pytest.fixture
def fake_client():
    return FakeAdminClient()


@pytest.fixture
def fake_writer():
    return FakeVclWriter()


@pytest.fixture
def source_dir(tmp_path) -> Path:
    directory = tmp_path / "source"
    directory.mkdir()
    return directory


def write_config(directory: Path, config: dict, name: str = "config.yaml") -> Path:
    path = directory / name
    path.write_text(json.dumps(config))
    return path


async def eventually(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
