import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from varnishconf.domain.resolved_config import ResolvedConfig, port_of

logger = logging.getLogger(__name__)

PROCESS_LOGGER_PREFIX = "varnishconf.process"

READY_MARKERS = ("said Child starts", "Varnish Cache CLI 1.0")
MANAGER_DIES_MARKER = "Info: manager dies"

DEFAULT_KILL_TIMEOUT_SECONDS = 5.0
HEALTH_REQUEST_TIMEOUT_SECONDS = 2.0

ACCESS_LOG_FORMAT = (
    '{"@timestamp":"%{%Y-%m-%dT%H:%M:%S%z}t","method":"%m","url":"%U","remote_ip":"%h",'
    '"x_forwarded_for":"%{X-Forwarded-For}i","cache":"%{Varnish:handling}x","bytes":"%b",'
    '"duration_usec":"%D","status":"%s","request":"%r","ttfb":"%{Varnish:time_firstbyte}x",'
    '"referrer":"%{Referrer}i","user_agent":"%{User-agent}i"}'
)


def varnishd_command(binary: str, config: ResolvedConfig) -> list[str]:
    return [
        binary,
        "-d",
        "-S", config.admin_secret_file,
        "-s", config.storage,
        "-a", config.listen_address,
        "-T", config.admin_listen_address,
        *config.varnish_runtime_parameters,
    ]


def access_log_command(binary: str) -> list[str]:
    return [binary, "-t", "off", "-q", "not VCL_Log:nolog", "-F", ACCESS_LOG_FORMAT]


def prometheus_command(binary: str, listen_address: str) -> list[str]:
    return [binary, "-web.listen-address", listen_address, "-raw"]


@dataclass
class ManagedProcess:
    name: str
    process: asyncio.subprocess.Process
    ready: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    tasks: list[asyncio.Task] = field(default_factory=list)

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(f"{PROCESS_LOGGER_PREFIX}.{self.name}")

    @property
    def running(self) -> bool:
        return self.process.returncode is None


class ProcessSupervisor:
    """Owns the varnishd child and its companion processes.

    Output of every child is logged line by line under the child's name. The
    first child that exits on its own marks the supervisor as failed.
    """

    def __init__(
        self,
        listen_address: str,
        shutdown_delay: float = 0,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT_SECONDS,
        http_timeout: float = HEALTH_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._listen_address = listen_address
        self._shutdown_delay = shutdown_delay
        self._kill_timeout = kill_timeout
        self._http_timeout = http_timeout

        self._processes: list[ManagedProcess] = []
        self._shutting_down = False
        self._exited = asyncio.Event()
        self._exit_code: int | None = None

    @property
    def processes(self) -> list[ManagedProcess]:
        return list(self._processes)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    async def wait_exited(self) -> int | None:
        await self._exited.wait()
        return self._exit_code

    async def spawn(
        self,
        name: str,
        argv: list[str],
        keep_stdin: bool = False,
        inherit_stdout: bool = False,
    ) -> ManagedProcess:
        if self._shutting_down:
            raise RuntimeError(f"Refusing to start {name} during shutdown")

        process = await asyncio.create_subprocess_exec(
            *argv,
            # varnishd -d exits once its debug console hits EOF
            stdin=asyncio.subprocess.PIPE if keep_stdin else asyncio.subprocess.DEVNULL,
            stdout=None if inherit_stdout else asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE if inherit_stdout else asyncio.subprocess.STDOUT,
        )
        managed = ManagedProcess(name=name, process=process)
        self._processes.append(managed)

        output = process.stderr if inherit_stdout else process.stdout
        loop = asyncio.get_running_loop()
        managed.tasks.append(loop.create_task(self._pump_output(managed, output)))
        managed.tasks.append(loop.create_task(self._watch_exit(managed)))
        logger.debug("Started %s (pid %d): %s", name, process.pid, " ".join(argv))
        return managed

    async def start_varnish(self, argv: list[str], timeout: float) -> bool:
        managed = await self.spawn("varnish", argv, keep_stdin=True)
        try:
            started = await asyncio.wait_for(asyncio.shield(managed.ready), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("Varnish did not start within %.0fs: Cancelling", timeout)
            started = False

        if not started:
            await self._terminate(managed)
        return started

    async def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True

        port = port_of(self._listen_address)
        if port and self._shutdown_delay and any(p.running for p in self._processes):
            if await self._announce_shutdown(port):
                logger.info("Graceful Shutdown, waiting for %s seconds.", self._shutdown_delay)
                await asyncio.sleep(self._shutdown_delay)

        await asyncio.gather(*(self._terminate(p) for p in self._processes))
        for managed in self._processes:
            for task in managed.tasks:
                task.cancel()
            await asyncio.gather(*managed.tasks, return_exceptions=True)

    async def _announce_shutdown(self, port: int) -> bool:
        url = f"http://localhost:{port}/_health"
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self._http_timeout)) as client:
                response = await client.post(url, headers={"health": "503"})
        except httpx.HTTPError as exc:
            logger.debug("Health endpoint %s unreachable: %s", url, exc)
            return False
        return response.status_code == 200

    async def _terminate(self, managed: ManagedProcess) -> None:
        process = managed.process
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_timeout)
        except asyncio.TimeoutError:
            managed.logger.warning("Did not exit within %.0fs, killing", self._kill_timeout)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _pump_output(self, managed: ManagedProcess, stream: asyncio.StreamReader | None) -> None:
        if stream is not None:
            async for raw in stream:
                line = raw.decode("utf-8", errors="replace").rstrip("\n")
                if not line:
                    continue
                managed.logger.info("%s", line)
                if managed.ready.done():
                    continue
                if MANAGER_DIES_MARKER in line:
                    managed.ready.set_result(False)
                elif any(marker in line for marker in READY_MARKERS):
                    managed.ready.set_result(True)
        if not managed.ready.done():
            managed.ready.set_result(False)

    async def _watch_exit(self, managed: ManagedProcess) -> None:
        code = await managed.process.wait()
        if self._shutting_down:
            return
        if code < 0:
            managed.logger.warning("Exited with signal %d", -code)
        else:
            managed.logger.warning("Exited with code %d", code)
        if not self._exited.is_set():
            self._exit_code = code if code >= 0 else 1
            self._exited.set()
