import asyncio
import logging
from dataclasses import dataclass

from varnishconf.domain.admin_protocol import (
    STATUS_AUTH_CHALLENGE,
    STATUS_OK,
    AdminResponse,
    auth_line,
    challenge_token,
    clean_error_message,
    parse_header,
    parse_response,
)
from varnishconf.domain.errors import (
    AuthenticationError,
    CommandError,
    ParallelRequestError,
    TransportError,
)
from varnishconf.domain.state import ConnectionState, validate_connection_transition

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY_SECONDS = 0.3
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0
DEFAULT_RESPONSE_TIMEOUT_SECONDS = 30.0
FAILURE_LOG_INTERVAL = 10


@dataclass
class PendingCommand:
    command: str
    future: asyncio.Future
    written: bool = False


class VarnishAdminClient:
    """Client for the daemon's challenge-authenticated admin CLI.

    The connect loop starts on construction, so the client has to be created
    from inside a running event loop. Exactly one command may be outstanding;
    commands submitted while the connection is being (re)established are held
    until authentication succeeds, commands submitted while disconnected fail
    with ``TransportError``. A handshake or command response that does not
    arrive within its timeout fails the session and the client reconnects.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 2000,
        secret: str = "",
        socket_path: str | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT_SECONDS,
        failure_log_interval: int = FAILURE_LOG_INTERVAL,
    ) -> None:
        self._host = host
        self._port = port
        self._secret = secret
        self._socket_path = socket_path
        self._reconnect_delay = reconnect_delay
        self._connect_timeout = connect_timeout
        self._response_timeout = response_timeout
        self._failure_log_interval = max(1, failure_log_interval)

        self._state = ConnectionState.CONNECTING
        self._closed = False
        self._pending: PendingCommand | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._response_timer: asyncio.TimerHandle | None = None
        self._abort_reason: str | None = None
        self._ready = asyncio.Event()
        self._consecutive_failures = 0
        self._task = asyncio.get_running_loop().create_task(self._connect_loop())

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def address(self) -> str:
        return self._socket_path or f"{self._host}:{self._port}"

    async def wait_ready(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._ready.wait(), timeout=timeout)

    async def request(self, command: str) -> AdminResponse:
        if "\n" in command:
            raise ValueError("Admin commands must fit on a single line")
        if self._closed:
            raise TransportError("Varnish admin client is closed")
        if self._pending is not None:
            raise ParallelRequestError()
        if self._state is ConnectionState.DISCONNECTED:
            raise TransportError("Varnish Admin Socket disconnected")

        pending = PendingCommand(command=command, future=asyncio.get_running_loop().create_future())
        pending.future.add_done_callback(lambda _: self._forget_unsent(pending))
        self._pending = pending
        if self._state is ConnectionState.READY:
            self._send_pending()
        return await pending.future

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready.clear()
        self._reject_pending(TransportError("Varnish admin client closed"))
        if self._writer is not None:
            self._writer.close()
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        if self._state is not ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
        logger.debug("Varnish admin client for %s closed", self.address)

    async def _connect_loop(self) -> None:
        while not self._closed:
            try:
                await self._session()
            except (OSError, EOFError, ValueError, TransportError) as exc:
                self._on_session_failure(exc)

            await asyncio.sleep(self._reconnect_delay)
            self._set_state(ConnectionState.CONNECTING)

    async def _open_connection(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if self._socket_path:
            connect = asyncio.open_unix_connection(self._socket_path)
        else:
            connect = asyncio.open_connection(self._host, self._port)
        return await asyncio.wait_for(connect, timeout=self._connect_timeout)

    async def _session(self) -> None:
        reader, writer = await self._open_connection()
        self._writer = writer
        self._abort_reason = None
        try:
            self._set_state(ConnectionState.AUTHENTICATING)
            try:
                await asyncio.wait_for(self._authenticate(reader, writer), timeout=self._connect_timeout)
            except asyncio.TimeoutError:
                raise TransportError(
                    f"No authentication response within {self._connect_timeout:.1f}s"
                ) from None
            self._set_state(ConnectionState.READY)
            self._on_ready()
            await self._read_loop(reader)
        finally:
            self._cancel_response_timer()
            self._writer = None
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _authenticate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        message = await self._read_message(reader)
        greeting = parse_response(message)

        if greeting.status == STATUS_AUTH_CHALLENGE:
            challenge = challenge_token(message.split("\n", 1)[1])
            writer.write(auth_line(challenge, self._secret).encode("utf-8"))
            await writer.drain()
            result = parse_response(await self._read_message(reader))
            if result.status != STATUS_OK:
                raise AuthenticationError(result.status)
        elif greeting.status != STATUS_OK:
            raise AuthenticationError(greeting.status)

    async def _read_message(self, reader: asyncio.StreamReader) -> str:
        line = await reader.readline()
        if not line:
            raise TransportError(self._abort_reason or "Varnish admin socket closed by the daemon")

        header_line = line.decode("utf-8", errors="replace").rstrip("\n")
        header = parse_header(header_line)
        if header is None:
            raise TransportError(f"Malformed admin response header: {header_line!r}")

        body = ""
        if header.length is not None:
            # body is followed by a single newline that is not counted in the length
            raw = await reader.readexactly(header.length + 1)
            body = raw[:-1].decode("utf-8", errors="replace")
        return f"{header_line}\n{body}"

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        while True:
            response = parse_response(await self._read_message(reader))
            pending = self._pending
            if pending is None or not pending.written:
                logger.warning("Ignoring unsolicited admin response with status %d", response.status)
                continue

            self._pending = None
            self._cancel_response_timer()
            if pending.future.done():
                continue
            if response.status == STATUS_OK:
                pending.future.set_result(response)
            else:
                pending.future.set_exception(
                    CommandError(response.status, clean_error_message(response.body))
                )

    def _send_pending(self) -> None:
        pending = self._pending
        if pending is None or pending.written or self._writer is None:
            return
        pending.written = True
        logger.debug("> %s", pending.command)
        self._writer.write(f"{pending.command}\n".encode("utf-8"))
        self._response_timer = asyncio.get_running_loop().call_later(
            self._response_timeout, self._on_response_timeout, pending
        )

    def _on_response_timeout(self, pending: PendingCommand) -> None:
        self._response_timer = None
        if self._pending is not pending or self._writer is None:
            return
        # closing the transport ends the read loop with EOF, which fails the session
        self._abort_reason = f"No response to '{pending.command}' within {self._response_timeout:.1f}s"
        self._writer.close()

    def _cancel_response_timer(self) -> None:
        if self._response_timer is not None:
            self._response_timer.cancel()
            self._response_timer = None

    def _forget_unsent(self, pending: PendingCommand) -> None:
        if self._pending is pending and not pending.written:
            self._pending = None

    def _reject_pending(self, error: Exception) -> None:
        pending = self._pending
        self._pending = None
        self._cancel_response_timer()
        if pending is not None and not pending.future.done():
            pending.future.set_exception(error)

    def _on_ready(self) -> None:
        if self._consecutive_failures:
            logger.info(
                "Varnish admin connection to %s restored after %d failed attempt(s)",
                self.address,
                self._consecutive_failures,
            )
        else:
            logger.debug("Varnish admin connection to %s authenticated", self.address)
        self._consecutive_failures = 0
        self._ready.set()
        self._send_pending()

    def _on_session_failure(self, exc: BaseException) -> None:
        self._ready.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        self._consecutive_failures += 1
        self._reject_pending(TransportError(f"Varnish Admin Socket disconnected: {exc}"))

        count = self._consecutive_failures
        if count == 1 or count % self._failure_log_interval == 0:
            logger.warning(
                "Varnish admin connection to %s failed (attempt %d): %s. Retrying every %.1fs",
                self.address,
                count,
                str(exc) or type(exc).__name__,
                self._reconnect_delay,
            )

    def _set_state(self, target: ConnectionState) -> None:
        validate_connection_transition(self._state, target)
        self._state = target
