import asyncio
import logging
import time
from collections.abc import Callable

from varnishconf.domain.errors import ReloadStepError, VarnishConfError
from varnishconf.domain.events import DomainEvent, ReloadFailed, ReloadSucceeded, ReloadTriggered
from varnishconf.domain.reload_config import GenerationClock
from varnishconf.domain.resolved_config import ResolvedConfig
from varnishconf.domain.sequencer import ReloadSequencer
from varnishconf.domain.state import ReloadCycleState, validate_cycle_transition
from varnishconf.ports.admin import AdminPort
from varnishconf.ports.renderer import VclWriterPort

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_SECONDS = 5.0
WRITE_STEP = "writing vcl files"

EventListener = Callable[[DomainEvent], None]


class HotReloadCoordinator:
    """Single-flight reload loop fed by a one-value mailbox.

    ``trigger`` only ever overwrites the pending slot. At most one cycle task
    runs; it keeps going while the slot holds a value it has not applied yet
    and retries failed cycles after ``retry_delay`` seconds.
    """

    def __init__(
        self,
        client: AdminPort,
        writer: VclWriterPort,
        sequencer: ReloadSequencer | None = None,
        clock: GenerationClock | None = None,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        listener: EventListener | None = None,
    ) -> None:
        self._client = client
        self._writer = writer
        self._sequencer = sequencer or ReloadSequencer()
        self._clock = clock or GenerationClock()
        self._retry_delay = retry_delay
        self._listener = listener

        self._state = ReloadCycleState.IDLE
        self._pending: ResolvedConfig | None = None
        self._pending_label = ""
        self._stopped = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._last_outcome: ReloadSucceeded | ReloadFailed | None = None
        self._completed_cycles = 0

    @property
    def state(self) -> ReloadCycleState:
        return self._state

    @property
    def last_outcome(self) -> ReloadSucceeded | ReloadFailed | None:
        return self._last_outcome

    @property
    def completed_cycles(self) -> int:
        return self._completed_cycles

    @property
    def stopped(self) -> bool:
        return self._stopped

    def trigger(self, config: ResolvedConfig, label: str = "manual") -> None:
        if self._stopped:
            logger.debug("Ignoring reload trigger '%s' after stop", label)
            return

        coalesced = self._pending is not None
        self._pending = config
        self._pending_label = label
        logger.info("Config reload triggered: %s", label)
        self._publish(ReloadTriggered(label=label, coalesced=coalesced))

        if self._state is not ReloadCycleState.IDLE:
            logger.info("Config reload is in progress. Waiting to finish.")
            return

        self._transition_to(ReloadCycleState.RUNNING)
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        logger.debug("Reload coordinator stopped")

    async def wait_idle(self) -> None:
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _run(self) -> None:
        try:
            while self._pending is not None and not self._stopped:
                if self._state is ReloadCycleState.PENDING_RETRY:
                    self._transition_to(ReloadCycleState.RUNNING)

                config = self._pending
                label = self._pending_label
                generation = self._clock.next()
                started = time.monotonic()
                logger.info("Config reload starting (%s).", label)

                try:
                    await self._reload(config, generation)
                except Exception as exc:
                    self._completed_cycles += 1
                    self._record_failure(label, generation, exc)
                    if self._stopped:
                        return
                    self._transition_to(ReloadCycleState.PENDING_RETRY)
                    await self._wait_before_retry()
                    continue

                self._completed_cycles += 1
                duration = time.monotonic() - started
                logger.info("Configuration reload completed in %.2fs.", duration)
                self._publish(
                    ReloadSucceeded(label=label, generation=generation, duration_seconds=duration)
                )
                if self._pending is config:
                    self._pending = None
        finally:
            if self._state is not ReloadCycleState.IDLE:
                self._transition_to(ReloadCycleState.IDLE)

    async def _reload(self, config: ResolvedConfig, generation: int) -> None:
        try:
            await self._writer.write(config)
        except (OSError, VarnishConfError) as exc:
            raise ReloadStepError(WRITE_STEP, exc) from exc

        await self._sequencer.run(
            self._client,
            config.reload.stamped(generation),
            start_daemon=False,
        )

    async def _wait_before_retry(self) -> None:
        logger.info("Retrying config reload in %.1fs", self._retry_delay)
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._retry_delay)
        except asyncio.TimeoutError:
            pass

    def _record_failure(self, label: str, generation: int, exc: Exception) -> None:
        step = exc.step if isinstance(exc, ReloadStepError) else ""
        logger.error("Config reload failed: %s", exc, exc_info=not isinstance(exc, ReloadStepError))
        self._publish(ReloadFailed(label=label, generation=generation, step=step, error=str(exc)))

    def _transition_to(self, target: ReloadCycleState) -> None:
        validate_cycle_transition(self._state, target)
        logger.debug("Reload cycle: %s -> %s", self._state.name, target.name)
        self._state = target

    def _publish(self, event: DomainEvent) -> None:
        if isinstance(event, (ReloadSucceeded, ReloadFailed)):
            self._last_outcome = event
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception:
            logger.exception("Reload event listener failed")
