import asyncio
import logging
import time
from pathlib import Path

import janus
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from varnishconf.domain.errors import VarnishConfError
from varnishconf.domain.resolved_config import ResolvedConfig
from varnishconf.ports.config_source import ChangeCallback, ConfigSourcePort

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.05
DEFAULT_DNS_INTERVAL_SECONDS = 5.0

FILE_LABEL = "file"
DNS_LABEL = "dns"

# inotify also reports reads; those must not trigger reloads
_CHANGE_EVENTS = {"created", "modified", "deleted", "moved"}


class _SourceDirectoryHandler(FileSystemEventHandler):
    def __init__(self, queue: janus.SyncQueue[str]) -> None:
        super().__init__()
        self._queue = queue

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _CHANGE_EVENTS:
            return
        self._queue.put_nowait(str(event.src_path))


class ConfigWatcher:
    """Turns source directory edits and DNS changes into change callbacks.

    File events arrive on the watchdog thread and are handed to the event loop
    through a janus queue, where bursts are debounced into a single reload.
    """

    def __init__(
        self,
        source: ConfigSourcePort,
        on_change: ChangeCallback,
        watch_path: Path,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        dns_interval: float = DEFAULT_DNS_INTERVAL_SECONDS,
    ) -> None:
        self._source = source
        self._on_change = on_change
        self._watch_path = watch_path
        self._debounce = debounce
        self._dns_interval = dns_interval

        self._current: ResolvedConfig | None = None
        self._last_change: float | None = None
        self._started = False
        self._stopped = False

        self._observer: Observer | None = None
        self._queue: janus.Queue[str] | None = None
        self._file_task: asyncio.Task | None = None
        self._dns_task: asyncio.Task | None = None

    @property
    def current(self) -> ResolvedConfig | None:
        return self._current

    @property
    def last_change(self) -> float | None:
        return self._last_change

    @property
    def watching_files(self) -> bool:
        return self._observer is not None

    @property
    def watching_dns(self) -> bool:
        return self._dns_task is not None

    async def start(self) -> ResolvedConfig:
        if self._started:
            raise RuntimeError("ConfigWatcher.start() can only be called once")
        self._started = True

        config = await self._source.load()
        self._current = config
        self._apply_watch_flags(config)
        return config

    async def refresh(self, label: str) -> ResolvedConfig | None:
        try:
            config = await self._source.load()
        except VarnishConfError as exc:
            logger.error("%s", exc)
            return None
        if self._stopped:
            return None
        self._notify(config, label)
        return config

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        await self._stop_file_watch()
        await self._stop_dns_watch()

    def _notify(self, config: ResolvedConfig, label: str) -> None:
        self._current = config
        self._last_change = time.monotonic()
        self._apply_watch_flags(config)
        try:
            self._on_change(config, label)
        except Exception:
            logger.exception("Config change handler failed")

    def _apply_watch_flags(self, config: ResolvedConfig) -> None:
        if self._stopped:
            return
        if config.watch_files and self._observer is None:
            self._start_file_watch()
        elif not config.watch_files and self._observer is not None:
            asyncio.get_running_loop().create_task(self._stop_file_watch())

        if config.watch_dns and self._dns_task is None:
            self._dns_task = asyncio.get_running_loop().create_task(self._watch_dns())
        elif not config.watch_dns and self._dns_task is not None:
            asyncio.get_running_loop().create_task(self._stop_dns_watch())

    def _start_file_watch(self) -> None:
        queue: janus.Queue[str] = janus.Queue()
        observer = Observer()
        observer.schedule(_SourceDirectoryHandler(queue.sync_q), str(self._watch_path), recursive=True)
        observer.daemon = True
        try:
            observer.start()
        except OSError as exc:
            logger.warning("Could not watch %s: %s", self._watch_path, exc)
            queue.close()
            return
        self._queue = queue
        self._observer = observer
        self._file_task = asyncio.get_running_loop().create_task(self._consume_file_events(self._queue))
        logger.info("Watching %s for config changes", self._watch_path)

    async def _stop_file_watch(self) -> None:
        observer, queue, task = self._observer, self._queue, self._file_task
        self._observer = self._queue = self._file_task = None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if queue is not None:
            queue.close()
            await queue.wait_closed()

    async def _consume_file_events(self, queue: janus.Queue[str]) -> None:
        while True:
            path = await queue.async_q.get()
            logger.debug("Source changed: %s", path)
            # debounce until the directory has been quiet for a full window
            while True:
                try:
                    await asyncio.wait_for(queue.async_q.get(), timeout=self._debounce)
                except asyncio.TimeoutError:
                    break
            await self.refresh(FILE_LABEL)

    async def _stop_dns_watch(self) -> None:
        task, self._dns_task = self._dns_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _watch_dns(self) -> None:
        while True:
            await asyncio.sleep(self._dns_interval)
            try:
                config = await self._source.refresh_dns()
            except (VarnishConfError, OSError) as exc:
                logger.error("DNS resolution failed: %s", exc)
                continue
            if config is not None and not self._stopped:
                self._notify(config, DNS_LABEL)
