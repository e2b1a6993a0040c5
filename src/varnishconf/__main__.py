import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict

from varnishconf.config import Settings
from varnishconf.domain.errors import ConfigError, VarnishConfError
from varnishconf.domain.reload_config import GenerationClock
from varnishconf.domain.sequencer import ReloadSequencer
from varnishconf.log_format import PrefixedFormatter

logger = logging.getLogger("varnishconf.entrypoint")

CLIENT_COMMANDS = ("refresh", "status")


def main() -> None:
    parser = argparse.ArgumentParser(prog="varnishconf", description="Configures and hot-reloads varnishd")
    parser.add_argument("-c", "--config-source", "--config", dest="config_source", help="Config source directory or file")
    parser.add_argument("--config-output", help="Directory for rendered vcl files and the admin secret")
    parser.add_argument("-a", "--listen", help="Default listen address")
    parser.add_argument("-b", "--backend", help="Default backend address")
    parser.add_argument("-s", "--storage", help="Default storage")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run varnishd and keep it configured (default)")
    subparsers.add_parser("config", help="Print the resolved config as JSON")
    subparsers.add_parser("reload", help="Reload a running varnishd once")
    subparsers.add_parser("refresh", help="Ask the running sidecar to reload its config")
    subparsers.add_parser("status", help="Query the running sidecar")

    args = parser.parse_args()

    overrides = {
        key: value
        for key, value in {
            "config_source": args.config_source,
            "config_output": args.config_output,
            "listen": args.listen,
            "backend": args.backend,
            "storage": args.storage,
        }.items()
        if value is not None
    }
    settings = Settings(**overrides)
    _configure_logging(settings, args.verbose)

    if args.command == "config":
        sys.exit(asyncio.run(_run_dump_config(settings)))
    elif args.command == "reload":
        sys.exit(asyncio.run(_run_reload(settings)))
    elif args.command in CLIENT_COMMANDS:
        sys.exit(asyncio.run(_run_client_command(args, settings)))
    else:
        sys.exit(asyncio.run(_run_daemon(settings)))


def _configure_logging(settings: Settings, verbose: bool) -> None:
    level = settings.log_level or ("DEBUG" if verbose else "INFO")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(PrefixedFormatter(colored=sys.stderr.isatty()))
    logging.basicConfig(level=level.upper(), handlers=[handler])

    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.INFO)


async def _run_dump_config(settings: Settings) -> int:
    from varnishconf.factory import create_config_source

    try:
        config = await create_config_source(settings).load()
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1
    print(json.dumps(config.to_dict(), indent=2, default=str))
    return 0


async def _run_reload(settings: Settings) -> int:
    from varnishconf.factory import create_admin_client, create_config_source, create_renderer

    try:
        config = await create_config_source(settings).load()
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1
    logger.info("Config loaded")

    client = create_admin_client(settings, config)
    try:
        await create_renderer().write(config)
        await client.wait_ready(settings.connect_timeout)
        await ReloadSequencer().run(client, config.reload.stamped(GenerationClock().next()), start_daemon=False)
    except (OSError, VarnishConfError) as exc:
        logger.error("Reload failed: %s", str(exc) or type(exc).__name__)
        return 1
    finally:
        await client.close()
    return 0


async def _run_client_command(args: argparse.Namespace, settings: Settings) -> int:
    from varnishconf.adapters.unix_control import UnixSocketControlClient

    client = UnixSocketControlClient(socket_path=settings.control_socket)

    try:
        result = await client.send_command(args.command)
    except (ConnectionRefusedError, FileNotFoundError):
        print("varnishconf is not running", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0 if result.get("status") == "ok" else 1


async def _run_daemon(settings: Settings) -> int:
    from varnishconf.adapters.process_supervisor import (
        access_log_command,
        prometheus_command,
        varnishd_command,
    )
    from varnishconf.factory import (
        create_admin_client,
        create_config_source,
        create_control_server,
        create_coordinator,
        create_renderer,
        create_supervisor,
        create_watcher,
    )
    from varnishconf.health import has_critical_failures, run_startup_checks
    from varnishconf.ports.control import ControlCommand

    coordinator = None

    def on_change(config, label: str) -> None:
        if coordinator is None:
            logger.info("Config changed during startup (%s)", label)
            return
        coordinator.trigger(config, label)

    source = create_config_source(settings)
    watcher = create_watcher(settings, source, on_change)
    try:
        config = await watcher.start()
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1

    results = run_startup_checks(settings, config)
    if has_critical_failures(results):
        logger.error("Critical health check failures, aborting startup")
        await watcher.stop()
        return 1

    renderer = create_renderer()
    try:
        await renderer.write(config)
    except (OSError, VarnishConfError) as exc:
        logger.error("Failed to write vcl files: %s", exc)
        await watcher.stop()
        return 1

    supervisor = create_supervisor(settings, config)
    clock = GenerationClock()
    client = None
    control = None

    shutdown_event = asyncio.Event()
    shutdown_triggered = False

    def handle_signal(sig: signal.Signals) -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            logger.warning("Forced exit")
            sys.exit(1)
        shutdown_triggered = True
        logger.info("Shutdown with signal %s", sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)
    refresh_tasks: set[asyncio.Task] = set()

    def handle_hangup() -> None:
        track_task(refresh_tasks, loop.create_task(watcher.refresh("SIGHUP")), "SIGHUP refresh")

    loop.add_signal_handler(signal.SIGHUP, handle_hangup)

    async def handle_control(command: ControlCommand) -> dict:
        if command.action == "refresh":
            refreshed = await watcher.refresh("control")
            return {"refreshed": refreshed is not None}
        if command.action == "status":
            return _status(coordinator, client, supervisor)
        raise ValueError(f"Unknown action: {command.action}")

    exit_code = 0
    started_at = loop.time()
    try:
        argv = varnishd_command(settings.varnishd_path, config)
        try:
            started = await supervisor.start_varnish(argv, settings.startup_timeout)
        except OSError as exc:
            logger.error("Failed to launch %s: %s", settings.varnishd_path, exc)
            return 1
        if not started:
            return 1

        client = create_admin_client(settings, config)
        try:
            await client.wait_ready(settings.startup_timeout)
            await ReloadSequencer().run(client, config.reload.for_first_start().stamped(clock.next()))
        except (OSError, VarnishConfError) as exc:
            logger.error("Initial configuration failed: %s", str(exc) or type(exc).__name__)
            return 1
        logger.info("Listening on http://0.0.0.0:%s", config.listen_port)

        coordinator = create_coordinator(settings, client, renderer, clock=clock)
        if watcher.current is not config:
            coordinator.trigger(watcher.current, "change-after-load")

        if config.varnish_access_logs:
            await _spawn_companion(supervisor, "logs", access_log_command(settings.varnishncsa_path), True)
        if config.prometheus_listen_address:
            argv = prometheus_command(settings.prometheus_exporter_path, config.prometheus_listen_address)
            await _spawn_companion(supervisor, "prometheus", argv, False)

        control = create_control_server(settings, handle_control)
        await control.start()

        exited = asyncio.create_task(supervisor.wait_exited())
        stopping = asyncio.create_task(shutdown_event.wait())
        done, pending = await asyncio.wait({exited, stopping}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if exited in done:
            exit_code = exited.result() or 0
    finally:
        for task in list(refresh_tasks):
            task.cancel()
        await asyncio.gather(*refresh_tasks, return_exceptions=True)
        await watcher.stop()
        if coordinator is not None:
            coordinator.stop()
            await coordinator.wait_idle()
        if control is not None:
            await control.stop()
        await supervisor.shutdown()
        if client is not None:
            await client.close()
        logger.info("Shutdown after running %.2fs", loop.time() - started_at)

    return exit_code


def track_task(tasks: set[asyncio.Task], task: asyncio.Task, label: str) -> asyncio.Task:
    """Keep ``task`` referenced in ``tasks`` until it finishes and log its failure."""

    def finished(done: asyncio.Task) -> None:
        tasks.discard(done)
        if not done.cancelled() and done.exception() is not None:
            logger.error("%s failed: %s", label, done.exception())

    tasks.add(task)
    task.add_done_callback(finished)
    return task


async def _spawn_companion(supervisor, name: str, argv: list[str], inherit_stdout: bool) -> None:
    try:
        await supervisor.spawn(name, argv, inherit_stdout=inherit_stdout)
    except OSError as exc:
        logger.error("Failed to start %s: %s", name, exc)


def _status(coordinator, client, supervisor) -> dict:
    outcome = coordinator.last_outcome if coordinator is not None else None
    return {
        "reload_state": coordinator.state.name if coordinator is not None else "STARTING",
        "completed_cycles": coordinator.completed_cycles if coordinator is not None else 0,
        "last_outcome": {"type": type(outcome).__name__, **asdict(outcome)} if outcome else None,
        "admin_connection": client.state.name if client is not None else "DISCONNECTED",
        "processes": [p.name for p in supervisor.processes if p.running],
    }


if __name__ == "__main__":
    main()
