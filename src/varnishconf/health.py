import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from varnishconf.config import Settings
from varnishconf.domain.resolved_config import ResolvedConfig

logger = logging.getLogger(__name__)

CRITICAL_CHECKS = {"varnishd", "admin_secret", "vcl_templates", "output_directory"}


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    detail: str


def run_startup_checks(settings: Settings, config: ResolvedConfig) -> list[HealthCheckResult]:
    results = [
        _check_binary("varnishd", settings.varnishd_path),
        _check_admin_secret(settings, config),
        _check_vcl_templates(config),
        _check_output_directory(config),
    ]
    if config.varnish_access_logs:
        results.append(_check_binary("varnishncsa", settings.varnishncsa_path))
    if config.prometheus_listen_address:
        results.append(_check_binary("prometheus_exporter", settings.prometheus_exporter_path))

    passed = sum(1 for r in results if r.passed)

    logger.info("Health check: %d/%d passed", passed, len(results))
    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        symbol = "OK" if result.passed else "FAIL"
        logger.log(level, "  [%s] %s: %s", symbol, result.name, result.detail)

    return results


def has_critical_failures(results: list[HealthCheckResult]) -> bool:
    return any(not r.passed and r.name in CRITICAL_CHECKS for r in results)


def _check_binary(name: str, path: str) -> HealthCheckResult:
    resolved = shutil.which(path)
    if resolved is None:
        return HealthCheckResult(name=name, passed=False, detail=f"{path} not found or not executable")
    return HealthCheckResult(name=name, passed=True, detail=resolved)


def _check_admin_secret(settings: Settings, config: ResolvedConfig) -> HealthCheckResult:
    name = "admin_secret"
    try:
        secret = settings.read_secret(config.admin_secret_file)
    except OSError as exc:
        return HealthCheckResult(name=name, passed=False, detail=str(exc))
    if not secret:
        return HealthCheckResult(name=name, passed=False, detail=f"{config.admin_secret_file} is missing or empty")
    return HealthCheckResult(name=name, passed=True, detail=config.admin_secret_file)


def _check_vcl_templates(config: ResolvedConfig) -> HealthCheckResult:
    name = "vcl_templates"
    missing = [unit.source_path for unit in config.reload.units if not Path(unit.source_path).is_file()]
    if missing:
        return HealthCheckResult(name=name, passed=False, detail=f"Missing: {', '.join(missing)}")
    return HealthCheckResult(name=name, passed=True, detail=f"{len(config.reload.units)} template(s) found")


def _check_output_directory(config: ResolvedConfig) -> HealthCheckResult:
    name = "output_directory"
    directories = sorted({str(Path(unit.dest_path).parent) for unit in config.reload.units})
    unwritable = [d for d in directories if not os.access(_nearest_existing(Path(d)), os.W_OK)]
    if unwritable:
        return HealthCheckResult(name=name, passed=False, detail=f"Not writable: {', '.join(unwritable)}")
    return HealthCheckResult(name=name, passed=True, detail=", ".join(directories) or "no vcl units")


def _nearest_existing(path: Path) -> Path:
    while not path.exists() and path != path.parent:
        path = path.parent
    return path
