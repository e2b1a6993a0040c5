import logging

from varnishconf.config import Settings
from varnishconf.health import has_critical_failures, run_startup_checks
from varnishconf.domain.reload_config import VclUnit
from conftest import make_resolved_config


def make_config(tmp_path, secret: str | None = "s3cret", **overrides):
    template = tmp_path / "default.vcl.j2"
    template.write_text("vcl 4.1;\n")
    secret_file = tmp_path / "secret"
    if secret is not None:
        secret_file.write_text(secret)
    unit = VclUnit(
        name="default",
        source_path=str(template),
        dest_path=str(tmp_path / "out" / "default.vcl"),
        is_top=True,
    )
    values = dict(admin_secret_file=str(secret_file), varnish_access_logs=False)
    values.update(overrides)
    return make_resolved_config(units=(unit,), **values)


def by_name(results):
    return {result.name: result for result in results}


class TestStartupChecks:
    def test_all_critical_checks_pass(self, tmp_path):
        settings = Settings(varnishd_path="sh")
        results = by_name(run_startup_checks(settings, make_config(tmp_path)))

        assert set(results) == {"varnishd", "admin_secret", "vcl_templates", "output_directory"}
        assert all(result.passed for result in results.values())
        assert not has_critical_failures(list(results.values()))

    def test_missing_binary_is_critical(self, tmp_path):
        settings = Settings(varnishd_path=str(tmp_path / "no-varnishd"))
        results = run_startup_checks(settings, make_config(tmp_path))

        assert not by_name(results)["varnishd"].passed
        assert has_critical_failures(results)

    def test_empty_secret_is_critical(self, tmp_path):
        settings = Settings(varnishd_path="sh")
        results = run_startup_checks(settings, make_config(tmp_path, secret=""))

        assert "missing or empty" in by_name(results)["admin_secret"].detail
        assert has_critical_failures(results)

    def test_optional_companions(self, tmp_path, caplog):
        settings = Settings(
            varnishd_path="sh",
            varnishncsa_path=str(tmp_path / "no-varnishncsa"),
            prometheus_exporter_path="sh",
        )
        config = make_config(tmp_path, varnish_access_logs=True, prometheus_listen_address="0.0.0.0:9131")
        with caplog.at_level(logging.WARNING, logger="varnishconf.health"):
            results = run_startup_checks(settings, config)

        checks = by_name(results)
        assert not checks["varnishncsa"].passed
        assert checks["prometheus_exporter"].passed
        assert not has_critical_failures(results)
        assert "[FAIL] varnishncsa" in caplog.text
