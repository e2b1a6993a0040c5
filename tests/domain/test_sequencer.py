import logging

import pytest

from varnishconf.domain.errors import CommandError, ReloadStepError, TransportError
from varnishconf.domain.reload_config import ReloadConfig, VclUnit
from varnishconf.domain.sequencer import ReloadSequencer, active_units, format_parameter_value
from conftest import FakeAdminClient, make_unit, vcl_listing


def two_unit_config(generation: int = 200, parameters: dict | None = None) -> ReloadConfig:
    units = (
        VclUnit(name="default", source_path="/src/default.vcl.j2", dest_path="/path/default.vcl", is_top=True),
        VclUnit(name="extra", source_path="/src/extra.vcl.j2", dest_path="/path/extra.vcl"),
    )
    return ReloadConfig(units=units, parameters=parameters or {}).stamped(generation)


class TestHelpers:
    def test_booleans_render_on_off(self):
        assert format_parameter_value(True) == "on"
        assert format_parameter_value(False) == "off"
        assert format_parameter_value(65) == "65"
        assert format_parameter_value("+http2") == "+http2"

    def test_active_units_skip_listing_header(self):
        listing = vcl_listing(("boot", "available"), ("default_100", "active"))
        assert active_units(listing) == [{"status": "active", "name": "default_100"}]

    def test_active_units_require_a_list(self):
        with pytest.raises(ValueError):
            active_units("VCL compiled.")


class TestReloadSequencer:
    @pytest.mark.asyncio
    async def test_two_unit_reload_sequence(self):
        client = FakeAdminClient(listing=vcl_listing(("default_100", "active")))
        config = two_unit_config(parameters={"default_ttl": 240, "syslog_cli_traffic": False})

        await ReloadSequencer().run(client, config)

        assert client.commands == [
            "vcl.list -j",
            "vcl.load default_200 /path/default.vcl",
            "vcl.load extra_200 /path/extra.vcl",
            "vcl.label extra extra_200",
            "vcl.use default_200",
            "vcl.discard default_100",
            "param.set default_ttl 240",
            "param.set syslog_cli_traffic off",
        ]

    @pytest.mark.asyncio
    async def test_discard_failure_does_not_fail_cycle(self, caplog):
        client = FakeAdminClient(listing=vcl_listing(("default_100", "active")))
        client.fail_on("vcl.discard")
        config = two_unit_config(parameters={"default_ttl": 240})

        with caplog.at_level(logging.WARNING):
            await ReloadSequencer().run(client, config)

        assert client.commands[-1] == "param.set default_ttl 240"
        assert "Failed to discard the old vcl" in caplog.text

    @pytest.mark.asyncio
    async def test_start_is_sent_last_when_requested(self):
        client = FakeAdminClient()
        config = ReloadConfig(units=(make_unit("default", is_top=True),), parameters={"a": 1})

        await ReloadSequencer().run(client, config.for_first_start().stamped(5))

        assert client.commands[-2:] == ["param.set a 1", "start"]

    @pytest.mark.asyncio
    async def test_explicit_start_flag_overrides_config(self):
        client = FakeAdminClient()
        config = ReloadConfig(units=(make_unit("default", is_top=True),)).for_first_start().stamped(5)

        await ReloadSequencer().run(client, config, start_daemon=False)

        assert "start" not in client.commands

    @pytest.mark.asyncio
    async def test_empty_units_only_set_parameters(self):
        client = FakeAdminClient()

        await ReloadSequencer().run(client, ReloadConfig(parameters={"timeout_idle": 60}))

        assert client.commands == ["param.set timeout_idle 60"]

    @pytest.mark.asyncio
    async def test_load_failure_names_the_step(self):
        client = FakeAdminClient()
        client.fail_on("vcl.load extra_200", CommandError(106, "VCL compilation failed"))

        with pytest.raises(ReloadStepError) as excinfo:
            await ReloadSequencer().run(client, two_unit_config())

        assert excinfo.value.step == "loading configuration extra_200"
        assert isinstance(excinfo.value.__cause__, CommandError)
        assert "vcl.use default_200" not in client.commands

    @pytest.mark.asyncio
    async def test_transport_failure_while_listing(self):
        client = FakeAdminClient()
        client.fail_on("vcl.list", TransportError("Varnish Admin Socket disconnected"))

        with pytest.raises(ReloadStepError, match="listing loaded configurations"):
            await ReloadSequencer().run(client, two_unit_config())

    @pytest.mark.asyncio
    async def test_parameter_failure_names_the_parameter(self):
        client = FakeAdminClient()
        client.fail_on("param.set default_ttl")

        with pytest.raises(ReloadStepError) as excinfo:
            await ReloadSequencer().run(client, two_unit_config(parameters={"default_ttl": 240}))

        assert excinfo.value.step == "setting parameter default_ttl"

    @pytest.mark.asyncio
    async def test_unstamped_config_rejected(self):
        client = FakeAdminClient()
        config = ReloadConfig(units=(make_unit("default", is_top=True),))

        with pytest.raises(ValueError):
            await ReloadSequencer().run(client, config)
        assert client.commands == []

    @pytest.mark.asyncio
    async def test_unexpected_listing_fails_listing_step(self):
        client = FakeAdminClient(listing="not json")

        with pytest.raises(ReloadStepError, match="listing loaded configurations"):
            await ReloadSequencer().run(client, two_unit_config())
