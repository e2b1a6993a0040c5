import pytest

from varnishconf.adapters.unix_control import UnixSocketControlClient
from varnishconf.factory import admin_target, create_admin_client, create_control_server
from varnishconf.config import Settings
from conftest import make_resolved_config


class TestAdminTarget:
    def test_wildcard_ipv4(self):
        assert admin_target("0.0.0.0:2000") == ("127.0.0.1", 2000)

    def test_wildcard_ipv6(self):
        assert admin_target("[::]:6082") == ("::1", 6082)

    def test_explicit_host(self):
        assert admin_target("10.1.2.3:6082") == ("10.1.2.3", 6082)

    def test_default_port(self):
        assert admin_target("localhost") == ("localhost", 2000)


class TestCreateAdminClient:
    @pytest.mark.asyncio
    async def test_reads_secret_file(self, tmp_path):
        secret_file = tmp_path / "secret"
        secret_file.write_text("s3cret")
        config = make_resolved_config(admin_secret_file=str(secret_file), admin_listen_address="0.0.0.0:1")
        client = create_admin_client(Settings(reconnect_delay=5), config)
        try:
            assert client.address == "127.0.0.1:1"
        finally:
            await client.close()


class TestCreateControlServer:
    @pytest.mark.asyncio
    async def test_serves_handler_on_configured_socket(self, tmp_path):
        socket_file = tmp_path / "control.sock"

        async def handler(command):
            return {"seen": command.action}

        server = create_control_server(Settings(control_socket=str(socket_file)), handler)
        await server.start()
        try:
            result = await UnixSocketControlClient(socket_path=str(socket_file)).send_command("status")
            assert result == {"status": "ok", "action": "status", "seen": "status"}
        finally:
            await server.stop()
        assert not socket_file.exists()
