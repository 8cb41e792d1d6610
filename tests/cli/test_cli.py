"""Tests for the upnpfwd command line interface."""

from __future__ import annotations

import ipaddress
from pathlib import Path
from unittest.mock import patch

import click
import pytest
from click.testing import CliRunner

from upnpfwd.cli import cli, parse_port_spec
from upnpfwd.forwarder.ports import (
    PROTOCOL_TCP_IPV4,
    PROTOCOL_UDP_IPV4,
    DetectedIP,
    DetectedIPStatus,
    ForwardPort,
    ForwardPortStatus,
    PortStatusCode,
)
from upnpfwd.models import LogLevel

pytestmark = [pytest.mark.cli]


class FakeForwarder:
    """Forwarder double driven by class attributes."""

    bound = True
    last: FakeForwarder | None = None

    def __init__(self, config, control_point=None):
        self.config = config
        self.ports: frozenset[ForwardPort] = frozenset()
        self.terminated = False
        FakeForwarder.last = self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.terminated = True

    async def on_change_public_ports(self, ports, callback):
        self.ports = frozenset(ports)
        for port in sorted(ports):
            callback.port_forward_status(
                {
                    port: ForwardPortStatus(
                        PortStatusCode.MAYBE_SUCCESS,
                        "Port apparently forwarded by UPnP",
                        port.external_port,
                    )
                }
            )

    async def wait_until_bound(self, timeout=None):
        return self.bound

    async def get_address(self):
        return [
            DetectedIP(
                ipaddress.ip_address("93.184.216.34"), DetectedIPStatus.FULL_INTERNET
            )
        ]

    async def get_upstream_max_bit_rate(self):
        return 1000000

    async def get_downstream_max_bit_rate(self):
        return -1


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(Path, "home", lambda: tmp_path / "home")
    return CliRunner()


@pytest.fixture
def fake_forwarder():
    FakeForwarder.bound = True
    FakeForwarder.last = None
    with patch("upnpfwd.cli.UPnPForwarder", FakeForwarder):
        yield FakeForwarder


class TestParsePortSpec:
    def test_full_spec(self):
        assert parse_port_spec("web:tcp:8080:80") == ForwardPort(
            "web", False, PROTOCOL_TCP_IPV4, 8080, 80
        )

    def test_external_defaults_to_internal(self):
        assert parse_port_spec("dns:UDP:5353") == ForwardPort(
            "dns", False, PROTOCOL_UDP_IPV4, 5353, 5353
        )

    @pytest.mark.parametrize(
        "spec",
        ["web", "web:tcp", ":tcp:80", "web:sctp:80", "web:tcp:http", "web:tcp:0", "a:tcp:1:2:3"],
    )
    def test_invalid(self, spec):
        with pytest.raises(click.BadParameter):
            parse_port_spec(spec)


class TestForwardCommand:
    def test_forward_reports_statuses(self, runner, fake_forwarder):
        result = runner.invoke(
            cli, ["forward", "web:tcp:8080:80", "dns:udp:5353", "--duration", "0"]
        )

        assert result.exit_code == 0, result.output
        assert "web TCP 8080 -> 80: Port apparently forwarded by UPnP" in result.output
        assert "dns UDP 5353 -> 5353" in result.output
        forwarder = fake_forwarder.last
        assert {p.name for p in forwarder.ports} == {"web", "dns"}
        assert forwarder.terminated

    def test_forward_requires_ports(self, runner, fake_forwarder):
        result = runner.invoke(cli, ["forward"])
        assert result.exit_code != 0

    def test_forward_rejects_bad_spec(self, runner, fake_forwarder):
        result = runner.invoke(cli, ["forward", "web:icmp:80"])
        assert result.exit_code != 0
        assert "unknown protocol" in result.output


class TestAddressCommand:
    def test_address(self, runner, fake_forwarder):
        result = runner.invoke(cli, ["address", "--timeout", "0.1"])

        assert result.exit_code == 0, result.output
        assert "93.184.216.34 (full_internet)" in result.output
        assert "1000000 bit/s" in result.output
        assert "Downstream: unknown" in result.output

    def test_no_router(self, runner, fake_forwarder):
        fake_forwarder.bound = False
        result = runner.invoke(cli, ["address", "--timeout", "0.1"])

        assert result.exit_code == 1
        assert "No usable UPnP Internet Gateway Device found" in result.output


class TestGlobalOptions:
    def test_config_file(self, runner, fake_forwarder, tmp_path):
        config_file = tmp_path / "custom.toml"
        config_file.write_text('[forwarder]\ndescription_prefix = "Test "\n')

        result = runner.invoke(
            cli, ["--config", str(config_file), "forward", "web:tcp:80", "--duration", "0"]
        )

        assert result.exit_code == 0, result.output
        assert fake_forwarder.last.config.forwarder.description_prefix == "Test "

    def test_invalid_config_file(self, runner, fake_forwarder, tmp_path):
        config_file = tmp_path / "bad.toml"
        config_file.write_text("[forwarder]\nmapping_attempts = 0\n")

        result = runner.invoke(cli, ["--config", str(config_file), "address"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_log_level_override(self, runner, fake_forwarder):
        result = runner.invoke(
            cli, ["--log-level", "debug", "forward", "web:tcp:80", "--duration", "0"]
        )

        assert result.exit_code == 0, result.output
        assert fake_forwarder.last.config.observability.log_level is LogLevel.DEBUG
