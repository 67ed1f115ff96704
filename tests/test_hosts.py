"""Tests for remote host definitions."""

from __future__ import annotations

from pathlib import Path

import pytest

from boxkeeper.errors import ConfigError, HostExistsError, HostNotFoundError
from boxkeeper.hosts import HostConfig, HostsFile, load_hosts, save_hosts


class TestHostConfig:
    def test_ssh_args(self) -> None:
        host = HostConfig("prod.example.com", user="ops", port=2222, identity_file="~/.ssh/k")
        assert host.ssh_args() == ["-i", "~/.ssh/k", "-p", "2222", "ops@prod.example.com"]

    def test_format_omits_default_port(self) -> None:
        host = HostConfig("prod.example.com", user="ops", port=22, jump_host="bastion")
        assert host.format_ssh_command() == "ssh -J bastion ops@prod.example.com"

    def test_format_with_port(self) -> None:
        host = HostConfig("prod.example.com", user="ops", port=2222)
        assert host.format_ssh_command() == "ssh -p 2222 ops@prod.example.com"


class TestHostsFile:
    def test_add_and_get(self) -> None:
        hosts = HostsFile()
        hosts.add_host("prod", HostConfig("p", user="u"))
        assert hosts.get_host("prod").hostname == "p"

    def test_duplicate_add(self) -> None:
        hosts = HostsFile(hosts={"prod": HostConfig("p", user="u")})
        with pytest.raises(HostExistsError):
            hosts.add_host("prod", HostConfig("q", user="u"))

    def test_remove_clears_default(self) -> None:
        hosts = HostsFile(default_host="prod", hosts={"prod": HostConfig("p", user="u")})
        hosts.remove_host("prod")
        assert hosts.default_host is None

    def test_unknown_host(self) -> None:
        hosts = HostsFile()
        with pytest.raises(HostNotFoundError):
            hosts.get_host("prod")
        with pytest.raises(HostNotFoundError):
            hosts.remove_host("prod")
        with pytest.raises(HostNotFoundError):
            hosts.set_default("prod")

    def test_clear_default(self) -> None:
        hosts = HostsFile(default_host="prod", hosts={"prod": HostConfig("p", user="u")})
        hosts.set_default(None)
        assert hosts.default_host is None


class TestStorage:
    def test_missing_file(self) -> None:
        assert load_hosts().hosts == {}

    def test_round_trip(self) -> None:
        hosts = HostsFile(default_host="b")
        hosts.hosts["b"] = HostConfig("b.example.com", user="u", groups=["eu"])
        hosts.hosts["a"] = HostConfig("a.example.com", user="u", port=2200)
        save_hosts(hosts)
        loaded = load_hosts()
        assert loaded.host_names() == ["a", "b"]
        assert loaded.default_host == "b"
        assert loaded.get_host("a").port == 2200
        assert loaded.get_host("b").groups == ["eu"]

    def test_invalid_entry(self, isolated_dirs: tuple[Path, Path]) -> None:
        config_dir, _ = isolated_dirs
        config_dir.mkdir(parents=True)
        (config_dir / "hosts.json").write_text('{"hosts": {"x": {"bogus": 1}}}')
        with pytest.raises(ConfigError):
            load_hosts()
