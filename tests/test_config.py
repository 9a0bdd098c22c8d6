"""Tests for sshwrap.config and sshwrap.credentials."""

import asyncio

import pytest

from sshwrap.config import HostInfo, load_hosts
from sshwrap.credentials import FixedSecret, SecretProvider, as_credential


class TestHostInfo:
    """Tests for HostInfo construction."""

    def test_defaults(self):
        info = HostInfo("example.com")
        assert info.user is None
        assert info.port is None
        assert info.control_persist == 180
        assert info.max_retry == 3
        assert info.retry_duration == 1.0
        assert info.ssh_opt == []
        assert info.ssh_command == "ssh"

    @pytest.mark.parametrize("host", ["", "   ", None, 1])
    def test_rejects_bad_host(self, host):
        with pytest.raises(ValueError, match="host must be non-empty string"):
            HostInfo(host)

    def test_rejects_zero_max_retry(self):
        with pytest.raises(ValueError, match="max_retry"):
            HostInfo("example.com", max_retry=0)

    def test_destination(self):
        assert HostInfo("example.com").destination == "example.com"
        assert HostInfo("example.com", user="alice").destination == "alice@example.com"

    def test_credentials_are_coerced(self):
        info = HostInfo("example.com", password="pw", passphrase=lambda: "ph")
        assert isinstance(info.password, FixedSecret)
        assert isinstance(info.passphrase, SecretProvider)

    def test_secrets_not_in_repr(self):
        info = HostInfo("example.com", password="hunter2")
        assert "hunter2" not in repr(info)


class TestFromDict:
    """Tests for the loose-input sanity check."""

    def test_blank_host_not_allowed(self):
        with pytest.raises(ValueError, match="empty host is not allowed"):
            HostInfo.from_dict({"host": "   ", "user": "   ", "port": 22})

    def test_host_required(self):
        with pytest.raises(ValueError, match="host is required"):
            HostInfo.from_dict({"user": "   ", "port": 22})

    def test_blank_strings_dropped(self):
        info = HostInfo.from_dict({"host": "hoge", "user": "   ", "port": 22})
        assert info.user is None
        assert info.port == 22

    def test_blank_ssh_opt_entries_dropped(self):
        info = HostInfo.from_dict({"host": "hoge", "sshOpt": ["foo", "  ", "bar"]})
        assert info.ssh_opt == ["foo", "bar"]

    def test_numeric_strings_converted(self):
        info = HostInfo.from_dict({
            "host": "hoge",
            "port": "2222",
            "ControlPersist": "60",
            "ConnectTimeout": "5",
            "maxRetry": "4",
            "retryDuration": "0.5",
        })
        assert info.port == 2222
        assert info.control_persist == 60
        assert info.connect_timeout == 5
        assert info.max_retry == 4
        assert info.retry_duration == 0.5

    def test_invalid_numbers_fall_back_to_defaults(self):
        info = HostInfo.from_dict({
            "host": "hoge",
            "port": "ssh",
            "maxRetry": 0,
            "ControlPersist": -1,
        })
        assert info.port is None
        assert info.max_retry == 3
        assert info.control_persist == 180

    def test_booleans(self):
        assert HostInfo.from_dict({"host": "h", "noStrictHostKeyChecking": "yes"}).no_strict_host_key_checking
        assert not HostInfo.from_dict({"host": "h", "noStrictHostKeyChecking": "off"}).no_strict_host_key_checking
        assert HostInfo.from_dict({"host": "h", "no_strict_host_key_checking": True}).no_strict_host_key_checking

    def test_unknown_keys_ignored(self):
        info = HostInfo.from_dict({"host": "hoge", "masterPty": object(), "color": "blue"})
        assert info.host == "hoge"


class TestLoadHosts:
    """Tests for YAML host profiles."""

    def test_missing_file(self, tmp_path):
        assert load_hosts(tmp_path / "nope.yaml") == {}

    def test_profiles(self, tmp_path):
        path = tmp_path / "hosts.yaml"
        path.write_text(
            "hosts:\n"
            "  lab:\n"
            "    host: lab.example.com\n"
            "    user: alice\n"
            "    port: 2222\n"
            "    ssh_opt: [-oServerAliveInterval=30]\n"
            "  bare:\n"
            "    host: bare.example.com\n"
        )
        hosts = load_hosts(path)
        assert set(hosts) == {"lab", "bare"}
        assert hosts["lab"].destination == "alice@lab.example.com"
        assert hosts["lab"].port == 2222
        assert hosts["lab"].ssh_opt == ["-oServerAliveInterval=30"]
        assert hosts["bare"].user is None

    def test_hosts_must_be_mapping(self, tmp_path):
        path = tmp_path / "hosts.yaml"
        path.write_text("hosts:\n  - lab\n")
        with pytest.raises(ValueError, match="must be a mapping"):
            load_hosts(path)


class TestCredentials:
    """Tests for credential sources."""

    @staticmethod
    def _run(coro):
        return asyncio.run(coro)

    def test_fixed_secret(self):
        assert self._run(FixedSecret("pw").resolve()) == "pw"

    def test_sync_provider(self):
        assert self._run(SecretProvider(lambda: "pw").resolve()) == "pw"

    def test_async_provider(self):
        async def provider():
            return "pw"

        assert self._run(SecretProvider(provider).resolve()) == "pw"

    def test_provider_error_propagates(self):
        def provider():
            raise RuntimeError("vault locked")

        with pytest.raises(RuntimeError, match="vault locked"):
            self._run(SecretProvider(provider).resolve())

    def test_as_credential(self):
        assert as_credential(None) is None
        secret = FixedSecret("x")
        assert as_credential(secret) is secret
        assert isinstance(as_credential("x"), FixedSecret)
        assert isinstance(as_credential(lambda: "x"), SecretProvider)
        with pytest.raises(TypeError):
            as_credential(42)
