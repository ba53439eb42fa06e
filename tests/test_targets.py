import json

import pytest

from xec_engine.command import LocalOptions, SSHOptions, DockerOptions, RemoteDockerOptions
from xec_engine.targets import TargetConfig, TargetRegistry


@pytest.fixture
def registry():
    registry = TargetRegistry()
    registry.add(TargetConfig(alias="web-1", host="10.0.0.5", username="deploy", password="s3cret", tags=["web"]))
    registry.add(TargetConfig(alias="api", type="docker", container="api", tags=["web", "docker"]))
    return registry


class TestTargetConfig:
    def test_adapter_options_per_type(self):
        assert isinstance(TargetConfig(alias="here", type="local").to_adapter_options(), LocalOptions)

        ssh = TargetConfig(alias="web", host="h", username="u", private_key_path="~/.ssh/k").to_adapter_options()
        assert isinstance(ssh, SSHOptions)
        assert ssh.private_key_path == "~/.ssh/k"

        docker = TargetConfig(alias="api", type="docker", container="api", user="app").to_adapter_options()
        assert isinstance(docker, DockerOptions)
        assert docker.user == "app"

        remote = TargetConfig(alias="r", type="remote-docker", host="h", username="u", container="db").to_adapter_options()
        assert isinstance(remote, RemoteDockerOptions)
        assert remote.ssh.host == "h"
        assert remote.docker.container == "db"

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            TargetConfig(alias="x", type="k8s").to_adapter_options()

    def test_to_dict_masks_secrets(self):
        data = TargetConfig(alias="web", host="h", password="s3cret").to_dict()

        assert data["password"] == "***"
        assert data["passphrase"] is None


class TestRegistry:
    def test_lookup(self, registry):
        assert "web-1" in registry
        assert len(registry) == 2
        assert registry.get("api").container == "api"
        assert registry.get("missing") is None
        assert [t.alias for t in registry.find_by_tag("docker")] == ["api"]

    def test_list_targets_hides_secrets(self, registry):
        listed = registry.list_targets()

        assert "s3cret" not in json.dumps(listed)

    def test_remove(self, registry):
        assert registry.remove("api")
        assert not registry.remove("api")
        assert "api" not in registry

    def test_command_bound_to_target(self, registry):
        command = registry.command("web-1", "uptime", timeout=5)

        assert command.target_type == "ssh"
        assert command.adapter_options.host == "10.0.0.5"
        assert command.timeout == 5

        with pytest.raises(KeyError):
            registry.command("nope", "uptime")


class TestLoading:
    def test_load_from_file(self, tmp_path):
        path = tmp_path / "targets.json"
        path.write_text(json.dumps({"targets": [
            {"alias": "web-1", "host": "10.0.0.5", "username": "deploy"},
            {"alias": "api", "type": "docker", "container": "api"},
            {"alias": "bad", "hostname": "typo"},
        ]}))
        registry = TargetRegistry()

        assert registry.load_from_file(str(path)) == 2
        assert registry.get("api").type == "docker"

    def test_load_missing_or_invalid_file(self, tmp_path):
        broken = tmp_path / "broken.json"
        broken.write_text("{not json")
        registry = TargetRegistry()

        assert registry.load_from_file(str(tmp_path / "missing.json")) == 0
        assert registry.load_from_file(str(broken)) == 0

    def test_save_drops_secrets(self, registry, tmp_path):
        path = tmp_path / "out.json"

        assert registry.save_to_file(str(path))

        saved = json.loads(path.read_text())
        assert "password" not in saved["targets"][0]
        reloaded = TargetRegistry()
        assert reloaded.load_from_file(str(path)) == 2
        assert reloaded.get("web-1").password is None

    def test_save_to_unwritable_path(self, registry, tmp_path):
        assert not registry.save_to_file(str(tmp_path / "missing-dir" / "out.json"))

    def test_load_from_env(self, monkeypatch):
        monkeypatch.setenv("TGT_WEB1_HOST", "10.0.0.5")
        monkeypatch.setenv("TGT_WEB1_USER", "deploy")
        monkeypatch.setenv("TGT_WEB1_PORT", "2222")
        monkeypatch.setenv("TGT_WEB1_KEY_PATH", "~/.ssh/deploy")
        monkeypatch.setenv("TGT_WEB1_TAGS", "web, prod")
        monkeypatch.setenv("TGT_API_CONTAINER", "api")
        monkeypatch.setenv("TGT_LONELY_USER", "nobody")
        monkeypatch.setenv("TGT_BROKEN_HOST", "h")
        monkeypatch.setenv("TGT_BROKEN_PORT", "twenty-two")
        registry = TargetRegistry()

        assert registry.load_from_env("TGT_") == 2

        web = registry.get("web1")
        assert (web.host, web.username, web.port) == ("10.0.0.5", "deploy", 2222)
        assert web.private_key_path == "~/.ssh/deploy"
        assert web.tags == ["web", "prod"]
        assert registry.get("api").type == "docker"
        assert "lonely" not in registry
        assert "broken" not in registry
