"""
Target Registry - Named Execution Targets
==========================================

Maps short aliases ("web-1", "build-box") to adapter options so callers
can say *where* by name. Targets can be loaded from:
- A JSON file
- Environment variables (XEC_TARGET_<ALIAS>_<FIELD>)

Security:
- Passwords and key material are never logged
- to_dict() masks secrets; save_to_file() drops them
"""

import os
import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Optional, Any, List

from .command import Command, LocalOptions, SSHOptions, DockerOptions, DockerTarget, RemoteDockerOptions

logger = logging.getLogger(__name__)

SECRET_FIELDS = ("password", "private_key", "passphrase")


@dataclass
class TargetConfig:
    """One named target"""
    alias: str
    type: str = "ssh"
    host: Optional[str] = None
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = None
    private_key: Optional[str] = None
    private_key_path: Optional[str] = None
    passphrase: Optional[str] = None
    container: Optional[str] = None
    user: Optional[str] = None
    workdir: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def _ssh_options(self) -> SSHOptions:
        return SSHOptions(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            private_key=self.private_key,
            private_key_path=self.private_key_path,
            passphrase=self.passphrase,
        )

    def to_adapter_options(self):
        """Build the adapter options variant for this target"""
        if self.type == "local":
            return LocalOptions()
        if self.type == "ssh":
            return self._ssh_options()
        if self.type == "docker":
            return DockerOptions(container=self.container, user=self.user, workdir=self.workdir)
        if self.type == "remote-docker":
            return RemoteDockerOptions(
                ssh=self._ssh_options(),
                docker=DockerTarget(container=self.container, user=self.user, workdir=self.workdir),
            )
        raise ValueError(f"Unknown target type: {self.type}")

    def to_dict(self) -> Dict[str, Any]:
        """Dictionary form with secrets masked"""
        data = asdict(self)
        for name in SECRET_FIELDS:
            data[name] = "***" if data[name] else None
        return data


class TargetRegistry:
    """
    Usage:
        targets = TargetRegistry()
        targets.load_from_file("~/.xec/targets.json")
        targets.load_from_env()

        result = await engine.execute(targets.command("web-1", "uptime"))
    """

    def __init__(self):
        self._targets: Dict[str, TargetConfig] = {}

    def __contains__(self, alias: str) -> bool:
        return alias in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    def add(self, target: TargetConfig) -> None:
        self._targets[target.alias] = target
        logger.info(f"Added target: {target.alias} ({target.type})")

    def remove(self, alias: str) -> bool:
        if alias in self._targets:
            del self._targets[alias]
            logger.info(f"Removed target: {alias}")
            return True
        return False

    def get(self, alias: str) -> Optional[TargetConfig]:
        return self._targets.get(alias)

    def list_targets(self) -> List[Dict[str, Any]]:
        """All targets, safe for display"""
        return [t.to_dict() for t in self._targets.values()]

    def find_by_tag(self, tag: str) -> List[TargetConfig]:
        return [t for t in self._targets.values() if tag in t.tags]

    def command(self, alias: str, command: str, **fields: Any) -> Command:
        """Command bound to the named target"""
        target = self.get(alias)
        if target is None:
            raise KeyError(f"Unknown target: {alias}")
        return Command(command=command, adapter_options=target.to_adapter_options(), **fields)

    # =========================================================
    # LOADING / SAVING
    # =========================================================

    def load_from_file(self, config_path: str) -> int:
        """
        Load targets from a JSON file:

        {
            "targets": [
                {"alias": "web-1", "type": "ssh", "host": "10.0.0.5", "username": "deploy",
                 "private_key_path": "~/.ssh/deploy_key", "tags": ["web"]},
                {"alias": "api", "type": "docker", "container": "api"}
            ]
        }

        Returns the number of targets loaded.
        """
        path = Path(config_path).expanduser()
        if not path.exists():
            logger.warning(f"Target file not found: {path}")
            return 0

        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read target file {path}: {e}")
            return 0

        loaded = 0
        for entry in data.get("targets", []):
            try:
                self.add(TargetConfig(**entry))
                loaded += 1
            except TypeError as e:
                logger.error(f"Skipping invalid target entry: {e}")

        logger.info(f"Loaded {loaded} targets from {path}")
        return loaded

    def load_from_env(self, prefix: str = "XEC_TARGET_") -> int:
        """
        Load targets from environment variables:

            XEC_TARGET_WEB1_HOST=10.0.0.5
            XEC_TARGET_WEB1_USER=deploy
            XEC_TARGET_WEB1_KEY_PATH=~/.ssh/deploy_key
            XEC_TARGET_API_TYPE=docker
            XEC_TARGET_API_CONTAINER=api

        Returns the number of targets loaded.
        """
        prop_map = {
            "TYPE": "type",
            "HOST": "host",
            "HOSTNAME": "host",
            "PORT": "port",
            "USER": "username",
            "USERNAME": "username",
            "PASSWORD": "password",
            "KEY_PATH": "private_key_path",
            "PASSPHRASE": "passphrase",
            "CONTAINER": "container",
            "WORKDIR": "workdir",
            "TAGS": "tags",
        }

        found: Dict[str, Dict[str, Any]] = {}
        for key, value in os.environ.items():
            if not key.startswith(prefix):
                continue
            parts = key[len(prefix):].split("_", 1)
            if len(parts) != 2 or parts[1] not in prop_map:
                continue
            alias = parts[0].lower()
            found.setdefault(alias, {"alias": alias})[prop_map[parts[1]]] = value

        loaded = 0
        for alias, data in found.items():
            if "host" not in data and "container" not in data:
                continue
            if "type" not in data and "host" not in data:
                data["type"] = "docker"
            try:
                if "port" in data:
                    data["port"] = int(data["port"])
                if "tags" in data:
                    data["tags"] = [t.strip() for t in data["tags"].split(",") if t.strip()]
                self.add(TargetConfig(**data))
                loaded += 1
            except (TypeError, ValueError) as e:
                logger.error(f"Failed to load target {alias} from environment: {e}")

        logger.info(f"Loaded {loaded} targets from environment")
        return loaded

    def save_to_file(self, config_path: str) -> bool:
        """Write targets to a JSON file, without secrets"""
        path = Path(config_path).expanduser()
        targets = []
        for target in self._targets.values():
            data = asdict(target)
            for name in SECRET_FIELDS:
                data.pop(name, None)
            targets.append(data)

        try:
            with open(path, "w") as f:
                json.dump({"targets": targets}, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save targets to {path}: {e}")
            return False

        logger.info(f"Saved {len(targets)} targets to {path}")
        return True
