# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""API key configuration stored in ~/.asc-client/config.json."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .client import ApiAuth, MediaError

CONFIG_DIR = Path.home() / ".asc-client"
CONFIG_FILE = CONFIG_DIR / "config.json"

# Environment variables override the file
ENV_KEYS = {
    "key_id": "ASC_KEY_ID",
    "issuer_id": "ASC_ISSUER_ID",
    "private_key_path": "ASC_PRIVATE_KEY_PATH",
}
FILE_KEYS = {
    "key_id": "keyId",
    "issuer_id": "issuerId",
    "private_key_path": "privateKeyPath",
}


class ConfigError(MediaError):
    pass


@dataclass
class Config:
    key_id: str
    issuer_id: str
    private_key_path: str
    endpoint: Optional[str] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> Config:
        path = Path(path) if path else CONFIG_FILE
        values: dict[str, str] = {}
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except ValueError as e:
                raise ConfigError(f"Invalid configuration file {path}: {e}") from e
            values = {attr: data[key] for attr, key in FILE_KEYS.items() if data.get(key)}
            if data.get("endpoint"):
                values["endpoint"] = data["endpoint"]

        for attr, env in ENV_KEYS.items():
            if os.getenv(env):
                values[attr] = os.environ[env]
        if os.getenv("ASC_ENDPOINT"):
            values["endpoint"] = os.environ["ASC_ENDPOINT"]

        if not values:
            raise ConfigError(
                f"No configuration found at {path}.\n"
                "Run 'ascmedia configure' to set up your API credentials."
            )
        missing = [FILE_KEYS[a] for a in FILE_KEYS if a not in values]
        if missing:
            raise ConfigError(f"Configuration is missing: {', '.join(missing)}")
        return cls(**values)

    def save(self, path: Optional[Path] = None) -> Path:
        path = Path(path) if path else CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {key: getattr(self, attr) for attr, key in FILE_KEYS.items()}
        if self.endpoint:
            data["endpoint"] = self.endpoint
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # an existing file keeps its old mode through O_CREAT
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        return path

    def private_key(self) -> str:
        key_path = Path(self.private_key_path).expanduser()
        if not key_path.is_file():
            raise ConfigError(f"Private key file not found at {key_path}")
        return key_path.read_text(encoding="utf-8")

    def to_auth(self, io_timeout_secs: int = 60) -> ApiAuth:
        if self.endpoint:
            return ApiAuth.with_endpoint(
                self.endpoint,
                self.key_id,
                self.issuer_id,
                self.private_key(),
                io_timeout_secs=io_timeout_secs,
            )
        return ApiAuth(
            key_id=self.key_id,
            issuer_id=self.issuer_id,
            private_key=self.private_key(),
            io_timeout_secs=io_timeout_secs,
        )
