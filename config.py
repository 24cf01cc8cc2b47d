"""JSON configuration for the home monitor.

The file is parsed with the standard json module and validated with
pydantic models. Timing keys accept both the short form ("interval",
"timeout") and the explicit "*_seconds" form.

Example::

    {
      "network": {"interface": "eth0", "ping": {"interval": 6, "timeout": 2}},
      "api": {"files": {"root": "/etc/home-monitor"}, "web": {"ip": "0.0.0.0", "port": 8000}},
      "devices": {
        "srv1": {"name": "My Server", "ip": "192.168.1.1", "mac": "aa:bb:cc:dd:ee:ff",
                 "timeout": 60, "credentials": {"username": "foo", "password": "bar"}},
        "mach1": {"name": "My Machine", "ip": "192.168.1.2", "timeout": 300}
      },
      "dependencies": {"srv1": ["mach1"]}
    }
"""

import json
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    IPvAnyAddress,
    ValidationError,
    field_validator,
    model_validator,
)

from constants import (
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_CONFIRM_POLL_SECONDS,
    DEFAULT_GRACE_SECONDS,
    DEFAULT_PING_WORKERS,
    DEFAULT_SHUTDOWN_ATTEMPTS,
    DEFAULT_SSH_TIMEOUT_SECONDS,
    DEFAULT_WAKE_ATTEMPTS,
    MAC_RE,
    SSH_PORT,
)
from errors import ConfigError

REDACTED = "********"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _seconds(name: str, **kwargs):
    """Field accepting both "<name>" and "<name>_seconds"."""
    return Field(validation_alias=AliasChoices(name, f"{name}_seconds"), **kwargs)


class Ping(BaseModel):
    interval: float = _seconds("interval", gt=0)
    timeout: float = _seconds("timeout", gt=0)
    workers: int = Field(DEFAULT_PING_WORKERS, ge=1)


class Network(BaseModel):
    interface: str = ""
    ping: Ping


class Files(BaseModel):
    root: Optional[str] = None


class Web(BaseModel):
    ip: IPvAnyAddress = Field(default="0.0.0.0", validate_default=True)
    port: int = Field(0, ge=0, le=65535)

    @property
    def enabled(self) -> bool:
        return self.port != 0


class Api(BaseModel):
    files: Files = Field(default_factory=Files)
    web: Optional[Web] = None


class PrivateKey(BaseModel):
    file: str
    passphrase: Optional[str] = None


class Credentials(BaseModel):
    username: str = Field(min_length=1)
    password: Optional[str] = None
    private_key: Optional[PrivateKey] = Field(
        default=None, validation_alias=AliasChoices("private_key", "privateKey"))
    port: int = Field(SSH_PORT, ge=1, le=65535)

    @model_validator(mode="after")
    def _check_authentication(self):
        if self.password is None and self.private_key is None:
            raise ValueError("credentials need either a password or a private key")
        return self


class DeviceConfig(BaseModel):
    name: str
    ip: IPvAnyAddress
    mac: Optional[str] = None
    timeout: float = _seconds("timeout", gt=0)
    credentials: Optional[Credentials] = None

    @field_validator("mac")
    @classmethod
    def _normalise_mac(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not MAC_RE.match(value):
            raise ValueError(f"invalid MAC address '{value}'")
        return value.replace("-", ":").lower()


class Dispatch(BaseModel):
    debounce: Optional[float] = _seconds("debounce", default=None, ge=0)
    wake_attempts: int = Field(DEFAULT_WAKE_ATTEMPTS, ge=1)
    shutdown_attempts: int = Field(DEFAULT_SHUTDOWN_ATTEMPTS, ge=1)
    backoff: float = _seconds("backoff", default=DEFAULT_BACKOFF_SECONDS, ge=0)
    backoff_max: float = _seconds("backoff_max", default=DEFAULT_BACKOFF_MAX_SECONDS, ge=0)
    confirm_poll: float = _seconds("confirm_poll", default=DEFAULT_CONFIRM_POLL_SECONDS, gt=0)
    ssh_timeout: float = _seconds("ssh_timeout", default=DEFAULT_SSH_TIMEOUT_SECONDS, gt=0)
    grace: float = _seconds("grace", default=DEFAULT_GRACE_SECONDS, ge=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level '{value}'")
        return level


class Configuration(BaseModel):
    network: Network
    api: Api = Field(default_factory=Api)
    devices: dict[str, DeviceConfig] = Field(min_length=1)
    dependencies: dict[str, list[str]] = Field(default_factory=dict)
    dispatch: Dispatch = Field(default_factory=Dispatch)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def debounce(self) -> float:
        """Hysteresis window; defaults to one ping interval."""
        if self.dispatch.debounce is not None:
            return self.dispatch.debounce
        return self.network.ping.interval

    def redacted(self) -> dict[str, Any]:
        """JSON-ready dump with passwords and passphrases masked."""
        data = self.model_dump(mode="json")
        for device in data["devices"].values():
            creds = device.get("credentials")
            if not creds:
                continue
            if creds.get("password") is not None:
                creds["password"] = REDACTED
            key = creds.get("private_key")
            if key and key.get("passphrase") is not None:
                key["passphrase"] = REDACTED
        return data


def parse_config(data: dict) -> Configuration:
    """Validate an already decoded configuration mapping."""
    try:
        return Configuration.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e


def load_config(path: Union[str, Path]) -> Configuration:
    """Read and validate the JSON configuration at *path*."""
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read configuration {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"malformed JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"configuration {path} must be a JSON object")
    return parse_config(data)
