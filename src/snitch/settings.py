"""Engine settings for snitch.

Settings can be built directly or loaded from a TOML file:

    [snitch]
    address = "tsdb.example.com"
    port = 8087
    protocol = "http"
    http_timeout = "5s"
    http_post_interval = "10s"
    runtime = true

    [snitch.tags]
    ksid = "my-service"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from snitch.channel import DEFAULT_CAPACITY
from snitch.errors import ConfigurationError, ScheduleParseError
from snitch.points import IDENTITY_TAG
from snitch.schedule import parse_duration

# Accepted protocol names, mapped to the transport strategy they select
PROTOCOLS = {
    "udp": "udp",
    "datagram": "udp",
    "http": "http",
}

DEFAULT_CONFIG_PATH = Path("snitch.toml")


@dataclass(frozen=True)
class Settings:
    """Configuration of one metrics engine.

    Attributes:
        address: Backend host name or IP address.
        port: Backend port.
        protocol: Transport strategy, "udp" (alias "datagram") or "http".
        http_timeout: Per-request timeout for the http strategy.
        http_post_interval: Period between two batch POSTs.
        tags: Default tags added to every point; must contain "ksid".
        raise_debug_verbosity: Log backend response bodies on failures.
        runtime: Enable the runtime monitor.
        runtime_interval: Sampling period of the runtime monitor.
        https: Use TLS for the http strategy.
        insecure_skip_verify: Skip TLS certificate verification.
        channel_capacity: Messages buffered between aggregators and transport.
        flush_workers: Threads available to run scheduled flushes.
        config_path: File the settings were loaded from, if any.
    """

    address: str = ""
    port: int = 0
    protocol: str = ""
    http_timeout: float | str | None = None
    http_post_interval: float | str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    raise_debug_verbosity: bool = False
    runtime: bool = False
    runtime_interval: float | str = 30.0
    https: bool = False
    insecure_skip_verify: bool = False
    channel_capacity: int = DEFAULT_CAPACITY
    flush_workers: int = 4
    config_path: Path | None = None

    @property
    def transport(self) -> str:
        """The transport strategy selected by protocol ("udp" or "http")."""
        return PROTOCOLS.get(str(self.protocol).lower(), "")

    @property
    def timeout_seconds(self) -> float:
        return parse_duration(self.http_timeout)

    @property
    def post_interval_seconds(self) -> float:
        return parse_duration(self.http_post_interval)

    @property
    def runtime_interval_seconds(self) -> float:
        return parse_duration(self.runtime_interval)

    def validate(self) -> None:
        """Check that the settings describe a usable engine.

        Raises:
            ConfigurationError: If any setting is missing or invalid.
        """
        if not self.address or not isinstance(self.address, str):
            raise ConfigurationError("address is required")

        if isinstance(self.port, bool) or not isinstance(self.port, int) or self.port == 0:
            raise ConfigurationError("port is required")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"port out of range: {self.port}")

        if not self.transport:
            raise ConfigurationError(
                f"Unsupported protocol {self.protocol!r}. "
                f"Supported protocols are: {', '.join(sorted(PROTOCOLS))}"
            )

        if self.transport == "http":
            self._check_duration("http_timeout", self.http_timeout)
            self._check_duration("http_post_interval", self.http_post_interval)

        if not self.tags.get(IDENTITY_TAG):
            raise ConfigurationError(f"tag {IDENTITY_TAG} is mandatory")

        if self.runtime:
            self._check_duration("runtime_interval", self.runtime_interval)

        self._check_count("channel_capacity", self.channel_capacity)
        self._check_count("flush_workers", self.flush_workers)

    @staticmethod
    def _check_count(name: str, value: Any) -> None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        if value < 1:
            raise ConfigurationError(f"{name} must be at least 1")

    @staticmethod
    def _check_duration(name: str, value: Any) -> None:
        if value is None or value == "":
            raise ConfigurationError(f"{name} is required")
        try:
            parse_duration(value)
        except ScheduleParseError as e:
            raise ConfigurationError(f"Invalid {name}: {e}") from e

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Path | None = None) -> Settings:
        """Create Settings from a dictionary.

        Args:
            data: The [snitch] table of a configuration file.
            path: The file the data came from.

        Returns:
            The settings; call validate() before use.

        Raises:
            ConfigurationError: If a value has the wrong type.
        """
        tags = data.get("tags", {})
        if not isinstance(tags, dict):
            raise ConfigurationError("tags must be a table of strings")

        known_keys = {f for f in cls.__dataclass_fields__ if f != "config_path"}
        unknown = set(data) - known_keys
        if unknown:
            raise ConfigurationError(
                f"Unknown settings: {', '.join(sorted(unknown))}"
            )

        values = {k: v for k, v in data.items() if k != "tags"}
        return cls(
            tags={str(k): str(v) for k, v in tags.items()},
            config_path=path,
            **values,
        )

    @classmethod
    def load(cls, path: Path | None = None) -> Settings:
        """Load settings from a TOML file.

        Args:
            path: Path to the config file. Defaults to ./snitch.toml.

        Returns:
            Loaded settings.

        Raises:
            FileNotFoundError: If the file does not exist.
            ConfigurationError: If the file is invalid.
        """
        if path is None:
            path = DEFAULT_CONFIG_PATH
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid config file {path}: {e}") from e

        section = data.get("snitch")
        if not isinstance(section, dict):
            raise ConfigurationError(f"Config file {path} has no [snitch] table")

        return cls.from_dict(section, path)
