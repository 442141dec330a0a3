from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path

from .icmp import MAX_PAYLOAD_SIZE


CONFIG_FILE_ENV = "ICMP_PING_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "config.ini"
ENV_PREFIX = "ICMP_PING_"

# INI section -> keys. Each key is also read from ICMP_PING_<KEY> in the environment.
SETTINGS: dict[str, tuple[str, ...]] = {
    "common": ("log_level",),
    "session": ("timeout_ms", "interval_ms", "payload_size", "identifier", "verify_checksum"),
    "transport": ("bind_host", "recv_buffer_size", "poll_interval_ms"),
}


def env_name(key: str) -> str:
    return ENV_PREFIX + key.upper()


@dataclass(frozen=True)
class _Settings:
    section: str
    ini_values: dict[str, str]

    def raw(self, key: str) -> str | None:
        env_value = os.getenv(env_name(key))
        if env_value is not None:
            return env_value
        return self.ini_values.get(key)

    def get_str(self, key: str, default: str) -> str:
        value = self.raw(key)
        return default if value is None else value

    def get_int(self, key: str, default: int, *, low: int | None = None, high: int | None = None) -> int:
        value = self.raw(key)
        result = default if value is None else int(value, 0)
        if low is not None and result < low:
            return low
        if high is not None and result > high:
            return high
        return result

    def get_optional_int(self, key: str) -> int | None:
        value = self.raw(key)
        if value is None or not value.strip():
            return None
        return int(value, 0)

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.raw(key)
        if value is None:
            return default
        return value.strip().lower() not in {"0", "false", "no", "off"}


def _config_file_path() -> tuple[Path, bool]:
    configured_path = os.getenv(CONFIG_FILE_ENV)
    if configured_path is None:
        return Path(DEFAULT_CONFIG_FILE), False
    if not configured_path.strip():
        raise ValueError(f"{CONFIG_FILE_ENV} is set but empty")
    return Path(configured_path.strip()), True


def _read_ini() -> dict[str, dict[str, str]]:
    config_path, explicit = _config_file_path()
    sections: dict[str, dict[str, str]] = {name: {} for name in SETTINGS}
    if not config_path.exists():
        if explicit:
            raise ValueError(f"config file not found: {config_path}")
        return sections

    parser = configparser.ConfigParser(interpolation=None, default_section="__unused_defaults__")
    try:
        with config_path.open("r", encoding="utf-8") as config_file:
            parser.read_file(config_file)
    except (OSError, configparser.Error) as exc:
        raise ValueError(f"failed to load config file {config_path}: {exc}") from exc

    for section_name in parser.sections():
        section = section_name.strip().lower()
        if section not in SETTINGS:
            raise ValueError(f"unknown config section [{section_name}] in {config_path}")
        for key_name, value in parser.items(section_name, raw=True):
            key = key_name.strip().lower()
            if key not in SETTINGS[section]:
                raise ValueError(f"unknown config key '{key_name}' in section [{section_name}] in {config_path}")
            sections[section][key] = value
    return sections


def _settings(section: str) -> _Settings:
    return _Settings(section=section, ini_values=_read_ini()[section])


@dataclass(frozen=True)
class CommonConfig:
    log_level: str = "INFO"


@dataclass(frozen=True)
class SessionConfig:
    timeout_ms: int = 1000
    interval_ms: int = 1000
    payload_size: int = 48
    identifier: int | None = None
    verify_checksum: bool = True


@dataclass(frozen=True)
class TransportConfig:
    bind_host: str = "0.0.0.0"
    recv_buffer_size: int = 65535
    poll_interval_ms: int = 200


@dataclass(frozen=True)
class PingConfig:
    common: CommonConfig = field(default_factory=CommonConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)


def _common_config(settings: _Settings) -> CommonConfig:
    return CommonConfig(log_level=settings.get_str("log_level", "INFO").upper())


def _session_config(settings: _Settings) -> SessionConfig:
    identifier = settings.get_optional_int("identifier")
    if identifier is not None and not 0 <= identifier <= 0xFFFF:
        raise ValueError(f"{env_name('identifier')} must be within 0..65535, got {identifier}")
    return SessionConfig(
        timeout_ms=settings.get_int("timeout_ms", 1000, low=1),
        interval_ms=settings.get_int("interval_ms", 1000, low=0),
        payload_size=settings.get_int("payload_size", 48, low=0, high=MAX_PAYLOAD_SIZE),
        identifier=identifier,
        verify_checksum=settings.get_bool("verify_checksum", True),
    )


def _transport_config(settings: _Settings) -> TransportConfig:
    return TransportConfig(
        bind_host=settings.get_str("bind_host", "0.0.0.0"),
        recv_buffer_size=settings.get_int("recv_buffer_size", 65535, low=1024),
        poll_interval_ms=settings.get_int("poll_interval_ms", 200, low=10),
    )


def load_common_config() -> CommonConfig:
    return _common_config(_settings("common"))


def load_session_config() -> SessionConfig:
    return _session_config(_settings("session"))


def load_transport_config() -> TransportConfig:
    return _transport_config(_settings("transport"))


def load_config() -> PingConfig:
    ini = _read_ini()
    return PingConfig(
        common=_common_config(_Settings("common", ini["common"])),
        session=_session_config(_Settings("session", ini["session"])),
        transport=_transport_config(_Settings("transport", ini["transport"])),
    )
