"""Service configuration read from environment variables."""

from __future__ import annotations

import os
import re
import socket
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlsplit

from .logger import get_logger

_log = get_logger("config")

_INT_RE = re.compile(r"[+-]?\d+")


@dataclass
class AdNormalizerConfig:
    encore_url: str = ""
    bucket: str = ""
    ad_server_url: str = ""
    valkey_url: str = ""
    valkey_cluster: bool = False
    osc_token: str = ""
    in_flight_ttl: int = 0
    key_field: str = ""
    key_regex: str = ""
    encore_profile: str = ""
    jit_package: bool = False
    packaging_queue_name: str = ""
    root_url: str = ""
    bucket_url: str = ""
    asset_server_url: str = ""
    version: str = ""
    instance_id: str = ""
    environment: str = ""
    port: int = 0


class ConfigError(Exception):
    """One or more configuration values are missing or invalid."""

    def __init__(self, errors: list[str], config: AdNormalizerConfig) -> None:
        super().__init__("\n".join(errors))
        self.errors = errors
        self.config = config


def _parse_url(raw: str) -> str:
    trimmed = raw.removesuffix("/")
    parts = urlsplit(trimmed)
    parts.port  # validates the port
    return trimmed


def _parse_int(raw: str) -> int:
    if not _INT_RE.fullmatch(raw):
        raise ValueError(f"invalid integer {raw!r}")
    return int(raw)


def _hostname(url: str) -> str:
    host = urlsplit(url).netloc.rpartition("@")[2]
    if host.startswith("["):
        return host[1:].partition("]")[0]
    return host.partition(":")[0]


def _required_url(env: Mapping[str, str], name: str, errors: list[str]) -> str | None:
    raw = env.get(name)
    if raw is None:
        _log.error(f"No environment variable {name} was found")
        errors.append(f"missing {name} environment variable")
        return None
    try:
        return _parse_url(raw)
    except ValueError as exc:
        _log.error(f"Failed to parse {name}", extra={"error": str(exc)})
        errors.append(f"invalid {name} format")
        return None


def read_config(environ: Mapping[str, str] | None = None) -> AdNormalizerConfig:
    """Read the configuration, raising ConfigError if anything required is wrong."""
    env = os.environ if environ is None else environ
    conf = AdNormalizerConfig()
    errors: list[str] = []

    if (url := _required_url(env, "ENCORE_URL", errors)) is not None:
        conf.encore_url = url

    valkey_url = env.get("REDIS_URL")
    if valkey_url is None:
        _log.error("No environment variable VALKEY_URL was found")
        errors.append("missing VALKEY_URL environment variable")
    else:
        conf.valkey_url = valkey_url
    conf.valkey_cluster = env.get("REDIS_CLUSTER") == "true"

    if (url := _required_url(env, "AD_SERVER_URL", errors)) is not None:
        conf.ad_server_url = url

    port = env.get("PORT")
    conf.port = 8000
    if port is None:
        _log.info("No environment variable PORT was found, using default 8000")
    else:
        try:
            conf.port = _parse_int(port)
        except ValueError as exc:
            _log.error("Failed to parse PORT", extra={"error": str(exc)})
            errors.append("invalid PORT format")

    if (url := _required_url(env, "OUTPUT_BUCKET_URL", errors)) is not None:
        conf.bucket = _hostname(url) if urlsplit(url).path else ""
        conf.bucket_url = url

    osc_token = env.get("OSC_ACCESS_TOKEN")
    if osc_token is None:
        _log.error("No environment variable OSC_ACCESS_TOKEN was found")
    else:
        conf.osc_token = osc_token

    conf.key_field = env.get("KEY_FIELD", "universalAdId")
    conf.key_regex = env.get("KEY_REGEX", "[^a-zA-Z0-9]")
    conf.encore_profile = env.get("ENCORE_PROFILE", "program")

    if (url := _required_url(env, "ASSET_SERVER_URL", errors)) is not None:
        conf.asset_server_url = url

    conf.jit_package = env.get("JIT_PACKAGE") == "true"
    _log.debug("JIT packaging enabled", extra={"enabled": conf.jit_package})

    if (url := _required_url(env, "ROOT_URL", errors)) is not None:
        conf.root_url = url

    conf.packaging_queue_name = env.get("PACKAGING_QUEUE", "package")

    ttl = env.get("IN_FLIGHT_TTL")
    if ttl is None:
        conf.in_flight_ttl = 60 * 60
    else:
        try:
            conf.in_flight_ttl = _parse_int(ttl)
        except ValueError as exc:
            _log.error("Failed to parse IN_FLIGHT_TTL", extra={"error": str(exc)})
            errors.append("invalid IN_FLIGHT_TTL format")

    conf.version = env.get("VERSION", "unknown")

    instance_id = env.get("INSTANCEID")
    if instance_id is None:
        _log.info("No environment variable INSTANCEID found, using hostname")
        try:
            instance_id = socket.gethostname()
        except OSError:
            _log.error("Could not get hostname, generating random InstanceID")
            instance_id = uuid.uuid4().hex
    conf.instance_id = instance_id

    conf.environment = env.get("ENVIRONMENT", "")

    if errors:
        raise ConfigError(errors, conf)
    return conf