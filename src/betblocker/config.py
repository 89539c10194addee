import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

import tomli_w

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

CONFIG_DIR = Path.home() / ".config" / "betblocker"
CONFIG_FILE = CONFIG_DIR / "config.toml"
LOG_FILE = CONFIG_DIR / "betblocker.log"

CONFIG_PATH_ENV = "BETBLOCKER_CONFIG"

# Environment variables that override values from the config file
ENV_OVERRIDES = {
    "NEXTDNS_API_KEY": "api_key",
    "NEXTDNS_PROFILE_ID": "profile_id",
    "REMOVAL_PASSWORD": "removal_password",
    "SIGNING_CERT_PATH": "signing_cert",
    "SIGNING_KEY_PATH": "signing_key",
    "SIGNING_CHAIN_PATH": "signing_chain",
}


@dataclass(frozen=True)
class Config:
    # NextDNS
    api_key: str = ""
    api_url: str = "https://api.nextdns.io"
    api_timeout: float = 10.0
    profile_id: str = ""  # Default filtering profile for single-profile deployments
    dns_host: str = "dns.nextdns.io"

    # Configuration profile
    organization: str = "BetBlocker"
    identifier_prefix: str = "com.betblocker.nextdns"
    removal_password: str = ""

    # Signing
    signing_cert: str = ""
    signing_key: str = ""
    signing_chain: str = ""
    openssl_bin: str = "openssl"
    signing_timeout: float = 15.0

    # Server
    listen_address: str = "127.0.0.1"
    listen_port: int = 8080

    # Logging
    log_level: str = "INFO"
    log_max_size_mb: int = 10

    @property
    def signing_configured(self) -> bool:
        return bool(self.signing_cert and self.signing_key)


def _config_to_dict(config: Config) -> dict[str, Any]:
    return {
        "nextdns": {
            "api_key": config.api_key,
            "api_url": config.api_url,
            "timeout": config.api_timeout,
            "profile_id": config.profile_id,
            "dns_host": config.dns_host,
        },
        "profile": {
            "organization": config.organization,
            "identifier_prefix": config.identifier_prefix,
            "removal_password": config.removal_password,
        },
        "signing": {
            "cert": config.signing_cert,
            "key": config.signing_key,
            "chain": config.signing_chain,
            "openssl": config.openssl_bin,
            "timeout": config.signing_timeout,
        },
        "server": {
            "listen_address": config.listen_address,
            "listen_port": config.listen_port,
        },
        "logging": {
            "level": config.log_level,
            "max_size_mb": config.log_max_size_mb,
        },
    }


# (section, key in file) -> Config field
_FILE_KEYS = {
    ("nextdns", "api_key"): "api_key",
    ("nextdns", "api_url"): "api_url",
    ("nextdns", "timeout"): "api_timeout",
    ("nextdns", "profile_id"): "profile_id",
    ("nextdns", "dns_host"): "dns_host",
    ("profile", "organization"): "organization",
    ("profile", "identifier_prefix"): "identifier_prefix",
    ("profile", "removal_password"): "removal_password",
    ("signing", "cert"): "signing_cert",
    ("signing", "key"): "signing_key",
    ("signing", "chain"): "signing_chain",
    ("signing", "openssl"): "openssl_bin",
    ("signing", "timeout"): "signing_timeout",
    ("server", "listen_address"): "listen_address",
    ("server", "listen_port"): "listen_port",
    ("logging", "level"): "log_level",
    ("logging", "max_size_mb"): "log_max_size_mb",
}


def _dict_to_config(data: dict[str, Any]) -> Config:
    values: dict[str, Any] = {}
    for (section, key), field_name in _FILE_KEYS.items():
        table = data.get(section)
        if isinstance(table, dict) and key in table:
            values[field_name] = table[key]
    return Config(**values)


def apply_env_overrides(config: Config, environ: Mapping[str, str]) -> Config:
    """Return a copy of config with non-empty environment overrides applied."""
    overrides = {
        field_name: environ[var]
        for var, field_name in ENV_OVERRIDES.items()
        if environ.get(var)
    }
    return replace(config, **overrides) if overrides else config


def config_path(environ: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if environ is None else environ
    override = environ.get(CONFIG_PATH_ENV)
    return Path(override).expanduser() if override else CONFIG_FILE


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> Config:
    """Load config from disk (defaults if missing), then apply env overrides.

    Called once at process start; the result is passed to every component.
    """
    environ = os.environ if environ is None else environ
    path = path or config_path(environ)
    if path.exists():
        config = _dict_to_config(tomllib.loads(path.read_text()))
    else:
        config = Config()
    return apply_env_overrides(config, environ)


def save_config(config: Config, path: Path | None = None) -> Path:
    """Save config to disk. Returns the path written."""
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(tomli_w.dumps(_config_to_dict(config)).encode())
    return path
