# core/config_manager.py
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from yarl import URL

logger = logging.getLogger(__name__)

# Prefix for environment variables which override unset flags
ENV_PREFIX = "ALMA_RFID_INTERCEPT"

DEFAULT_ADDRESS = ":53535"
DEFAULT_PROXY = "http://localhost:21645"
# Effectively, this is your Alma domain
DEFAULT_ORIGIN = "https://ocul-crl.alma.exlibrisgroup.com"


class ConfigError(ValueError):
    """Configuration cannot be turned into a working proxy"""


@dataclass(frozen=True)
class ProxyConfig:
    """Immutable proxy settings, built once at startup"""
    bind_host: str
    bind_port: int
    backend_url: URL
    allowed_origin: str
    log_file: Optional[str] = None

    @property
    def bind_address(self) -> str:
        host = f"[{self.bind_host}]" if ':' in self.bind_host else self.bind_host
        return f"{host}:{self.bind_port}"


def env_name(flag_name: str) -> str:
    """Environment variable consulted when the flag is unset"""
    return ENV_PREFIX + flag_name.upper().replace('-', '_')


def parse_bind_address(address: str) -> Tuple[str, int]:
    """
    Splits "host:port" into its parts.

    An empty host (":53535") means every interface; IPv6 hosts are
    written in brackets ("[::1]:53535").
    """
    host, sep, port = address.rpartition(':')
    if not sep:
        raise ConfigError(f"Invalid bind address {address!r}: missing port")

    if host.startswith('['):
        if not host.endswith(']'):
            raise ConfigError(f"Invalid bind address {address!r}: unterminated IPv6 host")
        host = host[1:-1]
    elif ':' in host:
        raise ConfigError(f"Invalid bind address {address!r}: IPv6 hosts must be in brackets")

    try:
        port_number = int(port)
    except ValueError:
        raise ConfigError(f"Invalid bind address {address!r}: port is not a number") from None

    if not 0 <= port_number <= 65535:
        raise ConfigError(f"Invalid bind address {address!r}: port out of range")

    return host, port_number


def parse_backend_url(value: str) -> URL:
    """Parses the proxied address; it must be an absolute http(s) URL"""
    try:
        url = URL(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid proxy address {value!r}: {e}") from e

    if not url.is_absolute() or url.scheme not in ('http', 'https') or not url.host:
        raise ConfigError(f"Invalid proxy address {value!r}: expected an absolute http(s) URL")

    return url


class ConfigManager:
    """
    Merges configuration sources into a ProxyConfig.

    Precedence, highest first: command line flags, environment variables
    (ENV_PREFIX + upper-cased flag name), the optional JSON config file,
    the built-in defaults.
    """

    def __init__(self, config_path: Optional[str] = None, environ=None):
        self.config_path = Path(config_path) if config_path else None
        self.environ = os.environ if environ is None else environ
        self.config = self._load_config()

    def _get_default_config(self) -> dict:
        """Returns the default configuration"""
        return {
            'proxy': {
                'address': DEFAULT_ADDRESS,
                'proxy': DEFAULT_PROXY,
                'origin': DEFAULT_ORIGIN,
            },
            'logging': {
                'log_file': None,
            },
        }

    def _load_config(self) -> Dict[str, Any]:
        """Loads the JSON config file on top of the defaults"""
        default_config = self._get_default_config()

        if self.config_path is None:
            return default_config

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Unable to read config file {self.config_path}: {e}") from e

        if not isinstance(loaded_config, dict):
            raise ConfigError(f"Config file {self.config_path} must contain a JSON object")

        logger.debug(f"📄 Loaded config file {self.config_path}")
        return self._deep_merge(default_config, loaded_config)

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Recursive dictionary merge"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Gets a value by dotted key"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def resolve(self, flag_name: str, flag_value: Optional[str], key: str) -> Any:
        """Picks the flag value, then the environment, then the config file"""
        if flag_value is not None:
            return flag_value

        env_value = self.environ.get(env_name(flag_name))
        if env_value:
            return env_value

        return self.get(key)

    def build(self, address=None, proxy=None, origin=None, log_file=None) -> ProxyConfig:
        """Builds the immutable ProxyConfig, failing fast on bad values"""
        bind_host, bind_port = parse_bind_address(
            self.resolve('address', address, 'proxy.address'))
        backend_url = parse_backend_url(self.resolve('proxy', proxy, 'proxy.proxy'))

        allowed_origin = self.resolve('origin', origin, 'proxy.origin')
        if not allowed_origin:
            raise ConfigError("Allowed origin must not be empty")

        return ProxyConfig(
            bind_host=bind_host,
            bind_port=bind_port,
            backend_url=backend_url,
            allowed_origin=allowed_origin,
            log_file=self.resolve('log-file', log_file, 'logging.log_file'),
        )
