"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Versioned cache namespace name. Bump the suffix to supersede an old shell.
DEFAULT_CACHE_NAME = "topview-shell-v1"

# Shell asset set populated at install time, in order.
DEFAULT_SHELL_ASSETS = ("/", "/index.html", "/manifest.json")

DEFAULT_HEALTH_PATH = "/__shellcache__/health"


def _get_default_cache_path() -> str:
    """Get the default cache store path using XDG-compliant directory.

    Returns ~/.local/share/shellcache/cache.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "shellcache" / "cache.db")


DEFAULT_CACHE_PATH = _get_default_cache_path()


@dataclass(frozen=True)
class OriginConfig:
    """Configuration for the upstream origin serving the application shell."""

    url: str
    timeout: int = 10  # socket timeout for outbound requests, seconds

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Origin URL cannot be empty")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Origin URL must start with http:// or https://, got '{self.url}'")
        if self.timeout < 1:
            raise ConfigError(f"Origin timeout must be at least 1 second (got {self.timeout})")

    def resolve(self, path: str) -> str:
        """Return the absolute URL for a path relative to the origin."""
        return self.url.rstrip("/") + "/" + path.lstrip("/")


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for the durable cache namespace."""

    name: str = DEFAULT_CACHE_NAME
    path: str = DEFAULT_CACHE_PATH
    assets: tuple[str, ...] = DEFAULT_SHELL_ASSETS

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("Cache name cannot be empty")
        if not self.path:
            raise ConfigError("Cache path cannot be empty")
        if not self.assets:
            raise ConfigError("At least one shell asset must be configured")
        for asset in self.assets:
            if not isinstance(asset, str) or not asset.startswith("/"):
                raise ConfigError(f"Shell asset must be a path starting with '/', got {asset!r}")


@dataclass(frozen=True)
class WorkerConfig:
    """Configuration for the shell worker lifecycle."""

    skip_waiting: bool = True  # activate right after a successful install
    install_retries: int = 3  # extra install attempts made by the proxy host
    install_retry_delay: float = 5.0  # seconds between install attempts

    def __post_init__(self) -> None:
        if self.install_retries < 0:
            raise ConfigError(f"Install retries must be non-negative (got {self.install_retries})")
        if self.install_retry_delay < 0:
            raise ConfigError(f"Install retry delay must be non-negative (got {self.install_retry_delay})")


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the reverse proxy server."""

    host: str = ""
    port: int = 8080
    health_path: str = DEFAULT_HEALTH_PATH

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Proxy port must be between 1 and 65535, got {self.port}")
        if not self.health_path.startswith("/"):
            raise ConfigError(f"Health path must start with '/', got '{self.health_path}'")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    origin: OriginConfig
    cache: CacheConfig = field(default_factory=CacheConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)

    @property
    def asset_urls(self) -> list[str]:
        """Absolute URLs of the shell asset set, duplicates removed."""
        urls: list[str] = []
        for asset in self.cache.assets:
            url = self.origin.resolve(asset)
            if url not in urls:
                urls.append(url)
        return urls


def _section(data: dict, key: str) -> dict | None:
    value = data.get(key)
    if value is not None and not isinstance(value, dict):
        raise ConfigError(f"'{key}' section must be a dictionary")
    return value


def _parse_origin_config(data: dict | None) -> OriginConfig:
    """Parse origin configuration section."""
    if data is None:
        raise ConfigError("Configuration must contain an 'origin' section")

    url = data.get("url")
    if url is None:
        raise ConfigError("'origin' section is missing 'url' field")

    try:
        timeout = int(data.get("timeout", 10))
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid origin timeout: {data.get('timeout')!r}")

    return OriginConfig(url=str(url), timeout=timeout)


def _parse_cache_config(data: dict | None) -> CacheConfig:
    """Parse cache configuration section."""
    if data is None:
        return CacheConfig()

    assets = data.get("assets", list(DEFAULT_SHELL_ASSETS))
    if not isinstance(assets, list):
        raise ConfigError("'cache.assets' must be a list")

    path = data.get("path", DEFAULT_CACHE_PATH)

    return CacheConfig(
        name=str(data.get("name", DEFAULT_CACHE_NAME)),
        path=os.path.expanduser(str(path)),
        assets=tuple(assets),
    )


def _parse_worker_config(data: dict | None) -> WorkerConfig:
    """Parse worker configuration section."""
    if data is None:
        return WorkerConfig()

    try:
        return WorkerConfig(
            skip_waiting=bool(data.get("skip_waiting", True)),
            install_retries=int(data.get("install_retries", 3)),
            install_retry_delay=float(data.get("install_retry_delay", 5.0)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid 'worker' section: {e}")


def _parse_proxy_config(data: dict | None) -> ProxyConfig:
    """Parse proxy configuration section."""
    if data is None:
        return ProxyConfig()

    try:
        port = int(data.get("port", 8080))
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid proxy port: {data.get('port')!r}")

    return ProxyConfig(
        host=str(data.get("host", "")),
        port=port,
        health_path=str(data.get("health_path", DEFAULT_HEALTH_PATH)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - SHELLCACHE_ORIGIN_URL: Override origin.url
    - SHELLCACHE_ORIGIN_TIMEOUT: Override origin.timeout
    - SHELLCACHE_CACHE_NAME: Override cache.name
    - SHELLCACHE_CACHE_PATH: Override cache.path
    - SHELLCACHE_PROXY_HOST: Override proxy.host
    - SHELLCACHE_PROXY_PORT: Override proxy.port
    """
    for section in ("origin", "cache", "proxy"):
        if config_data.get(section) is None:
            config_data[section] = {}

    overrides = (
        ("SHELLCACHE_ORIGIN_URL", "origin", "url", str),
        ("SHELLCACHE_ORIGIN_TIMEOUT", "origin", "timeout", int),
        ("SHELLCACHE_CACHE_NAME", "cache", "name", str),
        ("SHELLCACHE_CACHE_PATH", "cache", "path", str),
        ("SHELLCACHE_PROXY_HOST", "proxy", "host", str),
        ("SHELLCACHE_PROXY_PORT", "proxy", "port", int),
    )
    for env_name, section, key, convert in overrides:
        value = os.environ.get(env_name)
        if value is None:
            continue
        if not isinstance(config_data[section], dict):
            raise ConfigError(f"'{section}' section must be a dictionary")
        try:
            config_data[section][key] = convert(value)
        except ValueError:
            raise ConfigError(f"Invalid value for {env_name}: {value!r}")

    # An empty origin section means neither file nor environment set it
    if not config_data["origin"]:
        config_data["origin"] = None

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    return Config(
        origin=_parse_origin_config(_section(data, "origin")),
        cache=_parse_cache_config(_section(data, "cache")),
        worker=_parse_worker_config(_section(data, "worker")),
        proxy=_parse_proxy_config(_section(data, "proxy")),
    )
