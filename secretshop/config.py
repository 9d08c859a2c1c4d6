"""Service configuration.

Configuration is a single YAML file listing the active services by name:

    active_capsules: [main]
    active_holes: [hole]
    main:
      hostname: example.com
      port: 1965
      keyfile: /etc/secretshop/example.key
      certfile: /etc/secretshop/example.crt
      rootdir: /var/gemini
      cgidir: /var/gemini/cgi-bin
    hole:
      hostname: example.com
      port: 70
      rootdir: /var/gopher

Keys are matched case-insensitively. Every capsule becomes a GeminiConfig and
every hole a GopherConfig; both are frozen once loaded.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import yaml

logger = logging.getLogger(__name__)

# Network
HOST = ""        # all interfaces, v4+v6 when available
GEMINI_PORT = 1965
GOPHER_PORT = 70

# I/O
MAX_URL_BYTES = 1024
TIMEOUT_S = 5
CGI_TIMEOUT_S = 15

SEARCH_PATHS = (
    Path("/etc/secretshop"),
    Path("."),
)
CONFIG_NAMES = ("config.yaml", "config.yml")


class ConfigError(Exception):
    """Configuration error, fatal at startup."""


@dataclass(frozen=True)
class GeminiConfig:
    """One capsule: a hostname served over TLS from a document root."""

    hostname: str
    port: int
    key_file: str
    cert_file: str
    root_dir: str
    cgi_dir: str = ""

    kind = "gemini"

    def __str__(self):
        return f"Gemini Config: {self.hostname}:{self.port} Files:{self.root_dir} CGI:{self.cgi_dir}"


@dataclass(frozen=True)
class GopherConfig:
    """One gopherhole: a hostname served over plain TCP from a root."""

    hostname: str
    port: int
    root_dir: str

    kind = "gopher"

    def __str__(self):
        return f"Gopher Config: {self.hostname}:{self.port} Files:{self.root_dir}"


ServiceConfig = Union[GeminiConfig, GopherConfig]


@dataclass(frozen=True)
class Settings:
    """Everything the process needs to start its services."""

    capsules: List[GeminiConfig]
    holes: List[GopherConfig]
    bind: str = HOST
    timeout: float = TIMEOUT_S

    @property
    def services(self) -> List[ServiceConfig]:
        return [*self.capsules, *self.holes]


def find_config(explicit: Optional[Path] = None) -> Path:
    """Locate the configuration file.

    An explicit path wins; otherwise /etc/secretshop/ then the working
    directory are searched for config.yaml (or config.yml).

    Raises:
        ConfigError: If no configuration file exists
    """
    if explicit is not None:
        if not explicit.is_file():
            raise ConfigError(f"Config file not found: {explicit}")
        return explicit

    for directory in SEARCH_PATHS:
        for name in CONFIG_NAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate

    searched = ", ".join(str(d) for d in SEARCH_PATHS)
    raise ConfigError(f"No config.yaml found in {searched}")


def _parse_yaml(path: Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return _lower_keys(data)


def _lower_keys(data: dict) -> dict:
    return {str(k).lower(): v for k, v in data.items()}


def _require(section: dict, name: str, key: str) -> str:
    value = section.get(key)
    if value is None or str(value).strip() == "":
        raise ConfigError(f"{name}: missing required key '{key}'")
    return str(value)


def _port(section: dict, name: str, default: int) -> int:
    raw = section.get("port", default)
    try:
        port = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name}: port must be an integer, got {raw!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"{name}: port out of range: {port}")
    return port


def _section(data: dict, name: str) -> dict:
    section = data.get(str(name).lower())
    if not isinstance(section, dict):
        raise ConfigError(f"Active service '{name}' has no configuration section")
    return _lower_keys(section)


def _names(data: dict, key: str) -> List[str]:
    names = data.get(key) or []
    if isinstance(names, str):
        names = [names]
    if not isinstance(names, list):
        raise ConfigError(f"'{key}' must be a list of section names")
    return [str(n) for n in names]


def gemini_from_section(name: str, section: dict) -> GeminiConfig:
    return GeminiConfig(
        hostname=_require(section, name, "hostname").lower(),
        port=_port(section, name, GEMINI_PORT),
        key_file=_require(section, name, "keyfile"),
        cert_file=_require(section, name, "certfile"),
        root_dir=_require(section, name, "rootdir"),
        cgi_dir=str(section.get("cgidir") or ""),
    )


def gopher_from_section(name: str, section: dict) -> GopherConfig:
    return GopherConfig(
        hostname=_require(section, name, "hostname").lower(),
        port=_port(section, name, GOPHER_PORT),
        root_dir=_require(section, name, "rootdir"),
    )


def load_settings(path: Path) -> Settings:
    """Load and validate the configuration at `path`.

    Raises:
        ConfigError: On unreadable files, missing keys or when no service
            is active at all
    """
    data = _parse_yaml(path)

    capsules = []
    for i, name in enumerate(_names(data, "active_capsules")):
        capsule = gemini_from_section(name, _section(data, name))
        logger.info("Loading capsule %d %s", i, capsule.hostname)
        capsules.append(capsule)

    holes = []
    for i, name in enumerate(_names(data, "active_holes")):
        hole = gopher_from_section(name, _section(data, name))
        logger.info("Loading hole %d %s", i, hole.hostname)
        holes.append(hole)

    if not capsules and not holes:
        raise ConfigError("No capsules or gopherholes loaded")

    try:
        timeout = float(data.get("timeout", TIMEOUT_S))
    except (TypeError, ValueError):
        raise ConfigError(f"timeout must be a number, got {data.get('timeout')!r}") from None

    logger.info("%d capsules loaded, %d holes loaded", len(capsules), len(holes))
    return Settings(
        capsules=capsules,
        holes=holes,
        bind=str(data.get("bind") or HOST),
        timeout=timeout,
    )
