"""
Configuration management for the repo-keeper server.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional
import yaml
import os
import logging
import tempfile
from platformdirs import user_config_dir

APP_NAME = "repo-keeper"

# Environment variables understood on top of the YAML file
ENV_REPO_URI = "REPO_URI"
ENV_CLONE_PATH = "CLONE_PATH"
ENV_CACHE_TTL = "CACHE_TTL"


@dataclass
class RepositoryConfig:
    origin_uri: str = ""
    working_copy_path: str = ""
    cache_ttl: int = 300  # seconds
    cache_enabled: bool = True

    def __post_init__(self):
        if self.cache_ttl < 0:
            raise ValueError(f"cache_ttl must not be negative, got {self.cache_ttl}")
        if self.working_copy_path:
            # Expand ~ to home directory in working_copy_path
            self.working_copy_path = os.path.expanduser(self.working_copy_path)
        else:
            self.working_copy_path = tempfile.mkdtemp(prefix=f"{APP_NAME}-")


@dataclass
class ServerConfig:
    name: str = "Repo Keeper"
    log_level: str = "info"
    host: str = "localhost"
    port: int = 3000
    repository: RepositoryConfig = None

    def __post_init__(self):
        if self.repository is None:
            self.repository = RepositoryConfig()


def get_config_search_paths() -> List[str]:
    """Get list of paths to search for config file."""
    return [
        "./config.yaml",
        str(Path(user_config_dir(APP_NAME)) / "config.yaml"),
    ]


def parse_ttl(value: str) -> int:
    try:
        ttl = int(value)
    except ValueError:
        raise ValueError(f"{ENV_CACHE_TTL} must be an integer, got {value!r}")
    if ttl < 0:
        raise ValueError(f"{ENV_CACHE_TTL} must not be negative, got {ttl}")
    return ttl


def apply_env_overrides(config_data: Dict, environ: Mapping[str, str]) -> Dict:
    """Overlay REPO_URI, CLONE_PATH and CACHE_TTL onto raw config data."""
    repository = dict(config_data.get("repository") or {})
    if environ.get(ENV_REPO_URI):
        repository["origin_uri"] = environ[ENV_REPO_URI]
    if environ.get(ENV_CLONE_PATH):
        repository["working_copy_path"] = environ[ENV_CLONE_PATH]
    if environ.get(ENV_CACHE_TTL):
        repository["cache_ttl"] = parse_ttl(environ[ENV_CACHE_TTL])
    config_data = dict(config_data)
    config_data["repository"] = repository
    return config_data


def read_config_file(search_paths: List[str]) -> Dict:
    logger = logging.getLogger(__name__)

    for path in search_paths:
        abs_path = os.path.abspath(path)
        if not os.path.exists(abs_path):
            continue

        logger.info(f"Loading configuration from {abs_path}")
        with open(abs_path, "r") as f:
            config_data = yaml.safe_load(f)

        if not config_data:
            logger.warning(f"Config file {abs_path} is empty, trying next location")
            continue

        logger.debug(f"Loaded configuration data: {config_data}")
        return config_data

    logger.info(f"No configuration found in: {', '.join(search_paths)}, using defaults")
    return {}


def load_config(
    config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> ServerConfig:
    """Load configuration from YAML file and the environment."""
    if environ is None:
        environ = os.environ

    # If config_path is explicitly provided, only try that one
    if config_path:
        search_paths = [config_path]
    else:
        search_paths = get_config_search_paths()

    config_data = apply_env_overrides(read_config_file(search_paths), environ)
    config_data["repository"] = RepositoryConfig(**config_data["repository"])
    return ServerConfig(**config_data)
