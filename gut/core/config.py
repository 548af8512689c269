"""gut runtime configuration and settings."""
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from gut.core.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path.home() / ".config" / "gut" / "app.yml"


def _default_root() -> Path:
    return Path.home() / "gut"


def _default_cache() -> Path:
    return Path.home() / ".cache" / "gut" / "templates"


@dataclass
class GutConfig:
    """Runtime configuration for gut operations.

    Built once per CLI invocation and passed explicitly to every command
    and engine object.

    Attributes:
        root: Directory holding ``<organisation>/<repo>`` checkouts
        default_organisation: Organisation used for bare template names
        template_cache: Where remote templates are cloned
        git_binary: git executable to invoke
        conflict_exit_code: Exit code for an apply that stopped on conflicts
    """

    root: Path = field(default_factory=_default_root)
    default_organisation: Optional[str] = None
    template_cache: Path = field(default_factory=_default_cache)
    git_binary: str = "git"
    conflict_exit_code: int = 3

    @classmethod
    def config_file(cls) -> Path:
        """Location of the YAML config file ($GUT_CONFIG overrides)."""
        return Path(os.getenv("GUT_CONFIG", str(DEFAULT_CONFIG_FILE)))

    @classmethod
    def load(cls, config_file: Optional[Path] = None) -> "GutConfig":
        """Create config from defaults, the YAML file, then environment.

        Environment variables:
            GUT_ROOT: Root directory of organisation checkouts
            GUT_ORGANISATION: Default organisation
            GUT_TEMPLATE_CACHE: Remote template cache directory

        Raises:
            ValueError: If the config file is not a YAML mapping
        """
        path = Path(config_file) if config_file else cls.config_file()
        values = {}

        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Config file {path} must contain a mapping")
            known = {f.name for f in fields(cls)}
            for key, value in data.items():
                if key in known:
                    values[key] = value
                else:
                    logger.warning(f"Ignoring unknown config key '{key}' in {path}")
            logger.debug(f"Loaded config from {path}")

        env_map = {
            "GUT_ROOT": "root",
            "GUT_ORGANISATION": "default_organisation",
            "GUT_TEMPLATE_CACHE": "template_cache",
        }
        for env_name, key in env_map.items():
            if env_value := os.getenv(env_name):
                values[key] = env_value

        config = cls(**values)
        config.root = Path(config.root).expanduser()
        config.template_cache = Path(config.template_cache).expanduser()
        config.conflict_exit_code = int(config.conflict_exit_code)
        return config

    def to_dict(self) -> dict:
        data = asdict(self)
        data["root"] = str(self.root)
        data["template_cache"] = str(self.template_cache)
        return data

    def save(self, config_file: Optional[Path] = None) -> Path:
        """Write the config to its YAML file atomically."""
        path = Path(config_file) if config_file else self.config_file()
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_file = path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        os.replace(temp_file, path)

        logger.debug(f"Saved config to {path}")
        return path
