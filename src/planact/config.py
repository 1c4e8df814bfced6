"""Configuration loading from environment variables and planact.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_CONFIG_FILENAME = "planact.toml"


@dataclass
class AuthorConfig:
    """Configuration for the content-authoring backend."""

    name: str = "stamp"
    model: str | None = None
    max_tokens: int = 4096
    timeout: int = 120

    def kwargs(self) -> dict:
        """Constructor arguments for backends that take them."""
        if self.name == "stamp":
            return {}
        kw: dict = {"max_tokens": self.max_tokens, "timeout": self.timeout}
        if self.model:
            kw["model"] = self.model
        return kw


@dataclass
class MemoryConfig:
    """Where memory files live and how many backups to keep."""

    root: Path = field(default_factory=Path.cwd)
    versions_keep: int = 10


@dataclass
class PlanactConfig:
    """Top-level configuration."""

    author: AuthorConfig = field(default_factory=AuthorConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    log_level: str = "INFO"


def load_config(config_path: Path | None = None) -> PlanactConfig:
    """Load configuration from environment variables and optional planact.toml.

    Priority: environment variables > planact.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.planact/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, Path.home() / ".planact" / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    author_data = file_data.get("author", {})
    memory_data = file_data.get("memory", {})

    root = os.getenv("PLANACT_MEMORY_ROOT", memory_data.get("root"))

    return PlanactConfig(
        author=AuthorConfig(
            name=os.getenv("PLANACT_AUTHOR", author_data.get("name", "stamp")),
            model=os.getenv("PLANACT_MODEL", author_data.get("model")),
            max_tokens=int(os.getenv("PLANACT_MAX_TOKENS", author_data.get("max_tokens", 4096))),
            timeout=int(os.getenv("PLANACT_TIMEOUT", author_data.get("timeout", 120))),
        ),
        memory=MemoryConfig(
            root=Path(root).expanduser() if root else Path.cwd(),
            versions_keep=int(memory_data.get("versions_keep", 10)),
        ),
        log_level=os.getenv("PLANACT_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
