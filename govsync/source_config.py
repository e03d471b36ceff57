"""
Source configuration loader for the governance sync pipeline.

Loads and validates YAML source configurations from config/sources/*.yaml
using Pydantic models. A source describes one corpus repository: where it
lives, which files are documents, and how paths map to slugs and mirror keys.

Usage:
    from govsync.source_config import load_source_config, list_sources

    config = load_source_config("governance")
    rules = config.rules
"""

from __future__ import annotations

from fnmatch import fnmatch
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .settings import Settings

__all__ = [
    "DEFAULT_RULES",
    "GitHubConfig",
    "SourceConfig",
    "SyncRules",
    "default_source_config",
    "list_sources",
    "load_source_config",
    "resolve_source_config",
]


# Default config directory relative to the working directory
CONFIG_DIR = Path("config") / "sources"


class GitHubConfig(BaseModel):
    """GitHub repository configuration."""

    owner: str
    repo: str
    branch: str = "main"
    file_extensions: list[str] = Field(default_factory=lambda: [".md"])

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class SyncRules(BaseModel):
    """Path rules shared by the parser, the webhook filter and the pipeline."""

    # Presentational files: readmes, templates, underscore-prefixed segments.
    exclude_patterns: list[str] = Field(
        default_factory=lambda: ["*README*", "*readme*", "*template*", "_*", "*/_*"]
    )
    # Leading directories dropped when deriving a slug from a path.
    slug_prefixes: list[str] = Field(
        default_factory=lambda: ["agreements", "policies", "proposals"]
    )
    content_key_prefix: str = "governance"
    file_extensions: list[str] = Field(default_factory=lambda: [".md"])

    @field_validator("content_key_prefix")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        return v.strip("/")

    def is_excluded(self, path: str) -> bool:
        return any(fnmatch(path, pattern) for pattern in self.exclude_patterns)

    def is_document_path(self, path: str) -> bool:
        return any(path.endswith(ext) for ext in self.file_extensions)

    def slug_for(self, path: str) -> str:
        """agreements/operating-agreement.md -> operating-agreement; a/b/c.md -> a-b-c."""
        slug = path
        for prefix in self.slug_prefixes:
            head = prefix.rstrip("/") + "/"
            if slug.startswith(head):
                slug = slug[len(head):]
                break
        for ext in self.file_extensions:
            if slug.endswith(ext):
                slug = slug[: -len(ext)]
                break
        return slug.replace("/", "-")

    def content_key(self, path: str) -> str:
        return f"{self.content_key_prefix}/{path}" if self.content_key_prefix else path


DEFAULT_RULES = SyncRules()


class SourceConfig(BaseModel):
    """Complete source configuration."""

    source_id: str
    name: str
    github: GitHubConfig
    rules: SyncRules = Field(default_factory=SyncRules)

    @field_validator("source_id")
    @classmethod
    def validate_source_id(cls, v: str) -> str:
        """Validate source_id is kebab-case."""
        if not v or not all(c.isalnum() or c == "-" for c in v):
            raise ValueError("source_id must be kebab-case alphanumeric")
        return v


def load_source_config(
    source_name: str, config_dir: Optional[Path] = None
) -> SourceConfig:
    """
    Load and validate a source configuration.

    Args:
        source_name: Name of the source (filename without .yaml)
        config_dir: Optional path to config directory

    Returns:
        Validated SourceConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        pydantic.ValidationError: If config validation fails
    """
    config_path = (config_dir or CONFIG_DIR) / f"{source_name}.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"Source config not found: {config_path}")

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    return SourceConfig.model_validate(data)


def list_sources(config_dir: Optional[Path] = None) -> list[str]:
    """List available source configurations (filename stems)."""
    search_dir = config_dir or CONFIG_DIR

    if not search_dir.exists():
        return []

    return sorted(f.stem for f in search_dir.glob("*.yaml"))


def default_source_config(settings: Settings) -> SourceConfig:
    """Source config built from settings alone, used when no YAML file exists."""
    owner, _, repo = settings.governance_repo.partition("/")
    return SourceConfig(
        source_id=settings.govsync_source,
        name=settings.governance_repo,
        github=GitHubConfig(owner=owner, repo=repo, branch=settings.governance_branch),
    )


def resolve_source_config(settings: Settings, config_dir: Optional[Path] = None) -> SourceConfig:
    """Load config/sources/<GOVSYNC_SOURCE>.yaml, falling back to settings."""
    try:
        return load_source_config(settings.govsync_source, config_dir)
    except FileNotFoundError:
        return default_source_config(settings)
