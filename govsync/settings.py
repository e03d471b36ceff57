"""
Runtime configuration for govsync.

All values come from environment variables (or a .env file at the working
directory). Existing env vars take precedence over the .env file.

Database resolution:
  GOVSYNC_SQLITE_PATH set  -> sqlite3 file (":memory:" allowed), local dev/tests
  otherwise                -> PostgreSQL via GOVSYNC_DB_* (psycopg 3)
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Configuration from environment variables."""

    # PostgreSQL
    govsync_db_host: str = "localhost"
    govsync_db_port: int = 5434
    govsync_db_name: str = "postgres"
    govsync_db_user: str = "postgres"
    govsync_db_password: str = "postgres"
    govsync_db_schema: str = ""

    # SQLite (takes precedence when set)
    govsync_sqlite_path: str = ""

    # Source corpus
    govsync_source: str = "governance"
    github_token: str = ""
    github_webhook_secret: str = ""
    governance_repo: str = "superbenefit/governance"
    governance_branch: str = "main"
    knowledge_base_repo: str = "superbenefit/knowledge-base"
    groups_path: str = "data/groups"
    github_api_url: str = "https://api.github.com"
    github_raw_url: str = "https://raw.githubusercontent.com"

    # Content mirror
    content_mirror_root: str = "var/content"

    # Sync pipeline
    sync_step_retries: int = 2
    sync_retry_delay_seconds: float = 2.0
    webhook_delivery_ttl_seconds: int = 24 * 60 * 60

    # Aggregate cache
    internal_refresh_secret: str = ""
    refresh_interval_seconds: int = 15 * 60
    ttl_members_seconds: int = 30 * 60
    ttl_proposals_seconds: int = 15 * 60
    ttl_activity_seconds: int = 15 * 60
    ttl_roles_seconds: int = 30 * 60
    ttl_groups_seconds: int = 2 * 60 * 60
    ttl_dao_seconds: int = 30 * 60

    # External fact sources
    snapshot_api_url: str = "https://hub.snapshot.org/graphql"
    snapshot_space: str = "superbenefit.eth"
    hats_subgraph_url: str = (
        "https://api.goldsky.com/api/public/project_clp9ilfbtmxor01wv9ipedty5"
        "/subgraphs/hats-mainnet/1.0.0/gn"
    )
    hats_tree_id: str = ""
    http_timeout_seconds: float = 20.0

    # DAO identity (descriptor)
    dao_name: str = "SuperBenefit"
    dao_description: str = ""
    dao_avatar_uri: str = ""
    dao_token_address: str = ""
    public_base_url: str = "https://governance.superbenefit.dev"

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings instance."""
    return Settings()
