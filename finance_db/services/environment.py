"""
Environment Template Generator

Turns a database configuration into the environment variables a
deployment needs, and back: detect_provider() reads a provider out of an
existing environment.

Nothing here reads or writes files; callers decide where the rendered
.env text goes.
"""

import io
from datetime import datetime, timezone
from typing import Mapping, Optional, Union

from dotenv import dotenv_values

from finance_db.models.database import DatabaseProvider
from finance_db.services.providers import ConfigLike, get_variant


# Application variables understood by AppSettings
APP_DEFAULTS = {
    "APP_ENVIRONMENT": "production",
    "DEBUG_MODE": "false",
}

# Every variable a provider template can produce
DATABASE_KEYS = frozenset({
    "SUPABASE_URL", "SUPABASE_ANON_KEY", "SUPABASE_SERVICE_KEY",
    "DATABASE_URL",
    "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_DB", "POSTGRES_USER", "POSTGRES_PASSWORD",
    "MYSQL_HOST", "MYSQL_PORT", "MYSQL_DATABASE", "MYSQL_USER", "MYSQL_PASSWORD",
    "SQLITE_DATABASE_PATH",
})

_SECTION_TITLES = {
    DatabaseProvider.SUPABASE: "Supabase Configuration",
    DatabaseProvider.NEON: "Neon Database Configuration",
    DatabaseProvider.PLANETSCALE: "PlanetScale Database Configuration",
    DatabaseProvider.POSTGRESQL: "PostgreSQL Configuration",
    DatabaseProvider.MYSQL: "MySQL Configuration",
    DatabaseProvider.SQLITE: "SQLite Configuration (file-based database)",
}

_PARTS_TITLES = {
    DatabaseProvider.POSTGRESQL: "PostgreSQL Individual Parameters (for Docker Compose)",
    DatabaseProvider.MYSQL: "MySQL Individual Parameters (for Docker Compose)",
}


def environment_template(
    provider: Union[DatabaseProvider, str],
    config: ConfigLike,
) -> dict[str, str]:
    """
    Environment variables for a configuration.

    Args:
        provider: Which provider's variables to produce
        config: Where the values come from

    Returns:
        Variable name -> value. Self-hosted servers configured from
        parts also get their individual *_HOST/*_PORT/... variables.
    """
    return get_variant(provider).environment_template(config)


def docker_compose_template(
    provider: Union[DatabaseProvider, str],
    config: ConfigLike,
) -> dict[str, str]:
    """
    Like environment_template, but a self-hosted server configured from
    parts is reached through its compose service (postgres:5432, mysql:3306).
    """
    return get_variant(provider).environment_template(config, docker=True)


def detect_provider(env: Mapping[str, str]) -> Optional[DatabaseProvider]:
    """
    Infer the database provider an environment describes.

    Checked in order:
    1. All three SUPABASE_* variables -> supabase
    2. DATABASE_URL host or scheme -> neon, planetscale, postgresql, mysql
    3. POSTGRES_HOST / POSTGRES_DB -> postgresql
    4. MYSQL_HOST / MYSQL_DATABASE -> mysql

    Returns:
        The provider, or None if nothing matches
    """
    if env.get("SUPABASE_URL") and env.get("SUPABASE_ANON_KEY") and env.get("SUPABASE_SERVICE_KEY"):
        return DatabaseProvider.SUPABASE

    url = env.get("DATABASE_URL")
    if url:
        if "neon.tech" in url or "neon." in url:
            return DatabaseProvider.NEON
        if "planetscale." in url or "pscale." in url:
            return DatabaseProvider.PLANETSCALE
        if url.startswith(("postgresql://", "postgres://")):
            return DatabaseProvider.POSTGRESQL
        if url.startswith("mysql://"):
            return DatabaseProvider.MYSQL

    if env.get("POSTGRES_HOST") or env.get("POSTGRES_DB"):
        return DatabaseProvider.POSTGRESQL

    if env.get("MYSQL_HOST") or env.get("MYSQL_DATABASE"):
        return DatabaseProvider.MYSQL

    return None


def parse_env_file(content: str) -> dict[str, str]:
    """
    Parse .env text into a dict.

    Parsing follows python-dotenv (the reader behind pydantic-settings'
    env_file): comments, quoting, inline comments and `export` prefixes.
    Values are taken literally, without ${VAR} expansion. Keys declared
    without a value are dropped.
    """
    values = dotenv_values(stream=io.StringIO(content), interpolate=False)
    return {key: value for key, value in values.items() if value is not None}


def render_env_file(
    provider: Union[DatabaseProvider, str],
    env: Mapping[str, str],
    existing: Optional[Mapping[str, str]] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Render .env text for a provider.

    Args:
        provider: The provider the database section is written for
        env: New variables (usually from environment_template)
        existing: Variables of the current .env; kept unless env overrides them
        generated_at: Timestamp for the header (defaults to now)

    Returns:
        .env content with header, application, database and
        "Other Configuration" sections
    """
    provider = DatabaseProvider(provider)
    merged = {**(existing or {}), **env}
    generated_at = generated_at or datetime.now(timezone.utc)

    lines = [
        "# Personal Finance Tracker - Environment Configuration",
        f"# Generated on: {generated_at.isoformat()}",
        f"# Database Provider: {provider.value.upper()}",
        "",
        "# Application Configuration",
    ]
    for key, default in APP_DEFAULTS.items():
        lines.append(f"{key}={merged.get(key) or default}")
    lines.append("")

    lines.append("# Database Configuration")
    lines.append(f"# {_SECTION_TITLES[provider]}")

    template_keys = [k for k in env if k in DATABASE_KEYS]
    primary = [k for k in template_keys if k in ("DATABASE_URL", "SQLITE_DATABASE_PATH") or k.startswith("SUPABASE_")]
    parts = [k for k in template_keys if k not in primary]

    for key in primary:
        lines.append(f"{key}={merged[key]}")
    if parts:
        lines.append("")
        lines.append(f"# {_PARTS_TITLES.get(provider, 'Individual Parameters')}")
        for key in parts:
            lines.append(f"{key}={merged[key]}")
    lines.append("")

    others = [
        (key, value) for key, value in merged.items()
        if key not in DATABASE_KEYS and key not in APP_DEFAULTS
    ]
    if others:
        lines.append("# Other Configuration")
        for key, value in others:
            lines.append(f"{key}={value}")
        lines.append("")

    return "\n".join(lines)
