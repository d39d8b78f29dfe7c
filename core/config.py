"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for dnsdesk happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. ldap_url -> LDAP_URL). Type coercion and validation are built in.
      LDAP_GROUP_MAPPING is a JSON object, e.g.
      {"admin": "cn=dns-admins,ou=groups,dc=example,dc=com"}.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Directory settings are only checked when LDAP_ENABLED is
      true; a bad directory config is a startup failure, never a request-time
      one.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or audit/.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("dnsdesk.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent.parent / 'dnsdesk.db'}"

DEFAULT_GROUP_FILTER = "(|(member=%s)(uniqueMember=%s))"

# Priority order for group -> role resolution. Highest privilege first.
ROLE_PRIORITY: tuple[str, ...] = ("admin", "editor")


@dataclass(frozen=True)
class DirectorySettings:
    """Immutable directory configuration handed to the directory client.

    role_mapping is an ordered tuple of (role, group_dn) pairs following
    ROLE_PRIORITY, so resolution order never depends on dict ordering in the
    source config.
    """

    url: str
    bind_dn: str
    bind_password: str
    base_dn: str
    user_filter: str
    username_attr: str
    email_attr: str
    group_filter: str
    start_tls: bool
    skip_verify: bool
    timeout_seconds: float
    role_mapping: tuple[tuple[str, str], ...]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    # Adds the Secure flag to the session cookie. Enable behind HTTPS.
    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Directory (LDAP) -- optional, disabled by default
    # ------------------------------------------------------------------

    ldap_enabled: bool = False
    ldap_url: str = ""
    ldap_bind_dn: str = ""
    ldap_bind_password: str = ""
    ldap_base_dn: str = ""
    # Every %s is replaced with the escaped username.
    ldap_user_filter: str = "(sAMAccountName=%s)"
    ldap_username_attr: str = "sAMAccountName"
    ldap_email_attr: str = "mail"
    # Empty means DEFAULT_GROUP_FILTER. %s -> user DN, %u -> login attribute value.
    ldap_group_filter: str = ""
    ldap_start_tls: bool = False
    ldap_skip_verify: bool = False
    ldap_timeout_seconds: float = 10.0
    ldap_group_mapping: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_directory(self) -> "Settings":
        """Reject an incomplete directory configuration at startup.

        Only enforced when LDAP_ENABLED=true. A plain ldap:// URL without
        StartTLS is allowed but logged: bind passwords would cross the wire
        in cleartext.
        """
        if not self.ldap_enabled:
            return self
        if not self.ldap_url:
            raise ValueError("LDAP_URL is required when LDAP is enabled.")
        if not self.ldap_url.startswith(("ldap://", "ldaps://")):
            raise ValueError("LDAP_URL must start with ldap:// or ldaps://.")
        if not self.ldap_bind_dn or not self.ldap_bind_password:
            raise ValueError("LDAP_BIND_DN and LDAP_BIND_PASSWORD are required when LDAP is enabled.")
        if not self.ldap_base_dn:
            raise ValueError("LDAP_BASE_DN is required when LDAP is enabled.")
        if "%s" not in self.ldap_user_filter:
            raise ValueError("LDAP_USER_FILTER must contain a %s marker for the username.")
        if not self.ldap_group_mapping:
            raise ValueError("LDAP_GROUP_MAPPING must define at least one role.")
        unknown = set(self.ldap_group_mapping) - set(ROLE_PRIORITY)
        if unknown:
            raise ValueError(f"LDAP_GROUP_MAPPING has unknown roles: {sorted(unknown)!r}")
        if any(not group for group in self.ldap_group_mapping.values()):
            raise ValueError("LDAP_GROUP_MAPPING group identifiers must not be empty.")
        if self.ldap_timeout_seconds <= 0:
            raise ValueError("LDAP_TIMEOUT_SECONDS must be positive.")
        if self.ldap_url.startswith("ldap://") and not self.ldap_start_tls:
            logger.warning(
                "LDAP is configured with ldap:// but StartTLS is disabled. "
                "Credentials will be sent in cleartext."
            )
        return self

    def directory(self) -> DirectorySettings | None:
        """Return the immutable directory config, or None when LDAP is disabled."""
        if not self.ldap_enabled:
            return None
        mapping = tuple(
            (role, self.ldap_group_mapping[role]) for role in ROLE_PRIORITY if role in self.ldap_group_mapping
        )
        return DirectorySettings(
            url=self.ldap_url,
            bind_dn=self.ldap_bind_dn,
            bind_password=self.ldap_bind_password,
            base_dn=self.ldap_base_dn,
            user_filter=self.ldap_user_filter,
            username_attr=self.ldap_username_attr,
            email_attr=self.ldap_email_attr,
            group_filter=self.ldap_group_filter or DEFAULT_GROUP_FILTER,
            start_tls=self.ldap_start_tls,
            skip_verify=self.ldap_skip_verify,
            timeout_seconds=self.ldap_timeout_seconds,
            role_mapping=mapping,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
