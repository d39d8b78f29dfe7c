"""
auth/directory.py -- Two-phase bind authentication against an LDAP directory.

Flow of DirectoryClient.authenticate() (linear, no retries):
  1. Connect. ldaps:// negotiates TLS at connect time; otherwise StartTLS is
     issued when configured and a failed upgrade aborts the attempt.
  2. Bind as the service account.
  3. Search for exactly one entry matching user_filter with the escaped
     username. Zero or several matches are rejected, never guessed.
  4. Rebind the same connection as the found DN with the supplied password.
     This bind, not step 2, proves the user's password.
  5. Groups come from memberOf on the entry. When that is empty, a fallback
     group search runs with group_filter (%s -> user DN, %u -> login
     attribute value, both escaped). Fallback failures mean "no groups".
  6. Return login attribute, email, groups.

Every network phase is bounded by timeout_seconds (socket connect, socket
receive, and the server-side search time limit).

Errors are raised as DirectoryError subclasses with internal detail in the
message. auth/policy.py logs them and collapses all of them into one
"invalid credentials" outcome -- the detail never reaches the browser.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import re
import ssl
from collections.abc import Callable, Iterable
from typing import Any, Optional

from ldap3 import NONE, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from auth.models import DirectoryResult, Role
from core.config import ROLE_PRIORITY, DirectorySettings

logger = logging.getLogger("dnsdesk.directory")

_MEMBER_OF = "memberOf"
_GROUP_MARKER = re.compile(r"%[su]")


class DirectoryError(Exception):
    """Base class for directory authentication failures."""


class DirectoryConnectError(DirectoryError):
    """Could not reach the directory or negotiate transport encryption."""


class ServiceBindError(DirectoryError):
    """The service account bind failed -- a configuration problem, not user error."""


class UserLookupError(DirectoryError):
    """The user search matched zero or more than one entry."""


class InvalidCredentialsError(DirectoryError):
    """The user bind with the supplied password failed."""


def _values(attributes: Any, name: str) -> list[str]:
    """Normalize an attribute from an ldap3 response entry to a list of str."""
    if not attributes or not name:
        return []
    value = attributes.get(name)
    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        value = [value]
    result = []
    for v in value:
        if isinstance(v, bytes):
            v = v.decode("utf-8", errors="replace")
        if v:
            result.append(str(v))
    return result


def _search_entries(conn: Any) -> list[dict]:
    """Return search result entries, skipping referrals and other response types."""
    return [r for r in (conn.response or []) if r.get("type") == "searchResEntry"]


class DirectoryClient:
    """Authenticate users against the configured directory.

    Args:
        settings:           Immutable directory config (core.config.DirectorySettings).
        connection_factory: Returns a new, unopened ldap3-compatible Connection
                            bound to the service account credentials. Defaults
                            to a real ldap3 Connection; tests pass fakes.
    """

    def __init__(
        self,
        settings: DirectorySettings,
        connection_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.settings = settings
        self._connection_factory = connection_factory or self._new_connection

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _new_connection(self) -> Connection:
        cfg = self.settings
        tls = Tls(validate=ssl.CERT_NONE if cfg.skip_verify else ssl.CERT_REQUIRED)
        server = Server(
            cfg.url,
            use_ssl=cfg.url.startswith("ldaps://"),
            tls=tls,
            get_info=NONE,
            connect_timeout=cfg.timeout_seconds,
        )
        return Connection(
            server,
            user=cfg.bind_dn,
            password=cfg.bind_password,
            receive_timeout=cfg.timeout_seconds,
            read_only=True,
            raise_exceptions=False,
        )

    def _connect(self) -> Any:
        conn = self._connection_factory()
        try:
            conn.open()
        except LDAPException as exc:
            raise DirectoryConnectError(f"connect to {self.settings.url}: {exc}") from exc
        if self.settings.start_tls and not self.settings.url.startswith("ldaps://"):
            try:
                upgraded = conn.start_tls()
            except LDAPException as exc:
                conn.unbind()
                raise DirectoryConnectError(f"starttls: {exc}") from exc
            if not upgraded:
                conn.unbind()
                raise DirectoryConnectError(f"starttls: {conn.result}")
        return conn

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str) -> DirectoryResult:
        """Verify username/password against the directory and resolve groups.

        Raises a DirectoryError subclass on any failure.
        """
        if not username or not password:
            # An empty simple bind is an anonymous bind and would "succeed".
            raise InvalidCredentialsError("empty username or password")

        cfg = self.settings
        conn = self._connect()
        try:
            try:
                bound = conn.bind()
            except LDAPException as exc:
                raise ServiceBindError(f"service bind: {exc}") from exc
            if not bound:
                raise ServiceBindError(f"service bind: {conn.result}")

            entry = self._find_user(conn, username)
            user_dn = entry["dn"]
            attributes = entry.get("attributes") or {}

            try:
                user_bound = conn.rebind(user=user_dn, password=password)
            except LDAPException as exc:
                raise InvalidCredentialsError(f"user bind: {exc}") from exc
            if not user_bound:
                raise InvalidCredentialsError("user bind rejected")

            login_values = _values(attributes, cfg.username_attr)
            if not login_values:
                raise UserLookupError(f"entry has no {cfg.username_attr} attribute")
            login = login_values[0]
            email_values = _values(attributes, cfg.email_attr)

            groups = _values(attributes, _MEMBER_OF)
            if not groups:
                groups = self._fallback_groups(conn, user_dn, login)

            return DirectoryResult(
                username=login,
                email=email_values[0] if email_values else "",
                groups=groups,
            )
        finally:
            try:
                conn.unbind()
            except LDAPException:
                logger.debug("LDAP unbind failed", exc_info=True)

    def _find_user(self, conn: Any, username: str) -> dict:
        cfg = self.settings
        search_filter = cfg.user_filter.replace("%s", escape_filter_chars(username))
        attributes = [a for a in (cfg.username_attr, cfg.email_attr, _MEMBER_OF) if a]
        try:
            conn.search(
                search_base=cfg.base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes,
                size_limit=0,
                time_limit=int(cfg.timeout_seconds),
            )
        except LDAPException as exc:
            raise DirectoryError(f"user search: {exc}") from exc
        entries = _search_entries(conn)
        if len(entries) != 1:
            raise UserLookupError(f"user not found or ambiguous: {len(entries)} results")
        return entries[0]

    def _fallback_groups(self, conn: Any, user_dn: str, login: str) -> list[str]:
        """Search for group entries that list the user as a member.

        Any failure is logged and yields an empty list; the password has
        already been proven at this point.
        """
        cfg = self.settings
        values = {"%s": escape_filter_chars(user_dn), "%u": escape_filter_chars(login)}
        # One pass, so a substituted value is never scanned for markers again
        group_filter = _GROUP_MARKER.sub(lambda m: values[m.group(0)], cfg.group_filter)
        try:
            ok = conn.search(
                search_base=cfg.base_dn,
                search_filter=group_filter,
                search_scope=SUBTREE,
                attributes=[],
                size_limit=0,
                time_limit=int(cfg.timeout_seconds),
            )
        except LDAPException as exc:
            logger.warning("LDAP group search failed for %r: %s", login, exc)
            return []
        if not ok:
            return []
        return [e["dn"] for e in _search_entries(conn) if e.get("dn")]

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def resolve_role(self, groups: Iterable[str]) -> Optional[Role]:
        """Map directory groups to a role. Admin wins over editor.

        Comparison is case-insensitive. Returns None when no mapped group
        matches; there is no default role.
        """
        folded = {g.casefold() for g in groups}
        mapping = dict(self.settings.role_mapping)
        for role in ROLE_PRIORITY:
            group = mapping.get(role)
            if group and group.casefold() in folded:
                return Role(role)
        return None
