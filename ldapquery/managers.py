"""
Talking to the directory server.

:class:`DirectoryManager` owns the connections to one configured LDAP server,
runs the filters built by :class:`~ldapquery.builder.FilterBuilder` and
submits the batch modifications computed for an
:class:`~ldapquery.entries.Entry`.

Servers are configured in ``settings.LDAP_SERVERS``::

    LDAP_SERVERS = {
        "default": {
            "basedn": "dc=example,dc=com",
            "read": {
                "url": "ldap://ldap.example.com",
                "user": "cn=reader,dc=example,dc=com",
                "password": "password",
                "timeout": 15.0,
                "sizelimit": 1000,
                "follow_referrals": False,
            },
            "write": {...},
        }
    }
"""

import logging
import re
import threading
from collections.abc import Callable, Iterable, Mapping
from functools import wraps
from typing import Any, cast

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from ldapquery import ldap

from .builder import FilterBuilder
from .entries import Entry
from .modifications import BatchModification
from .typing import LDAPData, ModList

logger = logging.getLogger("django-ldapquery")


# -----------------------
# Decorators
# -----------------------


def atomic(key: str = "read") -> Callable:
    """
    Decorator to wrap methods that need to talk to an LDAP server.

    If the current thread already holds a connection (we're inside another
    wrapped method), it is reused; otherwise one is opened for the duration
    of the call.

    Args:
        key: Either "read" or "write". Determines which LDAP server to use.

    Returns:
        A decorator that manages LDAP connection context for the wrapped method.

    """

    def real_decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Any:
            if self.has_connection():
                return func(self, *args, **kwargs)
            self.connect(key)
            try:
                retval = func(self, *args, **kwargs)
            finally:
                self.disconnect()
            return retval

        return wrapper

    return real_decorator


# -----------------------
# DirectoryManager
# -----------------------


class DirectoryManager:
    """
    Searches and modifies entries on one server from ``settings.LDAP_SERVERS``.

    This class is thread-safe -- it uses a different LDAP connection for each
    thread, since python-ldap connection objects must not be shared between
    threads.

    Keyword Args:
        server: The key of the server in ``settings.LDAP_SERVERS``.
        basedn: The default base DN for searches.  Defaults to the server's
            ``basedn`` setting.

    Raises:
        ImproperlyConfigured: ``settings.LDAP_SERVERS`` has no such server.

    """

    class ModificationFailed(Exception):
        """
        Raised when the server rejects a batch of modifications.

        Attributes:
            dn: The DN of the entry we tried to modify.
            modifications: Every modification in the batch.
            modification: The modification the server complained about, if
                the server's message named its attribute.
            error: The original :class:`ldap.LDAPError`.

        """

        def __init__(
            self,
            dn: str,
            modifications: list[BatchModification],
            error: Exception,
            modification: BatchModification | None = None,
        ) -> None:
            self.dn = dn
            self.modifications = modifications
            self.modification = modification
            self.error = error
            msg = f"Modification of {dn} failed: {describe_error(error)}"
            if modification is not None:
                msg += f" (rejected: {modification!r})"
            super().__init__(msg)

    def __init__(self, server: str = "default", basedn: str | None = None) -> None:
        self.logger = logger
        self.server = server
        self.config: dict[str, Any] = self._get_config(server)
        self.basedn: str | None = basedn or self.config.get("basedn")
        # keys in this dictionary get manipulated by .connect() and .disconnect()
        self._ldap_objects: dict[threading.Thread, ldap.ldapobject.LDAPObject] = {}  # type: ignore[name-defined]

    @staticmethod
    def _get_config(server: str) -> dict[str, Any]:
        servers = getattr(settings, "LDAP_SERVERS", None)
        if not servers:
            msg = "settings.LDAP_SERVERS is not defined"
            raise ImproperlyConfigured(msg)
        try:
            config = servers[server]
        except KeyError as e:
            msg = f'settings.LDAP_SERVERS has no server named "{server}"'
            raise ImproperlyConfigured(msg) from e
        for key in ("read", "write"):
            if key not in config:
                msg = f'settings.LDAP_SERVERS["{server}"] has no "{key}" configuration'
                raise ImproperlyConfigured(msg)
        return config

    # -----------------------
    # Connections
    # -----------------------

    def disconnect(self) -> None:
        """
        Disconnect the current thread's LDAP connection.
        """
        self.connection.unbind_s()
        self.remove_connection()

    def has_connection(self) -> bool:
        return threading.current_thread() in self._ldap_objects

    def set_connection(self, obj: ldap.ldapobject.LDAPObject) -> None:  # type: ignore[name-defined]
        self._ldap_objects[threading.current_thread()] = obj

    def remove_connection(self) -> None:
        del self._ldap_objects[threading.current_thread()]

    def _connect(
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Create, configure and bind a new LDAP connection object.

        Args:
            key: "read" or "write".
            dn: Bind as this DN instead of the configured user.
            password: The password for ``dn``.

        Returns:
            A bound LDAPObject.

        """
        config = self.config[key]
        if not dn:
            dn = config["user"]
            password = config["password"]
        ldap_object: ldap.ldapobject.LDAPObject = ldap.initialize(config["url"])  # type: ignore[name-defined]
        if config.get("follow_referrals", False):
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        timeout = config.get("timeout", 15.0)
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(timeout))  # type: ignore[attr-defined]
        sizelimit = config.get("sizelimit", None)
        if sizelimit:
            ldap_object.set_option(ldap.OPT_SIZELIMIT, int(sizelimit))  # type: ignore[attr-defined]
        ldap_object.simple_bind_s(dn, password)
        self.logger.debug(
            "ldapquery.manager.connect server=%s key=%s url=%s",
            self.server,
            key,
            config["url"],
        )
        return ldap_object

    def connect(
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> None:
        """
        Set the per-thread LDAP connection object. Used by the @atomic decorator.
        """
        self.set_connection(self._connect(key, dn=dn, password=password))

    def new_connection(
        self, key: str = "read", dn: str | None = None, password: str | None = None
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Return a new, unmanaged LDAP connection.  Closing it is up to you.
        """
        return self._connect(key, dn=dn, password=password)

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        return self._ldap_objects[threading.current_thread()]

    # -----------------------
    # Reading
    # -----------------------

    def query(self) -> FilterBuilder:
        """
        Return a new :class:`~ldapquery.builder.FilterBuilder` bound to us and
        rooted at our base DN.
        """
        return FilterBuilder(manager=self, dn=self.basedn)

    @atomic(key="read")
    def search(
        self,
        searchfilter: str,
        attributes: list[str] | None,
        basedn: str | None = None,
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
        sizelimit: int = 0,
    ) -> list[LDAPData]:
        """
        Search the LDAP server for objects matching the given filter.

        Args:
            searchfilter: The LDAP search filter string.
            attributes: List of attributes to retrieve.

        Keyword Args:
            basedn: The base DN to search from.  Defaults to our base DN.
            scope: LDAP search scope.
            sizelimit: Maximum number of results to return; 0 means no limit.

        Raises:
            ValueError: If no basedn is provided or configured.

        Returns:
            List of LDAPData tuples (dn, attrs).

        """
        if basedn is None:
            basedn = self.basedn
        if not basedn:
            msg = "basedn is required either as a parameter or in settings.LDAP_SERVERS"
            raise ValueError(msg)
        self.logger.debug(
            "ldapquery.manager.search basedn=%s scope=%s filter=%s",
            basedn,
            scope,
            searchfilter,
        )
        data = self.connection.search_s(
            basedn, scope, filterstr=searchfilter, attrlist=attributes
        )
        # We have to filter out any references that AD puts in
        results = [obj for obj in data if isinstance(obj[1], dict)]
        if sizelimit:
            results = results[:sizelimit]
        return results

    def find(self, dn: str) -> Entry | None:
        """
        Return the entry with distinguished name ``dn``, or ``None``.
        """
        try:
            records = self.search(
                "(objectclass=*)",
                None,
                basedn=dn,
                scope=ldap.SCOPE_BASE,  # type: ignore[attr-defined]
            )
        except ldap.NO_SUCH_OBJECT:  # type: ignore[attr-defined]
            return None
        if not records:
            return None
        return Entry.from_record(records[0])

    # -----------------------
    # Writing
    # -----------------------

    @atomic(key="write")
    def modify(
        self,
        dn: str,
        modifications: Iterable[BatchModification | Mapping[str, Any]],
    ) -> None:
        """
        Submit a batch of modifications to the entry ``dn``.

        Args:
            dn: The DN of the entry to modify.
            modifications: :class:`~ldapquery.modifications.BatchModification`
                objects, or dictionaries as returned by their ``get()``.

        Raises:
            ValueError: One of ``modifications`` is incomplete.
            DirectoryManager.ModificationFailed: The server rejected the batch.

        """
        mods = [
            mod if isinstance(mod, BatchModification) else BatchModification.from_dict(mod)
            for mod in modifications
        ]
        modlist: ModList = [mod.to_modlist() for mod in mods]
        if not modlist:
            self.logger.debug("ldapquery.manager.modify.no-changes dn=%s", dn)
            return
        self.logger.debug(
            "ldapquery.manager.modify dn=%s attributes=%s",
            dn,
            ",".join(cast("str", mod.attribute) for mod in mods),
        )
        try:
            self.connection.modify_s(dn, modlist)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            rejected = find_rejected_modification(e, mods)
            self.logger.warning(
                "ldapquery.manager.modify.failed dn=%s error=%s attribute=%s",
                dn,
                describe_error(e),
                rejected.attribute if rejected is not None else None,
            )
            raise self.ModificationFailed(dn, mods, e, modification=rejected) from e

    def update(self, entry: Entry) -> bool:
        """
        Save the changes made to ``entry`` since it was read.

        On success the entry's queued modifications are applied to its
        attributes and cleared, and its current attributes become its
        original snapshot.

        Raises:
            ValueError: ``entry`` has no DN or was never read from the server.
            DirectoryManager.ModificationFailed: The server rejected the changes.

        Returns:
            ``True`` if anything was sent, ``False`` if there were no changes.

        """
        if not entry.dn:
            msg = f"Cannot update {entry!r} without a DN"
            raise ValueError(msg)
        if not entry.exists:
            msg = f"Cannot update {entry!r}: it was not read from the server"
            raise ValueError(msg)
        modifications = entry.get_modifications()
        if not modifications:
            self.logger.debug("ldapquery.manager.update.no-changes dn=%s", entry.dn)
            return False
        self.modify(entry.dn, modifications)
        entry.commit_modifications()
        return True


def describe_error(error: Exception) -> str:
    """
    Summarize an :class:`ldap.LDAPError`, whose first argument is usually a
    dict with ``desc`` and ``info`` keys.
    """
    if error.args and isinstance(error.args[0], dict):
        details = error.args[0]
        parts = [str(details.get(key)) for key in ("desc", "info") if details.get(key)]
        if parts:
            return ": ".join(parts)
    return str(error)


def _names_attribute(message: str, attribute: str) -> bool:
    # Attribute names are made of letters, digits and hyphens, so "l" must not
    # match inside "mail" or "limit".
    pattern = rf"(?<![\w-]){re.escape(attribute)}(?![\w-])"
    return re.search(pattern, message, re.IGNORECASE) is not None


def find_rejected_modification(
    error: Exception, modifications: list[BatchModification]
) -> BatchModification | None:
    """
    Guess which modification the server rejected by looking for its attribute
    name, as a whole word, in the server's diagnostic message.  OpenLDAP and
    389 Directory Server start ``info`` with ``attribute:``, so that form is
    tried first.
    """
    info = ""
    if error.args and isinstance(error.args[0], dict):
        info = str(error.args[0].get("info") or "")
    for modification in modifications:
        if modification.attribute and info.lower().startswith(
            f"{modification.attribute.lower()}:"
        ):
            return modification
    message = describe_error(error)
    for modification in modifications:
        if modification.attribute and _names_attribute(message, modification.attribute):
            return modification
    return None
