"""
LDAP query type definitions.

This module provides type aliases for raw LDAP records, attribute snapshots
and python-ldap modlists, using Python 3.10+ type hinting conventions.
"""

from typing import Any

#: A search result as returned by python-ldap: ``(dn, {attribute: [values]})``
LDAPData = tuple[str, dict[str, list[bytes]]]
#: Attribute name -> list of values
Snapshot = dict[str, list[Any]]
#: ``(ldap.MOD_*, attribute, values or None)``
ModListEntry = tuple[int, str, list[bytes] | None]
ModList = list[ModListEntry]
