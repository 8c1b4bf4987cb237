"""
Batch modifications and the change-set engine.

A :class:`BatchModification` is one typed change (add, replace, remove or
remove-all) against one attribute of one directory entry.
:func:`build_modifications` compares an entry's original attribute snapshot
with its current one and returns the modifications needed to reconcile them.
"""

from collections.abc import Iterable, Mapping
from enum import IntEnum
from typing import Any, cast

import ldap
from django.utils.encoding import force_bytes

from .typing import ModListEntry, Snapshot


class ModificationType(IntEnum):
    """
    The kinds of batch modification.  The numbers are the batch operation
    codes used by directory servers' "modify batch" APIs; use
    :attr:`ldap_op` for the python-ldap ``MOD_*`` constant.
    """

    ADD = 1
    REMOVE = 2
    REPLACE = 3
    REMOVE_ALL = 18

    @property
    def ldap_op(self) -> int:
        if self is ModificationType.ADD:
            return ldap.MOD_ADD  # type: ignore[attr-defined]
        if self is ModificationType.REPLACE:
            return ldap.MOD_REPLACE  # type: ignore[attr-defined]
        return ldap.MOD_DELETE  # type: ignore[attr-defined]


def normalize_values(value: Any) -> list[Any]:
    """
    Turn an attribute value into a list of values.  ``None`` becomes ``[]`` and
    scalars are wrapped.
    """
    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        return [value]
    if isinstance(value, Iterable):
        return list(value)
    return [value]


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, bytes):
        return not value
    return False


class BatchModification:
    """
    A single modification of one attribute.

    Build one directly when you know the operation::

        BatchModification("mail", ModificationType.ADD, ["foo@example.com"])

    or let :meth:`build` pick the operation from the original and new values::

        mod = BatchModification("mail", values=["foo@example.com"])
        mod.set_original(["bar@example.com"])
        mod.build()  # -> REPLACE

    Args:
        attribute: The attribute name.
        modtype: The :class:`ModificationType` (or its integer value).
        values: The values the modification carries.

    Raises:
        ValueError: ``modtype`` is not a known modification type.

    """

    KEY_ATTRIB: str = "attrib"
    KEY_MODTYPE: str = "modtype"
    KEY_VALUES: str = "values"

    def __init__(
        self,
        attribute: str | None = None,
        modtype: ModificationType | int | None = None,
        values: Any = None,
    ) -> None:
        self.attribute: str | None = attribute
        self._modtype: ModificationType | None = None
        self.modtype = modtype  # type: ignore[assignment]
        self.values: list[Any] = normalize_values(values)
        self.original: list[Any] = []

    @property
    def modtype(self) -> ModificationType | None:
        return self._modtype

    @modtype.setter
    def modtype(self, value: ModificationType | int | None) -> None:
        if value is None:
            self._modtype = None
            return
        try:
            self._modtype = ModificationType(value)
        except ValueError as e:
            msg = f"Given batch modification type {value!r} is invalid."
            raise ValueError(msg) from e

    def set_original(self, original: Any) -> "BatchModification":
        """
        Record the values the attribute had on the server, for :meth:`build`.
        """
        self.original = normalize_values(original)
        return self

    def build(self) -> "BatchModification":
        """
        Choose the modification type by comparing :attr:`values` against
        :attr:`original`.  Blank values are dropped first.

        * no original, no values: nothing to do, :attr:`modtype` stays unset
        * no original, values: ``ADD``
        * original, no values: ``REMOVE_ALL``
        * original, values: ``REPLACE``

        Returns:
            The modification itself.

        """
        self.values = [value for value in self.values if not _is_blank(value)]
        original = [value for value in self.original if not _is_blank(value)]
        if not original and not self.values:
            return self
        if not original:
            self.modtype = ModificationType.ADD
        elif not self.values:
            self.modtype = ModificationType.REMOVE_ALL
        else:
            self.modtype = ModificationType.REPLACE
        return self

    def is_valid(self) -> bool:
        """
        A modification is valid when it names both an attribute and an
        operation; ``values`` may legitimately be empty.
        """
        return bool(self.attribute) and self.modtype is not None

    def get(self) -> dict[str, Any] | None:
        """
        Return the modification as a dictionary with ``attrib``, ``modtype``
        and, unless this is a ``REMOVE_ALL``, ``values`` keys.  Returns
        ``None`` if no operation has been chosen yet.
        """
        if self.modtype is None:
            return None
        if self.modtype is ModificationType.REMOVE_ALL:
            return {self.KEY_ATTRIB: self.attribute, self.KEY_MODTYPE: int(self.modtype)}
        return {
            self.KEY_ATTRIB: self.attribute,
            self.KEY_MODTYPE: int(self.modtype),
            self.KEY_VALUES: list(self.values),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BatchModification":
        """
        The inverse of :meth:`get`.
        """
        return cls(
            data.get(cls.KEY_ATTRIB),
            data.get(cls.KEY_MODTYPE),
            data.get(cls.KEY_VALUES),
        )

    def apply(self, values: Iterable[Any]) -> list[Any]:
        """
        Return ``values`` as the server will hold them once this modification
        has been applied.  A ``REMOVE`` without values removes everything, as
        an LDAP delete without values does.

        Raises:
            ValueError: The modification is not valid.

        """
        if not self.is_valid():
            msg = f"Cannot apply an incomplete modification: {self!r}"
            raise ValueError(msg)
        current = list(values)
        if self.modtype is ModificationType.ADD:
            return current + [value for value in self.values if value not in current]
        if self.modtype is ModificationType.REPLACE:
            return list(self.values)
        if self.modtype is ModificationType.REMOVE and self.values:
            return [value for value in current if value not in self.values]
        return []

    def to_modlist(self) -> ModListEntry:
        """
        Convert to a python-ldap modlist entry suitable for ``modify_s``.

        Raises:
            ValueError: The modification is not valid.

        Returns:
            A ``(op, attribute, values)`` tuple; ``values`` is ``None`` for
            ``REMOVE_ALL``.

        """
        if not self.is_valid():
            msg = f"Cannot send an incomplete modification: {self!r}"
            raise ValueError(msg)
        modtype = cast("ModificationType", self.modtype)
        if modtype is ModificationType.REMOVE_ALL:
            return (modtype.ldap_op, self.attribute, None)  # type: ignore[return-value]
        return (
            modtype.ldap_op,
            self.attribute,  # type: ignore[return-value]
            [force_bytes(value) for value in self.values],
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BatchModification):
            return NotImplemented
        return self.get() == other.get() and self.attribute == other.attribute

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        modtype = self.modtype.name if self.modtype is not None else None
        return (
            f"BatchModification(attribute={self.attribute!r}, modtype={modtype}, "
            f"values={self.values!r})"
        )


def build_modifications(
    original: Snapshot, current: Snapshot, dirty_keys: Iterable[str]
) -> list[BatchModification]:
    """
    Compute the modifications needed to turn ``original`` into ``current``.

    Only the attributes named in ``dirty_keys`` are considered, and each
    yields at most one modification.  Values inside a multi-valued attribute
    are not diffed: a changed attribute is replaced wholesale.

    Args:
        original: The attribute snapshot last read from the server.
        current: The attribute snapshot as it is now.
        dirty_keys: The attributes that changed, in the order the
            modifications should be returned.

    Returns:
        The valid modifications, in ``dirty_keys`` order.

    """
    modifications: list[BatchModification] = []
    for key in dirty_keys:
        modification = BatchModification(key, values=current.get(key))
        if key in original:
            modification.set_original(original[key])
        modification.build()
        if modification.is_valid():
            modifications.append(modification)
    return modifications
