"""
Directory entries and change tracking.

An :class:`Entry` holds the attributes of one directory object twice: the
``original`` snapshot last read from the server and the current, mutable
attributes.  Comparing the two tells us which attributes are dirty, and the
change-set engine in :mod:`ldapquery.modifications` turns those into the
batch modifications the server needs.
"""

from collections.abc import Iterable, Mapping
from typing import Any, cast

from django.utils.encoding import DjangoUnicodeDecodeError, force_str

from .modifications import BatchModification, build_modifications, normalize_values
from .typing import LDAPData, Snapshot


def normalize_key(key: str) -> str:
    """
    Attribute names are case-insensitive, so we store them lower-cased.
    """
    return str(key).lower()


def decode_value(value: Any) -> Any:
    """
    Decode a raw attribute value to ``str`` if it is valid UTF-8.  Binary
    values (``objectGUID``, ``jpegPhoto`` ...) are left as ``bytes``.
    """
    if isinstance(value, bytes):
        try:
            return force_str(value, strings_only=True)
        except DjangoUnicodeDecodeError:
            return value
    return value


class Entry:
    """
    A directory entry: a distinguished name plus two attribute snapshots.

    Keyword Args:
        attributes: Initial attribute values.  These are *not* considered to
            be on the server yet, so they are all dirty.
        dn: The distinguished name.

    """

    class InvalidModification(ValueError):
        """
        Raised when a modification without an attribute name or operation is
        added to an entry.
        """

    def __init__(
        self, attributes: Mapping[str, Any] | None = None, dn: str | None = None
    ) -> None:
        self.dn: str | None = dn
        #: ``True`` once the entry has been read from (or written to) the server.
        self.exists: bool = False
        self.attributes: Snapshot = {}
        self.original: Snapshot = {}
        self.modifications: list[dict[str, Any]] = []
        if attributes:
            self.fill(attributes)

    @classmethod
    def from_record(cls, record: LDAPData) -> "Entry":
        """
        Build an existing entry from a ``(dn, attributes)`` search result.
        """
        dn, attributes = record
        entry = cls()
        entry.set_raw_attributes(attributes)
        entry.dn = dn
        entry.exists = True
        return entry

    # -----------------------
    # Attributes
    # -----------------------

    def fill(self, attributes: Mapping[str, Any]) -> "Entry":
        for key, value in attributes.items():
            self.set_attribute(key, value)
        return self

    def set_attribute(self, key: str, value: Any) -> "Entry":
        """
        Set all values of attribute ``key``.  Scalars are wrapped in a list and
        ``None`` clears the attribute.
        """
        self.attributes[normalize_key(key)] = normalize_values(value)
        return self

    def set_first_attribute(self, key: str, value: Any) -> "Entry":
        """
        Replace the first value of ``key``, keeping any others.
        """
        values = list(self.attributes.get(normalize_key(key), []))
        if values:
            values[0] = value
        else:
            values.append(value)
        return self.set_attribute(key, values)

    def get_attribute(self, key: str, default: Any = None) -> list[Any] | Any:
        return self.attributes.get(normalize_key(key), default)

    def get_first_attribute(self, key: str, default: Any = None) -> Any:
        values = self.attributes.get(normalize_key(key))
        if not values:
            return default
        return values[0]

    def has_attribute(self, key: str) -> bool:
        return bool(self.attributes.get(normalize_key(key)))

    def set_raw_attributes(self, attributes: Mapping[str, Any]) -> "Entry":
        """
        Replace every attribute with values read from the server and make them
        the new original snapshot.  A ``dn`` key, if present, becomes our DN.
        """
        self.attributes = {}
        for key, value in attributes.items():
            if normalize_key(key) == "dn":
                values = normalize_values(value)
                self.dn = decode_value(values[0]) if values else None
                continue
            self.attributes[normalize_key(key)] = [
                decode_value(item) for item in normalize_values(value)
            ]
        self.exists = True
        return self.sync_original()

    def sync_original(self) -> "Entry":
        """
        Declare the current attributes to be what the server has.
        """
        self.original = {key: list(values) for key, values in self.attributes.items()}
        return self

    def get_original(self, key: str | None = None) -> Snapshot | list[Any] | None:
        if key is None:
            return self.original
        return self.original.get(normalize_key(key))

    def get_dirty(self) -> Snapshot:
        """
        Return the attributes whose values differ from the original snapshot.

        Values are compared as ordered lists, so reordering the values of a
        multi-valued attribute counts as a change.
        """
        return {
            key: values
            for key, values in self.attributes.items()
            if key not in self.original or self.original[key] != values
        }

    def is_dirty(self, key: str | None = None) -> bool:
        dirty = self.get_dirty()
        if key is None:
            return bool(dirty)
        return normalize_key(key) in dirty

    def to_dict(self) -> Snapshot:
        return {key: list(values) for key, values in self.attributes.items()}

    def __getitem__(self, key: str) -> list[Any]:
        try:
            return self.attributes[normalize_key(key)]
        except KeyError as e:
            msg = f"{self!r} has no attribute {key!r}"
            raise KeyError(msg) from e

    def __setitem__(self, key: str, value: Any) -> None:
        self.set_attribute(key, value)

    def __delitem__(self, key: str) -> None:
        # Clearing rather than dropping the key keeps the removal visible to
        # get_dirty(), which turns it into a REMOVE_ALL.
        self.set_attribute(key, None)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has_attribute(key)

    def __repr__(self) -> str:
        return f"<Entry dn={self.dn!r}>"

    # -----------------------
    # Modifications
    # -----------------------

    def _validate_modification(
        self, modification: BatchModification | Mapping[str, Any]
    ) -> dict[str, Any]:
        if isinstance(modification, BatchModification):
            candidate = modification
            data = modification.get()
        elif isinstance(modification, Mapping):
            if (
                BatchModification.KEY_ATTRIB not in modification
                or BatchModification.KEY_MODTYPE not in modification
            ):
                msg = (
                    "The batch modification does not include the mandatory "
                    f"'{BatchModification.KEY_ATTRIB}' or "
                    f"'{BatchModification.KEY_MODTYPE}' keys: {modification!r}"
                )
                raise self.InvalidModification(msg)
            try:
                candidate = BatchModification.from_dict(modification)
            except ValueError as e:
                raise self.InvalidModification(str(e)) from e
            data = dict(modification)
        else:
            msg = f"Expected a BatchModification or a mapping, got {modification!r}"
            raise self.InvalidModification(msg)
        if data is None or not candidate.is_valid():
            msg = (
                "The batch modification needs both an attribute name and a "
                f"valid type: {modification!r}"
            )
            raise self.InvalidModification(msg)
        return dict(data)

    def add_modification(
        self, modification: BatchModification | Mapping[str, Any]
    ) -> "Entry":
        """
        Queue a modification to be sent along with the dirty attributes on the
        next update.

        Args:
            modification: A :class:`~ldapquery.modifications.BatchModification`
                or a dictionary with ``attrib``, ``modtype`` and optionally
                ``values`` keys.

        Raises:
            Entry.InvalidModification: ``attrib`` or ``modtype`` is missing,
                empty or not a known modification type.

        Returns:
            The entry itself.

        """
        self.modifications.append(self._validate_modification(modification))
        return self

    def set_modifications(
        self, modifications: Iterable[BatchModification | Mapping[str, Any]]
    ) -> "Entry":
        for modification in modifications:
            self.add_modification(modification)
        return self

    def clear_modifications(self) -> "Entry":
        self.modifications = []
        return self

    def commit_modifications(self) -> "Entry":
        """
        Record that :meth:`get_modifications` has been written to the server.

        Queued modifications are applied to attributes that are not dirty;
        dirty attributes already hold the values the computed modifications
        sent.  The queue is then cleared and the result becomes the original
        snapshot.
        """
        dirty = self.get_dirty()
        for data in self.modifications:
            modification = BatchModification.from_dict(data)
            key = normalize_key(cast("str", modification.attribute))
            if key in dirty:
                continue
            self.attributes[key] = modification.apply(self.attributes.get(key, []))
        self.exists = True
        return self.clear_modifications().sync_original()

    def get_modifications(self) -> list[dict[str, Any]]:
        """
        Return the queued modifications followed by those computed from the
        dirty attributes.

        Returns:
            A list of modification dictionaries, in the format produced by
            :meth:`~ldapquery.modifications.BatchModification.get`.

        """
        built = build_modifications(self.original, self.attributes, self.get_dirty())
        return list(self.modifications) + [
            self._validate_modification(modification) for modification in built
        ]
