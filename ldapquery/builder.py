"""
LDAP search filter builder.

This module provides :class:`FilterBuilder`, which accumulates filter clauses
into "and" and "or" groups, supports nested sub-expressions through
callbacks, and renders everything into a single RFC 4515 filter string that
can be handed to :meth:`ldapquery.managers.DirectoryManager.search`.
"""

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Optional

from ldap_filter import Filter

from .entries import Entry
from .escaping import escape, escape_field, to_text
from .operators import (
    InvalidFilter,
    UnknownOperator,
    get_operator,
    is_operator,
)

if TYPE_CHECKING:
    from .managers import DirectoryManager

#: What we render when no clauses have been added: match everything.
DEFAULT_FILTER: str = "(objectclass=*)"

# -----------------------
# Exceptions
# -----------------------


class MalformedClause(InvalidFilter):
    """Raised when a clause is missing a required key."""


class UnknownConnective(InvalidFilter):
    """Raised when a clause is added to a group other than "and" or "or"."""


# -----------------------
# Filter fragments
# -----------------------


@dataclass(frozen=True)
class FilterClause:
    """
    A single ``field operator value`` predicate.

    ``value`` holds the escaped form that goes over the wire, ``raw_value`` the
    text the caller gave us.  Both are ``None`` for presence operators.
    """

    field: str
    operator: str
    value: str | None
    raw_value: str | None = None

    def render(self, escaped: bool = True) -> str:
        operator = get_operator(self.operator)
        if escaped:
            return operator.render(escape_field(self.field), self.value)
        return operator.render(self.field, self.raw_value)


@dataclass(frozen=True)
class RawFilter:
    """
    A pre-rendered filter fragment.  Nested filters also carry their
    unescaped rendering so that :meth:`FilterBuilder.get_unescaped_query`
    stays readable all the way down.
    """

    query: str
    unescaped: str | None = None

    def render(self, escaped: bool = True) -> str:
        if escaped or self.unescaped is None:
            return self.query
        return self.unescaped


# -----------------------
# Dynamic where_* parsing
# -----------------------

#: Method name prefixes recognized by :meth:`FilterBuilder.dynamic_where`, and
#: the group the first field goes into.
DYNAMIC_PREFIXES: tuple[tuple[str, str], ...] = (
    ("or_where_", "or"),
    ("where_", "and"),
)
#: Splits ``cn_and_sn_or_mail`` into ``["cn", "and", "sn", "or", "mail"]``.
DYNAMIC_CONJUNCTIONS = re.compile(r"_(and|or)_")


@lru_cache(maxsize=256)
def parse_dynamic_where(name: str) -> tuple[tuple[str, str], ...]:
    """
    Decompose a dynamic ``where_*`` method name into ``(connective, field)``
    pairs.

    Example:
        ``where_cn_or_sn`` becomes ``(("and", "cn"), ("or", "sn"))`` and
        ``or_where_given_name`` becomes ``(("or", "given-name"),)``.

    Underscores left inside a field segment become hyphens, since LDAP
    attribute names may contain hyphens but never underscores.

    Args:
        name: The method name.

    Raises:
        ValueError: ``name`` is not a dynamic where name.

    Returns:
        One ``(connective, field)`` pair per field named in ``name``.

    """
    for prefix, connective in DYNAMIC_PREFIXES:
        if name.startswith(prefix):
            finder = name[len(prefix) :]
            break
    else:
        msg = f'"{name}" is not a dynamic where method'
        raise ValueError(msg)
    parts = DYNAMIC_CONJUNCTIONS.split(finder)
    segments: list[tuple[str, str]] = []
    for index in range(0, len(parts), 2):
        if index:
            connective = parts[index - 1]
        segment = parts[index].strip("_")
        if not segment:
            msg = f'"{name}" has an empty field name'
            raise ValueError(msg)
        segments.append((connective, segment.replace("_", "-")))
    return tuple(segments)


# -----------------------
# FilterBuilder
# -----------------------


class FilterBuilder:
    """
    Accumulates LDAP filter clauses and renders them as a filter string.

    Clauses are added with :meth:`where` (the "and" group) and
    :meth:`or_where` (the "or" group).  Arbitrary boolean structure is built
    with :meth:`and_filter`, :meth:`or_filter` and :meth:`not_filter`, which
    hand a fresh nested builder to a callback and absorb its rendering.

    Example:
        >>> query = (
        ...     FilterBuilder()
        ...     .where("objectclass", "person")
        ...     .where_starts_with("cn", "Jo")
        ...     .or_where_has("mail")
        ... )
        >>> str(query)
        '(&(objectclass=person)(cn=Jo*)(|(mail=*)))'

    Keyword Args:
        manager: The :class:`~ldapquery.managers.DirectoryManager` to run the
            query against, if any.
        dn: The base DN to search from.
        nested: ``True`` if this builder renders a sub-expression for a
            parent builder.

    """

    InvalidFilter = InvalidFilter
    MalformedClause = MalformedClause
    UnknownConnective = UnknownConnective
    UnknownOperator = UnknownOperator

    class UnboundQuery(Exception):
        """Raised when a query is executed without a manager."""

    def __init__(
        self,
        manager: Optional["DirectoryManager"] = None,
        dn: str | None = None,
        nested: bool = False,
    ) -> None:
        self.manager: DirectoryManager | None = manager
        self.dn: str | None = dn
        self.nested: bool = nested
        self.default_filter: str = DEFAULT_FILTER
        self.filters: dict[str, list[FilterClause | RawFilter]] = {
            "and": [],
            "or": [],
        }
        self.raw_filters: list[RawFilter] = []
        self.columns: list[str] | None = None

    # -----------------------
    # Instances
    # -----------------------

    def new_instance(self) -> "FilterBuilder":
        """
        Return a fresh builder with the same manager and base DN.
        """
        return FilterBuilder(manager=self.manager, dn=self.dn)

    def new_nested_instance(self) -> "FilterBuilder":
        """
        Return a fresh builder flagged as nested, for use as a sub-expression.
        """
        return FilterBuilder(manager=self.manager, dn=self.dn, nested=True)

    def is_nested(self) -> bool:
        return self.nested

    # -----------------------
    # Base DN and selects
    # -----------------------

    def set_dn(self, dn: str | None) -> "FilterBuilder":
        self.dn = dn
        return self

    def get_dn(self) -> str | None:
        return self.dn

    def in_(self, dn: str | None) -> "FilterBuilder":
        """
        Alias for :meth:`set_dn`, which reads better in a chain:
        ``query.in_("ou=users,dc=example,dc=com").where(...)``.
        """
        return self.set_dn(dn)

    def select(self, *attributes: str | Iterable[str]) -> "FilterBuilder":
        """
        Set the attributes to return from a search.

        Each argument may be an attribute name or a list of them.  Selecting
        nothing keeps whatever was selected before.

        Args:
            *attributes: Attribute names to return.

        Returns:
            The builder itself.

        """
        columns: list[str] = []
        for attribute in attributes:
            if isinstance(attribute, str):
                columns.append(attribute)
            else:
                columns.extend(attribute)
        if columns:
            self.columns = columns
        return self

    def get_selects(self) -> list[str]:
        """
        Return the attributes to request from the server.  ``objectclass`` is
        always requested unless everything (``*``) already is.
        """
        selects = list(self.columns) if self.columns else ["*"]
        lowered = [select.lower() for select in selects]
        if "*" not in lowered and "objectclass" not in lowered:
            selects.append("objectclass")
        return selects

    def has_selects(self) -> bool:
        return bool(self.columns)

    # -----------------------
    # Adding clauses
    # -----------------------

    def add_filter(
        self, connective: str, clause: Mapping[str, Any], escape_value: bool = True
    ) -> "FilterBuilder":
        """
        Validate ``clause`` and append it to the ``connective`` group.

        Args:
            connective: ``"and"`` or ``"or"``.
            clause: A mapping with ``field``, ``operator`` and ``value`` keys.
                ``value`` may be omitted for presence operators (``*`` and
                ``!*``).

        Keyword Args:
            escape_value: Set to ``False`` to embed ``value`` verbatim.

        Raises:
            UnknownConnective: ``connective`` is not ``"and"`` or ``"or"``.
            MalformedClause: ``clause`` is missing a required key.
            UnknownOperator: ``clause["operator"]`` is not in the catalog.

        Returns:
            The builder itself.

        """
        if connective not in self.filters:
            msg = (
                f'Unknown filter connective "{connective}".  Valid connectives are: '
                f"{', '.join(self.filters)}"
            )
            raise self.UnknownConnective(msg)
        missing = [key for key in ("field", "operator") if not clause.get(key)]
        if missing:
            msg = f"Filter clause {dict(clause)!r} is missing {', '.join(missing)}"
            raise self.MalformedClause(msg)
        operator = get_operator(clause["operator"])
        value = clause.get("value")
        if not operator.requires_value:
            self.filters[connective].append(
                FilterClause(to_text(clause["field"]), operator.tag, None)
            )
            return self
        if value is None:
            msg = f"Filter clause {dict(clause)!r} is missing value"
            raise self.MalformedClause(msg)
        raw_value = to_text(value)
        self.filters[connective].append(
            FilterClause(
                to_text(clause["field"]),
                operator.tag,
                escape(value) if escape_value else raw_value,
                raw_value,
            )
        )
        return self

    def where(
        self, field: Any, *args: Any, connective: str = "and"
    ) -> "FilterBuilder":
        """
        Add one or more clauses to the "and" group.

        Accepted call shapes:

        * ``where("cn", "=", "foo")``: field, operator, value
        * ``where("cn", "foo")``: field and value, meaning equals
        * ``where("mail", "*")``: field and a presence operator
        * ``where({"cn": "foo", "sn": "bar"})``: field to value mapping,
          each meaning equals
        * ``where([("cn", "=", "foo"), ("sn", "bar")])``: a list of any of
          the positional shapes above

        Args:
            field: The attribute name, a mapping or a list of clauses.
            *args: The operator and value, or just the value.

        Keyword Args:
            connective: The group to add to.

        Raises:
            MalformedClause: The arguments don't describe a clause.
            UnknownOperator: The operator is not in the catalog.

        Returns:
            The builder itself.

        """
        if isinstance(field, Mapping):
            for key, value in field.items():
                self.add_filter(
                    connective, {"field": key, "operator": "=", "value": value}
                )
            return self
        if isinstance(field, (list, tuple)):
            for item in field:
                if not isinstance(item, (list, tuple)) or len(item) not in (2, 3):
                    msg = (
                        f"Expected a (field, value) or (field, operator, value) "
                        f"sequence, got {item!r}"
                    )
                    raise self.MalformedClause(msg)
                self.where(*item, connective=connective)
            return self
        if len(args) == 1:
            if is_operator(args[0]) and not get_operator(args[0]).requires_value:
                operator, value = args[0], None
            else:
                operator, value = "=", args[0]
        elif len(args) == 2:  # noqa: PLR2004
            operator, value = args
        else:
            msg = f"where() expects a value for field {field!r}"
            raise self.MalformedClause(msg)
        return self.add_filter(
            connective, {"field": field, "operator": operator, "value": value}
        )

    def or_where(self, field: Any, *args: Any) -> "FilterBuilder":
        """
        Add one or more clauses to the "or" group.  Takes the same arguments as
        :meth:`where`.
        """
        return self.where(field, *args, connective="or")

    def where_raw(
        self, field: str, operator: str, value: Any, connective: str = "and"
    ) -> "FilterBuilder":
        """
        Add a clause whose value is embedded without escaping, e.g. to pass a
        value that is already escaped or contains deliberate wildcards.
        """
        return self.add_filter(
            connective,
            {"field": field, "operator": operator, "value": value},
            escape_value=False,
        )

    def raw_filter(self, *filters: str | Iterable[str]) -> "FilterBuilder":
        """
        Append already rendered filter fragments verbatim.  Nothing is escaped
        or validated.
        """
        for raw in filters:
            if isinstance(raw, str):
                self.raw_filters.append(RawFilter(raw))
            else:
                self.raw_filters.extend(RawFilter(item) for item in raw)
        return self

    # Operator shorthands

    def where_equals(self, field: str, value: Any) -> "FilterBuilder":
        return self.where(field, "=", value)

    def where_not_equals(self, field: str, value: Any) -> "FilterBuilder":
        return self.where(field, "!", value)

    def where_approximately_equals(self, field: str, value: Any) -> "FilterBuilder":
        return self.where(field, "~=", value)

    def where_contains(self, field: str, value: Any) -> "FilterBuilder":
        return self.where(field, "contains", value)

    def where_not_contains(self, field: str, value: Any) -> "FilterBuilder":
        return self.where(field, "not_contains", value)

    def where_starts_with(self, field: str, value: Any) -> "FilterBuilder":
        return self.where(field, "starts_with", value)

    def where_not_starts_with(self, field: str, value: Any) -> "FilterBuilder":
        return self.where(field, "not_starts_with", value)

    def where_ends_with(self, field: str, value: Any) -> "FilterBuilder":
        return self.where(field, "ends_with", value)

    def where_not_ends_with(self, field: str, value: Any) -> "FilterBuilder":
        return self.where(field, "not_ends_with", value)

    def where_has(self, field: str) -> "FilterBuilder":
        """Match entries that have any value for ``field``."""
        return self.where(field, "*")

    def where_not_has(self, field: str) -> "FilterBuilder":
        """Match entries that have no value for ``field``."""
        return self.where(field, "!*")

    def where_in(self, field: str, values: Iterable[Any]) -> "FilterBuilder":
        """
        Match entries whose ``field`` equals any of ``values``.  Renders as
        ``(|(field=a)(field=b)...)``.
        """
        return self._where_in(field, values, "and")

    def where_between(self, field: str, values: Iterable[Any]) -> "FilterBuilder":
        """
        Match entries whose ``field`` lies between the two items of
        ``values``, inclusive.  Renders as ``(&(field>=from)(field<=to))``.

        Raises:
            MalformedClause: ``values`` does not have exactly two items.

        """
        return self._where_between(field, values, "and")

    def or_where_equals(self, field: str, value: Any) -> "FilterBuilder":
        return self.or_where(field, "=", value)

    def or_where_not_equals(self, field: str, value: Any) -> "FilterBuilder":
        return self.or_where(field, "!", value)

    def or_where_approximately_equals(
        self, field: str, value: Any
    ) -> "FilterBuilder":
        return self.or_where(field, "~=", value)

    def or_where_contains(self, field: str, value: Any) -> "FilterBuilder":
        return self.or_where(field, "contains", value)

    def or_where_not_contains(self, field: str, value: Any) -> "FilterBuilder":
        return self.or_where(field, "not_contains", value)

    def or_where_starts_with(self, field: str, value: Any) -> "FilterBuilder":
        return self.or_where(field, "starts_with", value)

    def or_where_not_starts_with(self, field: str, value: Any) -> "FilterBuilder":
        return self.or_where(field, "not_starts_with", value)

    def or_where_ends_with(self, field: str, value: Any) -> "FilterBuilder":
        return self.or_where(field, "ends_with", value)

    def or_where_not_ends_with(self, field: str, value: Any) -> "FilterBuilder":
        return self.or_where(field, "not_ends_with", value)

    def or_where_has(self, field: str) -> "FilterBuilder":
        return self.or_where(field, "*")

    def or_where_not_has(self, field: str) -> "FilterBuilder":
        return self.or_where(field, "!*")

    def or_where_in(self, field: str, values: Iterable[Any]) -> "FilterBuilder":
        return self._where_in(field, values, "or")

    def or_where_between(self, field: str, values: Iterable[Any]) -> "FilterBuilder":
        return self._where_between(field, values, "or")

    def _where_in(
        self, field: str, values: Iterable[Any], connective: str
    ) -> "FilterBuilder":
        values = list(values)

        def build(query: "FilterBuilder") -> None:
            for value in values:
                query.where_equals(field, value)

        return self._nested("(|{})", build, connective)

    def _where_between(
        self, field: str, values: Iterable[Any], connective: str
    ) -> "FilterBuilder":
        try:
            lower, upper = values
        except (TypeError, ValueError) as e:
            msg = f"between needs exactly two values for {field!r}, got {values!r}"
            raise self.MalformedClause(msg) from e

        def build(query: "FilterBuilder") -> None:
            query.where(field, ">=", lower).where(field, "<=", upper)

        return self._nested("(&{})", build, connective)

    # Dynamic where_<field>[_and_<field>|_or_<field>...]

    def dynamic_where(self, method: str, *values: Any) -> "FilterBuilder":
        """
        Add equals clauses for the fields named in ``method``.

        ``where_cn_and_sn("foo", "bar")`` adds ``cn=foo`` and ``sn=bar`` to the
        "and" group; ``where_cn_or_sn("foo", "bar")`` adds ``cn=foo`` to the
        "and" group and ``sn=bar`` to the "or" group.  Methods starting with
        ``or_where_`` put their first field in the "or" group.

        Args:
            method: The dynamic method name.
            *values: One value per field named in ``method``.

        Raises:
            TypeError: The number of values doesn't match the number of fields.

        Returns:
            The builder itself.

        """
        segments = parse_dynamic_where(method)
        if len(values) != len(segments):
            msg = (
                f"{method}() takes {len(segments)} value(s) but {len(values)} "
                "were given"
            )
            raise TypeError(msg)
        for (connective, field), value in zip(segments, values, strict=True):
            self.add_filter(connective, {"field": field, "operator": "=", "value": value})
        return self

    def __getattr__(self, name: str) -> Callable[..., "FilterBuilder"]:
        if not name.startswith("_"):
            try:
                parse_dynamic_where(name)
            except ValueError:
                pass
            else:
                return lambda *values: self.dynamic_where(name, *values)
        msg = f"{self.__class__.__name__!r} object has no attribute {name!r}"
        raise AttributeError(msg)

    # -----------------------
    # Nested filters
    # -----------------------

    def _nested(
        self,
        wrapper: str,
        callback: Callable[["FilterBuilder"], Any],
        connective: str = "and",
    ) -> "FilterBuilder":
        """
        Build a nested builder through ``callback`` and absorb its rendering,
        wrapped with ``wrapper``, into our ``connective`` group.  The nested
        builder is not kept.
        """
        query = self.new_nested_instance()
        callback(query)
        if query.has_filters():
            self.filters[connective].append(
                RawFilter(
                    wrapper.format(query.get_query()),
                    wrapper.format(query.get_unescaped_query()),
                )
            )
        return self

    def and_filter(self, callback: Callable[["FilterBuilder"], Any]) -> "FilterBuilder":
        """
        Add an ``(&...)`` group populated by ``callback``.

        Example:
            >>> FilterBuilder().and_filter(
            ...     lambda q: q.where({"one": "one", "two": "two"})
            ... ).get_query()
            '(&(one=one)(two=two))'

        """
        return self._nested("(&{})", callback)

    def or_filter(self, callback: Callable[["FilterBuilder"], Any]) -> "FilterBuilder":
        """
        Add an ``(|...)`` group populated by ``callback``.
        """
        return self._nested("(|{})", callback)

    def not_filter(self, callback: Callable[["FilterBuilder"], Any]) -> "FilterBuilder":
        """
        Add a ``(!...)`` group populated by ``callback``.
        """
        return self._nested("(!{})", callback)

    # -----------------------
    # Rendering
    # -----------------------

    def has_filters(self) -> bool:
        return bool(self.raw_filters or self.filters["and"] or self.filters["or"])

    def clear_filters(self) -> "FilterBuilder":
        """
        Forget every clause and raw fragment.  The default filter remains.
        """
        self.filters = {"and": [], "or": []}
        self.raw_filters = []
        return self

    def _compile(self, escaped: bool = True) -> str:
        fragments = [raw.render(escaped) for raw in self.raw_filters]
        fragments.extend(entry.render(escaped) for entry in self.filters["and"])
        if self.filters["or"]:
            ors = "".join(entry.render(escaped) for entry in self.filters["or"])
            fragments.append(f"(|{ors})")
        if not fragments:
            return self.default_filter
        if len(fragments) == 1 or self.nested:
            # Nested builders are wrapped by their parent.
            return "".join(fragments)
        return f"(&{''.join(fragments)})"

    def get_query(self) -> str:
        """
        Return the filter string, with every value escaped.
        """
        return self._compile(escaped=True)

    def get_unescaped_query(self) -> str:
        """
        Return the filter string with the values as the caller gave them.
        Meant for logging and assertions; never send this to a server.
        """
        return self._compile(escaped=False)

    def as_filter(self) -> Filter:
        """
        Parse our filter string into an :class:`ldap_filter.Filter`, which can
        be matched against attribute dictionaries client side.
        """
        return Filter.parse(self.get_query())

    def __str__(self) -> str:
        return self.get_query()

    # -----------------------
    # Execution
    # -----------------------

    def _require_manager(self) -> "DirectoryManager":
        if self.manager is None:
            msg = (
                "FilterBuilder is not bound to a manager. Use "
                "DirectoryManager.query() or FilterBuilder(manager=...)."
            )
            raise self.UnboundQuery(msg)
        return self.manager

    def get(self) -> list[Entry]:
        """
        Run the query and return every matching entry.

        Raises:
            UnboundQuery: No manager was given.

        Returns:
            A list of :class:`~ldapquery.entries.Entry` objects.

        """
        manager = self._require_manager()
        records = manager.search(self.get_query(), self.get_selects(), basedn=self.dn)
        return [Entry.from_record(record) for record in records]

    def first(self) -> Entry | None:
        """
        Run the query and return the first matching entry, or ``None``.
        """
        manager = self._require_manager()
        records = manager.search(
            self.get_query(), self.get_selects(), basedn=self.dn, sizelimit=1
        )
        if not records:
            return None
        return Entry.from_record(records[0])
