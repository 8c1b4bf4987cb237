"""
The catalog of filter operators understood by
:class:`ldapquery.builder.FilterBuilder`.

Each operator knows how to render a single ``(field, value)`` clause into
RFC 4515 filter syntax.  Operators are looked up by their canonical tag
(``=``, ``contains``, ``>=`` ...) or by one of their aliases (``equals``,
``!=``, ``has`` ...).
"""

from dataclasses import dataclass


class InvalidFilter(ValueError):
    """Base class for filter clauses we refuse to accept."""


class UnknownOperator(InvalidFilter):
    """Raised when an operator tag is not in the catalog."""


@dataclass(frozen=True)
class Operator:
    """
    A single entry in the operator catalog.

    Args:
        tag: The canonical tag for this operator.
        template: A :meth:`str.format` template with ``{field}`` and
            ``{value}`` placeholders.

    Keyword Args:
        aliases: Other names this operator may be referred to by.
        requires_value: ``False`` for presence style operators that ignore
            the clause value.

    """

    tag: str
    template: str
    aliases: tuple[str, ...] = ()
    requires_value: bool = True

    def render(self, field: str, value: str | None = None) -> str:
        """
        Render a clause.  ``field`` and ``value`` must already be escaped if
        escaping is wanted.
        """
        return self.template.format(field=field, value=value or "")


EQUALS = Operator("=", "({field}={value})", aliases=("equals",))
NOT_EQUALS = Operator("!", "(!({field}={value}))", aliases=("!=", "not_equals"))
CONTAINS = Operator("contains", "({field}=*{value}*)")
NOT_CONTAINS = Operator("not_contains", "(!({field}=*{value}*))")
STARTS_WITH = Operator("starts_with", "({field}={value}*)")
NOT_STARTS_WITH = Operator("not_starts_with", "(!({field}={value}*))")
ENDS_WITH = Operator("ends_with", "({field}=*{value})")
NOT_ENDS_WITH = Operator("not_ends_with", "(!({field}=*{value}))")
HAS = Operator("*", "({field}=*)", aliases=("has",), requires_value=False)
NOT_HAS = Operator(
    "!*", "(!({field}=*))", aliases=("not_has",), requires_value=False
)
APPROXIMATELY_EQUALS = Operator(
    "~=", "({field}~={value})", aliases=("approximately_equals",)
)
GREATER_OR_EQUAL = Operator(">=", "({field}>={value})", aliases=("greater_or_equal",))
LESS_OR_EQUAL = Operator("<=", "({field}<={value})", aliases=("less_or_equal",))

#: Every supported operator, in catalog order.
OPERATORS: tuple[Operator, ...] = (
    EQUALS,
    NOT_EQUALS,
    CONTAINS,
    NOT_CONTAINS,
    STARTS_WITH,
    NOT_STARTS_WITH,
    ENDS_WITH,
    NOT_ENDS_WITH,
    HAS,
    NOT_HAS,
    APPROXIMATELY_EQUALS,
    GREATER_OR_EQUAL,
    LESS_OR_EQUAL,
)

# tag or alias -> Operator
_CATALOG: dict[str, Operator] = {}
for _operator in OPERATORS:
    _CATALOG[_operator.tag] = _operator
    for _alias in _operator.aliases:
        _CATALOG[_alias] = _operator
del _operator, _alias


def is_operator(tag: object) -> bool:
    """Return ``True`` if ``tag`` is a known operator tag or alias."""
    return isinstance(tag, str) and tag in _CATALOG


def get_operator(tag: str) -> Operator:
    """
    Look up an operator by tag or alias.

    Args:
        tag: The operator tag, e.g. ``"="`` or ``"starts_with"``.

    Raises:
        UnknownOperator: ``tag`` is not in the catalog.

    Returns:
        The matching :class:`Operator`.

    """
    try:
        return _CATALOG[tag]
    except (KeyError, TypeError) as e:
        msg = (
            f'Unknown filter operator "{tag}".  Valid operators are: '
            f"{', '.join(sorted(_CATALOG))}"
        )
        raise UnknownOperator(msg) from e


def render(field: str, tag: str, value: str | None = None) -> str:
    """
    Render one clause through the catalog.

    Args:
        field: The attribute name.
        tag: The operator tag or alias.
        value: The value to compare against, ignored by presence operators.

    Raises:
        UnknownOperator: ``tag`` is not in the catalog.

    Returns:
        The rendered clause, e.g. ``(cn=*foo*)``.

    """
    return get_operator(tag).render(field, value)
