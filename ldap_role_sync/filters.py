"""
LDAP search filter construction for role and user entries.
"""

from typing import Optional, Sequence

from ldap3.utils.conv import escape_filter_chars


def escape_filter_value(value: str) -> str:
    """Escape filter metacharacters ( ) * \\ and NUL in a value."""
    return escape_filter_chars(value)


def build_role_filter(object_classes: Optional[Sequence[str]] = None,
                      extra_filter: Optional[str] = None) -> str:
    """
    Build the filter matching entries of every given object class.

    The extra filter fragment is trusted configuration and is not escaped.
    It may be given with or without its enclosing parentheses.

    Args:
        object_classes: Object classes the entry must all carry (default '*')
        extra_filter: Optional raw filter fragment ANDed with the class clause

    Returns:
        LDAP filter string
    """
    object_classes = list(object_classes or ['*'])
    search_filter = '(&' + ''.join(f'(objectclass={oc})' for oc in object_classes) + ')'

    if extra_filter:
        extra_filter = extra_filter.strip()
        if not extra_filter.startswith('('):
            extra_filter = f'({extra_filter})'
        search_filter = f'(&{search_filter}{extra_filter})'

    return search_filter


def build_entry_filter(attribute: str, value: str, object_classes: Optional[Sequence[str]] = None,
                       extra_filter: Optional[str] = None) -> str:
    """Filter for the single entry whose ``attribute`` equals ``value``."""
    return f'(&({attribute}={escape_filter_value(value)}){build_role_filter(object_classes, extra_filter)})'
