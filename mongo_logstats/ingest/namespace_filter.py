"""Namespace allow-list shared by every accumulation path."""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Pattern, Union

from .records import Namespace

EXCLUDED_DATABASES = frozenset({"config"})


def _glob_to_regex(pattern: str) -> Pattern[str]:
    escaped = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(escaped)


class NamespaceFilter:
    """Match namespaces against exact, ``db.*``, bare-db and glob filters.

    The ``config`` database never matches. With no filters configured every
    other namespace matches.
    """

    def __init__(self, filters: Optional[Iterable[str]] = None) -> None:
        self.filters: List[str] = [item.strip() for item in (filters or []) if item and item.strip()]
        self._globs: List[Pattern[str]] = [
            _glob_to_regex(item) for item in self.filters if "*" in item
        ]

    def __bool__(self) -> bool:
        return bool(self.filters)

    def matches(self, namespace: Union[Namespace, str, None]) -> bool:
        if namespace is None:
            return False
        if isinstance(namespace, str):
            namespace = Namespace.parse(namespace)

        if namespace.database in EXCLUDED_DATABASES:
            return False
        if not self.filters:
            return True

        full_name = str(namespace)
        database = namespace.database
        for item in self.filters:
            if item == full_name:
                return True
            if item.endswith(".*") and item[:-2] == database:
                return True
            if "." not in item and item == database:
                return True
        for glob in self._globs:
            if glob.fullmatch(full_name):
                return True
        return False
