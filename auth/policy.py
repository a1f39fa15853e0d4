"""
auth/policy.py -- Path-based authorization policy.

The policy is a flat allow-set of Ant-style patterns plus a default rule for
everything else. Membership is a plain union, so pattern order never matters.

Pattern syntax:
  ?    exactly one character other than "/"
  *    zero or more characters other than "/"
  **   any number of characters including "/"
  A trailing "/**" also matches the bare prefix: "/static/**" matches
  "/static", "/static/" and "/static/css/site.css".
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

_WILDCARDS = re.compile(r"(\*\*|\*|\?)")


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Translate one Ant-style path pattern into an anchored regex."""
    suffix = ""
    if pattern.endswith("/**"):
        pattern = pattern[:-3]
        suffix = "(?:/.*)?"
    parts: list[str] = []
    for token in _WILDCARDS.split(pattern):
        if token == "**":
            parts.append(".*")
        elif token == "*":
            parts.append("[^/]*")
        elif token == "?":
            parts.append("[^/]")
        elif token:
            parts.append(re.escape(token))
    return re.compile("".join(parts) + suffix + r"\Z")


@dataclass(frozen=True)
class AuthorizationPolicy:
    """Decides whether a request path needs an authenticated principal."""

    public_patterns: tuple[str, ...] = ()
    protected_default: bool = True
    _compiled: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # frozen dataclass: bypass __setattr__ for the derived field
        object.__setattr__(self, "_compiled", tuple(compile_pattern(p) for p in self.public_patterns))

    @classmethod
    def from_patterns(cls, patterns: Iterable[str], protected_default: bool = True) -> AuthorizationPolicy:
        return cls(public_patterns=tuple(patterns), protected_default=protected_default)

    def is_public(self, path: str) -> bool:
        """True if path is in the allow-set."""
        return any(rx.match(path) for rx in self._compiled)

    def requires_authentication(self, path: str) -> bool:
        if self.is_public(path):
            return False
        return self.protected_default
