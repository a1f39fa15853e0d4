"""Unit tests for auth/policy.py -- Ant-style allow-set and default rule.

Covers:
- ?, * and ** wildcards
- trailing /** matches the bare prefix
- the default allow-set of the original deployment
- protected_default=False turns the gate off for unlisted paths
- order of patterns never changes the answer
"""

import pytest

from auth.policy import AuthorizationPolicy, compile_pattern
from core.config import get_settings


@pytest.mark.parametrize(
    "pattern,path,expected",
    [
        ("/login", "/login", True),
        ("/login", "/login/", False),
        ("/login", "/loginx", False),
        ("/static/**", "/static/css/site.css", True),
        ("/static/**", "/static", True),
        ("/static/**", "/staticfoo", False),
        ("/public/*.html", "/public/index.html", True),
        ("/public/*.html", "/public/a/index.html", False),
        ("/img/?.png", "/img/a.png", True),
        ("/img/?.png", "/img/ab.png", False),
        ("/docs/**/index", "/docs/a/b/index", True),
        ("/favicon.ico", "/faviconXico", False),
    ],
)
def test_compile_pattern(pattern, path, expected):
    assert bool(compile_pattern(pattern).match(path)) is expected


class TestAuthorizationPolicy:
    def test_default_allow_set(self):
        policy = AuthorizationPolicy.from_patterns(get_settings().public_patterns)
        for path in ("/login", "/register", "/favicon.ico", "/static/site.css", "/webjars/x.js", "/public/a"):
            assert policy.is_public(path), path
            assert not policy.requires_authentication(path)

    def test_unlisted_paths_are_protected_by_default(self):
        policy = AuthorizationPolicy.from_patterns(get_settings().public_patterns)
        for path in ("/", "/user", "/admin/settings", "/api/v1/auth/me"):
            assert policy.requires_authentication(path), path

    def test_protected_default_false(self):
        policy = AuthorizationPolicy.from_patterns(["/login"], protected_default=False)
        assert not policy.requires_authentication("/user")

    def test_pattern_order_is_irrelevant(self):
        patterns = ["/static/**", "/login", "/public/*"]
        forward = AuthorizationPolicy.from_patterns(patterns)
        backward = AuthorizationPolicy.from_patterns(reversed(patterns))
        for path in ("/static/a", "/login", "/public/x", "/user", "/public/x/y"):
            assert forward.is_public(path) == backward.is_public(path)

    def test_empty_allow_set_protects_everything(self):
        policy = AuthorizationPolicy()
        assert policy.requires_authentication("/login")
