"""Tests for perch.routing.router — trie router with precedence and backtracking."""

import pytest

from perch.errors import (
    ConfigurationError,
    DuplicateRouteError,
    LateRegistrationError,
    MethodNotAllowedError,
    NoMatchError,
)
from perch.handlers import describe_handler
from perch.routing.router import Router, parse_pattern


def _handler() -> str:
    return "ok"


def _other() -> str:
    return "other"


def _router(*routes: tuple[str, str], compile: bool = True) -> Router:
    router = Router()
    for method, pattern in routes:
        router.register(method, pattern, describe_handler(_handler))
    if compile:
        router.compile()
    return router


class TestParsePattern:
    def test_literal(self) -> None:
        segments = parse_pattern("/api/v2/users")
        assert [s.value for s in segments] == ["api", "v2", "users"]
        assert all(s.kind == "literal" for s in segments)

    def test_root(self) -> None:
        assert parse_pattern("/") == []

    def test_param_defaults_to_str(self) -> None:
        segments = parse_pattern("/users/{id}")
        assert segments[1].kind == "param"
        assert segments[1].name == "id"
        assert segments[1].converter == "str"

    def test_typed_param(self) -> None:
        assert parse_pattern("/users/{id:int}")[1].converter == "int"

    def test_wildcards(self) -> None:
        assert parse_pattern("/files/{rest:path}")[1].kind == "wildcard"
        star = parse_pattern("/static/*")[1]
        assert star.kind == "wildcard"
        assert star.name == "path"
        assert parse_pattern("/static/*asset")[1].name == "asset"

    @pytest.mark.parametrize(
        "pattern",
        [
            "users",
            "/share/<slug>",
            "/users/{id:bogus}",
            "/users/prefix-{id}",
            "/users/{1id}",
            "/a/{x}/b/{x}",
            "/files/{rest:path}/edit",
            "/files/*/edit",
        ],
    )
    def test_rejects_malformed(self, pattern: str) -> None:
        with pytest.raises(ConfigurationError):
            parse_pattern(pattern)

    def test_angle_bracket_hint(self) -> None:
        with pytest.raises(ConfigurationError, match=r"\{param\}"):
            parse_pattern("/share/<slug>")


class TestRouterMatching:
    def test_literal_match(self) -> None:
        router = _router(("GET", "/users"))
        match = router.match("GET", "/users")
        assert match.route.pattern == "/users"
        assert match.path_params == {}

    def test_root(self) -> None:
        router = _router(("GET", "/"))
        assert router.match("GET", "/").route.pattern == "/"

    def test_trailing_slash_ignored(self) -> None:
        router = _router(("GET", "/users"))
        assert router.match("GET", "/users/").route.pattern == "/users"

    def test_empty_segment_matches_no_param(self) -> None:
        router = _router(("GET", "/users/{id}"), ("GET", "/users/{id}/posts"))
        with pytest.raises(NoMatchError):
            router.match("GET", "/users//posts")
        with pytest.raises(NoMatchError):
            router.match("GET", "/users//")
        assert router.match("GET", "/users/7/posts/").path_params == {"id": "7"}

    def test_wildcard_rest_not_empty(self) -> None:
        router = _router(("GET", "/files/{rest:path}"))
        with pytest.raises(NoMatchError):
            router.match("GET", "/files//")
        assert router.match("GET", "/files/a//b").path_params == {"rest": "a//b"}

    def test_extracts_params(self) -> None:
        router = _router(("GET", "/orgs/{org}/repos/{repo}"))
        match = router.match("GET", "/orgs/acme/repos/perch")
        assert match.path_params == {"org": "acme", "repo": "perch"}

    def test_literal_beats_param(self) -> None:
        router = Router()
        router.register("GET", "/users/{id}", describe_handler(_handler))
        router.register("GET", "/users/admin", describe_handler(_other))
        router.compile()
        assert router.match("GET", "/users/admin").route.handler is _other
        assert router.match("GET", "/users/7").route.handler is _handler

    def test_param_beats_wildcard(self) -> None:
        router = Router()
        router.register("GET", "/files/{rest:path}", describe_handler(_other))
        router.register("GET", "/files/{name}", describe_handler(_handler))
        router.compile()
        assert router.match("GET", "/files/readme").route.handler is _handler
        match = router.match("GET", "/files/docs/readme.md")
        assert match.route.handler is _other
        assert match.path_params == {"rest": "docs/readme.md"}

    def test_backtracks_from_literal_dead_end(self) -> None:
        router = _router(("GET", "/users/admin/settings"), ("GET", "/users/{id}/profile"))
        match = router.match("GET", "/users/admin/profile")
        assert match.route.pattern == "/users/{id}/profile"
        assert match.path_params == {"id": "admin"}

    def test_converter_restricts_match(self) -> None:
        router = _router(("GET", "/items/{id:int}"))
        assert router.match("GET", "/items/-3").path_params == {"id": "-3"}
        with pytest.raises(NoMatchError):
            router.match("GET", "/items/abc")

    def test_first_registered_param_edge_wins_tie(self) -> None:
        router = Router()
        router.register("GET", "/items/{slug}", describe_handler(_handler))
        router.register("GET", "/items/{id:int}", describe_handler(_other))
        router.compile()
        assert router.match("GET", "/items/42").route.handler is _handler

    def test_wildcard_needs_one_segment(self) -> None:
        router = _router(("GET", "/static/*"))
        assert router.match("GET", "/static/css/app.css").path_params == {"path": "css/app.css"}
        with pytest.raises(NoMatchError):
            router.match("GET", "/static")

    def test_percent_decoding_per_segment(self) -> None:
        router = _router(("GET", "/files/{name}"), ("GET", "/files/{name}/raw"))
        assert router.match("GET", "/files/a%20b").path_params == {"name": "a b"}
        # An encoded slash stays inside its segment
        match = router.match("GET", "/files/a%2Fb/raw")
        assert match.path_params == {"name": "a/b"}

    def test_every_pattern_matches_its_own_path(self) -> None:
        patterns = {
            "/a/{x}": ("/a/1", {"x": "1"}),
            "/a/{x}/b/{y:int}": ("/a/q/b/9", {"x": "q", "y": "9"}),
            "/c/{u:uuid}": (
                "/c/0b3a0f4e-9c1d-4c5e-8d6b-1f2a3b4c5d6e",
                {"u": "0b3a0f4e-9c1d-4c5e-8d6b-1f2a3b4c5d6e"},
            ),
            "/d/{f:float}": ("/d/1.5", {"f": "1.5"}),
            "/e/{rest:path}": ("/e/x/y/z", {"rest": "x/y/z"}),
        }
        router = _router(*(("GET", p) for p in patterns))
        for pattern, (path, params) in patterns.items():
            match = router.match("GET", path)
            assert match.route.pattern == pattern
            assert match.path_params == params


class TestRouterMethods:
    def test_method_not_allowed_lists_allowed(self) -> None:
        router = _router(("GET", "/users"), ("POST", "/users"))
        with pytest.raises(MethodNotAllowedError) as exc_info:
            router.match("DELETE", "/users")
        exc = exc_info.value
        assert exc.status == 405
        assert exc.allowed == frozenset({"GET", "HEAD", "POST"})
        assert dict(exc.headers)["Allow"] == "GET, HEAD, POST"

    def test_allowed_is_union_across_matching_routes(self) -> None:
        router = _router(("GET", "/items/{id:int}"), ("PUT", "/items/{slug}"))
        with pytest.raises(MethodNotAllowedError) as exc_info:
            router.match("DELETE", "/items/5")
        assert exc_info.value.allowed == frozenset({"GET", "HEAD", "PUT"})

    def test_method_found_on_later_candidate(self) -> None:
        router = _router(("GET", "/items/{id:int}"), ("PUT", "/items/{slug}"))
        assert router.match("PUT", "/items/5").route.pattern == "/items/{slug}"

    def test_head_falls_back_to_get(self) -> None:
        router = _router(("GET", "/users"))
        assert router.match("HEAD", "/users").route.method == "GET"

    def test_no_match(self) -> None:
        router = _router(("GET", "/users"))
        with pytest.raises(NoMatchError) as exc_info:
            router.match("GET", "/nope")
        assert exc_info.value.status == 404


class TestRouterRegistration:
    def test_duplicate_rejected_and_table_unchanged(self) -> None:
        router = _router(("GET", "/users/{id}"), compile=False)
        with pytest.raises(DuplicateRouteError) as exc_info:
            router.register("GET", "/users/{user_id}", describe_handler(_other))
        assert exc_info.value.existing == "/users/{id}"
        assert len(router) == 1
        router.compile()
        assert router.match("GET", "/users/1").route.handler is _handler

    def test_same_pattern_other_method_is_fine(self) -> None:
        router = _router(("GET", "/users"), ("POST", "/users"))
        assert len(router) == 2

    def test_different_converters_are_distinct(self) -> None:
        router = _router(("GET", "/users/{id:int}"), ("GET", "/users/{name}"))
        assert len(router) == 2

    def test_late_registration(self) -> None:
        router = _router(("GET", "/users"))
        with pytest.raises(LateRegistrationError):
            router.register("GET", "/other", describe_handler(_handler))

    def test_routes_in_registration_order(self) -> None:
        router = _router(("GET", "/b"), ("GET", "/a"), ("POST", "/b"))
        assert [(r.method, r.pattern) for r in router.routes] == [
            ("GET", "/b"),
            ("GET", "/a"),
            ("POST", "/b"),
        ]

    def test_duplicate_name_rejected(self) -> None:
        router = Router()
        router.register("GET", "/a", describe_handler(_handler), name="home")
        with pytest.raises(ConfigurationError, match="home"):
            router.register("GET", "/b", describe_handler(_handler), name="home")


class TestUrlFor:
    def test_builds_path(self) -> None:
        router = Router()
        router.register("GET", "/users/{id:int}/files/{rest:path}", describe_handler(_handler), name="file")
        assert router.url_for("file", id=3, rest="a b/c") == "/users/3/files/a%20b/c"

    def test_quotes_slash_in_param(self) -> None:
        router = Router()
        router.register("GET", "/tags/{tag}", describe_handler(_handler), name="tag")
        assert router.url_for("tag", tag="a/b") == "/tags/a%2Fb"

    def test_unknown_name(self) -> None:
        with pytest.raises(KeyError):
            Router().url_for("missing")
