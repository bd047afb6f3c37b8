"""
Unit tests for slug name generation and redirect targets.
"""

import pytest

from revstore.slugs import RESERVED_SLUGS, SlugResolver, generate_slug_name


class TestGenerateSlugName:
    """Tests for generate_slug_name()."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Dune", "dune"),
            ("  The Left Hand of Darkness ", "the-left-hand-of-darkness"),
            ("B&B Hotel", "b-b-hotel"),
            ("Fish &amp; Chips", "fish-chips"),
            ("snake_case/and slashes", "snake-case-and-slashes"),
            ("“Quoted” ‘title’", "quoted-title"),
            ("What? Why: <now>", "what-why-now"),
            ("Café Münchën", "café-münchën"),
            ("a -- b", "a-b"),
        ],
    )
    def test_normalizes(self, text, expected):
        assert generate_slug_name(text) == expected

    @pytest.mark.parametrize("text", ["", "   ", "???", "''"])
    def test_empty_result_raises(self, text):
        with pytest.raises(ValueError):
            generate_slug_name(text)

    def test_uuid_raises(self):
        with pytest.raises(ValueError, match="UUID"):
            generate_slug_name("6F1C1C0E-3C1E-4C1E-9C1E-1C1E1C1E1C1E")

    def test_non_string_raises(self):
        with pytest.raises(ValueError):
            generate_slug_name(None)

    def test_reserved_words(self):
        assert {"new", "api", "teams", "login"} <= RESERVED_SLUGS


class TestRedirectTarget:
    """Tests for SlugResolver.redirect_target()."""

    class _Slugs:
        model = None

    def _resolver(self, base_path):
        return SlugResolver(self._Slugs(), base_path, load=lambda _id: None)

    def test_plain(self):
        assert self._resolver("/").redirect_target("/dune-old", "", "dune") == "/dune"

    def test_keeps_sub_path_and_query(self):
        target = self._resolver("/team/").redirect_target(
            "/team/old-name/members", "page=2&sort=new", "new-name"
        )
        assert target == "/team/new-name/members?page=2&sort=new"

    def test_query_with_leading_question_mark(self):
        assert self._resolver("/").redirect_target("/x", "?a=1", "y") == "/y?a=1"

    def test_quotes_canonical_slug(self):
        assert self._resolver("/").redirect_target("/x", "", "café-münchën") == "/caf%C3%A9-m%C3%BCnch%C3%ABn"
