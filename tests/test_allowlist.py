"""Tests for dependency allowlist validation and enrichment."""

from __future__ import annotations

import logging

import pytest

from conductor.errors import ValidationError
from conductor.sandbox.allowlist import (
    DEFAULT_ALLOWED_DEPENDENCIES,
    WILDCARD,
    DependencySpecifier,
    format_error,
    parse_allowlist,
    parse_specifier,
    validate_dependencies,
)


# -- Parsing -------------------------------------------------------------------


class TestParseSpecifier:
    def test_unscoped_unversioned(self):
        spec = parse_specifier("npm:axios")
        assert spec == DependencySpecifier("npm", "axios", None)
        assert spec.identity == "npm:axios"
        assert spec.bare_name == "axios"

    def test_scoped_versioned(self):
        spec = parse_specifier("jsr:@std/path@^1.0.0")
        assert spec.registry == "jsr"
        assert spec.name == "@std/path"
        assert spec.constraint == "^1.0.0"
        assert spec.identity == "jsr:@std/path"
        assert str(spec) == "jsr:@std/path@^1.0.0"

    def test_with_constraint(self):
        spec = parse_specifier("npm:lodash").with_constraint("4.17.21")
        assert str(spec) == "npm:lodash@4.17.21"

    @pytest.mark.parametrize(
        "bad",
        [
            "axios",
            "pip:requests",
            "npm:",
            "npm:axios;rm -rf /",
            "npm:axios'",
            'npm:axios"',
            "npm:`whoami`",
            "npm:$(id)",
            "npm:axios\n",
            "npm:axios\r",
            "npm:@scope",
            "",
        ],
    )
    def test_malformed_rejected(self, bad):
        assert format_error(bad) is not None
        with pytest.raises(ValidationError):
            parse_specifier(bad)

    def test_forbidden_characters_named(self):
        problem = format_error("npm:a;b")
        assert "forbidden characters" in problem


class TestIdentity:
    def test_strips_version(self):
        assert parse_specifier("npm:axios@^1.6.0").identity == "npm:axios"

    def test_scope_at_is_not_a_version(self):
        assert parse_specifier("jsr:@std/path").identity == "jsr:@std/path"
        assert parse_specifier("jsr:@std/path@^1").identity == "jsr:@std/path"

    def test_unversioned_unchanged(self):
        assert parse_specifier("npm:zod").identity == "npm:zod"


class TestParseAllowlist:
    def test_wildcard(self):
        assert parse_allowlist("*") == WILDCARD
        assert parse_allowlist("  *\n") == WILDCARD

    def test_comma_and_newline_delimited(self):
        text = "npm:axios@^1.6.0, jsr:@std/path\nnpm:zod\n\n"
        assert parse_allowlist(text) == ["npm:axios@^1.6.0", "jsr:@std/path", "npm:zod"]

    def test_malformed_entry_rejected(self):
        with pytest.raises(ValidationError):
            parse_allowlist("npm:axios,evil")


# -- Validation ----------------------------------------------------------------


class TestValidateDependencies:
    def test_unversioned_inherits_constraint(self):
        result = validate_dependencies(["npm:axios"], ["npm:axios@^1.6.0"])
        assert result.valid
        assert result.enriched == ["npm:axios@^1.6.0"]

    def test_unversioned_without_pin_stays_unversioned(self):
        result = validate_dependencies(["npm:zod"], ["npm:zod"])
        assert result.enriched == ["npm:zod"]

    def test_scoped_identity_match(self):
        result = validate_dependencies(["jsr:@std/path"], ["jsr:@std/path@^1"])
        assert result.enriched == ["jsr:@std/path@^1"]

    def test_not_on_allowlist(self):
        result = validate_dependencies(["npm:left-pad"], ["npm:axios"])
        assert not result.valid
        assert result.invalid == ["npm:left-pad"]
        assert result.enriched == []

    def test_format_errors_collected(self):
        result = validate_dependencies(["npm:axios;x", "npm:axios"], ["npm:axios"])
        assert len(result.errors) == 1
        assert result.enriched == ["npm:axios"]

    def test_explicit_version_passes_through(self, caplog):
        with caplog.at_level(logging.WARNING, logger="conductor.sandbox.allowlist"):
            result = validate_dependencies(["npm:axios@0.27.0"], ["npm:axios@^1.6.0"])
        assert result.valid
        assert result.enriched == ["npm:axios@0.27.0"]
        assert "overrides allowlist constraint" in caplog.text

    def test_strict_versions_rejects_differing_constraint(self):
        result = validate_dependencies(
            ["npm:axios@0.27.0"], ["npm:axios@^1.6.0"], strict_versions=True
        )
        assert result.invalid == ["npm:axios@0.27.0"]

    def test_strict_versions_accepts_identical_constraint(self):
        result = validate_dependencies(
            ["npm:axios@^1.6.0"], ["npm:axios@^1.6.0"], strict_versions=True
        )
        assert result.enriched == ["npm:axios@^1.6.0"]

    def test_wildcard_skips_membership_but_not_format(self):
        result = validate_dependencies(["npm:anything@2", "npm:bad$"], WILDCARD)
        assert result.enriched == ["npm:anything@2"]
        assert result.invalid == []
        assert len(result.errors) == 1

    def test_first_allowlist_entry_wins(self):
        result = validate_dependencies(["npm:axios"], ["npm:axios@1.0.0", "npm:axios@2.0.0"])
        assert result.enriched == ["npm:axios@1.0.0"]

    def test_request_order_preserved(self):
        result = validate_dependencies(["npm:zod", "npm:axios"], ["npm:axios", "npm:zod"])
        assert result.enriched == ["npm:zod", "npm:axios"]

    def test_default_allowlist_is_well_formed(self):
        for entry in DEFAULT_ALLOWED_DEPENDENCIES:
            assert format_error(entry) is None
        result = validate_dependencies(["jsr:@std/path", "npm:lodash"])
        assert result.valid
