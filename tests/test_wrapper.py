"""Tests for the code wrapper (trailing-expression capture)."""

from __future__ import annotations

import json

import pytest

from conductor.errors import ValidationError
from conductor.sandbox.wrapper import (
    NON_SERIALIZABLE,
    RESULT_BINDING,
    RETURN_MARKER,
    is_module,
    looks_like_expression,
    split_trailing_expression,
    wrap_code,
)


# -- Module detection ----------------------------------------------------------


class TestIsModule:
    def test_static_import(self):
        assert is_module("import { join } from 'jsr:@std/path';\njoin('a', 'b')")

    def test_export(self):
        assert is_module("export const x = 1;")

    def test_indented_import(self):
        assert is_module("  import x from 'npm:x';")

    def test_dynamic_import_is_not_module(self):
        assert not is_module("const m = await import('npm:x');")
        assert not is_module("import('npm:x')")

    def test_plain_script(self):
        assert not is_module("const importance = 1;\nimportance")


# -- Trailing expression ---------------------------------------------------------


class TestSplitTrailingExpression:
    def test_single_expression(self):
        assert split_trailing_expression("1 + 1") == ("", "1 + 1")

    def test_multi_line(self):
        assert split_trailing_expression("const x = 5;\nx * 2") == ("const x = 5;", "x * 2")

    def test_same_line_after_semicolon(self):
        assert split_trailing_expression("const x = 1; x + 1") == ("const x = 1;", "x + 1")

    def test_statement_terminated_by_semicolon(self):
        code = "console.log('hi');"
        assert split_trailing_expression(code) == (code, None)

    def test_block_end(self):
        code = "if (x) {\n  y\n}"
        assert split_trailing_expression(code) == (code, None)

    def test_declaration(self):
        assert split_trailing_expression("const x = 1")[1] is None

    def test_explicit_return(self):
        assert split_trailing_expression("const a = 2;\nreturn a * 3;") == ("const a = 2;", "a * 3")

    def test_unbalanced_brackets(self):
        assert split_trailing_expression("foo(")[1] is None

    def test_comment_last_line(self):
        assert split_trailing_expression("x\n// done")[1] is None

    def test_semicolon_inside_string(self):
        assert split_trailing_expression("'a;b'") == ("", "'a;b'")

    def test_blank(self):
        assert split_trailing_expression("   \n ") == ("", None)

    @pytest.mark.parametrize("fragment", ["x", "await f()", "[1, 2].length", "obj.method(1)"])
    def test_looks_like_expression(self, fragment):
        assert looks_like_expression(fragment)

    @pytest.mark.parametrize("fragment", [".5", "-x", "++i", "!done", "'a' + b"])
    def test_expression_with_leading_operator(self, fragment):
        assert looks_like_expression(fragment)

    @pytest.mark.parametrize("fragment", ["let y = 2", "throw err", "}", "f();", ""])
    def test_not_an_expression(self, fragment):
        assert not looks_like_expression(fragment)

    @pytest.mark.parametrize(
        "fragment",
        [".map((x) => x * 2)", "?.name", ")", "]", "+ 1", "- 1", "&& ok", "|| b", "?? 0", ", b"],
    )
    def test_continuation_line_is_not_an_expression(self, fragment):
        assert not looks_like_expression(fragment)

    def test_chained_call_on_next_line_not_split(self):
        code = "const xs = [1, 2, 3]\n  .map((x) => x * 2)"
        assert split_trailing_expression(code) == (code.strip(), None)

    def test_operator_at_end_of_previous_line_not_split(self):
        code = "const total = base +\n  extra"
        assert split_trailing_expression(code) == (code, None)

    def test_comment_above_does_not_block_split(self):
        assert split_trailing_expression("// note:\nx") == ("// note:", "x")


# -- wrap_code -----------------------------------------------------------------


class TestWrapCode:
    def test_script_mode_uses_async_iife(self):
        wrapped = wrap_code("1 + 1")
        assert f"const {RESULT_BINDING} = await (async () => {{\nreturn 1 + 1\n}})();" in wrapped
        assert json.dumps(RETURN_MARKER) in wrapped
        assert "JSON.stringify" in wrapped

    def test_script_mode_without_expression(self):
        wrapped = wrap_code("console.log('hi');")
        assert "return" not in wrapped.split("async () => {", 1)[1].split("})();", 1)[0]

    def test_module_mode_binds_constant(self):
        code = "import { join } from 'jsr:@std/path';\njoin('a', 'b')"
        wrapped = wrap_code(code)
        assert f"const {RESULT_BINDING} = join('a', 'b');" in wrapped
        assert "async () =>" not in wrapped
        assert "import { join } from 'jsr:@std/path';" in wrapped

    def test_module_mode_without_expression(self):
        wrapped = wrap_code("export const a = 1;")
        assert RESULT_BINDING not in wrapped
        assert RETURN_MARKER not in wrapped

    def test_non_serializable_sentinel_is_json(self):
        wrapped = wrap_code("1")
        assert json.dumps(json.dumps(NON_SERIALIZABLE)) in wrapped

    def test_client_stub_precedes_user_code(self):
        wrapped = wrap_code("USER_CODE_HERE", client_stub="/* STUB */")
        assert wrapped.index("/* STUB */") < wrapped.index("USER_CODE_HERE")

    def test_client_stub_in_module_mode(self):
        wrapped = wrap_code("export const a = 1;", client_stub="/* STUB */")
        assert "/* STUB */" in wrapped

    def test_globals_injected_as_constants(self):
        wrapped = wrap_code("limit * 2", globals_={"limit": 5, "names": ["a", "b"]})
        assert "const limit = 5;" in wrapped
        assert 'const names = ["a", "b"];' in wrapped

    def test_invalid_global_name(self):
        with pytest.raises(ValidationError, match="Invalid global name"):
            wrap_code("1", globals_={"1abc": 1})

    def test_global_name_with_trailing_newline_rejected(self):
        with pytest.raises(ValidationError, match="Invalid global name"):
            wrap_code("1", globals_={"x\n": 1})

    def test_unserializable_global(self):
        with pytest.raises(ValidationError, match="not JSON-serializable"):
            wrap_code("1", globals_={"x": object()})
