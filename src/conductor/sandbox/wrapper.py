"""Wraps user code so its final expression is observable.

Script-style code runs inside an async IIFE and its trailing bare
expression becomes a ``return``.  Module-style code (top-level ``import``
or ``export``) cannot ``return`` at top level, so the trailing expression
is bound to an internal constant after the rest of the module body.

The value is ``JSON.stringify``-ed onto a ``RETURN_MARKER`` line.

The trailing-expression check is lexical, not a parse.  A last line that
continues the one above it (it opens with ``.``, ``?.``, a closing bracket
or a binary operator, or the line above ends with an operator or an open
bracket) is never split off, so the program runs intact with no return
value.  Known misfires: a trailing block comment, a labeled statement, or
an expression spread over several lines yields no value, and a bare
identifier used as a statement is returned as a value.
"""

from __future__ import annotations

import json
import re
from typing import Any

from conductor.errors import ValidationError
from conductor.models import JS_IDENTIFIER_RE

RETURN_MARKER = "__CONDUCTOR_RETURN_VALUE__:"
RESULT_BINDING = "__conductorResult"
NON_SERIALIZABLE = "[Non-serializable value]"

_MODULE_RE = re.compile(r"^\s*(import|export)\s", re.MULTILINE)

_STATEMENT_PREFIXES = (
    "const ",
    "let ",
    "var ",
    "function ",
    "function*",
    "async function",
    "class ",
    "if ",
    "if(",
    "for ",
    "for(",
    "while ",
    "while(",
    "do ",
    "switch ",
    "switch(",
    "try ",
    "try{",
    "throw ",
    "return ",
    "import ",
    "export ",
    "type ",
    "interface ",
    "enum ",
    "//",
    "/*",
    "*",
)

_BRACKETS = {"(": ")", "[": "]", "{": "}"}

# A line opening with one of these continues the line above it: member
# access, a closing bracket, or a binary operator.  ``.5`` and unary
# ``-x`` / ``++i`` still start an expression.
_CONTINUATION_START_RE = re.compile(
    r"\?\.|\.(?!\d)|[)\]}]|&&|\|\||\?\?|[,?:*%=<>|&^]|[+-](?![+\-\w$(\[.'\"`])"
)

# A line ending with one of these is continued by the next line.  Postfix
# ``++`` / ``--`` and a closing ``/`` are left alone.
_CONTINUED_END_RE = re.compile(r"(?:[(\[{,*%=&|?:<>.!~^]|(?<!\+)\+|(?<!-)-)\s*\Z")


def is_module(code: str) -> bool:
    """True when ``code`` has a top-level ``import`` or ``export`` line."""
    return bool(_MODULE_RE.search(code))


def looks_like_expression(fragment: str) -> bool:
    fragment = fragment.strip()
    if not fragment:
        return False
    if fragment.startswith(_STATEMENT_PREFIXES):
        return False
    if _CONTINUATION_START_RE.match(fragment):
        return False
    if fragment.endswith(("{", "}", ";")):
        return False
    return _balanced(fragment)


def _balanced(fragment: str) -> bool:
    """Bracket balance outside string literals."""
    stack: list[str] = []
    quote: str | None = None
    escaped = False
    for ch in fragment:
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in "'\"`":
            quote = ch
        elif ch in _BRACKETS:
            stack.append(_BRACKETS[ch])
        elif ch in ")]}":
            if not stack or stack.pop() != ch:
                return False
    return not stack and quote is None


def split_trailing_expression(code: str) -> tuple[str, str | None]:
    """Split ``code`` into (preceding source, trailing expression or None).

    The candidate is the last line, or the part of the last line after its
    final ``;`` when the line holds several statements.
    """
    trimmed = code.strip()
    if not trimmed:
        return "", None

    lines = trimmed.split("\n")
    last = lines[-1].strip()
    preceding = "\n".join(lines[:-1])

    if last.startswith("return "):
        # An explicit top-level return is kept as the result expression.
        candidate = last[len("return "):].rstrip(";").strip()
        if candidate and _balanced(candidate):
            return preceding, candidate

    semi = last.rfind(";")
    if 0 <= semi < len(last) - 1:
        head = last[: semi + 1]
        tail = last[semi + 1:].strip()
        if looks_like_expression(tail):
            before = f"{preceding}\n{head}" if preceding else head
            return before, tail

    if looks_like_expression(last) and not _continued(lines[:-1]):
        return preceding, last
    return trimmed, None


def _continued(lines: list[str]) -> bool:
    """True when the last non-blank of ``lines`` runs on into the next line."""
    above = next((line.strip() for line in reversed(lines) if line.strip()), "")
    if not above or above.startswith("//"):
        return False
    return bool(_CONTINUED_END_RE.search(above))


def _globals_source(globals_: dict[str, Any] | None) -> str:
    if not globals_:
        return ""
    lines = []
    for name, value in globals_.items():
        if not JS_IDENTIFIER_RE.fullmatch(name):
            raise ValidationError(f"Invalid global name {name!r}")
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Global {name!r} is not JSON-serializable: {exc}") from exc
        lines.append(f"const {name} = {encoded};")
    return "\n".join(lines)


def _emit_result_source() -> str:
    sentinel = json.dumps(NON_SERIALIZABLE)
    return f"""
if ({RESULT_BINDING} !== undefined) {{
  let __conductorSerialized;
  try {{
    __conductorSerialized = JSON.stringify({RESULT_BINDING});
  }} catch (_e) {{
    __conductorSerialized = undefined;
  }}
  console.log({json.dumps(RETURN_MARKER)} + (__conductorSerialized ?? {json.dumps(sentinel)}));
}}
"""


def wrap_code(
    code: str,
    *,
    client_stub: str | None = None,
    globals_: dict[str, Any] | None = None,
) -> str:
    """Build the program text that the sandbox actually runs.

    Args:
        code: User source.
        client_stub: Bridge client source injected ahead of user code.
        globals_: JSON values exposed as top-level constants.
    """
    prelude_parts = ["// Conductor execution wrapper"]
    if client_stub:
        prelude_parts.append(client_stub)
    globals_src = _globals_source(globals_)
    if globals_src:
        prelude_parts.append(globals_src)
    prelude = "\n".join(prelude_parts)

    if is_module(code):
        preceding, expression = split_trailing_expression(code)
        if expression is None:
            return f"{prelude}\n\n{code.strip()}\n"
        return (
            f"{prelude}\n\n{preceding}\n\n"
            f"const {RESULT_BINDING} = {expression};\n"
            f"{_emit_result_source()}"
        )

    preceding, expression = split_trailing_expression(code)
    if expression is None:
        body = preceding
    elif preceding:
        body = f"{preceding}\nreturn {expression}"
    else:
        body = f"return {expression}"

    return (
        f"{prelude}\n\n"
        f"const {RESULT_BINDING} = await (async () => {{\n{body}\n}})();\n"
        f"{_emit_result_source()}"
    )
