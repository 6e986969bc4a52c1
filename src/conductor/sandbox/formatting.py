"""Render an ExecutionResult for humans or for another program."""

from __future__ import annotations

import json
from typing import Any
from xml.sax.saxutils import escape

import yaml

from conductor.models import ExecutionResult

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def _escape(text: str) -> str:
    return escape(text, _XML_ENTITIES)


def _decoded_return_value(result: ExecutionResult) -> Any:
    if result.return_value is None:
        return None
    try:
        return json.loads(result.return_value)
    except json.JSONDecodeError:
        return result.return_value


def result_to_dict(result: ExecutionResult) -> dict[str, Any]:
    """Plain dict with the return value decoded back to a JSON value."""
    data: dict[str, Any] = {"status": result.status.value, "output": list(result.output)}
    if result.ok:
        data["returnValue"] = _decoded_return_value(result)
        if result.return_value_path:
            data["returnValuePath"] = result.return_value_path
    else:
        data["error"] = result.error
        data["errorType"] = result.error_kind.value if result.error_kind else None
    data["executionTime"] = round(result.elapsed_ms, 2)
    return data


def as_json(result: ExecutionResult) -> str:
    return json.dumps(result_to_dict(result))


def as_yaml(result: ExecutionResult) -> str:
    return yaml.safe_dump(result_to_dict(result), sort_keys=False, allow_unicode=True)


def as_xml(result: ExecutionResult) -> str:
    """XML-ish fragment; every interpolated value is escaped."""
    parts = [f"<status>{result.status.value}</status>"]

    if result.output:
        parts.append("<output>")
        parts.extend(_escape(line) for line in result.output)
        parts.append("</output>")

    if result.ok:
        if result.return_value is not None:
            parts.append("<return_value>")
            parts.append(_escape(result.return_value))
            parts.append("</return_value>")
        if result.return_value_path:
            parts.append(f"<return_value_path>{_escape(result.return_value_path)}</return_value_path>")
    else:
        kind = result.error_kind.value if result.error_kind else "runtime"
        parts.append("<error>")
        parts.append(f"<type>{kind}</type>")
        parts.append(f"<message>{_escape(result.error or '')}</message>")
        parts.append("</error>")

    parts.append(f"<execution_time>{result.elapsed_ms:.2f}ms</execution_time>")
    return "\n".join(parts)


FORMATTERS = {"json": as_json, "xml": as_xml, "yaml": as_yaml}
