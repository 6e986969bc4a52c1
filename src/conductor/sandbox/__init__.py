"""Sandboxed code execution.

- Permission broker: capability requests -> Deno launch flags
- Dependency allowlist: format check, membership check, version enrichment
- Code wrapper: exposes the program's final expression as a return value
- Environment scrubbing: no host secrets in the sandbox
- Execution engine: two-phase install, spawn, drain, deadline, classification
"""

from .allowlist import (
    DEFAULT_ALLOWED_DEPENDENCIES,
    AllowlistResult,
    DependencySpecifier,
    parse_allowlist,
    validate_dependencies,
)
from .engine import ExecutionEngine
from .env_scrub import build_sanitized_env
from .formatting import as_json, as_xml, as_yaml
from .permissions import PermissionBroker
from .wrapper import wrap_code

__all__ = [
    "DEFAULT_ALLOWED_DEPENDENCIES",
    "AllowlistResult",
    "DependencySpecifier",
    "ExecutionEngine",
    "PermissionBroker",
    "as_json",
    "as_xml",
    "as_yaml",
    "build_sanitized_env",
    "parse_allowlist",
    "validate_dependencies",
    "wrap_code",
]
