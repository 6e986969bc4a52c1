"""Permission broker: capability requests -> Deno launch flags."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from conductor.errors import ValidationError
from conductor.models import PermissionSpec

logger = logging.getLogger(__name__)

# Capabilities accepting ``True`` or a list of scopes, in flag order.
LIST_CAPABILITIES = ("net", "read", "write", "env", "run", "ffi")
BOOL_CAPABILITIES = ("hrtime",)
ALL_FIELD = "all"
KNOWN_FIELDS = frozenset((*LIST_CAPABILITIES, *BOOL_CAPABILITIES, ALL_FIELD))

ALLOW_ALL_FLAG = "--allow-all"


class PermissionBroker:
    """Turns a structured capability request into concrete launch flags.

    Usage::

        PermissionBroker.validate(spec)
        flags = PermissionBroker(spec).build()
    """

    def __init__(self, spec: Mapping[str, Any] | None = None) -> None:
        self._spec: Mapping[str, Any] = spec or {}

    def build(self) -> list[str]:
        spec = self._spec
        if spec.get(ALL_FIELD) is True:
            return [ALLOW_ALL_FLAG]

        flags: list[str] = []
        for name in LIST_CAPABILITIES:
            value = spec.get(name)
            if value is True:
                flags.append(f"--allow-{name}")
            elif isinstance(value, (list, tuple, set, frozenset)) and value:
                flags.append(f"--allow-{name}={','.join(value)}")

        for name in BOOL_CAPABILITIES:
            if spec.get(name) is True:
                flags.append(f"--allow-{name}")

        return flags

    @staticmethod
    def validate(spec: Mapping[str, Any]) -> None:
        """Raise ValidationError unless every field has an acceptable type."""
        if not isinstance(spec, Mapping):
            raise ValidationError("Permissions must be an object")

        for key in spec:
            if key not in KNOWN_FIELDS:
                raise ValidationError(f"Unknown permission '{key}'")

        for key in LIST_CAPABILITIES:
            value = spec.get(key)
            if value is None or isinstance(value, bool):
                continue
            if not isinstance(value, (list, tuple)):
                raise ValidationError(f"Permission '{key}' must be boolean or string array")
            if not all(isinstance(v, str) for v in value):
                raise ValidationError(f"Permission '{key}' array must contain only strings")
            if any("," in v for v in value):
                raise ValidationError(f"Permission '{key}' entries must not contain commas")

        for key in (*BOOL_CAPABILITIES, ALL_FIELD):
            value = spec.get(key)
            if value is not None and not isinstance(value, bool):
                raise ValidationError(f"Permission '{key}' must be boolean")

    @staticmethod
    def merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> PermissionSpec:
        """Shallow merge: each field present in ``override`` replaces ``base``'s."""
        return {**base, **override}

    @staticmethod
    def secure_defaults() -> PermissionSpec:
        return {}

    @staticmethod
    def development_defaults() -> PermissionSpec:
        return {"net": True, "read": True, "env": True}


def has_unrestricted(flags: list[str], capability: str) -> bool:
    """True when ``flags`` grant ``capability`` without a scope list."""
    return ALLOW_ALL_FLAG in flags or f"--allow-{capability}" in flags


def grant_scope(flags: list[str], capability: str, scope: str) -> list[str]:
    """Return ``flags`` with ``scope`` added to the ``capability`` grant.

    An existing ``--allow-<cap>=a,b`` list is extended in place so the
    process never sees two competing flags for one capability.
    """
    if has_unrestricted(flags, capability):
        return list(flags)

    prefix = f"--allow-{capability}="
    result: list[str] = []
    merged = False
    for flag in flags:
        if flag.startswith(prefix) and not merged:
            scopes = flag[len(prefix):].split(",")
            if scope not in scopes:
                scopes.append(scope)
            result.append(prefix + ",".join(s for s in scopes if s))
            merged = True
        else:
            result.append(flag)
    if not merged:
        result.append(prefix + scope)
    return result
