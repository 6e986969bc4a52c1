"""Dependency allowlist validation and enrichment.

Operators curate a list of ``registry:name[@constraint]`` entries.  Callers
only need to name a package: an unversioned request inherits the version
constraint pinned in the allowlist, so the resolved version is controlled
centrally.  A literal ``*`` allowlist disables membership checks but never
the format check.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Literal, Union

from conductor.errors import ValidationError

logger = logging.getLogger(__name__)

WILDCARD = "*"

Allowlist = Union[list[str], Literal["*"]]

REGISTRY_PREFIXES = ("npm:", "jsr:")

# Characters that could break out of generated source or a shell command.
_FORBIDDEN_CHARS = frozenset("'\"`();$\n\r")

_SPECIFIER_RE = re.compile(
    r"(?P<registry>npm|jsr):"
    r"(?P<name>(?:@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*)"
    r"(?:@(?P<constraint>[A-Za-z0-9.^~<>=*|+_-]+))?"
)

DEFAULT_ALLOWED_DEPENDENCIES = [
    # Deno standard library
    "jsr:@std/path",
    "jsr:@std/fs",
    "jsr:@std/encoding",
    "jsr:@std/datetime",
    "jsr:@std/collections",
    "jsr:@std/uuid",
    "jsr:@std/json",
    "jsr:@std/yaml",
    "jsr:@std/csv",
    # HTTP clients
    "npm:axios",
    "npm:ky",
    # Data processing
    "npm:lodash",
    "npm:date-fns",
    "npm:zod",
    # Misc
    "npm:chalk",
    "npm:cheerio",
    "npm:marked",
]


@dataclass(frozen=True)
class DependencySpecifier:
    """A parsed ``registry:[@scope/]name[@constraint]`` specifier."""

    registry: str
    name: str
    constraint: str | None = None

    @property
    def identity(self) -> str:
        """Package identity with the version stripped, e.g. ``jsr:@std/path``."""
        return f"{self.registry}:{self.name}"

    @property
    def bare_name(self) -> str:
        """Name usable as an import-map key, e.g. ``axios`` or ``@std/path``."""
        return self.name

    def with_constraint(self, constraint: str | None) -> DependencySpecifier:
        return DependencySpecifier(self.registry, self.name, constraint)

    def __str__(self) -> str:
        if self.constraint:
            return f"{self.identity}@{self.constraint}"
        return self.identity


@dataclass
class AllowlistResult:
    enriched: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.invalid and not self.errors


def format_error(specifier: str) -> str | None:
    """Return why ``specifier`` is malformed, or None when it is well-formed."""
    if not isinstance(specifier, str) or not specifier:
        return "dependency must be a non-empty string"
    bad = sorted({c for c in specifier if c in _FORBIDDEN_CHARS})
    if bad:
        return f"{specifier!r}: forbidden characters {''.join(bad)!r}"
    if not specifier.startswith(REGISTRY_PREFIXES):
        return f"{specifier!r}: must start with one of {', '.join(REGISTRY_PREFIXES)}"
    if not _SPECIFIER_RE.fullmatch(specifier):
        return f"{specifier!r}: expected registry:[@scope/]name[@version]"
    return None


def parse_specifier(specifier: str) -> DependencySpecifier:
    """Parse and format-check one specifier.

    Raises:
        ValidationError: If the specifier is malformed.
    """
    problem = format_error(specifier)
    if problem:
        raise ValidationError(f"Invalid dependency {problem}")
    m = _SPECIFIER_RE.fullmatch(specifier)
    if m is None:
        raise ValidationError(f"Invalid dependency {specifier!r}")
    return DependencySpecifier(
        registry=m.group("registry"),
        name=m.group("name"),
        constraint=m.group("constraint"),
    )

