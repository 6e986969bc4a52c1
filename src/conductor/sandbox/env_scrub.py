"""Environment scrubbing for sandboxed Deno processes.

Builds the environment every sandbox launch receives by:
1. Stripping configured secret env vars and anything that looks like one.
2. Forcing uncoloured output so stderr classification sees plain text.
3. Pointing ``DENO_DIR`` at the per-call dependency cache when one exists.

Even with ``--allow-env`` granted, sandboxed code never sees host credentials.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conductor.config import ExecutorConfig

logger = logging.getLogger(__name__)

# Substrings that mark an env var as a secret regardless of configuration.
_SECRET_PATTERNS = frozenset(
    {
        "API_KEY",
        "SECRET_KEY",
        "PRIVATE_KEY",
        "ACCESS_TOKEN",
        "AUTH_TOKEN",
        "PASSWORD",
    }
)

# Kept even though they match a pattern.
_KEEP = frozenset({"SSH_AUTH_SOCK"})


def build_sanitized_env(
    config: ExecutorConfig,
    *,
    deno_dir: Path | None = None,
) -> dict[str, str]:
    """Build a sanitized copy of os.environ for a sandbox subprocess.

    Args:
        config: ExecutorConfig with ``secret_env_vars``.
        deno_dir: Dependency cache directory for this call, if any.

    Returns:
        A new dict; ``os.environ`` is never mutated.
    """
    env = dict(os.environ)

    strip_set: set[str] = set(config.secret_env_vars)

    stripped: list[str] = []
    for key in list(env.keys()):
        if key in _KEEP:
            continue
        key_upper = key.upper()
        if key in strip_set or any(p in key_upper for p in _SECRET_PATTERNS):
            del env[key]
            stripped.append(key)

    if stripped:
        logger.debug(
            "Env scrub: stripped %d secret vars: %s",
            len(stripped),
            ", ".join(sorted(stripped)),
        )

    env["NO_COLOR"] = "1"
    if deno_dir is not None:
        env["DENO_DIR"] = str(deno_dir)

    return env
