"""Execution engine: runs user code in a sandboxed Deno subprocess.

Per-call pipeline:
  1. Resolve permissions into launch flags.
  2. Validate and enrich requested dependencies against the allowlist.
  3. Phase 1 (only with dependencies): a throwaway install program, run in
     a fresh temp dir with write access to that dir plus network access,
     populates the dependency cache.  Any failure aborts the call.
  4. Wrap the user code and inject the bridge client stub.
  5. Phase 2: spawn the user program with its own capability set, the
     cache mounted read-only (``--deny-write``) and ``--cached-only``.
  6. Drain stdout/stderr concurrently under a hard deadline.
  7. Extract the return value, classify failures.
  8. Remove every temp dir, on every exit path.

Phase 1 and phase 2 are two distinct launches with two distinct capability
sets.  Deno has no way to downgrade a live process, so trust is never
"reduced" inside one process.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import shutil
import tempfile
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from conductor.errors import DependencyInstallError, ExecutionError, ValidationError
from conductor.models import ErrorKind, ExecutionRequest, ExecutionResult, ExecutionStatus
from conductor.sandbox.allowlist import (
    DependencySpecifier,
    parse_specifier,
    validate_dependencies,
)
from conductor.sandbox.env_scrub import build_sanitized_env
from conductor.sandbox.permissions import PermissionBroker, grant_scope
from conductor.sandbox.wrapper import RETURN_MARKER, wrap_code

if TYPE_CHECKING:
    from conductor.config import ExecutorConfig

logger = logging.getLogger(__name__)

# (level, message) -> None.  Levels: "debug", "info", "warning", "error".
LogHandler = Callable[[str, str], None]

NO_PROMPT_FLAG = "--no-prompt"
CACHED_ONLY_FLAG = "--cached-only"

_READ_CHUNK = 64 * 1024

SYNTAX_MARKERS = ("could not be parsed", "Unexpected token", "SyntaxError", "Parse error")
PERMISSION_MARKERS = ("NotCapable", "Requires", "PermissionDenied", "--allow-")


@dataclass
class ProcessOutcome:
    """Everything observed from one subprocess run."""

    returncode: int | None = None
    timed_out: bool = False
    output: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    return_value: str | None = None


def classify_failure(message: str) -> ErrorKind:
    """Map a failed run's stderr onto syntax, permission or runtime."""
    if any(marker in message for marker in SYNTAX_MARKERS):
        return ErrorKind.SYNTAX
    if any(marker in message for marker in PERMISSION_MARKERS):
        return ErrorKind.PERMISSION
    return ErrorKind.RUNTIME


def build_import_map(specs: list[DependencySpecifier]) -> dict[str, Any]:
    """Bare name and unversioned specifier -> full specifier."""
    imports: dict[str, str] = {}
    for spec in specs:
        full = str(spec)
        imports[spec.bare_name] = full
        imports[spec.identity] = full
    return {"imports": imports}


def _emit(log: LogHandler | None, level: str, message: str) -> None:
    if log is None:
        return
    try:
        log(level, message)
    except Exception:
        logger.exception("Log handler raised; continuing")


async def _iter_lines(stream: asyncio.StreamReader):
    """Yield decoded lines from ``stream`` without a per-line size limit."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        buffer += decoder.decode(chunk)
        *complete, buffer = buffer.split("\n")
        for line in complete:
            yield line.rstrip("\r")
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer.rstrip("\r")


class ExecutionEngine:
    """Runs execution requests; one subprocess (two with dependencies) per call.

    Instances hold no per-call state, so concurrent ``run()`` calls are
    independent: distinct temp dirs, distinct subprocesses.
    """

    def __init__(self, config: ExecutorConfig) -> None:
        self._config = config
        self._bridge_port: int | None = None
        self._client_stub: str | None = None

    # ── Bridge wiring ─────────────────────────────────────────────────────────

    def attach_bridge(self, port: int, client_stub: str) -> None:
        """Inject ``client_stub`` into every program and allow loopback to ``port``."""
        self._bridge_port = port
        self._client_stub = client_stub
        logger.info("ExecutionEngine: bridge client attached (port %d)", port)

    def detach_bridge(self) -> None:
        self._bridge_port = None
        self._client_stub = None

    # ── Request resolution ────────────────────────────────────────────────────

    def effective_timeout(self, requested_ms: int | None) -> int:
        if requested_ms is None:
            return min(self._config.default_timeout_ms, self._config.max_timeout_ms)
        return min(requested_ms, self._config.max_timeout_ms)

    def resolve_flags(self, permissions: dict[str, Any] | None) -> list[str]:
        """Launch flags for phase 2, always led by ``--no-prompt``."""
        if permissions:
            PermissionBroker.validate(permissions)
            flags = PermissionBroker(permissions).build()
            logger.debug("Using requested permissions: %s", " ".join(flags))
        else:
            flags = list(self._config.default_run_args)
            logger.debug("Using default permissions: %s", " ".join(flags))

        flags = [NO_PROMPT_FLAG, *(f for f in flags if f != NO_PROMPT_FLAG)]
        if self._bridge_port is not None:
            flags = grant_scope(flags, "net", f"127.0.0.1:{self._bridge_port}")
        return flags

    def resolve_dependencies(self, requested: list[str]) -> list[DependencySpecifier]:
        if not requested:
            return []
        result = validate_dependencies(
            requested,
            self._config.allowed_dependencies,
            strict_versions=self._config.strict_versions,
        )
        if result.errors:
            raise ValidationError("Invalid dependencies: " + "; ".join(result.errors))
        if result.invalid:
            raise ValidationError(
                "Dependencies not in allowlist: " + ", ".join(result.invalid)
            )
        return [parse_specifier(dep) for dep in result.enriched]

    # ── Entry point ───────────────────────────────────────────────────────────

    async def run(
        self,
        request: ExecutionRequest,
        log: LogHandler | None = None,
    ) -> ExecutionResult:
        """Execute one request.

        Request-level failures never raise: they come back as an
        ExecutionResult with ``status="error"`` and an ``error_kind``.
        """
        started = time.perf_counter()
        timeout_ms = self.effective_timeout(request.timeout_ms)
        deps_dir: Path | None = None
        run_dir: Path | None = None

        try:
            flags = self.resolve_flags(request.permissions)
            specs = self.resolve_dependencies(request.dependencies)
            source = wrap_code(
                request.code, client_stub=self._client_stub, globals_=request.globals
            )

            import_map: Path | None = None
            if specs:
                deps_dir = Path(tempfile.mkdtemp(prefix="conductor-deps-"))
                _emit(log, "info", f"Installing dependencies: {', '.join(map(str, specs))}")
                import_map = await self._install_dependencies(specs, deps_dir, timeout_ms, log)
                _emit(log, "info", "Dependencies installed successfully")

            run_dir = Path(tempfile.mkdtemp(prefix="conductor-run-"))
            script = run_dir / "script.ts"
            script.write_text(source, encoding="utf-8")

            args = self._phase_two_args(flags, script, deps_dir, import_map)
            env = build_sanitized_env(
                self._config, deno_dir=deps_dir / "cache" if deps_dir else None
            )
            _emit(log, "debug", f"Executing code with args: {' '.join(flags)}")

            try:
                outcome = await self._spawn(
                    args, cwd=self._working_dir(request), env=env, timeout_ms=timeout_ms, log=log
                )
            except OSError as exc:
                raise ExecutionError(f"Failed to start sandbox: {exc}") from exc

            return self._build_result(outcome, timeout_ms, started)

        except ExecutionError as exc:
            logger.info("Execution failed (%s): %s", exc.kind.value, exc.message)
            return ExecutionResult.failure(
                exc.kind,
                exc.message,
                getattr(exc, "output", None),
                _elapsed_ms(started),
            )
        finally:
            for path in (run_dir, deps_dir):
                if path is not None:
                    shutil.rmtree(path, ignore_errors=True)

    # ── Phases ────────────────────────────────────────────────────────────────

    async def _install_dependencies(
        self,
        specs: list[DependencySpecifier],
        deps_dir: Path,
        timeout_ms: int,
        log: LogHandler | None,
    ) -> Path:
        """Phase 1: populate ``deps_dir/cache`` and write the import map."""
        import_map = deps_dir / "import_map.json"
        import_map.write_text(json.dumps(build_import_map(specs), indent=2), encoding="utf-8")

        install_script = deps_dir / "install.ts"
        statements = [
            f"import * as __dep{i} from {json.dumps(str(spec))};" for i, spec in enumerate(specs)
        ]
        statements.append('console.log("Dependencies installed");')
        install_script.write_text("\n".join(statements) + "\n", encoding="utf-8")

        args = [
            self._config.deno_path,
            "run",
            NO_PROMPT_FLAG,
            f"--allow-read={deps_dir}",
            f"--allow-write={deps_dir}",
            "--allow-net",
            "--import-map",
            str(import_map),
            str(install_script),
        ]
        env = build_sanitized_env(self._config, deno_dir=deps_dir / "cache")

        try:
            outcome = await self._spawn(
                args, cwd=str(deps_dir), env=env, timeout_ms=timeout_ms, log=None
            )
        except OSError as exc:
            raise DependencyInstallError(f"Dependency installation failed: {exc}") from exc

        if outcome.timed_out:
            raise DependencyInstallError(
                f"Dependency installation timed out after {timeout_ms}ms", outcome.output
            )
        if outcome.returncode != 0:
            detail = "\n".join(outcome.stderr) or f"exit code {outcome.returncode}"
            raise DependencyInstallError(
                f"Dependency installation failed: {detail}", outcome.output
            )
        _emit(log, "debug", "Dependency cache populated")
        return import_map

    def _phase_two_args(
        self,
        flags: list[str],
        script: Path,
        deps_dir: Path | None,
        import_map: Path | None,
    ) -> list[str]:
        args = [self._config.deno_path, "run", *flags]
        if deps_dir is not None:
            if CACHED_ONLY_FLAG not in args:
                args.append(CACHED_ONLY_FLAG)
            args.append(f"--deny-write={deps_dir}")
        if import_map is not None:
            args.extend(["--import-map", str(import_map)])
        args.append(str(script))
        return args

    def _working_dir(self, request: ExecutionRequest) -> str | None:
        if request.cwd:
            return request.cwd
        workspace = Path(self._config.workspace_dir)
        return str(workspace) if workspace.is_dir() else None

    # ── Subprocess ────────────────────────────────────────────────────────────

    async def _spawn(
        self,
        args: list[str],
        *,
        cwd: str | None,
        env: dict[str, str],
        timeout_ms: int,
        log: LogHandler | None,
    ) -> ProcessOutcome:
        """Spawn, drain both streams, wait for exit; kill on deadline.

        Drains, exit-wait and the deadline run concurrently.  When the
        deadline fires the process is killed and the outcome is marked
        timed out no matter what it printed.
        """
        outcome = ProcessOutcome()
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )

        async def drain_stdout() -> None:
            async for line in _iter_lines(proc.stdout):
                if line.startswith(RETURN_MARKER):
                    outcome.return_value = line[len(RETURN_MARKER):]
                elif line.strip():
                    outcome.output.append(line)
                    _emit(log, "info", line)

        async def drain_stderr() -> None:
            async for line in _iter_lines(proc.stderr):
                if line.strip():
                    outcome.output.append(line)
                    outcome.stderr.append(line)
                    _emit(log, "warning", line)

        try:
            await asyncio.wait_for(
                asyncio.gather(drain_stdout(), drain_stderr(), proc.wait()),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            outcome.timed_out = True
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            with contextlib.suppress(Exception):
                await asyncio.wait_for(proc.wait(), timeout=5)
            logger.info("Sandbox process killed after %dms deadline", timeout_ms)
        except BaseException:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise

        outcome.returncode = proc.returncode
        return outcome

    # ── Results ───────────────────────────────────────────────────────────────

    def _build_result(
        self, outcome: ProcessOutcome, timeout_ms: int, started: float
    ) -> ExecutionResult:
        elapsed = _elapsed_ms(started)

        if outcome.timed_out:
            return ExecutionResult.failure(
                ErrorKind.TIMEOUT,
                f"Execution timed out after {timeout_ms}ms",
                outcome.output,
                elapsed,
            )

        if outcome.returncode != 0:
            message = "\n".join(outcome.stderr) or f"Process exited with code {outcome.returncode}"
            return ExecutionResult.failure(
                classify_failure(message), message, outcome.output, elapsed
            )

        result = ExecutionResult(
            status=ExecutionStatus.SUCCESS,
            output=outcome.output,
            return_value=outcome.return_value,
            elapsed_ms=elapsed,
        )
        self._spill_large_return_value(result)
        return result

    def _spill_large_return_value(self, result: ExecutionResult) -> None:
        """Move a return value over ``max_return_size`` bytes into a side file."""
        if result.return_value is None:
            return
        payload = result.return_value.encode("utf-8")
        if len(payload) <= self._config.max_return_size:
            return

        returns_dir = Path(self._config.workspace_dir) / "returns"
        path = returns_dir / f"{uuid.uuid4().hex}.json"
        try:
            returns_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)
        except OSError as exc:
            # The value stays inline.
            logger.warning("Could not write return value to %s: %s", returns_dir, exc)
            return
        logger.info(
            "Return value of %d bytes exceeds %d; written to %s",
            len(payload),
            self._config.max_return_size,
            path,
        )
        result.return_value = None
        result.return_value_path = str(path)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
