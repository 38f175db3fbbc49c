"""Sandbox Runner - process-isolated execution of generated handlers.

Every call stages the candidate handler plus a runner shim in a fresh scratch
directory, spawns exactly one OS process through asyncio subprocess, waits for
it under a hard wall-clock limit and reads the single result marker the shim
prints on stdout. The scratch directory is removed on every exit path.

Two backends share that template:

- ``UnconfinedBackend``: plain ``node`` child process with a minimal
  environment. Development only.
- ``JailedBackend``: ``nsjail`` wrapper (unprivileged user, read-only mounts,
  seccomp policy, address-space limit, no network namespace).

Call sites only ever see ``SandboxEngine``; the backend is injected.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import binascii
import json
import math
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog

from serverforge.config import settings
from serverforge.domain.errors import (
    ConfigurationError,
    ExecutionError,
    ResultParseError,
)
from serverforge.infrastructure.path_guard import normalize_path
from serverforge.kernel.sandbox.node_shim import (
    HANDLER_FILENAME,
    REQUEST_FILENAME,
    RUNNER_FILENAME,
    render_file_runner,
    render_inline_runner,
    serialize_request,
)

logger = structlog.get_logger()

SANDBOX_RESULT_MARKER = "__SANDBOX_RESULT__"
DEFAULT_TIMEOUT_SECONDS = 30
JAIL_SUPERVISOR_OVERHEAD_SECONDS = 5
_STREAM_LIMIT = 1024 * 1024
_READ_CHUNK_SIZE = 64 * 1024
_POST_KILL_DRAIN_SECONDS = 2.0


async def _drain(stream: Optional[asyncio.StreamReader], sink: List[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_SIZE)
        if not chunk:
            return
        sink.append(chunk)


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass


@dataclass(frozen=True)
class SandboxRequest:
    """Request handed to the handler inside the sandbox."""
    method: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"method": self.method, "headers": dict(self.headers), "body": self.body}


@dataclass(frozen=True)
class SandboxOutcome:
    """Structured response recovered from one sandboxed run.

    Attributes:
        success: True when the shim reported a response
        status_code: HTTP status reported by the handler (504 on timeout)
        headers: response headers, lower-cased names, string values
        body: raw response body
        duration_ms: wall-clock time of the child process
        timed_out: True when the run was killed for exceeding its limit
        stderr: captured standard error of the child
    """
    success: bool
    status_code: int
    headers: Dict[str, str]
    body: bytes
    duration_ms: float = 0.0
    timed_out: bool = False
    stderr: str = ""

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON, raising ``ResultParseError`` when it is not."""
        try:
            return json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ResultParseError(f"Sandbox response body is not JSON: {e}") from e


@dataclass(frozen=True)
class ProcessResult:
    """Raw result of the supervised child process."""
    exit_code: Optional[int]
    stdout: str
    stderr: str
    duration_ms: float
    timed_out: bool = False


def parse_result_marker(stdout: str) -> Optional[Dict[str, Any]]:
    """Return the decoded marker payload, or None when no marker line exists.

    The last line containing the marker wins; text the handler wrote before
    the marker on the same line is ignored. The payload is validated and
    normalized: integer status, string header values, base64-decoded body.
    """
    raw: Optional[str] = None
    for line in stdout.splitlines():
        index = line.rfind(SANDBOX_RESULT_MARKER)
        if index != -1:
            raw = line[index + len(SANDBOX_RESULT_MARKER):].strip()
    if raw is None:
        return None

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ResultParseError(f"Malformed sandbox result: {e}") from e
    if not isinstance(payload, dict):
        raise ResultParseError("Malformed sandbox result: expected a JSON object")

    try:
        status_code = int(payload.get("statusCode", 200))
    except (TypeError, ValueError) as e:
        raise ResultParseError(f"Malformed sandbox result: bad statusCode: {e}") from e

    raw_headers = payload.get("headers") or {}
    if not isinstance(raw_headers, dict):
        raise ResultParseError("Malformed sandbox result: headers must be an object")
    headers = {str(name).lower(): str(value) for name, value in raw_headers.items()}

    encoded_body = payload.get("body") or ""
    if not isinstance(encoded_body, str):
        raise ResultParseError("Malformed sandbox result: body must be a base64 string")
    try:
        body = base64.b64decode(encoded_body, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ResultParseError(f"Malformed sandbox result: body is not base64: {e}") from e

    return {"status_code": status_code, "headers": headers, "body": body}


def decode_outcome(result: ProcessResult, timeout_seconds: float) -> SandboxOutcome:
    """Turn a raw process result into a ``SandboxOutcome`` or raise.

    A run killed at its limit still succeeds when the shim had already
    printed a complete marker; the handler responded and only a lingering
    handle kept the process alive.
    """
    if result.timed_out:
        try:
            parsed = parse_result_marker(result.stdout)
        except ResultParseError:
            parsed = None
        if parsed is not None:
            return SandboxOutcome(
                success=True,
                status_code=parsed["status_code"],
                headers=parsed["headers"],
                body=parsed["body"],
                duration_ms=result.duration_ms,
                stderr=result.stderr,
            )
        return SandboxOutcome(
            success=False,
            status_code=504,
            headers={},
            body=b"",
            duration_ms=result.duration_ms,
            timed_out=True,
            stderr=result.stderr or f"Sandbox execution timed out after {timeout_seconds}s",
        )

    parsed = parse_result_marker(result.stdout)
    if parsed is None:
        if result.exit_code not in (0, None):
            raise ExecutionError(
                f"Sandbox process exited with code {result.exit_code}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        raise ResultParseError(
            "Sandbox process produced no result marker",
            exit_code=result.exit_code,
            stderr=result.stderr,
        )

    return SandboxOutcome(
        success=True,
        status_code=parsed["status_code"],
        headers=parsed["headers"],
        body=parsed["body"],
        duration_ms=result.duration_ms,
        stderr=result.stderr,
    )


class SandboxBackend(abc.ABC):
    """Capability interface: stage files, build a command, run it.

    Subclasses implement ``_stage``; the scratch directory lifecycle, the
    process supervision and the marker decoding are shared.
    """

    name = "abstract"
    isolated = False

    # Proxy variables are blanked for every child.
    _NETWORK_BLOCK_ENV = {
        "HTTP_PROXY": "",
        "HTTPS_PROXY": "",
        "ALL_PROXY": "",
        "http_proxy": "",
        "https_proxy": "",
        "all_proxy": "",
    }

    def __init__(
        self,
        service_credential: str = "internal",
        scratch_root: Optional[Path] = None,
        node_modules_path: Optional[Path] = None,
    ):
        self.service_credential = service_credential
        self._scratch_root = normalize_path(scratch_root) if scratch_root else None
        self._node_modules_path = self._resolve_node_modules(node_modules_path)

    @staticmethod
    def _resolve_node_modules(path: Optional[Path]) -> Optional[Path]:
        if path is not None:
            return normalize_path(path)
        candidate = Path.cwd() / "node_modules"
        return candidate.resolve() if candidate.is_dir() else None

    @abc.abstractmethod
    def _stage(
        self,
        scratch_dir: Path,
        code: str,
        request: SandboxRequest,
        timeout_seconds: float,
    ) -> List[str]:
        """Write the files for one run and return the command to execute."""

    def _build_env(self) -> Dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", ""),
            "SYSTEMROOT": os.environ.get("SYSTEMROOT", ""),
            "NODE_ENV": "sandbox",
            "API_KEY": self.service_credential,
        }
        if self._node_modules_path is not None:
            env["NODE_PATH"] = str(self._node_modules_path)
        env.update(self._NETWORK_BLOCK_ENV)
        return env

    def _supervisor_timeout(self, timeout_seconds: float) -> float:
        return timeout_seconds

    def _spawn_error(self, command: Sequence[str], error: OSError) -> Exception:
        return ExecutionError(f"Failed to start sandbox process {command[0]!r}: {error}")

    def _is_timeout(self, result: ProcessResult, timeout_seconds: float) -> bool:
        return result.timed_out

    def _create_scratch_dir(self) -> Path:
        if self._scratch_root is not None:
            self._scratch_root.mkdir(parents=True, exist_ok=True)
        scratch = tempfile.mkdtemp(
            prefix="serverforge-sandbox-",
            dir=str(self._scratch_root) if self._scratch_root else None,
        )
        return Path(scratch)

    @staticmethod
    def _cleanup(scratch_dir: Path) -> None:
        try:
            shutil.rmtree(scratch_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("sandbox_cleanup_failed", scratch_dir=str(scratch_dir), error=str(e))

    async def _supervise(
        self,
        command: List[str],
        scratch_dir: Path,
        timeout_seconds: float,
    ) -> ProcessResult:
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(scratch_dir),
                env=self._build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise self._spawn_error(command, e) from e

        # Output is collected as it arrives so a result printed before a kill
        # is not lost with the process.
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []

        def _collect() -> "asyncio.Future[Any]":
            return asyncio.gather(
                _drain(proc.stdout, stdout_chunks),
                _drain(proc.stderr, stderr_chunks),
                proc.wait(),
            )

        try:
            await asyncio.wait_for(_collect(), timeout=self._supervisor_timeout(timeout_seconds))
        except asyncio.TimeoutError:
            _kill(proc)
            try:
                await asyncio.wait_for(_collect(), timeout=_POST_KILL_DRAIN_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("sandbox_output_drain_incomplete", command=command[0])
                await proc.wait()
            stderr_text = _decode(stderr_chunks)
            return ProcessResult(
                exit_code=None,
                stdout=_decode(stdout_chunks),
                stderr=stderr_text or f"Sandbox execution timed out after {timeout_seconds}s",
                duration_ms=(loop.time() - start_time) * 1000,
                timed_out=True,
            )
        except asyncio.CancelledError:
            _kill(proc)
            await proc.wait()
            raise

        return ProcessResult(
            exit_code=proc.returncode,
            stdout=_decode(stdout_chunks),
            stderr=_decode(stderr_chunks),
            duration_ms=(loop.time() - start_time) * 1000,
        )

    async def run(
        self,
        code: str,
        request: SandboxRequest,
        timeout_seconds: float,
    ) -> SandboxOutcome:
        scratch_dir = self._create_scratch_dir()
        try:
            command = self._stage(scratch_dir, code, request, timeout_seconds)
            result = await self._supervise(command, scratch_dir, timeout_seconds)
            if not result.timed_out and self._is_timeout(result, timeout_seconds):
                result = ProcessResult(
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    duration_ms=result.duration_ms,
                    timed_out=True,
                )
            return decode_outcome(result, timeout_seconds)
        finally:
            self._cleanup(scratch_dir)


class UnconfinedBackend(SandboxBackend):
    """Plain ``node`` child process. No OS-level confinement."""

    name = "unconfined"
    isolated = False

    def __init__(
        self,
        node_binary: str = "node",
        service_credential: str = "internal",
        scratch_root: Optional[Path] = None,
        node_modules_path: Optional[Path] = None,
    ):
        super().__init__(
            service_credential=service_credential,
            scratch_root=scratch_root,
            node_modules_path=node_modules_path,
        )
        self.node_binary = node_binary

    def _stage(
        self,
        scratch_dir: Path,
        code: str,
        request: SandboxRequest,
        timeout_seconds: float,
    ) -> List[str]:
        (scratch_dir / HANDLER_FILENAME).write_text(code, encoding="utf-8")
        runner = scratch_dir / RUNNER_FILENAME
        runner.write_text(render_inline_runner(request.to_dict()), encoding="utf-8")
        return [self.node_binary, str(runner)]


class JailedBackend(SandboxBackend):
    """``nsjail`` wrapper around the node runner.

    The jail tool, the node binary and the seccomp policy must all exist;
    their absence is a configuration error, never a silent fallback.
    """

    name = "jailed"
    isolated = True

    SANDBOX_MOUNT = "/app"
    NODE_MODULES_MOUNT = "/node_modules"

    def __init__(
        self,
        nsjail_binary: str = "nsjail",
        node_binary: str = "node",
        seccomp_policy: Path = Path("/etc/nsjail/node-sandbox.policy"),
        uid: int = 65534,
        gid: int = 65534,
        max_memory_mb: int = 1024,
        readonly_mounts: Sequence[str] = (),
        service_credential: str = "internal",
        scratch_root: Optional[Path] = None,
        node_modules_path: Optional[Path] = None,
    ):
        super().__init__(
            service_credential=service_credential,
            scratch_root=scratch_root,
            node_modules_path=node_modules_path,
        )
        self.nsjail_path = self._require_binary(nsjail_binary, "nsjail")
        self.node_path = self._require_binary(node_binary, "node")
        self.seccomp_policy = Path(seccomp_policy)
        if not self.seccomp_policy.is_file():
            raise ConfigurationError(f"Seccomp policy not found: {self.seccomp_policy}")
        self.uid = uid
        self.gid = gid
        self.max_memory_mb = max_memory_mb
        self.readonly_mounts = [str(mount) for mount in readonly_mounts]

    @staticmethod
    def _require_binary(binary: str, label: str) -> str:
        resolved = shutil.which(binary)
        if not resolved:
            raise ConfigurationError(
                f"{label} binary {binary!r} is not installed; the jailed sandbox backend requires it"
            )
        return str(Path(resolved).resolve())

    def _spawn_error(self, command: Sequence[str], error: OSError) -> Exception:
        if isinstance(error, FileNotFoundError):
            return ConfigurationError(f"nsjail binary disappeared: {command[0]!r}")
        return super()._spawn_error(command, error)

    def _supervisor_timeout(self, timeout_seconds: float) -> float:
        return timeout_seconds + JAIL_SUPERVISOR_OVERHEAD_SECONDS

    def _is_timeout(self, result: ProcessResult, timeout_seconds: float) -> bool:
        # nsjail kills the child at --time_limit and exits without a marker.
        if SANDBOX_RESULT_MARKER in result.stdout:
            return False
        return result.exit_code not in (0, None) and result.duration_ms >= timeout_seconds * 1000

    def _build_env(self) -> Dict[str, str]:
        return {"PATH": os.environ.get("PATH", "")}

    def _jail_env(self) -> List[str]:
        env = {
            "NODE_ENV": "sandbox",
            "API_KEY": self.service_credential,
            "PATH": "/usr/local/bin:/usr/bin:/bin",
        }
        if self._node_modules_path is not None:
            env["NODE_PATH"] = self.NODE_MODULES_MOUNT
        args: List[str] = []
        for key, value in env.items():
            args.extend(["--env", f"{key}={value}"])
        return args

    def build_command(self, scratch_dir: Path, timeout_seconds: float) -> List[str]:
        command = [
            self.nsjail_path,
            "--mode", "o",
            "--quiet",
            "--time_limit", str(max(1, math.ceil(timeout_seconds))),
            "--hostname", "sandbox",
            "--user", str(self.uid),
            "--group", str(self.gid),
            "--cwd", self.SANDBOX_MOUNT,
            "--rlimit_as", str(self.max_memory_mb),
            "--bindmount_ro", f"{scratch_dir}:{self.SANDBOX_MOUNT}",
            "--bindmount_ro", f"{self.node_path}:{self.node_path}",
        ]
        for mount in self.readonly_mounts:
            if Path(mount).exists():
                command.extend(["--bindmount_ro", mount])
        if self._node_modules_path is not None:
            command.extend([
                "--bindmount_ro",
                f"{self._node_modules_path}:{self.NODE_MODULES_MOUNT}",
            ])
        command.extend(["--seccomp_policy", str(self.seccomp_policy)])
        command.extend(self._jail_env())
        command.extend(["--", self.node_path, f"{self.SANDBOX_MOUNT}/{RUNNER_FILENAME}"])
        return command

    def _stage(
        self,
        scratch_dir: Path,
        code: str,
        request: SandboxRequest,
        timeout_seconds: float,
    ) -> List[str]:
        files = {
            HANDLER_FILENAME: code,
            REQUEST_FILENAME: serialize_request(request.to_dict()),
            RUNNER_FILENAME: render_file_runner(),
        }
        for filename, content in files.items():
            path = scratch_dir / filename
            path.write_text(content, encoding="utf-8")
            path.chmod(0o644)
        # mkdtemp creates 0700; the jailed user must be able to read the mount.
        scratch_dir.chmod(0o755)
        return self.build_command(scratch_dir, timeout_seconds)


class SandboxEngine:
    """Executes generated handler code for one request.

    Usage:
        engine = create_sandbox_engine()
        outcome = await engine.execute(code, "GET", headers=engine.service_headers())
        if outcome.success:
            print(outcome.status_code, outcome.json())
    """

    def __init__(
        self,
        backend: SandboxBackend,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._backend = backend
        self.timeout_seconds = timeout_seconds

    @property
    def backend(self) -> SandboxBackend:
        return self._backend

    @property
    def is_isolated(self) -> bool:
        return self._backend.isolated

    @property
    def service_credential(self) -> str:
        return self._backend.service_credential

    def service_headers(self, **extra: str) -> Dict[str, str]:
        """Headers carrying the internal service credential."""
        headers = {"authorization": f"Bearer {self.service_credential}"}
        headers.update({name.lower(): value for name, value in extra.items()})
        return headers

    async def execute(
        self,
        code: str,
        method: str,
        headers: Optional[Dict[str, Any]] = None,
        body: Any = None,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> SandboxOutcome:
        request = SandboxRequest(
            method=str(method).upper(),
            headers={str(k).lower(): str(v) for k, v in (headers or {}).items()},
            body=body,
        )
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds

        logger.debug(
            "sandbox_execute_started",
            backend=self._backend.name,
            method=request.method,
            timeout_seconds=timeout,
        )
        outcome = await self._backend.run(code, request, timeout)
        logger.info(
            "sandbox_execute_finished",
            backend=self._backend.name,
            method=request.method,
            success=outcome.success,
            status_code=outcome.status_code,
            timed_out=outcome.timed_out,
            duration_ms=round(outcome.duration_ms, 1),
        )
        return outcome


def create_sandbox_backend(backend_name: Optional[str] = None) -> SandboxBackend:
    """Build the backend selected by ``settings.sandbox_backend``."""
    name = backend_name or settings.sandbox_backend
    common = dict(
        service_credential=settings.hosted_internal_key,
        scratch_root=settings.sandbox_scratch_root,
        node_modules_path=settings.sandbox_node_modules_path,
    )
    if name == "unconfined":
        return UnconfinedBackend(node_binary=settings.sandbox_node_binary, **common)
    if name == "jailed":
        return JailedBackend(
            nsjail_binary=settings.nsjail_binary,
            node_binary=settings.sandbox_node_binary,
            seccomp_policy=settings.nsjail_seccomp_policy,
            uid=settings.nsjail_uid,
            gid=settings.nsjail_gid,
            max_memory_mb=settings.sandbox_max_memory_mb,
            readonly_mounts=settings.nsjail_readonly_mounts,
            **common,
        )
    raise ConfigurationError(f"Unknown sandbox backend: {name!r}")


def create_sandbox_engine(backend: Optional[SandboxBackend] = None) -> SandboxEngine:
    return SandboxEngine(
        backend or create_sandbox_backend(),
        timeout_seconds=settings.sandbox_timeout_seconds,
    )


_default_engine: Optional[SandboxEngine] = None


def get_sandbox_engine() -> SandboxEngine:
    """Process-wide engine built from settings on first use."""
    global _default_engine
    if _default_engine is None:
        _default_engine = create_sandbox_engine()
    return _default_engine


def reset_sandbox_engine() -> None:
    global _default_engine
    _default_engine = None
