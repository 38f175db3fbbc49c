"""Sandbox runner tests.

Most tests drive the shared supervision path through a backend that runs a
Python script instead of node, so they need nothing beyond the interpreter.
Tests of the node shim itself are skipped when node is not installed.
"""

import asyncio
import base64
import json
import shutil
import sys
from pathlib import Path

import pytest

from serverforge.domain.errors import ConfigurationError, ExecutionError, ResultParseError
from serverforge.kernel.sandbox import (
    SANDBOX_RESULT_MARKER,
    JailedBackend,
    ProcessResult,
    SandboxBackend,
    SandboxEngine,
    UnconfinedBackend,
    create_sandbox_backend,
    decode_outcome,
    parse_result_marker,
)
from serverforge.kernel.sandbox import sandbox_runner

requires_node = pytest.mark.skipif(shutil.which("node") is None, reason="node is not installed")


class PythonScriptBackend(SandboxBackend):
    """Runs ``code`` as a Python script; the request is passed as argv[1]."""

    name = "python-test"

    def _stage(self, scratch_dir, code, request, timeout_seconds):
        self.last_scratch_dir = scratch_dir
        script = scratch_dir / "script.py"
        script.write_text(code, encoding="utf-8")
        return [sys.executable, str(script), json.dumps(request.to_dict())]


def _marker_script(status=200, headers=None, body=b"ok", flush=False):
    payload = {
        "statusCode": status,
        "headers": headers or {"Content-Type": "text/plain"},
        "body": base64.b64encode(body).decode("ascii"),
    }
    flush_arg = ", flush=True" if flush else ""
    return f"print({SANDBOX_RESULT_MARKER!r} + {json.dumps(json.dumps(payload))}{flush_arg})\n"


@pytest.fixture
def engine(tmp_path):
    backend = PythonScriptBackend(service_credential="svc-key", scratch_root=tmp_path / "scratch")
    return SandboxEngine(backend, timeout_seconds=10)


class TestResultMarker:

    def test_last_marker_line_wins(self):
        first = json.dumps({"statusCode": 500, "body": ""})
        second = json.dumps({"statusCode": 201, "headers": {"X-Image-Width": 1024}, "body": "aGk="})
        stdout = f"noise\n{SANDBOX_RESULT_MARKER}{first}\nmore\n{SANDBOX_RESULT_MARKER}{second}\n"

        parsed = parse_result_marker(stdout)

        assert parsed["status_code"] == 201
        assert parsed["headers"] == {"x-image-width": "1024"}
        assert parsed["body"] == b"hi"

    def test_missing_marker_returns_none(self):
        assert parse_result_marker("just logs\n") is None

    def test_marker_after_unterminated_output(self):
        payload = json.dumps({"statusCode": 202, "body": "aGk="})
        parsed = parse_result_marker(f"rendering...{SANDBOX_RESULT_MARKER}{payload}\n")

        assert parsed["status_code"] == 202
        assert parsed["body"] == b"hi"

    @pytest.mark.parametrize(
        "payload",
        ["{not json", "[1, 2]", '{"statusCode": "abc"}', '{"headers": [1]}', '{"body": "***"}'],
    )
    def test_malformed_marker_raises(self, payload):
        with pytest.raises(ResultParseError):
            parse_result_marker(f"{SANDBOX_RESULT_MARKER}{payload}\n")

    def test_decode_timeout_is_504(self):
        outcome = decode_outcome(
            ProcessResult(exit_code=None, stdout="", stderr="", duration_ms=1000, timed_out=True),
            timeout_seconds=1,
        )
        assert not outcome.success
        assert outcome.timed_out
        assert outcome.status_code == 504

    def test_decode_timeout_keeps_emitted_result(self):
        payload = json.dumps({"statusCode": 200, "body": "b2s="})
        outcome = decode_outcome(
            ProcessResult(
                exit_code=None,
                stdout=f"{SANDBOX_RESULT_MARKER}{payload}\n",
                stderr="",
                duration_ms=3000,
                timed_out=True,
            ),
            timeout_seconds=3,
        )

        assert outcome.success
        assert not outcome.timed_out
        assert outcome.body == b"ok"

    def test_decode_timeout_ignores_truncated_result(self):
        outcome = decode_outcome(
            ProcessResult(
                exit_code=None,
                stdout=f"{SANDBOX_RESULT_MARKER}{{\"statusCo",
                stderr="",
                duration_ms=3000,
                timed_out=True,
            ),
            timeout_seconds=3,
        )

        assert outcome.timed_out
        assert outcome.status_code == 504

    def test_decode_crash_without_marker(self):
        with pytest.raises(ExecutionError) as excinfo:
            decode_outcome(ProcessResult(exit_code=3, stdout="", stderr="boom", duration_ms=5), 30)
        assert excinfo.value.exit_code == 3
        assert excinfo.value.stderr == "boom"
        assert not isinstance(excinfo.value, ResultParseError)

    def test_decode_clean_exit_without_marker(self):
        with pytest.raises(ResultParseError):
            decode_outcome(ProcessResult(exit_code=0, stdout="hello", stderr="", duration_ms=5), 30)


class TestSupervision:

    @pytest.mark.asyncio
    async def test_successful_run_returns_structured_outcome(self, engine):
        outcome = await engine.execute(_marker_script(body=b'{"ok": true}'), "get")

        assert outcome.success
        assert outcome.status_code == 200
        assert outcome.content_type == "text/plain"
        assert outcome.json() == {"ok": True}
        assert outcome.duration_ms > 0

    @pytest.mark.asyncio
    async def test_request_is_normalized(self, engine):
        script = (
            "import json, sys, base64\n"
            "req = json.loads(sys.argv[1])\n"
            "body = base64.b64encode(json.dumps(req).encode()).decode()\n"
            f"print({SANDBOX_RESULT_MARKER!r} + json.dumps({{'statusCode': 200, 'body': body}}))\n"
        )
        outcome = await engine.execute(
            script,
            "post",
            headers={"Content-Type": "application/json", "X-Count": 3},
            body={"seed": 7},
        )

        assert outcome.json() == {
            "method": "POST",
            "headers": {"content-type": "application/json", "x-count": "3"},
            "body": {"seed": 7},
        }

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, engine):
        outcome = await engine.execute("import time\ntime.sleep(30)\n", "GET", timeout_seconds=0.5)

        assert outcome.timed_out
        assert outcome.status_code == 504
        assert outcome.duration_ms < 10000

    @pytest.mark.asyncio
    async def test_result_printed_before_timeout_is_kept(self, engine):
        script = (
            "import sys, time\n"
            "sys.stdout.write('rendering...')\n"
            + _marker_script(body=b"late", flush=True)
            + "time.sleep(30)\n"
        )
        outcome = await engine.execute(script, "GET", timeout_seconds=1)

        assert outcome.success
        assert not outcome.timed_out
        assert outcome.body == b"late"

    @pytest.mark.asyncio
    async def test_cancellation_kills_process_and_propagates(self, engine, tmp_path):
        task = asyncio.ensure_future(engine.execute("import time\ntime.sleep(30)\n", "GET"))
        await asyncio.sleep(0.5)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert list((tmp_path / "scratch").iterdir()) == []

    def test_kill_tolerates_already_exited_process(self):
        class VanishedProcess:
            returncode = None

            def kill(self):
                raise ProcessLookupError

        sandbox_runner._kill(VanishedProcess())

    @pytest.mark.asyncio
    async def test_crash_raises_execution_error(self, engine):
        with pytest.raises(ExecutionError):
            await engine.execute("import sys\nsys.exit(3)\n", "GET")

    @pytest.mark.asyncio
    async def test_environment_is_minimal(self, engine, monkeypatch):
        monkeypatch.setenv("SECRET_TOKEN", "leak")
        script = (
            "import os, json, base64\n"
            "env = {k: os.environ.get(k) for k in ('SECRET_TOKEN', 'API_KEY', 'NODE_ENV', 'HTTP_PROXY')}\n"
            "body = base64.b64encode(json.dumps(env).encode()).decode()\n"
            f"print({SANDBOX_RESULT_MARKER!r} + json.dumps({{'body': body}}))\n"
        )
        outcome = await engine.execute(script, "GET")

        assert outcome.json() == {
            "SECRET_TOKEN": None,
            "API_KEY": "svc-key",
            "NODE_ENV": "sandbox",
            "HTTP_PROXY": "",
        }

    @pytest.mark.asyncio
    async def test_scratch_directory_removed_on_every_path(self, engine, tmp_path):
        scratch_root = tmp_path / "scratch"

        await engine.execute(_marker_script(), "GET")
        assert list(scratch_root.iterdir()) == []

        with pytest.raises(ExecutionError):
            await engine.execute("raise SystemExit(2)\n", "GET")
        assert list(scratch_root.iterdir()) == []

        await engine.execute("import time\ntime.sleep(30)\n", "GET", timeout_seconds=0.3)
        assert list(scratch_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_interpreter_is_execution_error(self, tmp_path):
        backend = UnconfinedBackend(node_binary=str(tmp_path / "no-such-node"), scratch_root=tmp_path)
        with pytest.raises(ExecutionError, match="Failed to start"):
            await SandboxEngine(backend).execute("module.exports = () => {}", "GET")

    def test_service_headers(self, engine):
        headers = engine.service_headers(**{"Content-Type": "application/json"})
        assert headers == {"authorization": "Bearer svc-key", "content-type": "application/json"}
        assert not engine.is_isolated


@requires_node
class TestNodeShim:

    @pytest.fixture
    def node_engine(self, tmp_path):
        return SandboxEngine(UnconfinedBackend(scratch_root=tmp_path / "scratch"), timeout_seconds=10)

    @pytest.mark.asyncio
    async def test_handler_response_is_captured(self, node_engine):
        code = (
            "module.exports = async (req, res) => {\n"
            "  res.setHeader('X-Image-Width', '1024');\n"
            "  res.setHeader('Content-Type', 'application/json');\n"
            "  res.status(201).end(JSON.stringify({ method: req.method, auth: req.headers.authorization }));\n"
            "};\n"
        )
        outcome = await node_engine.execute(code, "GET", headers=node_engine.service_headers())

        assert outcome.status_code == 201
        assert outcome.headers["x-image-width"] == "1024"
        assert outcome.json() == {"method": "GET", "auth": "Bearer internal"}

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_500(self, node_engine):
        code = "module.exports = () => { throw new Error('kaboom'); };"
        outcome = await node_engine.execute(code, "GET")

        assert outcome.status_code == 500
        assert outcome.json() == {"error": "kaboom"}

    @pytest.mark.asyncio
    async def test_binary_body_survives(self, node_engine):
        code = "module.exports = (req, res) => { res.end(Buffer.from([0, 10, 255, 13])); };"
        outcome = await node_engine.execute(code, "GET")

        assert outcome.body == bytes([0, 10, 255, 13])

    @pytest.mark.asyncio
    async def test_unterminated_stdout_before_response(self, node_engine):
        code = (
            "module.exports = (req, res) => {\n"
            "  process.stdout.write('rendering...');\n"
            "  res.json({ ok: true });\n"
            "};\n"
        )
        outcome = await node_engine.execute(code, "GET")

        assert outcome.success
        assert outcome.json() == {"ok": True}

    @pytest.mark.asyncio
    async def test_open_handle_after_response_does_not_time_out(self, node_engine):
        code = (
            "module.exports = (req, res) => {\n"
            "  setInterval(() => {}, 1000);\n"
            "  res.json({ ok: true });\n"
            "};\n"
        )
        outcome = await node_engine.execute(code, "GET", timeout_seconds=3)

        assert outcome.success
        assert not outcome.timed_out
        assert outcome.json() == {"ok": True}
        assert outcome.duration_ms < 3000


class TestJailedBackend:

    @pytest.fixture
    def fake_tools(self, tmp_path, monkeypatch):
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        for name in ("nsjail", "node"):
            (bin_dir / name).write_text("", encoding="utf-8")
        policy = tmp_path / "node.policy"
        policy.write_text("ALLOW { read }", encoding="utf-8")

        def fake_which(binary):
            candidate = bin_dir / binary
            return str(candidate) if candidate.exists() else None

        monkeypatch.setattr(sandbox_runner.shutil, "which", fake_which)
        return bin_dir, policy

    def test_missing_nsjail_is_configuration_error(self, monkeypatch, tmp_path):
        monkeypatch.setattr(sandbox_runner.shutil, "which", lambda binary: None)
        with pytest.raises(ConfigurationError, match="nsjail"):
            JailedBackend(seccomp_policy=tmp_path / "missing.policy")

    def test_missing_policy_is_configuration_error(self, fake_tools, tmp_path):
        with pytest.raises(ConfigurationError, match="Seccomp policy"):
            JailedBackend(seccomp_policy=tmp_path / "missing.policy")

    def test_build_command(self, fake_tools, tmp_path):
        bin_dir, policy = fake_tools
        modules = tmp_path / "node_modules"
        modules.mkdir()
        backend = JailedBackend(
            seccomp_policy=policy,
            uid=1234,
            gid=4321,
            max_memory_mb=256,
            readonly_mounts=[str(tmp_path), str(tmp_path / "absent")],
            service_credential="svc",
            node_modules_path=modules,
        )
        scratch = tmp_path / "scratch"

        command = backend.build_command(scratch, 2.5)

        node_path = str((bin_dir / "node").resolve())
        assert command[0] == str((bin_dir / "nsjail").resolve())
        assert command[command.index("--time_limit") + 1] == "3"
        assert command[command.index("--user") + 1] == "1234"
        assert command[command.index("--group") + 1] == "4321"
        assert command[command.index("--rlimit_as") + 1] == "256"
        assert f"{scratch}:/app" in command
        assert f"{modules.resolve()}:/node_modules" in command
        assert str(tmp_path) in command
        assert str(tmp_path / "absent") not in command
        assert command[command.index("--seccomp_policy") + 1] == str(policy)
        assert "API_KEY=svc" in command
        assert "NODE_PATH=/node_modules" in command
        assert command[-3:] == ["--", node_path, "/app/runner.js"]
        assert backend.isolated

    def test_backend_factory(self, monkeypatch):
        monkeypatch.setattr("serverforge.config.settings.sandbox_backend", "unconfined")
        assert isinstance(create_sandbox_backend(), UnconfinedBackend)
        with pytest.raises(ConfigurationError):
            create_sandbox_backend("docker")
