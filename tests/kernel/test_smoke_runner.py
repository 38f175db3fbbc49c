"""Smoke test runner tests."""

import pytest

from serverforge.domain.errors import ExecutionError
from serverforge.kernel.sandbox import SandboxEngine, SandboxOutcome, UnconfinedBackend
from serverforge.kernel.verification import CHECK_ORDER, NOT_RUN_MESSAGE, SmokeTestRunner

HANDLER = """
module.exports = async (req, res) => {
  if (req.method === 'POST') {
    res.setHeader('X-Image-Width', '1024');
    res.setHeader('Content-Type', 'image/png');
    res.end(Buffer.from([1, 2, 3]));
    return;
  }
  res.json({ methods: ['GET', 'POST'] });
};
"""


class FakeIsolatedEngine:
    """Stands in for an engine on an isolated backend."""

    is_isolated = True

    def __init__(self, outcome=None, error=None):
        self.outcome = outcome
        self.error = error
        self.calls = []

    def service_headers(self, **extra):
        return {"authorization": "Bearer svc"}

    async def execute(self, code, method, headers=None, body=None, *, timeout_seconds=None):
        self.calls.append((method, headers))
        if self.error is not None:
            raise self.error
        return self.outcome


def _outcome(status_code=200, timed_out=False):
    return SandboxOutcome(
        success=not timed_out,
        status_code=status_code,
        headers={},
        body=b"",
        timed_out=timed_out,
    )


@pytest.fixture
def dev_engine(tmp_path):
    return SandboxEngine(UnconfinedBackend(scratch_root=tmp_path))


@pytest.mark.asyncio
async def test_dev_mode_never_executes_code(dev_engine):
    report = await SmokeTestRunner(dev_engine).run(HANDLER)

    assert report.passed
    assert list(report.results) == list(CHECK_ORDER)
    assert report.results["getEndpoint"].message == "GET endpoint structure validated (dev mode)"
    assert report.to_dict()["results"]["syntax"] == {"passed": True, "message": "Syntax is valid"}


@pytest.mark.asyncio
async def test_syntax_failure_short_circuits(dev_engine):
    report = await SmokeTestRunner(dev_engine).run("module.exports = (req, res) => {")

    assert not report.passed
    assert not report.results["syntax"].passed
    for name in CHECK_ORDER[1:]:
        assert report.results[name].skipped
        assert report.results[name].message == NOT_RUN_MESSAGE
    assert report.failed_checks() == list(CHECK_ORDER)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "prelude, message",
    [
        ("let a = 1;\nlet a = 2;\n", "Identifier 'a' has already been declared"),
        ("const b;\n", "Missing initializer in const declaration"),
        ("break;\n", "Illegal break statement"),
    ],
)
async def test_code_that_cannot_load_fails_in_dev_mode(dev_engine, prelude, message):
    report = await SmokeTestRunner(dev_engine).run(prelude + HANDLER)

    assert not report.passed
    assert message in report.results["syntax"].message


@pytest.mark.asyncio
async def test_structure_and_post_checks(dev_engine):
    report = await SmokeTestRunner(dev_engine).run("var handler = function (req, res) { res.end('x'); };")

    assert report.results["syntax"].passed
    assert report.results["structure"].message == "No handler export found"
    assert report.results["postEndpoint"].message == "POST endpoint handling not found"
    assert report.failed_checks() == ["structure", "postEndpoint"]


@pytest.mark.asyncio
async def test_isolated_get_endpoint_executes_with_service_credential():
    engine = FakeIsolatedEngine(outcome=_outcome(200))

    report = await SmokeTestRunner(engine).run(HANDLER)

    assert report.passed
    assert report.results["getEndpoint"].message == "GET endpoint responds with 200"
    assert engine.calls == [("GET", {"authorization": "Bearer svc"})]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "engine, message",
    [
        (FakeIsolatedEngine(outcome=_outcome(404)), "GET endpoint returned 404"),
        (FakeIsolatedEngine(outcome=_outcome(504, timed_out=True)), "GET endpoint timed out"),
        (FakeIsolatedEngine(error=ExecutionError("Sandbox process exited with code 1")), "Sandbox process exited with code 1"),
    ],
)
async def test_isolated_get_endpoint_failures(engine, message):
    report = await SmokeTestRunner(engine).run(HANDLER)

    assert not report.passed
    assert report.results["getEndpoint"].message == message
    assert report.failed_checks() == ["getEndpoint"]
