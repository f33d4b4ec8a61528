"""Tests for PluginSandbox; each case runs a real child interpreter."""

import sys

import pytest

from persona.core.exceptions import PluginExecutionError, PluginTimeoutError
from persona.plugins.sandbox import PluginSandbox

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="sandbox relies on POSIX resource limits")


@pytest.fixture
def sandbox():
    return PluginSandbox(timeout_ms=5000, memory_limit_mb=512, max_output_bytes=4096)


class TestExecute:
    async def test_returns_main_result(self, sandbox) -> None:
        assert await sandbox.execute("return args['a'] + args['b']", {"a": 2, "b": 3}) == 5

    async def test_allowed_import(self, sandbox) -> None:
        code = "import math\nreturn {'root': math.sqrt(args['n'])}"
        assert await sandbox.execute(code, {"n": 16}) == {"root": 4.0}

    async def test_async_body_is_rejected(self, sandbox) -> None:
        code = "async def lookup(name):\n    return name.upper()\nreturn await lookup(args['name'])"
        with pytest.raises(PluginExecutionError) as exc_info:
            await sandbox.execute(code, {"name": "aria"})
        assert exc_info.value.details["error_type"] == "SyntaxError"

    async def test_loops_and_augmented_assignment(self, sandbox) -> None:
        code = "total = 0\nfor name, score in args['scores'].items():\n    total += score\nreturn {'total': total}"
        assert await sandbox.execute(code, {"scores": {"a": 2, "b": 5}}) == {"total": 7}

    async def test_plugin_print_does_not_corrupt_reply(self, sandbox) -> None:
        assert await sandbox.execute("print('noise')\nreturn 1", {}) == 1

    async def test_plugin_exception_message(self, sandbox) -> None:
        with pytest.raises(PluginExecutionError) as exc_info:
            await sandbox.execute("raise ValueError('dice must have sides')", {})
        assert exc_info.value.message == "dice must have sides"
        assert exc_info.value.details["error_type"] == "ValueError"

    @pytest.mark.parametrize("code", ["import os\nreturn os.getcwd()", "import socket\nreturn 1", "from subprocess import run\nreturn 1"])
    async def test_denied_imports(self, sandbox, code) -> None:
        with pytest.raises(PluginExecutionError) as exc_info:
            await sandbox.execute(code, {})
        assert "not allowed" in exc_info.value.message

    async def test_no_file_access(self, sandbox) -> None:
        with pytest.raises(PluginExecutionError) as exc_info:
            await sandbox.execute("return open('/etc/passwd').read()", {})
        assert "open" in exc_info.value.message

    @pytest.mark.parametrize(
        "code",
        [
            "for cls in ().__class__.__base__.__subclasses__():\n"
            "    if cls.__name__ == '_wrap_close':\n"
            "        return cls.__init__.__globals__['listdir']('/')\n"
            "return None",
            "return getattr((), '__class__')",
            "return '{0.__class__}'.format(())",
        ],
    )
    async def test_dunder_walks_are_blocked(self, sandbox, code) -> None:
        with pytest.raises(PluginExecutionError):
            await sandbox.execute(code, {})

    async def test_timeout_kills_child(self, sandbox) -> None:
        with pytest.raises(PluginTimeoutError) as exc_info:
            await sandbox.execute("while True:\n    pass", {}, timeout_ms=300)
        assert exc_info.value.details["timeout_ms"] == 300

    async def test_output_limit(self, sandbox) -> None:
        with pytest.raises(PluginExecutionError) as exc_info:
            await sandbox.execute("return 'x' * 10000", {})
        assert "exceeds" in exc_info.value.message

    async def test_code_length_limit(self) -> None:
        sandbox = PluginSandbox(max_code_length=10)
        with pytest.raises(PluginExecutionError):
            await sandbox.execute("return 'this is far too long'", {})

    async def test_syntax_error(self, sandbox) -> None:
        with pytest.raises(PluginExecutionError) as exc_info:
            await sandbox.execute("return (", {})
        assert exc_info.value.details["error_type"] == "SyntaxError"

    async def test_unserializable_args(self, sandbox) -> None:
        with pytest.raises(PluginExecutionError):
            await sandbox.execute("return 1", {"obj": object()})


def test_from_settings(mock_settings) -> None:
    mock_settings.plugin_timeout_ms = 1234
    mock_settings.plugin_memory_limit_mb = 64
    mock_settings.plugin_max_code_length = 99
    mock_settings.plugin_max_output_bytes = 100
    mock_settings.plugin_allowed_modules = ["re", "json", "re"]
    sandbox = PluginSandbox.from_settings(mock_settings)
    assert sandbox.timeout_ms == 1234
    assert sandbox.allowed_modules == ["json", "re"]
