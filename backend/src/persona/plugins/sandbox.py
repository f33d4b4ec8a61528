"""Plugin sandbox: runs user-authored plugin code in a throwaway interpreter.

Each call starts ``python -I -B _sandbox_runner.py`` with an empty
environment, an empty temporary working directory and its own process
group. The runner compiles the plugin with RestrictedPython and applies resource
limits and an import allow-list before executing it. Arguments and the result
cross the process boundary as JSON over pipes whose reads are bounded.
A wall-clock timeout kills the whole process group.
"""

import asyncio
import json
import math
import os
import signal
import sys
import tempfile
from pathlib import Path
from typing import Any

from ..core.config import get_settings_instance
from ..core.exceptions import PluginExecutionError, PluginTimeoutError
from ..core.logging import get_logger

logger = get_logger(__name__)

RUNNER_PATH = Path(__file__).with_name("_sandbox_runner.py")

_STDERR_LIMIT = 64 * 1024


async def _read_bounded(stream: asyncio.StreamReader, limit: int) -> tuple[bytes, bool]:
    """Read until EOF, keeping at most ``limit`` bytes. Returns (data, overflowed)."""
    chunks: list[bytes] = []
    size = 0
    overflowed = False
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        if size < limit:
            chunks.append(chunk[: limit - size])
        size += len(chunk)
        if size > limit:
            overflowed = True
    return b"".join(chunks), overflowed


class PluginSandbox:
    """Execute plugin bodies as ``main(args)`` in an isolated child process.

    Args:
        timeout_ms: Default wall-clock budget per call.
        memory_limit_mb: Address-space cap for the child.
        max_code_length: Longest accepted plugin body, in characters.
        max_output_bytes: Largest accepted JSON reply from the child.
        allowed_modules: Modules plugin code may import.

    """

    def __init__(
        self,
        timeout_ms: int = 5000,
        memory_limit_mb: int = 512,
        max_code_length: int = 50_000,
        max_output_bytes: int = 1024 * 1024,
        allowed_modules: list[str] | None = None,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.memory_limit_mb = memory_limit_mb
        self.max_code_length = max_code_length
        self.max_output_bytes = max_output_bytes
        self.allowed_modules = sorted(set(allowed_modules or ["json", "math", "re", "datetime"]))

    @classmethod
    def from_settings(cls, settings=None) -> "PluginSandbox":
        settings = settings or get_settings_instance()
        return cls(
            timeout_ms=settings.plugin_timeout_ms,
            memory_limit_mb=settings.plugin_memory_limit_mb,
            max_code_length=settings.plugin_max_code_length,
            max_output_bytes=settings.plugin_max_output_bytes,
            allowed_modules=settings.plugin_allowed_modules,
        )

    async def execute(self, code: str, args: dict[str, Any], timeout_ms: int | None = None) -> Any:
        """Run *code* with *args* and return the plugin's result.

        Raises:
            PluginTimeoutError: the child ran past ``timeout_ms`` and was killed.
            PluginExecutionError: the plugin raised, exited abnormally or produced bad output.

        """
        timeout_ms = timeout_ms or self.timeout_ms
        if len(code) > self.max_code_length:
            raise PluginExecutionError(
                f"Plugin code exceeds maximum length of {self.max_code_length} characters",
                details={"code_length": len(code)},
            )
        try:
            request = json.dumps(
                {
                    "code": code,
                    "args": args,
                    "allowed_modules": self.allowed_modules,
                    "cpu_seconds": math.ceil(timeout_ms / 1000) + 1,
                    "memory_bytes": self.memory_limit_mb * 1024 * 1024,
                    "max_output_bytes": self.max_output_bytes,
                }
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise PluginExecutionError(f"Plugin arguments are not JSON-serializable: {e}") from e

        with tempfile.TemporaryDirectory(prefix="persona-plugin-") as workdir:
            proc = await asyncio.create_subprocess_exec(
                sys.executable,
                "-I",
                "-B",
                str(RUNNER_PATH),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env={},
                start_new_session=True,
            )
            try:
                stdout, stderr = await asyncio.wait_for(self._communicate(proc, request), timeout=timeout_ms / 1000)
            except TimeoutError:
                await self._kill(proc)
                logger.warning("Plugin execution timed out", extra={"timeout_ms": timeout_ms, "pid": proc.pid})
                raise PluginTimeoutError(timeout_ms) from None
            except BaseException:
                # Cancellation or unexpected failure must not leave the child running
                await self._kill(proc)
                raise

        return self._parse_reply(proc.returncode, stdout, stderr)

    async def _communicate(self, proc: asyncio.subprocess.Process, request: bytes) -> tuple[bytes, bytes]:
        async def _feed() -> None:
            try:
                proc.stdin.write(request)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            finally:
                proc.stdin.close()

        _, (stdout, stdout_overflow), (stderr, _) = await asyncio.gather(
            _feed(),
            _read_bounded(proc.stdout, self.max_output_bytes),
            _read_bounded(proc.stderr, _STDERR_LIMIT),
        )
        await proc.wait()
        if stdout_overflow:
            raise PluginExecutionError(f"Plugin output exceeds {self.max_output_bytes} bytes")
        return stdout, stderr

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()
        await proc.wait()

    def _parse_reply(self, returncode: int | None, stdout: bytes, stderr: bytes) -> Any:
        if returncode != 0:
            if returncode is not None and returncode < 0:
                try:
                    signal_name = signal.Signals(-returncode).name
                except ValueError:
                    signal_name = f"signal {-returncode}"
                if -returncode == signal.SIGXCPU:
                    message = "Plugin exceeded its CPU time limit"
                else:
                    message = f"Plugin process was terminated by {signal_name}"
            else:
                message = f"Plugin process exited with code {returncode}"
            logger.warning(
                "Plugin process exited abnormally",
                extra={"returncode": returncode, "stderr": stderr.decode("utf-8", "replace")[-2000:]},
            )
            raise PluginExecutionError(message, details={"returncode": returncode})

        try:
            reply = json.loads(stdout.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PluginExecutionError(f"Plugin produced unparseable output: {e}") from e
        if not isinstance(reply, dict) or "ok" not in reply:
            raise PluginExecutionError("Plugin produced an unexpected reply")

        if not reply["ok"]:
            raise PluginExecutionError(
                str(reply.get("error") or "Plugin failed"),
                details={"error_type": reply.get("error_type")},
            )
        return reply.get("result")


_plugin_sandbox: PluginSandbox | None = None


def get_plugin_sandbox() -> PluginSandbox:
    global _plugin_sandbox  # noqa: PLW0603
    if _plugin_sandbox is None:
        _plugin_sandbox = PluginSandbox.from_settings()
    return _plugin_sandbox
