"""Child-process runner for sandboxed plugin code.

Launched by :class:`persona.plugins.sandbox.PluginSandbox` as
``python -I -B _sandbox_runner.py``. Reads one JSON request from stdin,
compiles the plugin body as ``main(args)`` with RestrictedPython and writes
one JSON reply to stdout: ``{"ok": true, "result": ...}`` or
``{"ok": false, "error": ..., "error_type": ...}``.

Restricted compilation rejects underscore names and attributes, and every
attribute read, item read and iteration goes through the guards below. Only
the standard library and RestrictedPython may be imported here.
"""

import builtins
import io
import json
import operator
import resource
import sys
import textwrap
from importlib.abc import MetaPathFinder

from RestrictedPython import compile_restricted, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

# Plain builtins plugins may use on top of RestrictedPython's safe set
_EXTRA_BUILTINS = {
    "dict": dict,
    "list": list,
    "set": set,
    "frozenset": frozenset,
    "enumerate": enumerate,
    "min": min,
    "max": max,
    "sum": sum,
    "any": any,
    "all": all,
    "map": map,
    "filter": filter,
    "reversed": reversed,
    "next": next,
}

_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "^=": operator.ixor,
    "|=": operator.ior,
    "@=": operator.imatmul,
}


class _DenyImportsFinder(MetaPathFinder):
    # Blocks process, filesystem and network modules even when imported indirectly
    deny = {
        "os",
        "posix",
        "subprocess",
        "socket",
        "ssl",
        "http",
        "urllib",
        "ftplib",
        "smtplib",
        "ctypes",
        "multiprocessing",
        "threading",
        "_thread",
        "shutil",
        "pathlib",
        "tempfile",
        "importlib",
        "pickle",
        "marshal",
        "persona",
    }

    def find_spec(self, fullname, path, target=None):
        name = str(fullname)
        for p in self.deny:
            if name == p or name.startswith(p + "."):
                raise ImportError(f"Import of '{fullname}' is denied in plugins")
        return None


def _make_guarded_import(allowed: frozenset[str]):
    real_import = builtins.__import__

    def _guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
        if level != 0:
            raise ImportError("Relative imports are not allowed in plugins")
        root = name.split(".", 1)[0]
        if root not in allowed:
            raise ImportError(f"Import of '{name}' is not allowed in plugins")
        return real_import(name, globals, locals, fromlist, level)

    return _guarded_import


def _restricted_builtins(allowed: frozenset[str]) -> dict:
    safe = dict(safe_builtins)
    safe.update(_EXTRA_BUILTINS)
    safe["getattr"] = safer_getattr
    safe["__import__"] = _make_guarded_import(allowed)
    return safe


def _inplacevar(op: str, x, y):
    return _INPLACE_OPERATORS[op](x, y)


def _apply(func, *args, **kwargs):
    return func(*args, **kwargs)


def _restricted_globals(allowed: frozenset[str]) -> dict:
    return {
        "__builtins__": _restricted_builtins(allowed),
        "__metaclass__": type,
        "__name__": "plugin",
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_write_": full_write_guard,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
        "_print_": PrintCollector,
    }


def _set_limit(kind: int, value: int) -> None:
    _, hard = resource.getrlimit(kind)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(kind, (value, value))


def _apply_limits(cpu_seconds: int, memory_bytes: int) -> None:
    _set_limit(resource.RLIMIT_CPU, cpu_seconds)
    if memory_bytes > 0:
        _set_limit(resource.RLIMIT_AS, memory_bytes)
    _set_limit(resource.RLIMIT_FSIZE, 0)
    _set_limit(resource.RLIMIT_NOFILE, 16)


def _compile_main(code: str, namespace: dict):
    """Compile the body as ``def main(args)``; policy violations raise SyntaxError."""
    body = textwrap.indent(code, "    ") if code.strip() else "    pass"
    exec(compile_restricted(f"def main(args):\n{body}\n", "<plugin>", "exec"), namespace)
    return namespace["main"]


def _reply(stream, payload: dict, max_output_bytes: int) -> None:
    try:
        encoded = json.dumps(payload, default=str)
    except (TypeError, ValueError) as e:
        encoded = json.dumps(
            {"ok": False, "error": f"Plugin result is not JSON-serializable: {e}", "error_type": "TypeError"}
        )
    if len(encoded.encode("utf-8")) > max_output_bytes:
        encoded = json.dumps(
            {"ok": False, "error": f"Plugin output exceeds {max_output_bytes} bytes", "error_type": "OutputTooLarge"}
        )
    stream.write(encoded)
    stream.flush()


def main() -> int:
    # Writing .pyc files would trip the zero file-size limit
    sys.dont_write_bytecode = True
    real_stdout = sys.stdout
    request = json.loads(sys.stdin.read())
    allowed = frozenset(request.get("allowed_modules") or [])
    max_output_bytes = int(request.get("max_output_bytes") or 1024 * 1024)

    # Load allowed modules while the filesystem is still reachable
    for module_name in sorted(allowed):
        try:
            __import__(module_name)
        except ImportError:
            continue

    namespace = _restricted_globals(allowed)
    sys.meta_path.insert(0, _DenyImportsFinder())
    _apply_limits(int(request.get("cpu_seconds") or 5), int(request.get("memory_bytes") or 0))

    captured = io.StringIO()
    sys.stdout = captured
    try:
        plugin_main = _compile_main(request.get("code") or "", namespace)
        reply = {"ok": True, "result": plugin_main(request.get("args") or {})}
    except BaseException as e:  # noqa: BLE001
        if isinstance(e, KeyboardInterrupt):
            raise
        reply = {"ok": False, "error": str(e) or type(e).__name__, "error_type": type(e).__name__}
    finally:
        sys.stdout = real_stdout

    _reply(real_stdout, reply, max_output_bytes)
    return 0


if __name__ == "__main__":
    sys.exit(main())
