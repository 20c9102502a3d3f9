"""Isolated execution of user-supplied custom step code.

Code runs in a separate ``python -I`` process with an empty environment,
a throwaway working directory and CPU / address-space limits. An audit
hook installed before the user code runs denies subprocesses and native
libraries. Sockets may only reach ``CUSTOM_CODE_ALLOWED_HOSTS``. Files may be
written inside the working directory and read there, on the import path or
under ``CUSTOM_CODE_READ_PATHS``.

Inputs go in as JSON on stdin; the result comes back as JSON on stdout.
Anything the user code prints is sent to stderr so it cannot corrupt the result.

The code may define ``handler(inputs)`` (sync or async) or
``process_data(inputs)``, or assign a module-level ``output``.
"""

import asyncio
import json
import math
import sys
import tempfile
from typing import Any, Dict, List, Optional

import structlog

from app.config import get_settings
from core.exceptions import StepExecutionError

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

logger = structlog.get_logger(__name__)

_RUNNER = r'''
import asyncio
import inspect
import json
import os
import socket
import sys

_PROCESS_EVENTS = frozenset({
    "subprocess.Popen", "os.system", "os.exec", "os.posix_spawn", "os.spawn",
    "os.fork", "os.forkpty", "os.kill", "os.killpg", "os.startfile", "pty.spawn",
    "ctypes.dlopen", "ctypes.dlsym", "ctypes.cdata",
})
_WRITE_EVENTS = frozenset({
    "os.remove", "os.rmdir", "os.mkdir", "os.rename", "os.link", "os.symlink",
    "os.truncate", "os.chmod", "os.chown", "os.utime", "shutil.rmtree",
})
_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_CREAT | os.O_APPEND | os.O_TRUNC
_LOCAL_FAMILIES = {-1, getattr(socket, "AF_UNIX", -1)}


async def _await(value):
    return await value


def _resolve_hosts(hosts):
    allowed = set(hosts)
    for host in hosts:
        try:
            allowed.update(info[4][0] for info in socket.getaddrinfo(host, None))
        except OSError:
            continue
    return frozenset(allowed)


def _install_guard(read_paths, allowed_hosts):
    """Deny process spawning, network access and files outside the allowlists."""
    workdir = os.path.realpath(os.getcwd())
    readable = tuple(os.path.realpath(p) for p in [*sys.path, *read_paths] if p)
    hosts = _resolve_hosts(allowed_hosts)

    def within(path, roots):
        return any(path == root or path.startswith(root.rstrip(os.sep) + os.sep) for root in roots)

    def deny(event, detail):
        raise PermissionError(f"Sandbox denied {event}: {detail}")

    def check_path(event, path, write):
        if path is None or isinstance(path, int):
            return
        resolved = os.path.realpath(os.fsdecode(path))
        roots = (workdir,) if write else (workdir, *readable)
        if not within(resolved, roots):
            deny(event, resolved)

    def check_host(event, address):
        if address is None:
            return
        host = address[0] if isinstance(address, tuple) else address
        if isinstance(host, bytes):
            host = host.decode("utf-8", "replace")
        if host not in hosts:
            deny(event, host)

    def hook(event, args):
        if event == "open":
            path, mode, flags = args
            write = any(c in mode for c in "wax+") if mode else bool((flags or 0) & _WRITE_FLAGS)
            check_path(event, path, write)
        elif event in ("os.listdir", "os.scandir"):
            check_path(event, args[0], False)
        elif event in _WRITE_EVENTS:
            check_path(event, args[0], True)
            if event in ("os.rename", "os.link", "os.symlink"):
                check_path(event, args[1], True)
        elif event in _PROCESS_EVENTS:
            deny(event, "process and native access are not available")
        elif event == "socket.__new__":
            if args[1] not in _LOCAL_FAMILIES and not hosts:
                deny(event, "network access is not available")
        elif event in ("socket.connect", "socket.sendto", "socket.sendmsg"):
            check_host(event, args[1])
        elif event in ("socket.getaddrinfo", "socket.gethostbyname", "socket.gethostbyname_ex",
                       "socket.gethostbyaddr", "socket.getnameinfo", "http.client.connect"):
            check_host(event, args[1] if event == "http.client.connect" else args[0])
        elif event in ("socket.bind", "socket.sethostname"):
            deny(event, "network access is not available")

    sys.addaudithook(hook)


def _main():
    payload = json.loads(sys.stdin.read() or "{}")
    inputs = payload.get("inputs") or {}
    result_stream = sys.stdout
    sys.stdout = sys.stderr

    namespace = {"__name__": "__custom_step__", "inputs": inputs, "input_data": inputs}
    code = compile(payload["code"], "<custom_step>", "exec")
    _install_guard(payload.get("read_paths") or [], payload.get("allowed_hosts") or [])
    exec(code, namespace)

    fn = namespace.get("handler") or namespace.get("process_data")
    if callable(fn):
        result = fn(inputs)
        if inspect.isawaitable(result):
            result = asyncio.run(_await(result))
    else:
        result = namespace.get("output")

    if not isinstance(result, dict):
        result = {"result": result}
    result_stream.write(json.dumps(result, default=str))
    result_stream.flush()


_main()
'''


def _limits(cpu_seconds: int, memory_bytes: int):
    """preexec_fn applying rlimits in the child before exec."""

    def apply():
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
        try:
            resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
        except (ValueError, OSError):
            # Some platforms (macOS) reject RLIMIT_AS
            pass

    return apply


class SubprocessSandbox:
    """Runs custom step code in a child interpreter."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        memory_mb: Optional[int] = None,
        python_executable: Optional[str] = None,
        read_paths: Optional[List[str]] = None,
        allowed_hosts: Optional[List[str]] = None,
    ):
        settings = get_settings()
        self.timeout = timeout or settings.CUSTOM_CODE_TIMEOUT_SECONDS
        self.memory_mb = memory_mb or settings.CUSTOM_CODE_MEMORY_MB
        self.python_executable = python_executable or sys.executable
        self.read_paths = list(settings.CUSTOM_CODE_READ_PATHS if read_paths is None else read_paths)
        self.allowed_hosts = list(settings.CUSTOM_CODE_ALLOWED_HOSTS if allowed_hosts is None else allowed_hosts)

    async def run(self, code: str, inputs: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Execute ``code`` against ``inputs`` and return its result dict.

        Raises:
            StepExecutionError: on timeout, non-zero exit (including a denied
                file, network or process access), or unreadable output
        """
        timeout = timeout if timeout is not None else self.timeout
        payload = json.dumps({
            "code": code,
            "inputs": inputs,
            "read_paths": self.read_paths,
            "allowed_hosts": self.allowed_hosts,
        }, default=str).encode("utf-8")

        preexec_fn = None
        if resource is not None:
            preexec_fn = _limits(math.ceil(timeout) + 1, self.memory_mb * 1024 * 1024)

        with tempfile.TemporaryDirectory(prefix="custom_step_") as workdir:
            process = await asyncio.create_subprocess_exec(
                self.python_executable, "-I", "-c", _RUNNER,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env={},
                preexec_fn=preexec_fn,
            )
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
            except asyncio.TimeoutError:
                await self._kill(process)
                raise StepExecutionError(f"Code timed out after {timeout}s", step_type="custom")
            except asyncio.CancelledError:
                await self._kill(process)
                raise

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()

        if process.returncode != 0:
            last_line = stderr_text.splitlines()[-1] if stderr_text else f"exit code {process.returncode}"
            logger.warning(
                "Custom code exited with error",
                return_code=process.returncode,
                stderr=stderr_text[-2000:],
            )
            raise StepExecutionError(last_line, step_type="custom")

        if stderr_text:
            logger.debug("Custom code output", stderr=stderr_text[-2000:])

        try:
            result = json.loads(stdout_text)
        except json.JSONDecodeError:
            raise StepExecutionError("Code produced no readable result", step_type="custom")
        return result if isinstance(result, dict) else {"result": result}

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()


_sandbox: Optional[SubprocessSandbox] = None


def get_sandbox() -> SubprocessSandbox:
    """Get or create the singleton sandbox."""
    global _sandbox
    if _sandbox is None:
        _sandbox = SubprocessSandbox()
    return _sandbox
