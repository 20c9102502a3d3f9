"""Tests for the subprocess sandbox that runs custom step code."""

import sys

import pytest

from core.exceptions import StepExecutionError
from steps.sandbox import SubprocessSandbox

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(sys.platform == "win32", reason="rlimits need a POSIX host"),
]


@pytest.fixture
def sandbox():
    return SubprocessSandbox(timeout=10, memory_mb=1024)


class TestSubprocessSandbox:

    async def test_handler_result(self, sandbox):
        code = "def handler(inputs):\n    return {'greeting': 'Hello ' + inputs['name']}"
        assert await sandbox.run(code, {"name": "Ada"}) == {"greeting": "Hello Ada"}

    async def test_async_handler(self, sandbox):
        code = (
            "import asyncio\n"
            "async def handler(inputs):\n"
            "    await asyncio.sleep(0)\n"
            "    return {'double': inputs['n'] * 2}\n"
        )
        assert await sandbox.run(code, {"n": 21}) == {"double": 42}

    async def test_process_data_and_output_forms(self, sandbox):
        assert await sandbox.run("def process_data(d):\n    return {'n': len(d)}", {"a": 1, "b": 2}) == {"n": 2}
        assert await sandbox.run("output = {'x': inputs['x'] + 1}", {"x": 1}) == {"x": 2}

    async def test_non_dict_result_is_wrapped(self, sandbox):
        assert await sandbox.run("def handler(inputs):\n    return [1, 2]", {}) == {"result": [1, 2]}

    async def test_prints_do_not_corrupt_result(self, sandbox):
        code = "def handler(inputs):\n    print('debugging...')\n    return {'ok': True}"
        assert await sandbox.run(code, {}) == {"ok": True}

    async def test_exception_reports_last_stderr_line(self, sandbox):
        with pytest.raises(StepExecutionError, match="ZeroDivisionError"):
            await sandbox.run("def handler(inputs):\n    return 1 / 0", {})

    async def test_timeout_kills_process(self, sandbox):
        code = "import time\ndef handler(inputs):\n    time.sleep(30)\n    return {}"
        with pytest.raises(StepExecutionError, match="Code timed out after 0.5s"):
            await sandbox.run(code, {}, timeout=0.5)

    async def test_parent_environment_is_not_inherited(self, sandbox, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-secret")
        code = "import os\ndef handler(inputs):\n    return {'key': os.environ.get('ANTHROPIC_API_KEY')}"
        assert await sandbox.run(code, {}) == {"key": None}

    async def test_host_files_are_not_readable(self, sandbox):
        code = "def handler(inputs):\n    return {'passwd': open('/etc/passwd').read()}"
        with pytest.raises(StepExecutionError, match="PermissionError: Sandbox denied open"):
            await sandbox.run(code, {})

    async def test_network_sockets_are_denied(self, sandbox):
        code = (
            "import socket\n"
            "def handler(inputs):\n"
            "    socket.create_connection(('127.0.0.1', 9), timeout=1)\n"
            "    return {'net': 'connected'}\n"
        )
        with pytest.raises(StepExecutionError, match="Sandbox denied socket"):
            await sandbox.run(code, {})

    async def test_subprocesses_are_denied(self, sandbox):
        code = "import subprocess\ndef handler(inputs):\n    return {'out': subprocess.run(['id']).returncode}"
        with pytest.raises(StepExecutionError, match="Sandbox denied subprocess.Popen"):
            await sandbox.run(code, {})

    async def test_writes_outside_workdir_are_denied(self, sandbox, tmp_path):
        target = tmp_path / "escape.txt"
        code = f"def handler(inputs):\n    open({str(target)!r}, 'w').write('x')\n    return {{}}"
        with pytest.raises(StepExecutionError, match="Sandbox denied open"):
            await sandbox.run(code, {})
        assert not target.exists()

    async def test_workdir_is_writable(self, sandbox):
        code = (
            "def handler(inputs):\n"
            "    with open('scratch.txt', 'w') as f:\n"
            "        f.write(inputs['text'])\n"
            "    with open('scratch.txt') as f:\n"
            "        return {'text': f.read()}\n"
        )
        assert await sandbox.run(code, {"text": "kept"}) == {"text": "kept"}

    async def test_read_allowlist(self, tmp_path):
        (tmp_path / "lookup.json").write_text('{"tier": "gold"}')
        code = f"import json\ndef handler(inputs):\n    return json.load(open({str(tmp_path / 'lookup.json')!r}))"
        sandbox = SubprocessSandbox(timeout=10, memory_mb=1024, read_paths=[str(tmp_path)])
        assert await sandbox.run(code, {}) == {"tier": "gold"}
