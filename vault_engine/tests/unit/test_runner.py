"""Unit tests for vault_engine.runner."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from vault_engine.errors import CommandError, CommandTimeoutError
from vault_engine.runner import CommandResult, SubprocessRunner


def _py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class TestSubprocessRunner:
    def test_captures_stdout(self):
        result = SubprocessRunner().run(_py("print('hello')"), timeout=30)
        assert isinstance(result, CommandResult)
        assert result.returncode == 0
        assert result.stdout.strip() == "hello"

    def test_nonzero_exit_raises_with_stderr(self):
        with pytest.raises(CommandError) as exc_info:
            SubprocessRunner().run(_py("import sys; sys.stderr.write('boom'); sys.exit(3)"), timeout=30)
        assert exc_info.value.returncode == 3
        assert exc_info.value.stderr == "boom"
        assert "exit 3" in str(exc_info.value)

    def test_missing_executable(self):
        with pytest.raises(CommandError) as exc_info:
            SubprocessRunner().run(["definitely-not-a-real-binary-xyz"], timeout=5)
        assert exc_info.value.returncode is None
        assert "executable not found" in exc_info.value.stderr

    def test_timeout(self):
        with pytest.raises(CommandTimeoutError) as exc_info:
            SubprocessRunner().run(_py("import time; time.sleep(5)"), timeout=0.2)
        assert exc_info.value.timeout == 0.2
        assert isinstance(exc_info.value, CommandError)

    def test_stdout_redirected_to_file(self, tmp_path: Path):
        target = tmp_path / "out.sql"
        result = SubprocessRunner().run(_py("print('CREATE TABLE t();')"), timeout=30, stdout_path=target)
        assert result.stdout == ""
        assert target.read_text().strip() == "CREATE TABLE t();"

    def test_stdin_streamed_from_file(self, tmp_path: Path):
        source = tmp_path / "in.sql"
        source.write_text("SELECT 1;\n")
        result = SubprocessRunner().run(
            _py("import sys; print(len(sys.stdin.read()))"),
            timeout=30,
            stdin_path=source,
        )
        assert result.stdout.strip() == "10"

    def test_cwd(self, tmp_path: Path):
        result = SubprocessRunner().run(_py("import os; print(os.getcwd())"), timeout=30, cwd=tmp_path)
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()
