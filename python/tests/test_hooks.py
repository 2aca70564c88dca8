import io
import sys

import pytest

from emrunner.config import Command
from emrunner.hooks import HookError, run_hook


def test_hook_receives_binary_and_echoes_output(tmp_path):
    out = io.StringIO()
    command = Command(sys.executable, ["-c", "import os, sys; print(sys.argv[-1]); print(os.getcwd())"])
    run_hook(command, tmp_path / "fw.elf", tmp_path, output=out)
    printed = out.getvalue().splitlines()
    assert printed[0] == str(tmp_path / "fw.elf")
    assert printed[1] == str(tmp_path.resolve())


def test_failing_hook_carries_output(tmp_path):
    command = Command(
        sys.executable,
        ["-c", "import sys; print('flashing'); sys.stderr.write('no target'); sys.exit(3)"],
    )
    with pytest.raises(HookError) as excinfo:
        run_hook(command, tmp_path / "fw.elf", tmp_path, label="pre runner", output=io.StringIO())
    err = excinfo.value
    assert err.stdout.strip() == "flashing"
    assert err.stderr == "no target"
    assert "pre runner" in str(err)
    assert "status 3" in str(err)
    assert "no target" in str(err)


def test_missing_hook_executable(tmp_path):
    with pytest.raises(HookError):
        run_hook(Command(str(tmp_path / "nope")), tmp_path / "fw.elf", tmp_path, output=io.StringIO())
