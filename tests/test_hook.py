import os
import shutil
import stat
import subprocess

import pytest

from modtrust.constants import HOOK_MARKER
from modtrust.hook import install_hook, is_managed_hook, render_hook

PYTHON = "/opt/modtrust venv/bin/python3"


def test_installs_executable_hook(layout):
    path = install_hook(layout.hook_path, python=PYTHON)

    assert path == layout.hook_path
    assert stat.S_IMODE(path.stat().st_mode) == 0o755
    content = path.read_text()
    assert content.startswith("#!/bin/sh\n")
    assert HOOK_MARKER in content
    assert "PYTHON='/opt/modtrust venv/bin/python3'" in content
    assert "hook_main" in content
    assert '"$@"' in content


def test_second_install_is_identical(layout):
    install_hook(layout.hook_path, python=PYTHON)
    first = layout.hook_path.read_bytes()

    install_hook(layout.hook_path, python=PYTHON)

    assert layout.hook_path.read_bytes() == first
    assert os.listdir(layout.hook_path.parent) == [layout.hook_path.name]


def test_replaces_unmanaged_file(layout):
    layout.hook_path.parent.mkdir(parents=True)
    layout.hook_path.write_text("#!/bin/sh\necho old\n")
    assert not is_managed_hook(layout.hook_path)

    install_hook(layout.hook_path, python=PYTHON)

    assert is_managed_hook(layout.hook_path)
    assert layout.hook_path.read_text() == render_hook(PYTHON)


def test_exports_are_quoted_in_order(layout):
    environment = [("MODTRUST_ENV_FILE", "/etc/modtrust/modtrust.env"), ("MODTRUST_KEY_DIR", "/srv/mok keys")]

    content = render_hook(PYTHON, environment)

    assert "export MODTRUST_ENV_FILE=/etc/modtrust/modtrust.env\nexport MODTRUST_KEY_DIR='/srv/mok keys'\n" in content
    assert content.index("export MODTRUST_KEY_DIR") < content.index("PYTHON=")
    assert is_managed_hook(install_hook(layout.hook_path, python=PYTHON, environment=environment))


# ============================================================================
# Executing the wrapper
# ============================================================================

STUB = """\
#!/bin/sh
[ "$2" = "import modtrust" ] && exit 0
printf '%s\\n' "$@"
printf 'KEY_DIR=%s\\n' "$MODTRUST_KEY_DIR"
"""


def _stub_python(tmp_path):
    stub = tmp_path / "stub python"
    stub.write_text(STUB)
    stub.chmod(0o755)
    return stub


def _run_hook(hook_path, *args):
    return subprocess.run(
        ["sh", str(hook_path), *args],
        capture_output=True,
        text=True,
        env={"PATH": os.environ.get("PATH", "/usr/bin:/bin")},
    )


needs_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")


@needs_sh
def test_wrapper_forwards_arguments_and_settings(tmp_path, layout):
    stub = _stub_python(tmp_path)
    install_hook(layout.hook_path, python=str(stub), environment=[("MODTRUST_KEY_DIR", "/srv/mok keys")])

    result = _run_hook(layout.hook_path, "6.11.0-9-generic", "/boot/vmlinuz-6.11.0-9-generic")

    assert result.returncode == 0, result.stderr
    assert result.stdout.splitlines() == [
        "-c",
        'from modtrust.cli import hook_main; hook_main(prog_name="modtrust-hook")',
        "6.11.0-9-generic",
        "/boot/vmlinuz-6.11.0-9-generic",
        "KEY_DIR=/srv/mok keys",
    ]


@needs_sh
def test_wrapper_without_arguments_passes_none(tmp_path, layout):
    install_hook(layout.hook_path, python=str(_stub_python(tmp_path)))

    result = _run_hook(layout.hook_path)

    assert result.returncode == 0
    assert result.stdout.splitlines()[2:] == ["KEY_DIR="]


@needs_sh
def test_wrapper_exits_cleanly_when_interpreter_is_gone(tmp_path, layout):
    install_hook(layout.hook_path, python=str(tmp_path / "removed" / "python3"))

    result = _run_hook(layout.hook_path, "6.11.0-9-generic")

    assert result.returncode == 0
    assert result.stdout == ""
