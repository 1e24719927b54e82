import subprocess
from pathlib import Path

from savesync.engine import materialize as materialize_module
from savesync.engine.materialize import pin_directory


def test_pin_directory_disabled_without_command(tmp_path: Path):
    assert pin_directory(tmp_path, []) is False


def test_pin_directory_substitutes_path(monkeypatch, tmp_path: Path):
    calls = []

    def _fake_run(argv, **_kwargs):
        calls.append(argv)
        return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")

    monkeypatch.setattr(materialize_module.subprocess, "run", _fake_run)

    assert pin_directory(tmp_path, ["attrib", "+P", "{path}", "/S"]) is True
    assert calls == [["attrib", "+P", str(tmp_path), "/S"]]


def test_pin_directory_failures_never_raise(monkeypatch, tmp_path: Path):
    assert pin_directory(tmp_path, ["savesync-no-such-binary-xyz", "{path}"]) is False

    monkeypatch.setattr(
        materialize_module.subprocess,
        "run",
        lambda argv, **_k: subprocess.CompletedProcess(argv, 1, stdout="", stderr="denied"),
    )
    assert pin_directory(tmp_path, ["pin", "{path}"]) is False
