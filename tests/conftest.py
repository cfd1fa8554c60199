import os
from datetime import datetime

import pytest

FIXED_TIME = datetime(2018, 6, 1, 10, 0, 0)


@pytest.fixture
def clock():
    return lambda: FIXED_TIME


@pytest.fixture
def fake_tools(tmp_path, monkeypatch):
    """Put shell scripts standing in for dump/restore utilities on PATH."""

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def install(name, body):
        script = bin_dir / name
        script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
        script.chmod(0o755)
        return script

    return install


@pytest.fixture
def site_tree(tmp_path):
    root = tmp_path / "data" / "site"
    (root / "css").mkdir(parents=True)
    (root / "empty").mkdir()
    (root / "index.html").write_text("<h1>hello</h1>", encoding="utf-8")
    (root / "css" / "main.css").write_text("body { color: red; }", encoding="utf-8")
    (root / "blob.bin").write_bytes(bytes(range(256)) * 4)
    return root


@pytest.fixture
def snapshot():
    """Map relative path -> bytes (None for directories)."""

    def take(root):
        result = {}
        for path in sorted(root.rglob("*")):
            rel = path.relative_to(root).as_posix()
            result[rel] = None if path.is_dir() else path.read_bytes()
        return result

    return take
