"""Shared fixtures for sft_forge tests.

The log directory is redirected before sft_forge is imported, since the
logger reads SFB_LOG_DIR at import time.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

os.environ.setdefault("SFB_LOG_DIR", tempfile.mkdtemp(prefix="sft_forge_logs_"))

from sft_forge import Forge  # noqa: E402

FAKE_TOOL = '''\
import json
import pathlib
import sys
import time

mode, op, params = sys.argv[1], sys.argv[2], json.loads(sys.argv[3])
if mode == "crash":
    sys.stderr.write("boom")
    sys.exit(3)
if mode == "garbage":
    print("this is not json")
    sys.exit(0)
if mode == "slow":
    time.sleep(10)
if mode == "refuse":
    print(json.dumps({"success": False, "error": "refused"}))
    sys.exit(0)

path = pathlib.Path(params["filepath"]) if "filepath" in params else None
if op == "read":
    content = "from\\naccelerator" if mode == "canned" else path.read_bytes().decode("utf-8")
    out = {"success": True, "content": content, "readTime_us": 5, "performance_MB_per_sec": 1.5}
elif op == "write":
    content = params["content"] + ("!" if mode == "corrupt" else "")
    path.write_bytes(content.encode("utf-8"))
    out = {"success": True, "writeTime_us": 5, "performance_MB_per_sec": 1.5}
elif op == "similar":
    out = {"success": True, "similar_files": [{"filepath": "other.py", "score": 0.9}]}
else:
    out = {"success": True, "operation": op, "filepath": str(path)}
print(json.dumps(out))
'''


@pytest.fixture
def fake_tool(tmp_path):
    """Return a factory: fake_tool(mode) -> command list for ExternalTool."""
    script = tmp_path / "fake_tool.py"
    script.write_text(FAKE_TOOL, encoding="utf-8")

    def command(mode: str = "ok") -> list[str]:
        return [sys.executable, str(script), mode]

    return command


@pytest.fixture
def workdir(tmp_path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def forge(tmp_path, workdir) -> Forge:
    return Forge(
        project_root=workdir,
        accelerator=[],
        embedder=[],
        embeddings_dir=tmp_path / "embeddings",
    )


@pytest.fixture
def ten_lines(workdir) -> Path:
    path = workdir / "ten.txt"
    path.write_text("\n".join(str(i) for i in range(1, 11)), encoding="utf-8")
    return path
