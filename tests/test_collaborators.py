import asyncio
import json

import pytest

from sft_forge import CollaboratorError, ExternalTool, Forge, _tool_command


def _forge(tmp_path, workdir, accelerator=(), embedder=(), timeout=10.0):
    return Forge(
        project_root=workdir,
        accelerator=list(accelerator),
        embedder=list(embedder),
        embeddings_dir=tmp_path / "embeddings",
        tool_timeout=timeout,
    )


def test_tool_call_returns_payload(fake_tool):
    tool = ExternalTool("fake", fake_tool("ok"), timeout=10)

    payload = asyncio.run(tool.call("create", {"filepath": "/x"}))

    assert payload == {"success": True, "operation": "create", "filepath": "/x"}


@pytest.mark.parametrize(
    "mode, message",
    [
        ("crash", "exited 3: boom"),
        ("garbage", "malformed output"),
        ("refuse", "failed: refused"),
    ],
)
def test_tool_call_failures(fake_tool, mode, message):
    tool = ExternalTool("fake", fake_tool(mode), timeout=10)

    with pytest.raises(CollaboratorError, match=message):
        asyncio.run(tool.call("read", {"filepath": "/x"}))


def test_tool_call_times_out(fake_tool):
    tool = ExternalTool("fake", fake_tool("slow"), timeout=0.5)

    with pytest.raises(CollaboratorError, match="timed out"):
        asyncio.run(tool.call("read", {"filepath": "/x"}))


def test_unconfigured_tool(tmp_path):
    tool = ExternalTool("fake", None, timeout=1)

    assert tool.available is False
    with pytest.raises(CollaboratorError, match="not configured"):
        asyncio.run(tool.call("read", {}))


def test_missing_executable_is_a_collaborator_failure(tmp_path):
    tool = ExternalTool("fake", [str(tmp_path / "does-not-exist")], timeout=1)

    with pytest.raises(CollaboratorError, match="failed to start"):
        asyncio.run(tool.call("read", {}))


def test_tool_command_forms():
    assert _tool_command([]) is None
    assert _tool_command(["bin", "-x"]) == ["bin", "-x"]
    assert _tool_command("bin --flag 'two words'") == ["bin", "--flag", "two words"]
    assert _tool_command("", fallback="surely-not-installed-tool-xyz") is None


def test_read_uses_accelerator(tmp_path, workdir, ten_lines, fake_tool):
    forge = _forge(tmp_path, workdir, accelerator=fake_tool("canned"))

    result = asyncio.run(forge.tools.read_chunked(ten_lines))

    assert result["accelerator_used"] is True
    assert result["total_lines"] == 2
    assert result["chunks"][0]["content"] == "from\naccelerator"


@pytest.mark.parametrize("mode", ["crash", "garbage", "slow"])
def test_read_falls_back_when_accelerator_fails(tmp_path, workdir, ten_lines, fake_tool, mode):
    forge = _forge(tmp_path, workdir, accelerator=fake_tool(mode), timeout=0.5)

    result = asyncio.run(forge.tools.read_chunked(ten_lines))

    assert result["success"] is True
    assert result["accelerator_used"] is False
    assert result["total_lines"] == 10


def test_read_can_skip_accelerator(tmp_path, workdir, ten_lines, fake_tool):
    forge = _forge(tmp_path, workdir, accelerator=fake_tool("canned"))

    result = asyncio.run(forge.tools.read_chunked(ten_lines, use_accelerator=False))

    assert result["accelerator_used"] is False
    assert result["total_lines"] == 10


def test_mutation_commits_through_accelerator(tmp_path, workdir, ten_lines, fake_tool):
    forge = _forge(tmp_path, workdir, accelerator=fake_tool("ok"))

    result = asyncio.run(forge.engine.replace_lines(ten_lines, 1, 1, ["one"]))

    assert result["success"] is True
    assert result["performance"]["accelerated"] is True
    assert ten_lines.read_text(encoding="utf-8").startswith("one\n2\n")
    assert not [p for p in workdir.iterdir() if ".tmp." in p.name]


def test_corrupt_accelerator_write_is_caught(tmp_path, workdir, ten_lines, fake_tool):
    forge = _forge(tmp_path, workdir, accelerator=fake_tool("corrupt"))
    before = ten_lines.read_bytes()

    result = asyncio.run(forge.engine.replace_lines(ten_lines, 1, 1, ["one"]))

    assert result["success"] is False
    assert result["error_kind"] == "WriteVerification"
    assert ten_lines.read_bytes() == before
    assert sorted(p.name for p in workdir.iterdir()) == ["ten.txt"]
    assert len(forge.history) == 0


def test_embedding_actions_without_embedder(forge, ten_lines):
    created = asyncio.run(forge.dispatch("smart_create_embedding", {"file_path": str(ten_lines)}))
    has = asyncio.run(forge.dispatch("has_embedding", {"file_path": str(ten_lines)}))
    info = asyncio.run(forge.dispatch("get_embedding_cache_info"))

    assert created["success"] is False
    assert created["error_kind"] == "CollaboratorFailure"
    assert created["action"] == "failed"
    assert has == {"success": True, "file_path": str(ten_lines), "has_embedding": False}
    assert info["status"] == "empty"
    assert info["cached_files"] == 0


def test_embedding_cache_is_read_directly(tmp_path, workdir, ten_lines, fake_tool):
    forge = _forge(tmp_path, workdir, embedder=fake_tool("ok"))
    cache = tmp_path / "embeddings"
    cache.mkdir()
    (cache / "file_paths.json").write_text(
        json.dumps([str(ten_lines.resolve()), str(workdir / "deleted.py")]), encoding="utf-8"
    )
    (cache / "faiss_index.bin").write_bytes(b"\0" * 4096)

    has = asyncio.run(forge.dispatch("has_embedding", {"file_path": "ten.txt"}))
    info = asyncio.run(forge.dispatch("get_embedding_cache_info"))
    skipped = asyncio.run(forge.dispatch("smart_create_embedding", {"file_path": "ten.txt"}))
    forced = asyncio.run(
        forge.dispatch(
            "smart_create_embedding",
            {"file_path": "ten.txt", "operation_params": {"forceRecreate": True}},
        )
    )

    assert has["has_embedding"] is True
    assert info["cached_files"] == 2
    assert info["existing_files"] == 1
    assert info["missing_files"] == 1
    assert info["index_size_kb"] == 4
    assert info["status"] == "active"
    assert skipped == {"success": True, "action": "skipped", "reason": "embedding_already_exists"}
    assert forced["success"] is True
    assert forced["action"] == "recreated"


def test_corrupt_cache_index_reports_error(tmp_path, workdir):
    forge = _forge(tmp_path, workdir)
    cache = tmp_path / "embeddings"
    cache.mkdir()
    (cache / "file_paths.json").write_text("{not json", encoding="utf-8")
    (cache / "faiss_index.bin").write_bytes(b"")

    info = asyncio.run(forge.dispatch("get_embedding_cache_info"))

    assert info["success"] is False
    assert info["status"] == "error"


def test_process_file_complete(tmp_path, workdir, ten_lines, fake_tool):
    forge = _forge(tmp_path, workdir, embedder=fake_tool("ok"))

    result = asyncio.run(forge.dispatch("process_file_complete", {"file_path": "ten.txt"}))

    assert result["success"] is True
    assert result["summary"]["chunks_created"] == 1
    assert result["summary"]["embedding_status"] == "created"
    assert result["summary"]["similar_files_found"] == 1
    assert result["results"]["embedding_created"]["operation"] == "create"


def test_process_file_complete_survives_embedder_failure(tmp_path, workdir, ten_lines, fake_tool):
    forge = _forge(tmp_path, workdir, embedder=fake_tool("crash"))

    result = asyncio.run(forge.dispatch("process_file_complete", {"file_path": "ten.txt"}))

    assert result["success"] is True
    assert result["summary"]["embedding_status"] == "failed"
    assert result["results"]["similar_files"] is None


def test_multi_file_embedding_operations(tmp_path, workdir, ten_lines, fake_tool):
    forge = _forge(tmp_path, workdir, embedder=fake_tool("ok"))

    similar = asyncio.run(
        forge.batch.run_multi_file(["ten.txt"], "find_similar", {"topK": 2})
    )
    cleanup = asyncio.run(
        forge.batch.run_multi_file(["ten.txt"], "cleanup_file_embedding")
    )

    assert similar["results"][0]["result"]["similar_files"][0]["filepath"] == "other.py"
    assert cleanup["results"][0]["result"]["operation"] == "remove"
