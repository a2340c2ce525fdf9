import asyncio
from pathlib import Path

from sft_forge import _hash


def _lines(path):
    return path.read_bytes().decode("utf-8").split("\n")


def _siblings(path, marker):
    return sorted(p.name for p in path.parent.iterdir() if marker in p.name)


def test_replace_lines_splices_range(forge, ten_lines):
    result = asyncio.run(forge.engine.replace_lines(ten_lines, 3, 5, ["X", "Y"]))

    assert result["success"] is True
    assert result["total_lines"] == 9
    assert result["line_delta"] == -1
    assert result["original_range"] == "3-5"
    assert _lines(ten_lines) == ["1", "2", "X", "Y", "6", "7", "8", "9", "10"]
    assert result["file_hash"] == _hash(ten_lines.read_text(encoding="utf-8"))
    assert result["backup_created"] is True
    assert result["operation_id"] in forge.history


def test_replace_accepts_string_content(forge, ten_lines):
    result = asyncio.run(forge.engine.replace_lines(ten_lines, 10, 10, "ten\neleven"))

    assert result["success"] is True
    assert _lines(ten_lines)[-2:] == ["ten", "eleven"]


def test_relative_path_resolves_against_project_root(forge, ten_lines):
    result = asyncio.run(forge.engine.delete_lines("ten.txt", 1, 1))

    assert result["success"] is True
    assert result["file_path"] == str(ten_lines)
    assert _lines(ten_lines)[0] == "2"


def test_invalid_ranges_leave_file_untouched(forge, ten_lines):
    before = ten_lines.read_bytes()
    cases = [
        forge.engine.replace_lines(ten_lines, 0, 2, ["X"]),
        forge.engine.replace_lines(ten_lines, 5, 4, ["X"]),
        forge.engine.delete_lines(ten_lines, 3, 11),
        forge.engine.delete_lines(ten_lines, 11, 11),
        forge.engine.insert_lines(ten_lines, -1, ["X"]),
        forge.engine.insert_lines(ten_lines, 11, ["X"]),
    ]

    async def run_all():
        return [await c for c in cases]

    for result in asyncio.run(run_all()):
        assert result["success"] is False
        assert result["error_kind"] == "InvalidRange"
        assert "operation_id" in result
    assert ten_lines.read_bytes() == before
    assert len(forge.history) == 0
    assert _siblings(ten_lines, ".backup.") == []


def test_missing_file_is_not_found(forge, workdir):
    result = asyncio.run(forge.engine.delete_lines(workdir / "nope.txt", 1, 1))

    assert result["success"] is False
    assert result["error_kind"] == "NotFound"


def test_delete_then_insert_restores_content(forge, ten_lines):
    before = ten_lines.read_bytes()

    deleted = asyncio.run(forge.engine.delete_lines(ten_lines, 4, 6))
    assert deleted["total_lines"] == 7
    assert deleted["deleted_lines"] == 3

    inserted = asyncio.run(forge.engine.insert_lines(ten_lines, 3, ["4", "5", "6"]))
    assert inserted["total_lines"] == 10
    assert ten_lines.read_bytes() == before


def test_insert_at_top_and_bottom(forge, ten_lines):
    asyncio.run(forge.engine.insert_lines(ten_lines, 0, ["top"]))
    asyncio.run(forge.engine.insert_lines(ten_lines, 11, ["bottom"]))

    lines = _lines(ten_lines)
    assert lines[0] == "top"
    assert lines[-1] == "bottom"
    assert len(lines) == 12


def test_rollback_restores_bytes_and_is_single_use(forge, ten_lines):
    before = ten_lines.read_bytes()
    result = asyncio.run(forge.engine.replace_lines(ten_lines, 1, 10, ["gone"]))
    backup_path = result["backup_path"]
    assert _siblings(ten_lines, ".backup.") != []

    undo = asyncio.run(forge.history.rollback(result["operation_id"]))
    assert undo["success"] is True
    assert undo["original_operation"] == "replace_lines"
    assert undo["file_hash"] == _hash(before.decode("utf-8"))
    assert ten_lines.read_bytes() == before
    assert not Path(backup_path).exists()

    again = asyncio.run(forge.history.rollback(result["operation_id"]))
    assert again["success"] is False
    assert again["error_kind"] == "NotFound"
    assert again["operation_id"] == result["operation_id"]


def test_no_backup_means_no_record(forge, ten_lines):
    result = asyncio.run(forge.engine.delete_lines(ten_lines, 1, 1, backup=False))

    assert result["success"] is True
    assert result["backup_created"] is False
    assert result["backup_path"] is None
    assert len(forge.history) == 0
    assert _siblings(ten_lines, ".backup.") == []


def test_find_and_replace_literal(forge, workdir):
    path = workdir / "code.py"
    path.write_text("a.b = 1\nprint(a.b)\nab = 2", encoding="utf-8")

    result = asyncio.run(forge.engine.find_and_replace(path, "a.b", "ctx.value", backup=False))

    assert result["replacements"] == 2
    assert path.read_text(encoding="utf-8") == "ctx.value = 1\nprint(ctx.value)\nab = 2"


def test_find_and_replace_regex_replacement_is_literal(forge, workdir):
    path = workdir / "nums.txt"
    path.write_text("x1 y22 z", encoding="utf-8")

    result = asyncio.run(forge.engine.find_and_replace(path, r"\d+", r"<\1>", is_regex=True))

    assert result["success"] is True
    assert result["replacements"] == 2
    assert path.read_text(encoding="utf-8") == r"x<\1> y<\1> z"


def test_find_and_replace_can_change_line_count(forge, workdir):
    path = workdir / "a.txt"
    path.write_text("one;two;three", encoding="utf-8")

    result = asyncio.run(forge.engine.find_and_replace(path, ";", "\n"))

    assert result["total_lines"] == 3
    assert result["line_delta"] == 2


def test_find_and_replace_without_match_is_a_no_op(forge, ten_lines):
    before_hash = _hash(ten_lines.read_text(encoding="utf-8"))

    result = asyncio.run(forge.engine.find_and_replace(ten_lines, "missing", "x"))

    assert result["success"] is True
    assert result["replacements"] == 0
    assert result["file_hash"] == before_hash
    assert result["backup_created"] is False
    assert len(forge.history) == 0
    assert _siblings(ten_lines, ".backup.") == []


def test_find_and_replace_rejects_bad_pattern(forge, ten_lines):
    bad_regex = asyncio.run(forge.engine.find_and_replace(ten_lines, "(", "x", is_regex=True))
    empty = asyncio.run(forge.engine.find_and_replace(ten_lines, "", "x"))

    assert bad_regex["error_kind"] == "InvalidPattern"
    assert empty["error_kind"] == "InvalidParams"
    assert len(forge.history) == 0


def test_crlf_files_keep_their_separator(forge, workdir):
    path = workdir / "win.txt"
    path.write_bytes(b"a\r\nb\r\nc")

    result = asyncio.run(forge.engine.replace_lines(path, 2, 2, ["B1", "B2"]))

    assert result["total_lines"] == 4
    assert path.read_bytes() == b"a\r\nB1\r\nB2\r\nc"


def test_trailing_newline_counts_as_final_empty_line(forge, workdir):
    path = workdir / "t.txt"
    path.write_text("a\nb\n", encoding="utf-8")

    result = asyncio.run(forge.engine.insert_lines(path, 3, ["c"]))

    assert result["total_lines"] == 4
    assert path.read_text(encoding="utf-8") == "a\nb\n\nc"


def test_commit_leaves_no_temp_files(forge, ten_lines):
    asyncio.run(forge.engine.replace_lines(ten_lines, 2, 2, ["two"]))
    asyncio.run(forge.engine.delete_lines(ten_lines, 1, 1, backup=False))

    assert _siblings(ten_lines, ".tmp.") == []


def test_failed_commit_restores_snapshot(forge, ten_lines, monkeypatch):
    before = ten_lines.read_bytes()

    async def broken_commit(path, content):
        path.write_text("half written", encoding="utf-8")
        raise OSError("disk full")

    monkeypatch.setattr(forge.io, "commit", broken_commit)
    result = asyncio.run(forge.engine.replace_lines(ten_lines, 1, 1, ["X"]))

    assert result["success"] is False
    assert result["error_kind"] == "Internal"
    assert "disk full" in result["error"]
    assert ten_lines.read_bytes() == before
    assert _siblings(ten_lines, ".backup.") == []
    assert len(forge.history) == 0


def test_same_path_mutations_serialize(forge, ten_lines):
    async def both():
        return await asyncio.gather(
            forge.engine.insert_lines(ten_lines, 0, ["first"]),
            forge.engine.insert_lines(ten_lines, 0, ["second"]),
        )

    results = asyncio.run(both())

    assert all(r["success"] for r in results)
    lines = _lines(ten_lines)
    assert len(lines) == 12
    assert {"first", "second"} <= set(lines[:2])
    assert lines[2:] == [str(i) for i in range(1, 11)]
    assert forge.locks.active == 0


def test_create_file(forge, workdir):
    result = asyncio.run(forge.engine.create_file("nested/dir/new.txt", "a\nb"))

    target = workdir / "nested" / "dir" / "new.txt"
    assert result["success"] is True
    assert result["created"] is True
    assert result["lines_count"] == 2
    assert target.read_text(encoding="utf-8") == "a\nb"


def test_create_file_refuses_to_clobber(forge, ten_lines):
    before = ten_lines.read_bytes()

    refused = asyncio.run(forge.engine.create_file(ten_lines, "new"))
    assert refused["error_kind"] == "AlreadyExists"
    assert ten_lines.read_bytes() == before

    replaced = asyncio.run(forge.engine.create_file(ten_lines, "new", overwrite=True))
    assert replaced["success"] is True
    assert replaced["created"] is False
    assert ten_lines.read_text(encoding="utf-8") == "new"


def test_mixed_line_endings_are_addressed_per_line(forge, workdir):
    path = workdir / "mixed.txt"
    path.write_bytes(b"a\nb\nc\r\nd")

    result = asyncio.run(forge.engine.replace_lines(path, 1, 1, ["X"]))

    assert result["total_lines"] == 4
    assert path.read_bytes() == b"X\nb\nc\r\nd"


def test_mixed_line_endings_keep_each_terminator(forge, workdir):
    path = workdir / "mixed.txt"
    path.write_bytes(b"a\r\nb\nc\r\nd")

    asyncio.run(forge.engine.insert_lines(path, 1, ["new"]))
    asyncio.run(forge.engine.delete_lines(path, 5, 5))

    # CRLF is the majority, so inserted lines take it
    assert path.read_bytes() == b"a\r\nnew\r\nb\nc"


def test_multiline_list_items_count_as_several_lines(forge, ten_lines):
    inserted = asyncio.run(forge.engine.insert_lines(ten_lines, 0, ["x\ny"]))
    replaced = asyncio.run(forge.engine.replace_lines(ten_lines, 1, 1, ["p\r\nq", "r"]))

    assert inserted["inserted_lines"] == 2
    assert 10 + inserted["line_delta"] == inserted["total_lines"] == 12
    assert replaced["new_lines"] == 3
    assert 12 + replaced["line_delta"] == replaced["total_lines"] == 14
    assert _lines(ten_lines)[:5] == ["p", "q", "r", "y", "1"]


def test_symlinked_names_share_one_lock(forge, ten_lines):
    link = ten_lines.parent / "alias.txt"
    link.symlink_to(ten_lines)

    async def both():
        return await asyncio.gather(
            forge.engine.insert_lines(ten_lines, 0, ["via-target"]),
            forge.engine.insert_lines(link, 0, ["via-link"]),
        )

    results = asyncio.run(both())

    assert all(r["success"] for r in results)
    assert link.is_symlink()
    lines = _lines(ten_lines)
    assert len(lines) == 12
    assert {"via-target", "via-link"} <= set(lines[:2])
    assert forge.locks._key(link) == forge.locks._key(ten_lines)
