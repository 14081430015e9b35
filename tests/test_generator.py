"""Tests for server naming and line-level editing."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from mcp_adapters.errors import ValidationError
from mcp_adapters.generator import (
    create_server,
    insert_after,
    list_servers,
    number_lines,
    read_server,
    replace_server,
    sanitize_name,
    server_path,
    splice_insert,
    splice_section,
    split_lines,
    update_section,
)


class TestSanitizeName:
    def test_plain_name_unchanged(self) -> None:
        assert sanitize_name("weather-service_2") == "weather-service_2"

    def test_strips_js_suffix(self) -> None:
        assert sanitize_name("weather.js") == "weather"

    def test_replaces_unsafe_characters(self) -> None:
        assert sanitize_name("my server/../x") == "my_server____x"

    @pytest.mark.parametrize("name", ["a b", "a/b", "a.b", "ä€b", "../../etc"])
    def test_only_safe_characters(self, name: str) -> None:
        assert re.fullmatch(r"[A-Za-z0-9_-]+", sanitize_name(name))

    def test_colliding_names_share_a_file(self, tmp_path: Path) -> None:
        assert server_path(tmp_path, "a b") == server_path(tmp_path, "a/b")

    @pytest.mark.parametrize("name", ["", "   ", ".js"])
    def test_empty_rejected(self, name: str) -> None:
        with pytest.raises(ValidationError):
            sanitize_name(name)


class TestNumberLines:
    def test_format(self) -> None:
        assert number_lines("a\nb") == "   1| a\n   2| b"

    def test_wide_numbers(self) -> None:
        content = "\n".join(str(i) for i in range(1, 1001))
        assert number_lines(content).splitlines()[-1] == "1000| 1000"

    def test_keeps_carriage_returns(self) -> None:
        assert split_lines("a\r\nb") == ["a\r", "b"]


class TestSpliceSection:
    LINES = ["one", "two", "three", "four"]

    def test_replace_middle(self) -> None:
        assert splice_section(self.LINES, 2, 3, ["X"]) == ["one", "X", "four"]

    def test_replace_with_more_lines(self) -> None:
        assert splice_section(self.LINES, 4, 4, ["a", "b"]) == ["one", "two", "three", "a", "b"]

    @pytest.mark.parametrize("start,end", [(3, 2), (0, 1), (5, 5), (2, 5)])
    def test_invalid_ranges(self, start: int, end: int) -> None:
        with pytest.raises(ValidationError):
            splice_section(self.LINES, start, end, ["X"])

    def test_identity_replacement(self) -> None:
        for start in range(1, 5):
            for end in range(start, 5):
                same = self.LINES[start - 1 : end]
                assert splice_section(self.LINES, start, end, same) == self.LINES


class TestSpliceInsert:
    LINES = ["one", "two", "three"]

    def test_prepend(self) -> None:
        assert splice_insert(self.LINES, 0, ["zero"]) == ["zero", "one", "two", "three"]

    def test_append(self) -> None:
        assert splice_insert(self.LINES, 3, ["four"]) == ["one", "two", "three", "four"]

    def test_grows_by_inserted_count(self) -> None:
        new = ["a", "b", "c"]
        for after in range(0, 4):
            result = splice_insert(self.LINES, after, new)
            assert len(result) == len(self.LINES) + len(new)
            assert result[:after] == self.LINES[:after]
            assert result[after : after + 3] == new
            assert result[after + 3 :] == self.LINES[after:]

    @pytest.mark.parametrize("after", [-1, 4])
    def test_out_of_bounds(self, after: int) -> None:
        with pytest.raises(ValidationError):
            splice_insert(self.LINES, after, ["x"])


class TestFileOperations:
    def test_list_creates_directory(self, tmp_path: Path) -> None:
        directory = tmp_path / "servers"
        assert list_servers(directory) == []
        assert directory.is_dir()

    def test_list_only_js(self, tmp_path: Path) -> None:
        (tmp_path / "b.js").write_text("")
        (tmp_path / "a.js").write_text("")
        (tmp_path / "notes.txt").write_text("")
        assert list_servers(tmp_path) == ["a.js", "b.js"]

    def test_create_writes_verbatim(self, tmp_path: Path) -> None:
        code = "line1\r\nline2\n"
        path = create_server(tmp_path, "demo", code)
        assert path.read_bytes() == code.encode()

    def test_create_refuses_existing(self, tmp_path: Path) -> None:
        create_server(tmp_path, "demo", "original")
        with pytest.raises(ValidationError, match="already exists"):
            create_server(tmp_path, "demo.js", "replacement")
        assert (tmp_path / "demo.js").read_text() == "original"

    def test_create_overwrite(self, tmp_path: Path) -> None:
        create_server(tmp_path, "demo", "original")
        create_server(tmp_path, "demo", "replacement", overwrite=True)
        assert (tmp_path / "demo.js").read_text() == "replacement"

    def test_read_missing(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="not found"):
            read_server(tmp_path, "ghost")

    def test_replace_requires_existing(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError):
            replace_server(tmp_path, "ghost", "code")
        assert not (tmp_path / "ghost.js").exists()

    def test_section_identity_is_byte_identical(self, sample_server: Path) -> None:
        before = sample_server.read_bytes()
        lines = split_lines(before.decode())
        update_section(sample_server.parent, "demo", 2, 4, "\n".join(lines[1:4]))
        assert sample_server.read_bytes() == before

    def test_section_rejection_leaves_file(self, sample_server: Path) -> None:
        before = sample_server.read_bytes()
        with pytest.raises(ValidationError):
            update_section(sample_server.parent, "demo", 5, 2, "x")
        with pytest.raises(ValidationError):
            update_section(sample_server.parent, "demo", 1, 7, "x")
        assert sample_server.read_bytes() == before

    def test_insert_after(self, sample_server: Path) -> None:
        _path, updated = insert_after(sample_server.parent, "demo", 3, "// a\n// b")
        lines = split_lines(updated)
        assert len(lines) == 8
        assert lines[3:5] == ["// a", "// b"]
        assert sample_server.read_text() == updated

    def test_insert_past_end_rejected(self, sample_server: Path) -> None:
        before = sample_server.read_bytes()
        with pytest.raises(ValidationError, match="out of bounds"):
            insert_after(sample_server.parent, "demo", 7, "x")
        assert sample_server.read_bytes() == before
