import os

import pytest

from slashscript.slash_datatypes import Entry
from slashscript.slash_fs import (
    GlobProducer, ItemsProducer, LinesProducer, path_entry, read_value, resolve_locator,
)
from slashscript.slash_runtime import Capabilities, ScriptRunner


@pytest.fixture
def docs(tmp_path):
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "b.md").write_text("# B\n", encoding="utf-8")
    (tmp_path / "docs" / "a.md").write_text("# A\n", encoding="utf-8")
    (tmp_path / "docs" / "notes.txt").write_text("one\ntwo\n\nthree", encoding="utf-8")
    (tmp_path / "todo.yaml").write_text("- write\n- review\n", encoding="utf-8")
    (tmp_path / "owners.json").write_text('{"api": "kim", "web": "sam"}', encoding="utf-8")
    return tmp_path


def test_resolve_locator(tmp_path):
    base = str(tmp_path)
    assert resolve_locator("docs/a.md", base) == os.path.join(base, "docs", "a.md")
    assert resolve_locator("fs://docs/../x", base) == os.path.join(base, "x")
    assert resolve_locator("fs:///etc/hosts", base) == "/etc/hosts"
    assert resolve_locator("~/x", base) == os.path.expanduser("~/x")
    assert resolve_locator("fs://", base) == base


def test_path_entry_fields(docs):
    entry = path_entry(str(docs / "docs" / "a.md"), "docs/a.md")
    assert entry.value == "docs/a.md"
    assert entry.fields["name"] == "a.md"
    assert entry.fields["stem"] == "a"
    assert entry.fields["suffix"] == ".md"
    assert entry.fields["parent"] == "docs"
    assert entry.fields["is_dir"] is False
    assert entry.fields["size"] == 4


def test_glob_is_sorted_and_relative_to_base(docs):
    entries = list(GlobProducer(str(docs)).produce("docs/*.md"))
    assert [e.value for e in entries] == ["docs/a.md", "docs/b.md"]
    assert entries[0].fields["path"] == str(docs / "docs" / "a.md")


def test_glob_recursive_and_restartable(docs):
    producer = GlobProducer(str(docs))
    first = [e.value for e in producer.produce("**/*.txt")]
    second = [e.value for e in producer.produce("**/*.txt")]
    assert first == second == ["docs/notes.txt"]


def test_glob_rejects_extra_arguments(docs):
    with pytest.raises(TypeError):
        GlobProducer(str(docs)).produce("*", "extra")


def test_lines_strip_newlines(docs):
    assert list(LinesProducer(str(docs)).produce("docs/notes.txt")) == ["one", "two", "", "three"]


def test_read_value_structured_and_text(docs):
    assert read_value("todo.yaml", base_dir=str(docs)) == ["write", "review"]
    assert read_value("owners.json", base_dir=str(docs)) == {"api": "kim", "web": "sam"}
    assert read_value("docs/a.md", base_dir=str(docs)) == "# A\n"


def test_items_from_list_and_mapping(docs):
    producer = ItemsProducer(str(docs))
    assert list(producer.produce("todo.yaml")) == ["write", "review"]
    assert list(producer.produce("owners.json")) == [
        Entry("kim", {"key": "api"}),
        Entry("sam", {"key": "web"}),
    ]
    with pytest.raises(ValueError):
        list(producer.produce("docs/a.md"))


@pytest.mark.asyncio
async def test_for_over_glob_binds_file_fields(docs):
    producers = {"glob": GlobProducer(str(docs)), "items": ItemsProducer(str(docs))}
    runner = ScriptRunner(Capabilities(producers=producers))
    src = '/list @md = glob("docs/*.md")\n/for $f in @md { /echo $f_stem in $f_parent }\n/for $o in items("owners.json") { /echo $o_key: $o }'
    res = await runner.handle_script(src)
    assert res.status == 'success', res.error_message
    assert res.output == ["a in docs", "b in docs", "api: kim", "web: sam"]


@pytest.mark.asyncio
async def test_missing_file_is_a_call_error(docs):
    runner = ScriptRunner(Capabilities(producers={"lines": LinesProducer(str(docs))}))
    res = await runner.handle_script('/for $l in lines("nope.txt") { /echo $l }')
    assert res.status == 'error'
    assert "CallError: producer 'lines' failed:" in res.error_message
