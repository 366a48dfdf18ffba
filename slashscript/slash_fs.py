from __future__ import annotations
import glob
import os
from typing import Optional

from slashscript.slash_datatypes import Entry
from slashscript.slash_runtime import IterableProducer
from slashscript.slash_serialize import deserialize

STRUCTURED_EXTS = {".json": "json", ".yaml": "yaml", ".yml": "yaml"}


def resolve_locator(locator: str, base_dir: Optional[str] = None) -> str:
    """Resolve a plain path or an `fs://` locator against base_dir (default: CWD)."""
    rest = locator[5:] if locator.startswith("fs://") else locator
    if rest.startswith("/"):
        return "/" + rest.lstrip("/")
    if rest.startswith("~"):
        return os.path.expanduser(rest)
    base = base_dir or os.getcwd()
    if rest == "":
        return base
    return os.path.normpath(os.path.join(base, rest))


def path_entry(path: str, shown: Optional[str] = None) -> Entry:
    """An Entry for a file: `$f` is the path, `$f_name`, `$f_stem` etc. describe it."""
    shown = path if shown is None else shown
    stem, suffix = os.path.splitext(os.path.basename(path))
    fields = {
        "name": os.path.basename(path),
        "stem": stem,
        "suffix": suffix,
        "parent": os.path.dirname(shown),
        "path": os.path.abspath(path),
        "is_dir": os.path.isdir(path),
    }
    if os.path.isfile(path):
        fields["size"] = os.path.getsize(path)
    return Entry(shown, fields)


def read_value(locator: str, *, base_dir: Optional[str] = None, encoding: Optional[str] = None):
    """Read a file as text, or as structured data for .json/.yaml/.yml."""
    path = resolve_locator(locator, base_dir)
    ext = os.path.splitext(path)[1].lower()
    if encoding is None and ext in STRUCTURED_EXTS:
        with open(path, "rb") as f:
            return deserialize(f.read(), fmt=STRUCTURED_EXTS[ext])
    with open(path, "r", encoding=encoding or "utf-8") as f:
        return f.read()


class GlobProducer(IterableProducer):
    """`glob("docs/*.md")` yields one path Entry per match, in sorted order."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir

    def produce(self, pattern, *rest):
        if rest:
            raise TypeError(f"glob expects 1 argument, got {1 + len(rest)}")
        return self._matches(str(pattern))

    def _matches(self, pattern: str):
        resolved = resolve_locator(pattern, self.base_dir)
        relative = not os.path.isabs(pattern) and not pattern.startswith(("fs:///", "~"))
        base = self.base_dir or os.getcwd()
        for path in sorted(glob.iglob(resolved, recursive=True)):
            yield path_entry(path, os.path.relpath(path, base) if relative else path)


class LinesProducer(IterableProducer):
    """`lines("notes.txt")` yields each line of a text file without its newline."""

    def __init__(self, base_dir: Optional[str] = None, encoding: str = "utf-8"):
        self.base_dir = base_dir
        self.encoding = encoding

    def produce(self, locator, *rest):
        if rest:
            raise TypeError(f"lines expects 1 argument, got {1 + len(rest)}")
        return self._lines(resolve_locator(str(locator), self.base_dir))

    def _lines(self, path: str):
        with open(path, "r", encoding=self.encoding) as f:
            for line in f:
                yield line.rstrip("\n")


class ItemsProducer(IterableProducer):
    """`items("todo.yaml")` yields the entries of a JSON/YAML list or mapping file."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir

    def produce(self, locator, *rest):
        if rest:
            raise TypeError(f"items expects 1 argument, got {1 + len(rest)}")
        return self._items(str(locator))

    def _items(self, locator: str):
        data = read_value(locator, base_dir=self.base_dir)
        if isinstance(data, dict):
            for key, value in data.items():
                yield Entry(value, {"key": key})
        elif isinstance(data, list):
            yield from data
        else:
            raise ValueError(f"{locator} does not hold a list or mapping")
