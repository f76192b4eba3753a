from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from calnotes.frontmatter import FrontmatterError, render_document, split_frontmatter

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIX = ".md"

FieldsMutator = Callable[[dict[str, Any]], bool]


class DocumentStoreError(RuntimeError):
    pass


def normalize_document_path(value: str) -> str:
    parts = [part for part in str(value or "").replace("\\", "/").split("/") if part and part != "."]
    if any(part == ".." for part in parts):
        raise DocumentStoreError(f"Path escapes the store: {value}")
    return "/".join(parts)


class DocumentStore:
    # Paths are POSIX-style and relative to the store root.
    def list_documents(self) -> list[str]:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def read_text(self, path: str) -> str:
        raise NotImplementedError

    def read_fields(self, path: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def write_fields_merge(self, path: str, mutate: FieldsMutator) -> bool:
        raise NotImplementedError

    def create(self, path: str, fields: dict[str, Any], body: str) -> str:
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError

    def move(self, path: str, new_path: str) -> str:
        raise NotImplementedError


def _write_atomic(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(f".{target.name}.tmp")
    with tmp_path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(content)
    try:
        tmp_path.replace(target)
    except OSError as exc:
        # Some bind-mounted single files in containers cannot be atomically replaced.
        if exc.errno != errno.EBUSY:
            raise
        with target.open("w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        if tmp_path.exists():
            tmp_path.unlink()


class MarkdownDocumentStore(DocumentStore):
    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _full_path(self, path: str) -> Path:
        return self.root.joinpath(*PurePosixPath(normalize_document_path(path)).parts)

    def list_documents(self) -> list[str]:
        documents: list[str] = []
        for file_path in self.root.rglob(f"*{DOCUMENT_SUFFIX}"):
            if not file_path.is_file():
                continue
            documents.append(file_path.relative_to(self.root).as_posix())
        documents.sort()
        return documents

    def exists(self, path: str) -> bool:
        return self._full_path(path).exists()

    def read_text(self, path: str) -> str:
        full_path = self._full_path(path)
        try:
            return full_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise DocumentStoreError(f"Document not found: {path}") from exc

    def read_fields(self, path: str) -> dict[str, Any] | None:
        try:
            fields, _body = split_frontmatter(self.read_text(path))
        except FrontmatterError as exc:
            logger.warning("Unreadable frontmatter in %s: %s", path, exc)
            return None
        return fields

    def write_fields_merge(self, path: str, mutate: FieldsMutator) -> bool:
        with self._lock:
            text = self.read_text(path)
            try:
                fields, body = split_frontmatter(text)
            except FrontmatterError as exc:
                raise DocumentStoreError(f"Cannot merge into {path}: {exc}") from exc
            working = dict(fields)
            if not mutate(working):
                return False
            _write_atomic(self._full_path(path), render_document(working, body))
            return True

    def create(self, path: str, fields: dict[str, Any], body: str) -> str:
        normalized = normalize_document_path(path)
        full_path = self._full_path(normalized)
        with self._lock:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            # "x" mode makes concurrent creators lose instead of overwriting.
            with full_path.open("x", encoding="utf-8", newline="") as handle:
                handle.write(render_document(dict(fields), body))
        return normalized

    def delete(self, path: str) -> None:
        with self._lock:
            try:
                self._full_path(path).unlink()
            except FileNotFoundError as exc:
                raise DocumentStoreError(f"Document not found: {path}") from exc

    def move(self, path: str, new_path: str) -> str:
        normalized = normalize_document_path(new_path)
        target = self._full_path(normalized)
        with self._lock:
            if target.exists():
                raise FileExistsError(errno.EEXIST, "Document already exists", normalized)
            target.parent.mkdir(parents=True, exist_ok=True)
            self._full_path(path).rename(target)
        return normalized
