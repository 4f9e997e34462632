"""Filesystem helpers: atomic writes, content hashing and reproducible archives."""

import hashlib
import os
import shutil
import tempfile
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Tuple, Union

CHUNK_SIZE = 64 * 1024

# Fixed timestamp so archives of identical trees are byte-identical
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@contextmanager
def atomic_target(path: Path, prefix: str = ".rmm-") -> Iterator[Path]:
    """Yield a sibling temporary path that replaces ``path`` on success.

    The temporary file is removed on any exit path that does not complete the
    rename, including KeyboardInterrupt and other cancellations.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{prefix}{path.name}.", suffix=".part", dir=str(path.parent))
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        yield tmp_path
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


def atomic_write_text(path: Path, data: str) -> None:
    """Atomically write text data to path."""
    with atomic_target(path) as tmp:
        with open(tmp, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())


def file_sha256(path: Union[str, Path]) -> Tuple[str, int]:
    """Return (sha256 hex digest, size) of a file."""
    digest = hashlib.sha256()
    size = 0
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            digest.update(chunk)
            size += len(chunk)
    return digest.hexdigest(), size


def _tree_files(root: Path):
    for path in sorted(root.rglob("*"), key=lambda p: p.relative_to(root).as_posix()):
        rel = path.relative_to(root).as_posix()
        if path.is_file() and ".git" not in rel.split("/"):
            yield rel, path


def tree_sha256(root: Path) -> str:
    """Content hash of a directory tree: relative paths and bytes, in sorted order."""
    digest = hashlib.sha256()
    for rel, path in _tree_files(root):
        digest.update(rel.encode("utf-8"))
        digest.update(b"\0")
        digest.update(file_sha256(path)[0].encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def path_sha256(path: Path) -> str:
    """Content hash of a file or a directory tree."""
    if path.is_dir():
        return tree_sha256(path)
    return file_sha256(path)[0]


def zip_tree(root: Path, dest: Path) -> None:
    """Write a reproducible zip of ``root`` to ``dest``."""
    with zipfile.ZipFile(dest, "w", zipfile.ZIP_DEFLATED) as zf:
        for rel, path in _tree_files(root):
            info = zipfile.ZipInfo(rel, date_time=ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = (0o755 if os.access(path, os.X_OK) else 0o644) << 16
            zf.writestr(info, path.read_bytes())


def replace_directory(staged: Path, target: Path) -> None:
    """Move a fully prepared ``staged`` directory into place at ``target``."""
    target.parent.mkdir(parents=True, exist_ok=True)
    backup = None
    if target.exists():
        backup = target.with_name(f".{target.name}.old")
        if backup.exists():
            shutil.rmtree(backup)
        os.replace(target, backup)
    try:
        os.replace(staged, target)
    except BaseException:
        if backup is not None:
            os.replace(backup, target)
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)
