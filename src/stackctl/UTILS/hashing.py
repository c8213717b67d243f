"""
Content hashing for build inputs and artifacts.
"""
import hashlib
import os


def hash_path(path: str) -> str:
    """
    Returns a sha256 digest of a file or directory tree.

    A file hashes its bytes only. A directory hashes each entry's relative
    path and content in sorted order, so the digest is independent of
    timestamps and of where the tree lives.
    """
    digest = hashlib.sha256()
    if os.path.isfile(path) and not os.path.islink(path):
        _update_file(digest, path)
        return "sha256:" + digest.hexdigest()

    for root, dirs, files in os.walk(path):
        dirs.sort()
        rel_root = os.path.relpath(root, path)
        for name in sorted(dirs + files):
            full = os.path.join(root, name)
            rel = os.path.normpath(os.path.join(rel_root, name)).replace(os.sep, '/')
            if os.path.islink(full):
                digest.update(f"L {rel} -> {os.readlink(full)}\n".encode())
            elif os.path.isdir(full):
                digest.update(f"D {rel}\n".encode())
            else:
                digest.update(f"F {rel}\n".encode())
                _update_file(digest, full)
    return "sha256:" + digest.hexdigest()


def path_size(path: str) -> int:
    """Total size in bytes of a file or directory tree."""
    if os.path.isfile(path):
        return os.path.getsize(path)
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            full = os.path.join(root, name)
            if not os.path.islink(full):
                total += os.path.getsize(full)
    return total


def _update_file(digest, path: str) -> None:
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            digest.update(chunk)
