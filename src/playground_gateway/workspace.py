"""Workspace synchronizer: moves a client's file tree in and out of an environment.

The client describes its project as a nested tree of :class:`FileNode`. On
write the tree is flattened to ``{relative_path: bytes}`` and pushed into
``/workspace`` as one archive (directories created, files overwritten in
place). On read the live filesystem is archived back out and rebuilt into a
tree, with heavy generated directories pruned.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Literal, Optional

from pydantic import BaseModel

from .exceptions import InvalidPathError, PlaygroundError, WorkspaceSyncError
from .provisioner import EnvironmentProvisioner
from .runtime.base import WorkspaceEntry

logger = logging.getLogger(__name__)

IGNORED_DIRS: frozenset[str] = frozenset({
    "node_modules",
    ".git",
    "__pycache__",
    ".venv",
    "venv",
    ".next",
    "dist",
    ".cache",
})


class FileNode(BaseModel):
    """One file or folder in a client-side project tree."""
    name: str
    type: Literal["file", "folder"]
    content: Optional[str] = None
    encoding: Literal["utf-8", "base64"] = "utf-8"
    children: Optional[list["FileNode"]] = None

    def decoded_content(self) -> Optional[bytes]:
        if self.content is None:
            return None
        if self.encoding == "base64":
            try:
                return base64.b64decode(self.content, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise InvalidPathError(
                    f"File '{self.name}' has invalid base64 content"
                ) from exc
        return self.content.encode("utf-8")


FileNode.model_rebuild()


def validate_relative_path(path: str) -> str:
    """Reject absolute paths, ``..`` and empty segments."""
    if not path or path.startswith("/") or "\\" in path or "\x00" in path:
        raise InvalidPathError(f"Invalid workspace path: {path!r}")
    for segment in path.split("/"):
        if segment in ("", ".", ".."):
            raise InvalidPathError(f"Invalid workspace path: {path!r}")
    return path


def flatten_tree(nodes: list[FileNode], prefix: str = "") -> list[WorkspaceEntry]:
    """Depth-first flatten; parents are emitted before their children.

    File nodes without content are skipped (the client has not loaded them).
    """
    entries: list[WorkspaceEntry] = []
    for node in nodes:
        path = validate_relative_path(f"{prefix}{node.name}")
        if node.type == "folder":
            entries.append(WorkspaceEntry(path))
            entries.extend(flatten_tree(node.children or [], prefix=f"{path}/"))
        else:
            content = node.decoded_content()
            if content is None:
                continue
            entries.append(WorkspaceEntry(path, content))
    return entries


def _encode(content: bytes) -> tuple[str, str]:
    try:
        return content.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        return base64.b64encode(content).decode("ascii"), "base64"


def build_tree(entries: list[WorkspaceEntry]) -> list[FileNode]:
    """Rebuild a nested tree; folders before files, each group alphabetical."""
    root: dict = {}
    for entry in entries:
        parts = entry.path.split("/")
        level = root
        for part in parts[:-1]:
            level = level.setdefault(part, {})
            if not isinstance(level, dict):
                break
        else:
            leaf = parts[-1]
            if entry.is_dir:
                level.setdefault(leaf, {})
            elif not isinstance(level.get(leaf), dict):
                level[leaf] = entry.content

    def _nodes(level: dict) -> list[FileNode]:
        folders = sorted(k for k, v in level.items() if isinstance(v, dict))
        files = sorted(k for k, v in level.items() if not isinstance(v, dict))
        result = [FileNode(name=k, type="folder", children=_nodes(level[k])) for k in folders]
        for k in files:
            content, encoding = _encode(level[k])
            result.append(FileNode(name=k, type="file", content=content, encoding=encoding))
        return result

    return _nodes(root)


class WorkspaceSynchronizer:
    def __init__(
        self,
        provisioner: EnvironmentProvisioner,
        ignored_dirs: frozenset[str] = IGNORED_DIRS,
    ):
        self.provisioner = provisioner
        self.ignored_dirs = ignored_dirs

    async def write_tree(self, session_id: str, tree: list[FileNode]) -> int:
        """Write every file in ``tree`` into the session's workspace.

        Returns the number of files written. Not transactional: on failure
        the workspace may be partially written and the caller should re-sync.
        """
        session = self.provisioner.touch(session_id)
        entries = flatten_tree(tree)
        runtime = self.provisioner.runtime_for(session.environment)
        try:
            await runtime.write_entries(session.environment, entries)
        except PlaygroundError as exc:
            # Not-found and unavailable keep their own status
            if isinstance(exc, WorkspaceSyncError) or exc.status_code != 500:
                raise
            raise WorkspaceSyncError(
                f"Workspace sync failed: {exc.message}",
                {"session_id": session_id, "entries": len(entries)},
            ) from exc

        files = sum(1 for e in entries if not e.is_dir)
        logger.info("Synced %d files into session %s", files, session_id)
        return files

    async def read_tree(self, session_id: str) -> list[FileNode]:
        session = self.provisioner.touch(session_id)
        runtime = self.provisioner.runtime_for(session.environment)
        entries = await runtime.read_entries(session.environment, self.ignored_dirs)
        return build_tree(entries)
