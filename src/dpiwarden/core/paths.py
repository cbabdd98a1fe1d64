from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

FILE_NAMESPACES = ("lists", "lua", "blobs")


@dataclass(frozen=True)
class AppPaths:
    """Filesystem layout of one appdata directory."""

    root: Path

    @classmethod
    def at(cls, root: Path | str) -> "AppPaths":
        return cls(root=Path(root).expanduser().resolve())

    def store_file(self, namespace: str) -> Path:
        """Return the backing file of a store namespace."""
        return self.root / namespace

    def files_dir(self, namespace: str) -> Path:
        """Return the directory holding materialized files of a namespace."""
        return self.root / "files" / namespace

    def resource_file(self, namespace: str, name: str) -> Path:
        return self.files_dir(namespace) / name

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def log_file(self) -> Path:
        return self.root / "logs"

    @property
    def server_metadata(self) -> Path:
        return self.root / "server.json"

    @property
    def config_file(self) -> Path:
        return self.root / "dpiwarden.yaml"
