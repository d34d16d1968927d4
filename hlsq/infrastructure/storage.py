import os
from pathlib import Path
from hlsq.domain.errors import JobInputError
from hlsq.domain.models import SourceFile

class LocalStorage:
    """Maps an owner's logical paths onto ``<data_root>/<owner>/files``."""

    def __init__(self, data_root: Path):
        self.data_root = Path(data_root)

    def user_root(self, owner_id: str) -> Path:
        if not owner_id or "/" in owner_id or owner_id in (".", ".."):
            raise JobInputError(f"Invalid owner id: {owner_id!r}")
        return self.data_root / owner_id / "files"

    def local_path(self, owner_id: str, logical_path: str) -> Path:
        root = self.user_root(owner_id)
        relative = os.path.normpath(logical_path.lstrip("/")) if logical_path.strip("/") else "."
        if relative == ".." or relative.startswith("../"):
            raise JobInputError(f"Path escapes the storage root: {logical_path}")
        return root if relative == "." else root / relative

    def resolve_source(self, owner_id: str, source: SourceFile) -> Path:
        path = self.local_path(owner_id, source.logical_path)
        if not path.is_file():
            raise JobInputError(
                f"Video file not found: path: {source.logical_path} dir: {source.directory} file: {source.filename}"
            )
        return path

    def ensure_dir(self, owner_id: str, logical_path: str) -> Path:
        path = self.local_path(owner_id, logical_path)
        if path.exists() and not path.is_dir():
            raise JobInputError(f"Cache path exists but is not a folder: {logical_path}")
        path.mkdir(parents=True, exist_ok=True)
        return path
