import os
from pathlib import Path
from typing import List, Generator
from hlsq.domain.models import SourceFile

class FileScanner:
    """Recursively scans an owner's directory for supported video files."""

    def __init__(self, extensions: List[str]):
        self.extensions = [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]

    def scan(self, root_dir: Path, logical_root: str = "/") -> Generator[SourceFile, None, None]:
        """Yields SourceFile entries with directories expressed relative to ``logical_root``.

        Hidden files and directories (including ``.cached_hls``) are skipped.
        """
        root_dir = Path(root_dir)
        base = "/" + logical_root.strip("/") if logical_root.strip("/") else "/"
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            # Deterministic traversal, never descend into hidden dirs
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            files.sort()

            rel = root_path.relative_to(root_dir).as_posix()
            if rel == ".":
                directory = base
            elif base == "/":
                directory = f"/{rel}"
            else:
                directory = f"{base}/{rel}"

            for file_name in files:
                if file_name.startswith("."):
                    continue
                if Path(file_name).suffix.lower() not in self.extensions:
                    continue
                yield SourceFile(filename=file_name, directory=directory)
