import logging
import os
from pathlib import Path
from typing import Optional, Union

from scraper_worker.errors import StorageError
from .base import BaseStorage


logger = logging.getLogger("scraper_worker.storage")


class LocalStorage(BaseStorage):
    """A content store backed by a directory on the local filesystem.

    Used for development runs (STORAGE_BACKEND=local) and tests. Keys map to
    paths below ``root``; the declared content type is not persisted.
    """

    def __init__(self, root: str = "data/storage"):
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Error creating local storage directory: {e}")

    def _get_absolute_filename(self, key: str) -> Path:
        """Constructs the absolute path of a key, refusing keys that escape root."""
        path = (self.root / key.lstrip("/")).resolve()
        root = self.root.resolve()
        if path != root and root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(
        self,
        key: str,
        body: Union[bytes, str],
        content_type: Optional[str] = None,
    ) -> str:
        path = self._get_absolute_filename(key)
        data = self._to_bytes(body)
        tmp_path = path.with_name(path.name + ".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write then rename so readers never see a half-written object
            with open(tmp_path, "wb") as file:
                file.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            raise StorageError(f"Error saving {key} to local storage: {e}")

        logger.debug(f"Stored {key} ({len(data)} bytes, {content_type})")
        return key

    def get(self, key: str) -> bytes:
        path = self._get_absolute_filename(key)
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Error reading {key} from local storage: {e}")

    def list(self, prefix: str = "") -> list[str]:
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith(".part"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def delete(self, key: str) -> None:
        path = self._get_absolute_filename(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Error deleting {key} from local storage: {e}")

    def exists(self, key: str) -> bool:
        return self._get_absolute_filename(key).is_file()
