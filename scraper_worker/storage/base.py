from abc import ABC, abstractmethod
from typing import Optional, Union


class BaseStorage(ABC):
    """
    Abstract base class for the content store.

    Keys are hierarchical, slash-separated paths (see storage.keys). Writes are
    overwrite-by-key: putting the same key twice leaves the last body in place,
    which is what makes re-uploads after a partial failure safe.
    """

    @abstractmethod
    def put(
        self,
        key: str,
        body: Union[bytes, str],
        content_type: Optional[str] = None,
    ) -> str:
        """Store a body under a key.

        Args:
            key (str): Destination key.
            body (bytes | str): Payload; text is stored UTF-8 encoded.
            content_type (Optional[str]): Declared content type.

        Returns:
            str: The key that was written.

        Raises:
            StorageError: If the write fails.
        """

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read the body stored under a key.

        Raises:
            StorageError: If the key does not exist or the read fails.
        """

    @abstractmethod
    def list(self, prefix: str = "") -> list[str]:
        """List every key starting with prefix, sorted."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete a key. Deleting a missing key is not an error."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a key exists."""

    @staticmethod
    def _to_bytes(body: Union[bytes, str]) -> bytes:
        if isinstance(body, str):
            return body.encode("utf-8")
        return bytes(body)
