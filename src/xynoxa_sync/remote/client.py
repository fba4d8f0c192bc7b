"""Narrow contract the sync engine uses to talk to the remote file store."""

from abc import ABC, abstractmethod
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel

RemoteAction = Literal["create", "update", "move", "delete"]


class RemoteChange(BaseModel):
    """One record of the remote change feed."""

    action: RemoteAction
    remote_id: str
    path: Optional[str] = None
    fingerprint: Optional[str] = None
    size: int = 0
    revision: int = 0
    is_folder: bool = False


class RemoteClient(ABC):
    """Remote API used by the orchestrator.

    Implementations raise ``TransientNetworkError`` for failures worth
    retrying, ``AuthError`` when credentials are rejected and
    ``RemoteNotFoundError`` when an object is gone.
    """

    @abstractmethod
    async def list_changes(self, cursor: int) -> Tuple[List[RemoteChange], int]:
        """Changes after ``cursor`` and the cursor that follows them.

        An empty list means the feed is drained.
        """

    @abstractmethod
    async def upload(
        self,
        path: str,
        data: bytes,
        remote_id: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> str:
        """Store ``data`` at ``path`` and return the remote id.

        ``folder_id`` is the remote folder holding ``path``; None places the
        file at the top of the user's tree.
        """

    @abstractmethod
    async def download(self, remote_id: str) -> bytes:
        """Fetch the bytes of a remote file."""

    @abstractmethod
    async def delete_remote(self, remote_id: str) -> None:
        """Remove a remote file."""

    @abstractmethod
    async def move_remote(
        self, remote_id: str, new_path: str, folder_id: Optional[str] = None
    ) -> None:
        """Move or rename a remote file into ``folder_id``."""

    @abstractmethod
    async def create_folder(self, path: str, parent_id: Optional[str]) -> str:
        """Create the folder for ``path`` below ``parent_id`` and return its id.

        A folder that already exists there is adopted instead.
        """

    async def validate_token(self) -> None:
        """Raise AuthError if the client's credentials are not accepted."""
        await self.list_changes(0)

    async def close(self) -> None:  # pragma: no cover
        pass
