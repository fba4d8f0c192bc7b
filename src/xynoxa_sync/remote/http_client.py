"""HTTP implementation of the remote client against a Xynoxa server."""

import json
import math
import mimetypes
from pathlib import PurePosixPath
from typing import Any, List, Optional, Tuple
from urllib.parse import quote

import httpx
from loguru import logger

from xynoxa_sync.remote.client import RemoteChange, RemoteClient
from xynoxa_sync.services.exceptions import (
    AuthError,
    RemoteNotFoundError,
    SyncError,
    TransientNetworkError,
)

MAX_UPLOAD_BYTES = 5 * 1024 * 1024 * 1024  # 5 GB
CHUNK_THRESHOLD_BYTES = 50 * 1024 * 1024  # 50 MB
CHUNK_SIZE_BYTES = 1 * 1024 * 1024  # 1 MB, matches the web uploader

FOLDER_ENTITY_TYPES = {"folder", "group", "group_folder"}
FEED_ACTIONS = {
    "create": "create",
    "update": "update",
    "copy": "create",
    "move": "move",
    "delete": "delete",
}


def default_timeout() -> httpx.Timeout:
    # Default httpx timeout is 5 seconds which is too short for transfers
    return httpx.Timeout(connect=10.0, read=60.0, write=60.0, pool=30.0)


class HttpRemoteClient(RemoteClient):
    """Talks to the server's tRPC endpoints and upload/download routes."""

    def __init__(
        self,
        base_url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.client = client or httpx.AsyncClient(timeout=default_timeout())

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def close(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, headers=self.headers, **kwargs)
        except (httpx.TransportError, httpx.TimeoutException) as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthError(f"Server rejected credentials ({status})")
        if status == 404:
            raise RemoteNotFoundError(f"{method} {url}: not found")
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"{method} {url}: server returned {status}")
        if status >= 400:
            raise SyncError(f"{method} {url}: {status} {response.text}")
        return response

    async def _mutation(self, procedure: str, payload: dict) -> Any:
        url = f"{self.base_url}/api/trpc/{procedure}?batch=1"
        response = await self._request("POST", url, json={"0": {"json": payload}})
        body = response.json()
        try:
            return body[0]["result"]["data"]["json"]
        except (KeyError, IndexError, TypeError) as e:
            raise SyncError(f"Unexpected response from {procedure}: {body}") from e

    async def _pull(self, cursor: int) -> dict:
        url = f"{self.base_url}/api/trpc/sync.pull"
        params = {"batch": "1", "input": json.dumps({"0": {"json": {"cursor": cursor}}})}
        response = await self._request("GET", url, params=params)
        body = response.json()

        # Batched tRPC result, or a bare payload from simpler deployments
        if isinstance(body, list) and body:
            payload = body[0]["result"]["data"]["json"]
        elif isinstance(body, dict) and "events" in body:
            payload = body
        else:
            raise SyncError(f"Failed to decode sync.pull response: {body}")
        return payload

    async def list_changes(self, cursor: int) -> Tuple[List[RemoteChange], int]:
        payload = await self._pull(cursor)
        changes = []
        for event in payload.get("events", []):
            change = self.parse_event(event)
            if change is not None:
                changes.append(change)
        return changes, int(payload.get("nextCursor", cursor))

    def parse_event(self, event: dict) -> Optional[RemoteChange]:
        """Translate one server event into a RemoteChange, or None to skip it."""
        action = FEED_ACTIONS.get(event.get("action", ""))
        if action is None:
            logger.debug(f"Skipping unknown feed action: {event.get('action')}")
            return None

        data = event.get("data") or {}
        path = data.get("path")
        if not path and data.get("storagePath"):
            storage_path = data["storagePath"]
            owner = event.get("ownerId")
            prefix = f"{owner}/" if owner else ""
            if prefix and storage_path.startswith(prefix):
                storage_path = storage_path[len(prefix) :]
            path = storage_path
        if not path:
            path = data.get("name")
        if action != "delete" and not path:
            return None

        is_folder = event.get("entityType") in FOLDER_ENTITY_TYPES

        return RemoteChange(
            action=action,
            remote_id=event["entityId"],
            path=path,
            fingerprint=data.get("hash"),
            size=int(data.get("size") or 0),
            revision=int(event.get("id", 0)),
            is_folder=is_folder,
        )

    async def upload(
        self,
        path: str,
        data: bytes,
        remote_id: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> str:
        size = len(data)
        if size > MAX_UPLOAD_BYTES:
            raise SyncError(f"File too large (max {MAX_UPLOAD_BYTES} bytes): {path}")
        if size > CHUNK_THRESHOLD_BYTES:
            return await self._upload_chunked(path, data, remote_id, folder_id)

        mime_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        form: dict[str, str] = {"originalName": path}
        if remote_id:
            form["fileId"] = remote_id
        if folder_id:
            form["folderId"] = folder_id

        logger.debug(f"Uploading {path} with MIME type: {mime_type}")
        response = await self._request(
            "POST",
            f"{self.base_url}/api/upload",
            data=form,
            files={"file": (PurePosixPath(path).name, data, mime_type)},
        )
        return response.json()["file"]["id"]

    async def _upload_chunked(
        self, path: str, data: bytes, remote_id: Optional[str], folder_id: Optional[str]
    ) -> str:
        mime_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        total_chunks = math.ceil(len(data) / CHUNK_SIZE_BYTES)
        start = await self._request(
            "POST",
            f"{self.base_url}/api/upload/chunk/start",
            json={
                "filename": path,
                "originalName": path,
                "size": len(data),
                "totalChunks": total_chunks,
                "mime": mime_type,
                "fileId": remote_id,
            },
        )
        upload_id = start.json()["uploadId"]

        for index in range(total_chunks):
            chunk = data[index * CHUNK_SIZE_BYTES : (index + 1) * CHUNK_SIZE_BYTES]
            await self._request(
                "POST",
                f"{self.base_url}/api/upload/chunk",
                data={"uploadId": upload_id, "chunkIndex": str(index)},
                files={"file": (f"{index}.part", chunk, mime_type)},
            )

        complete = await self._request(
            "POST",
            f"{self.base_url}/api/upload/chunk/complete",
            json={"uploadId": upload_id, "folderId": folder_id},
        )
        return complete.json()["file"]["id"]

    async def download(self, remote_id: str) -> bytes:
        url = f"{self.base_url}/api/files/{quote(remote_id, safe='')}/content"
        response = await self._request("GET", url)
        return response.content

    async def delete_remote(self, remote_id: str) -> None:
        await self._mutation("files.softDelete", {"fileId": remote_id})

    async def move_remote(
        self, remote_id: str, new_path: str, folder_id: Optional[str] = None
    ) -> None:
        target = PurePosixPath(new_path)
        await self._mutation("files.move", {"id": remote_id, "folderId": folder_id})
        await self._mutation("files.rename", {"id": remote_id, "name": target.name})

    async def create_folder(self, path: str, parent_id: Optional[str]) -> str:
        name = PurePosixPath(path).name
        logger.info(f"Creating remote folder {path} (parent: {parent_id})")
        try:
            entry = await self._mutation("folders.create", {"name": name, "parentId": parent_id})
            return entry["id"]
        except (AuthError, TransientNetworkError):
            raise
        except (SyncError, KeyError, TypeError) as e:
            logger.warning(f"Create folder {path} failed: {e}. Looking for an existing one")
            existing = await self.find_folder_id(name, parent_id)
            if existing is None:
                raise SyncError(f"Failed to create remote folder {path}: {e}") from e
            logger.info(f"Adopting existing remote folder {existing} for {path}")
            return existing

    async def find_folder_id(self, name: str, parent_id: Optional[str]) -> Optional[str]:
        """Find a folder by name and parent by replaying the change feed from the start."""
        cursor = 0
        while True:
            payload = await self._pull(cursor)
            events = payload.get("events", [])
            if not events:
                return None
            for event in events:
                if event.get("entityType") not in FOLDER_ENTITY_TYPES:
                    continue
                if event.get("action") not in ("create", "update", "copy"):
                    continue
                data = event.get("data") or {}
                remote_parent = data.get("folderId") or data.get("parentId")
                if data.get("name") == name and remote_parent == parent_id:
                    return event["entityId"]
            next_cursor = int(payload.get("nextCursor", cursor))
            if next_cursor <= cursor:
                return None
            cursor = next_cursor
