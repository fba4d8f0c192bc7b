from xynoxa_sync.remote.client import RemoteChange, RemoteClient
from xynoxa_sync.remote.http_client import HttpRemoteClient

__all__ = ["HttpRemoteClient", "RemoteChange", "RemoteClient"]
