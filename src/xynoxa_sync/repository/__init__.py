from xynoxa_sync.repository.group_folder_repository import GroupFolderRepository
from xynoxa_sync.repository.index_repository import IndexMutation, IndexRepository

__all__ = ["GroupFolderRepository", "IndexMutation", "IndexRepository"]
