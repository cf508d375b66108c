from fastapi import Depends
from sqlalchemy.orm import Session

from filevault.core.config import Settings, get_settings
from filevault.models.database import get_db
from filevault.services.files import FileManager
from filevault.services.folders import FolderManager
from filevault.services.storage import StorageAdapter


def get_storage(settings: Settings = Depends(get_settings)) -> StorageAdapter:
    return StorageAdapter.from_settings(settings)


def get_folder_manager(
    db: Session = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
) -> FolderManager:
    return FolderManager(db, storage)


def get_file_manager(
    db: Session = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> FileManager:
    return FileManager(db, storage, settings)
