# filevault/models/folder.py
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from filevault.models.database import Base

PERMISSIONS = ("read", "write", "admin")


class Folder(Base):
    __tablename__ = "folders"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    path = Column(String(1024), unique=True, index=True, nullable=False)  # "a/b/c", root-relative
    parent_id = Column(Integer, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True, index=True)
    depth = Column(Integer, nullable=False, default=0)
    is_system_folder = Column(Boolean, nullable=False, default=False)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    parent = relationship("Folder", remote_side=[id])
    created_by = relationship("User")
    access = relationship(
        "FolderAccess",
        back_populates="folder",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def access_for(self, user_id):
        """Return the access entry granted to ``user_id``, if any."""
        for entry in self.access:
            if entry.user_id == user_id:
                return entry
        return None

    def __repr__(self) -> str:
        return f"<Folder id={self.id} path='{self.path}'>"


class FolderAccess(Base):
    __tablename__ = "folder_access"
    __table_args__ = (UniqueConstraint("folder_id", "user_id", name="uq_folder_access_user"),)

    id = Column(Integer, primary_key=True)
    folder_id = Column(Integer, ForeignKey("folders.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    permission = Column(String(10), nullable=False)
    granted_at = Column(DateTime, default=datetime.utcnow)

    folder = relationship("Folder", back_populates="access")
