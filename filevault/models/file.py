# filevault/models/file.py
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from filevault.models.database import Base

APPROVAL_STATUSES = ("pending", "approved", "disapproved")
PREVIEWABLE_PREFIXES = ("image/", "video/", "audio/")


class FileMeta(Base):
    """One version of a stored file."""

    __tablename__ = "files"
    __table_args__ = (UniqueConstraint("folder_id", "filename", name="uq_files_folder_filename"),)

    id = Column(Integer, primary_key=True, index=True)
    filename = Column(String(255), nullable=False)            # Name we store on disk
    original_filename = Column(String(255), nullable=False)   # Name user uploaded, lineage key
    path = Column(String(1024), unique=True, nullable=False)  # Root-relative path on disk
    size = Column(Integer, nullable=False)                    # Size in bytes
    mimetype = Column(String(255), nullable=False)
    extension = Column(String(32), nullable=False, default="")
    description = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)

    folder_id = Column(Integer, ForeignKey("folders.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    uploaded_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Versioning
    version = Column(Integer, nullable=False, default=1)
    is_current_version = Column(Boolean, nullable=False, default=True)
    previous_versions = Column(JSON, nullable=False, default=list)
    original_file_id = Column(Integer, ForeignKey("files.id"), nullable=True, index=True)

    # Integrity
    file_hash = Column(String(64), nullable=False, index=True)
    checksum_algorithm = Column(String(16), nullable=False, default="sha256")

    # Approval (read and written as a unit through services.approval)
    approval_status = Column(String(20), nullable=False, default="pending", index=True)
    approved_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    disapproval_reason = Column(Text, nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False)
    download_count = Column(Integer, nullable=False, default=0)

    uploaded_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Many files → one owner (User)
    owner = relationship("User", back_populates="files", foreign_keys=[owner_id])
    folder = relationship("Folder")

    @property
    def lineage_root_id(self):
        return self.original_file_id or self.id

    @property
    def size_formatted(self) -> str:
        units = ["B", "KB", "MB", "GB"]
        size = float(self.size or 0)
        unit = 0
        while size >= 1024 and unit < len(units) - 1:
            size /= 1024
            unit += 1
        return f"{size:.2f} {units[unit]}"

    @property
    def can_preview(self) -> bool:
        mimetype = self.mimetype or ""
        return mimetype == "application/pdf" or mimetype.startswith(PREVIEWABLE_PREFIXES)

    def __repr__(self) -> str:
        return f"<FileMeta id={self.id} path='{self.path}' v{self.version}>"
