from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from hostguard import Base


class BackupRecord(Base):
    """Catalog entry for one BackupSet and its archive"""
    __tablename__ = 'backup_records'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False)  # backup-YYYYMMDD-HHMMSS
    archive_path = Column(String(500))
    status = Column(String(32), nullable=False)  # running, complete, completed_with_warnings, failed
    state = Column(String(20), nullable=False, default='capturing')  # capturing, sealed, uploaded, pruned
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    file_size_bytes = Column(BigInteger)
    remote_key = Column(String(500))
    uploaded_at = Column(DateTime)
    pruned_at = Column(DateTime)
    error_message = Column(Text)
    logs = Column(Text)

    # Relationship
    sections = relationship(
        'SectionRecord',
        back_populates='backup',
        cascade='all, delete-orphan',
        order_by='SectionRecord.position'
    )

    def __repr__(self):
        return f'<BackupRecord {self.name} status={self.status} state={self.state}>'


class SectionRecord(Base):
    """Outcome of capturing one Section of a BackupSet"""
    __tablename__ = 'backup_sections'

    id = Column(Integer, primary_key=True)
    backup_id = Column(Integer, ForeignKey('backup_records.id'), nullable=False)
    position = Column(Integer, nullable=False)
    kind = Column(String(20), nullable=False)  # volume, config, database, userdata
    name = Column(String(255), nullable=False)
    source = Column(String(500), nullable=False)
    status = Column(String(20), nullable=False)  # ok, warn, failed
    artifact = Column(String(500))
    size_bytes = Column(BigInteger)
    message = Column(Text)

    # Relationship
    backup = relationship('BackupRecord', back_populates='sections')

    def __repr__(self):
        return f'<SectionRecord {self.kind}:{self.name} status={self.status}>'
