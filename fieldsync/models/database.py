from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Index,
    text,
)
from fieldsync.core.database import Base


class FormRecordRow(Base):
    """Locally created SPB form awaiting or having completed submission."""

    __tablename__ = "form_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_key = Column(String, unique=True, nullable=False)
    status = Column(String, nullable=False)
    created_by = Column(String, nullable=False)
    latitude = Column(String, nullable=False)
    longitude = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    resource_changed = Column(Integer, nullable=False, default=0)
    timestamp = Column(Integer, nullable=False)

    # Sync metadata
    is_synced = Column(Integer, nullable=False, default=0, server_default=text("0"))
    retry_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error = Column(Text, nullable=True)
    last_sync_attempt = Column(Integer, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_form_records_record_key", "record_key"),
        Index("idx_form_records_is_synced", "is_synced"),
        Index("idx_form_records_timestamp", "timestamp"),
        Index("idx_form_records_created_at", "created_at"),
    )


class SpbRecordRow(Base):
    """Cached delivery notes for a driver/vendor scope."""

    __tablename__ = "spb_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    no_spb = Column(String, unique=True, nullable=False)
    tgl_antar_buah = Column(String, nullable=False)
    mill_tujuan = Column(String, nullable=False)
    status = Column(String, nullable=False)
    keterangan = Column(Text, nullable=True)
    kode_vendor = Column(String, nullable=True, index=True)
    driver = Column(String, nullable=True, index=True)
    no_polisi = Column(String, nullable=True)
    driver_name = Column(String, nullable=True)
    mill_tujuan_name = Column(String, nullable=True)
    is_synced = Column(Boolean, nullable=False, default=True)
    created_at = Column(Integer, nullable=True)
    updated_at = Column(Integer, nullable=True)


class KVEntry(Base):
    """Key/value entry backing the durable KV store."""

    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)  # JSON encoded
