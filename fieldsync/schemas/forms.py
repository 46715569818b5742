"""Typed records exchanged between the sync core and its callers."""

from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic import ValidationError as PydanticValidationError

from fieldsync.core.errors import ValidationError


class FormStatus(str, Enum):
    """Business status of an SPB form. Values are the remote wire codes."""
    NEW = "0"
    ACCEPTED = "1"
    ISSUE = "2"  # "kendala"
    CANCELLED = "3"
    FAILED_SYNC = "4"


class SyncPhase(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    FAILED = "failed"
    OFFLINE = "offline"


class SyncState(str, Enum):
    """Per-record view of sync progress."""
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


def _coerce_str(v: Any) -> Any:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


class FormPayload(BaseModel):
    """User-entered part of a form, before sync metadata is attached."""

    model_config = ConfigDict(populate_by_name=True)

    status: FormStatus = FormStatus.ISSUE
    created_by: str | None = Field(default=None, alias="createdBy")
    latitude: str | None = None
    longitude: str | None = None
    timestamp: int | None = None

    @field_validator("status", "latitude", "longitude", mode="before")
    @classmethod
    def numbers_as_str(cls, v):
        return _coerce_str(v)


def _require(value: Any, field: str) -> None:
    if value is None or not str(value).strip():
        raise ValidationError(f"Missing required field: {field}", field=field)


def validate_form(
    record_key: str | None,
    payload: FormPayload,
    resource_changed: bool | None,
    reason: str | None,
) -> None:
    """
    Check required form fields.

    Raises:
        ValidationError: naming the first missing or malformed field.
    """
    _require(record_key, "record_key")
    _require(payload.created_by, "created_by")
    _require(payload.latitude, "latitude")
    _require(payload.longitude, "longitude")

    for field in ("latitude", "longitude"):
        try:
            float(getattr(payload, field))
        except ValueError:
            raise ValidationError(f"Malformed coordinate: {field}", field=field)

    if payload.status == FormStatus.ISSUE:
        _require(reason, "reason")
        if resource_changed is None:
            raise ValidationError("Missing required field: resource_changed", field="resource_changed")


class FormRecord(BaseModel):
    """A locally originated form with its sync metadata."""

    model_config = ConfigDict(from_attributes=True)

    record_key: str
    status: FormStatus
    created_by: str
    latitude: str
    longitude: str
    reason: str | None = None
    resource_changed: bool = False
    timestamp: int

    is_synced: bool = False
    retry_count: int = 0
    last_error: str | None = None
    last_sync_attempt: int | None = None
    created_at: int
    updated_at: int

    @field_validator("resource_changed", "is_synced", mode="before")
    @classmethod
    def int_to_bool(cls, v):
        if isinstance(v, str):
            return v.strip() == "1"
        return bool(v)

    def sync_state(self, max_retry_attempts: int) -> SyncState:
        if self.is_synced:
            return SyncState.SYNCED
        if self.retry_count >= max_retry_attempts:
            return SyncState.FAILED
        return SyncState.PENDING

    def to_api_request(self) -> dict[str, Any]:
        """Body for the accept/adjust endpoints."""
        return {
            "noSPB": self.record_key,
            "status": self.status.value,
            "createdBy": self.created_by,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "alasan": self.reason,
            "isAnyHandlingEx": "1" if self.resource_changed else "0",
            "timestamp": self.timestamp,
        }

    def to_row(self) -> dict[str, Any]:
        """Column values for the form_records table."""
        data = self.model_dump()
        data["status"] = self.status.value
        data["resource_changed"] = 1 if self.resource_changed else 0
        data["is_synced"] = 1 if self.is_synced else 0
        return data


class SyncStats(BaseModel):
    total_forms: int = 0
    synced_forms: int = 0
    pending_forms: int = 0
    failed_count: int = 0

    @computed_field
    @property
    def sync_percentage(self) -> float:
        if self.total_forms == 0:
            return 0.0
        return self.synced_forms / self.total_forms * 100


class MigrationStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CLEANING = "cleaning"


class MigrationStats(BaseModel):
    total_forms: int = 0
    synced_forms: int = 0
    pending_forms: int = 0


class SpbItem(BaseModel):
    """Delivery note shown in the driver's list."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    no_spb: str = Field(alias="noSpb")
    tgl_antar_buah: str = Field(alias="tglAntarBuah")
    mill_tujuan: str = Field(alias="millTujuan")
    status: str
    keterangan: str | None = None
    kode_vendor: str | None = Field(default=None, alias="kodeVendor")
    driver: str | None = None
    no_polisi: str | None = Field(default=None, alias="noPolisi")
    driver_name: str | None = Field(default=None, alias="driverName")
    mill_tujuan_name: str | None = Field(default=None, alias="millTujuanName")
    is_synced: bool = Field(default=True, alias="isSynced")

    @field_validator("status", mode="before")
    @classmethod
    def status_as_str(cls, v):
        return _coerce_str(v)


def parse_payload(payload: FormPayload | Mapping[str, Any]) -> FormPayload:
    """Parse an untyped payload mapping into a FormPayload."""

    if isinstance(payload, FormPayload):
        return payload
    try:
        return FormPayload.model_validate(dict(payload))
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"]) or None
        raise ValidationError(f"Invalid payload: {first['msg']}", field=field)
