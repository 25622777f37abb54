"""
Activity record schemas

An activity record is the normalized description of something a developer did
(a CI run, a deployment, a storage bucket living for a month). Its metadata is
a tagged union chosen by the activity type, so range checks read typed fields
instead of probing a free-form dictionary.

Numeric metadata fields are deliberately unconstrained here: out-of-range
values must reach the structural validator so they can be reported as
validation errors rather than rejected at parse time.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ecotrace.schemas.geography import Coordinates


class ActivityType(str, Enum):
    CLOUD_COMPUTE = "cloud_compute"
    DATA_TRANSFER = "data_transfer"
    STORAGE = "storage"
    ELECTRICITY = "electricity"
    TRANSPORT = "transport"
    COMMIT = "commit"
    DEPLOYMENT = "deployment"


class Location(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    country: Optional[str] = Field(None, description="ISO 3166-1 alpha-2 country code")
    region: Optional[str] = Field(None, description="State, province or cloud region")
    postal_code: Optional[str] = Field(None, alias="postalCode")
    coordinates: Optional[Coordinates] = None


class _Metadata(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    def is_empty(self) -> bool:
        """True when no known field and no extra key carries a value"""
        values = [getattr(self, name) for name in type(self).model_fields]
        values.extend((self.model_extra or {}).values())
        return all(value is None for value in values)


class ComputeMetadata(_Metadata):
    provider: Optional[str] = None
    instance_type: Optional[str] = Field(None, alias="instanceType")
    region: Optional[str] = None
    cpu_hours: Optional[float] = Field(None, alias="cpuHours")
    memory_gb_hours: Optional[float] = Field(None, alias="memoryGBHours")
    vcpu_count: Optional[float] = Field(None, alias="vcpuCount")
    duration: Optional[float] = Field(None, description="Run time in seconds")


class TransferMetadata(_Metadata):
    bytes_transferred: Optional[float] = Field(None, alias="bytesTransferred")
    source_region: Optional[str] = Field(None, alias="sourceRegion")
    destination_region: Optional[str] = Field(None, alias="destinationRegion")
    network_type: Optional[str] = Field(None, alias="networkType")


class StorageMetadata(_Metadata):
    storage_type: Optional[str] = Field(None, alias="storageType")
    size_gb: Optional[float] = Field(None, alias="sizeGB")
    duration: Optional[float] = Field(None, description="Retention in seconds")
    region: Optional[str] = None


class ElectricityMetadata(_Metadata):
    kwh_consumed: Optional[float] = Field(None, alias="kWhConsumed")
    time_of_day: Optional[str] = Field(None, alias="timeOfDay")
    source: Optional[str] = None


class GenericMetadata(_Metadata):
    """Free-form metadata for transport, commit and deployment activities"""

    pass


ActivityMetadata = Union[
    ComputeMetadata,
    TransferMetadata,
    StorageMetadata,
    ElectricityMetadata,
    GenericMetadata,
]

METADATA_TYPES = {
    ActivityType.CLOUD_COMPUTE: ComputeMetadata,
    ActivityType.DATA_TRANSFER: TransferMetadata,
    ActivityType.STORAGE: StorageMetadata,
    ActivityType.ELECTRICITY: ElectricityMetadata,
}


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ActivityRecord(BaseModel):
    """Immutable activity record submitted for validation"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    activity_type: Optional[ActivityType] = Field(None, alias="activityType")
    timestamp: Optional[str] = Field(None, description="ISO-8601 activity time")
    location: Optional[Location] = None
    metadata: ActivityMetadata = Field(default_factory=GenericMetadata)

    @model_validator(mode="before")
    @classmethod
    def select_metadata_variant(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        raw_type = data.get("activity_type", data.get("activityType"))
        raw_metadata = data.get("metadata")
        if raw_metadata is None:
            raw_metadata = {}
        if not isinstance(raw_metadata, dict):
            return data

        try:
            activity_type = ActivityType(raw_type) if raw_type is not None else None
        except ValueError:
            # Let field validation report the bad activity type
            return data

        metadata_cls = METADATA_TYPES.get(activity_type, GenericMetadata)
        return {**data, "metadata": metadata_cls.model_validate(raw_metadata)}

    @property
    def parsed_timestamp(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)

    def metadata_dict(self) -> Dict[str, Any]:
        return self.metadata.model_dump(exclude_none=True)
