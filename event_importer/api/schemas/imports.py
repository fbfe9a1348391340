from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from event_importer.core.config import settings


class BatchImportRequest(BaseModel):
    """Body of ``POST /api/batch-import-events/{site_id}/{import_id}``."""
    model_config = ConfigDict(populate_by_name=True)

    events: List[Dict[str, Optional[str]]]
    is_last_batch: bool = Field(default=False, alias="isLastBatch")

    @field_validator("is_last_batch", mode="before")
    @classmethod
    def default_last_batch(cls, value):
        return False if value is None else value

    @model_validator(mode="after")
    def check_batch_size(self) -> "BatchImportRequest":
        max_events = settings.import_max_batch_events
        if len(self.events) > max_events:
            raise ValueError(f"A batch may contain at most {max_events} events")
        # An empty batch is only meaningful as the final "close the import" call.
        if not self.events and not self.is_last_batch:
            raise ValueError("events must contain at least 1 item")
        return self


class StartImportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: Optional[str] = Field(default=None, alias="fileName", max_length=255)


class AllowedDateRangeResponse(BaseModel):
    earliestAllowedDate: str
    latestAllowedDate: str


class StartImportResponse(BaseModel):
    importId: str
    allowedDateRange: AllowedDateRangeResponse


class ImportRecord(BaseModel):
    importId: str
    siteId: int
    platform: Optional[str] = None
    status: str
    importedEvents: int
    errorMessage: Optional[str] = None
    fileName: Optional[str] = None
    startedAt: Optional[str] = None
    completedAt: Optional[str] = None


class ImportListResponse(BaseModel):
    data: List[ImportRecord]
    totalCount: int
    limit: int
    offset: int
