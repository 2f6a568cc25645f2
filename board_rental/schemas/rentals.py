from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^[0-9\-+\s()]+$"

RentalSortField = Literal["name", "rented_at", "due_date", "returned_at", "created_at"]
RentalStatusFilter = Literal["active", "returned", "overdue", "all"]


class _ContactFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN, min_length=10, max_length=20)

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CreateRentalDto(_ContactFields):
    game_id: int = Field(gt=0)
    name: str = Field(min_length=1, max_length=100)
    rented_at: date
    due_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _require_contact(self):
        if not self.email and not self.phone:
            raise ValueError("Either email or phone is required")
        return self


class UpdateRentalDto(_ContactFields):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)


class ExtensionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    new_due_date: date


class RentalListQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    query: Optional[str] = Field(default=None, max_length=200)
    game_id: Optional[int] = Field(default=None, gt=0)
    status: RentalStatusFilter = "all"
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    sort_by: RentalSortField = "rented_at"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
