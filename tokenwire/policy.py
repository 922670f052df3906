"""
Detection policy: what to look for, where, and how many tokens to keep.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import PolicyValidationError

MIN_ENTRIES = 1
MAX_ENTRIES = 5


class DetectionKind(str, Enum):
    BEARER_HEADER = "bearer"
    SESSION_HEADER = "session"
    CUSTOM_HEADER = "custom"


class DetectionSource(str, Enum):
    REQUEST_HEADERS = "headers"
    BROWSER_STORAGE = "storage"
    COOKIES = "cookies"


class Policy(BaseModel):
    """Immutable detection policy.

    A new value replaces the old one wholesale; the collector is reset on
    every replacement so entries from different policies never coexist.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    detection_kind: DetectionKind = DetectionKind.BEARER_HEADER
    header_name: str = ""
    detection_source: DetectionSource = DetectionSource.REQUEST_HEADERS
    max_entries: int = Field(default=MAX_ENTRIES, ge=MIN_ENTRIES, le=MAX_ENTRIES, strict=True)
    auto_cleanup: bool = True

    @field_validator("header_name")
    @classmethod
    def _strip_header_name(cls, value: str) -> str:
        return value.strip()

    @model_validator(mode="after")
    def _custom_needs_header_name(self):
        if self.detection_kind is DetectionKind.CUSTOM_HEADER and not self.header_name:
            raise ValueError("custom detection requires a non-empty header_name")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "Policy":
        """Validate raw settings input, raising PolicyValidationError on bad values."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]) or "policy", "message": err["msg"]}
                for err in e.errors()
            ]
            raise PolicyValidationError("Invalid policy", errors) from e

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")
