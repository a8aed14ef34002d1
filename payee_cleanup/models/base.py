"""Base models and field helpers shared by the payee cleanup records."""
import uuid
from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Every stored timestamp is timezone-aware so rules always order against each other.
UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]


class PCBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class RawTextModel(PCBaseModel):
    """Keeps strings byte-for-byte; payee text is stored exactly as seen on the transaction."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=False)
