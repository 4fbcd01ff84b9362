from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class EventIn(BaseModel):
    type: str = Field(..., min_length=1, description="Event type discriminator")
    payload: str = Field("", description="Opaque payload, stored verbatim")


class StoredEvent(BaseModel):
    # Identity and receipt time belong to the store once assigned
    model_config = ConfigDict(frozen=True)

    id: int
    type: str
    payload: str
    received_at: datetime
