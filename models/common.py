from datetime import datetime

from pydantic import BaseModel, ConfigDict


class IntelPydanticBaseModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        json_encoders={
            datetime: lambda v: v.isoformat(),
        },
    )
