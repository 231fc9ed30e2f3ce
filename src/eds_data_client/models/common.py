from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel

# Byte counts are exact ints in Python and decimal strings on the wire.
ByteCount = Annotated[int, PlainSerializer(lambda v: str(v), return_type=str, when_used="json")]


class APIModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)
