from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")

BLOOD_GROUP_PATTERN = r"^(A|B|AB|O)[+-]$"


class BaseSchema(BaseModel):
    """Base schema for request bodies"""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        use_enum_values=True,
        extra="forbid",
        from_attributes=True,
    )


class ResponseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class DataWrapper(BaseModel, Generic[T]):
    success: bool = True
    data: T
