import functools
from typing import Any

import pydantic


class BaseModel(pydantic.BaseModel):
    """Common base for records read from the panel database.

    Field names follow the panel's camelCase wire names; aliased fields can be
    populated by either name and unknown keys are kept so nothing the panel
    stores is lost on a round trip.
    """
    model_config = pydantic.ConfigDict(populate_by_name=True, extra="allow")


@functools.lru_cache(maxsize=None)
def _adapter(annotation: Any) -> pydantic.TypeAdapter:
    return pydantic.TypeAdapter(annotation)


class LenientModel(BaseModel):
    """Base for settings blobs the panel stores as free-form JSON.

    Nulls and values of the wrong type fall back to the field's default
    instead of failing validation; numbers given where text is expected are
    kept as their text. Unknown keys pass through untouched.
    """

    # noinspection PyNestedDecorators
    @pydantic.model_validator(mode="before")
    @classmethod
    def drop_invalid(cls, data: Any) -> Any:
        if isinstance(data, pydantic.BaseModel):
            return data
        if not isinstance(data, dict):
            return {}

        fields = {}
        for name, info in cls.model_fields.items():
            fields[name] = info
            if info.alias:
                fields[info.alias] = info

        cleaned = {}
        for key, value in data.items():
            if value is None:
                continue
            info = fields.get(key)
            if info is None:
                cleaned[key] = value
                continue
            if info.annotation is str and isinstance(value, (int, float)) and not isinstance(value, bool):
                value = str(value)
            try:
                cleaned[key] = _adapter(info.annotation).validate_python(value)
            except pydantic.ValidationError:
                continue
        return cleaned
