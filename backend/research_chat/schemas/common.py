from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class APIModel(BaseModel):
    """Base model with ORM support enabled."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


class CamelModel(APIModel):
    """API model exchanged with the browser client using camelCase keys."""

    model_config = ConfigDict(
        from_attributes=True,
        protected_namespaces=(),
        alias_generator=to_camel,
        populate_by_name=True,
    )
