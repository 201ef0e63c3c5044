from pydantic import BaseModel, Field


class Entity(BaseModel):
    """
    A target unit a task collects items for, e.g. a club.
    """
    entity_id: str = Field(..., description="Identifier used by the data source")
    name: str = Field(..., description="Display name")
    platform: str = Field("common-gen5", description="Platform the entity lives on")
