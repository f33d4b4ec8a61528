"""
Pydantic schemas for plugins and plugin subscriptions.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class PluginCreate(BaseModel):
    """Schema for submitting a new plugin."""

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    version: str = Field("1.0.0", max_length=32)
    schema_: Optional[Dict[str, Any]] = Field(None, alias="schema", description="JSON Schema of the arguments")
    code: str = Field(..., min_length=1, description="Body of main(args)")

    class Config:
        populate_by_name = True


class PluginUpdate(BaseModel):
    """Schema for editing a plugin; omitted fields are left alone."""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    version: Optional[str] = Field(None, max_length=32)
    schema_: Optional[Dict[str, Any]] = Field(None, alias="schema")
    code: Optional[str] = Field(None, min_length=1)

    class Config:
        populate_by_name = True

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class PluginResponse(BaseModel):
    id: str
    author_id: str
    name: str
    description: Optional[str] = None
    version: str
    schema_: Optional[Dict[str, Any]] = Field(None, alias="schema")
    status: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
        populate_by_name = True
