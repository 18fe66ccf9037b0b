"""
Pydantic schemas for indexer change notifications.
"""
from typing import Optional, Dict, Any
from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WebhookData(BaseModel):
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None


class WebhookPayload(BaseModel):
    """
    Change notification as sent by the indexer.

    Both the nested ``data: {new, old}`` form and the flat
    ``newState`` / ``oldState`` form are accepted.
    """
    op: str = Field(validation_alias=AliasChoices("op", "operation"), description="INSERT, UPDATE or DELETE")
    entity: str = Field(validation_alias=AliasChoices("entity", "entityType", "entity_type"))
    data: Optional[WebhookData] = None
    new_state: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("newState", "new_state"))
    old_state: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("oldState", "old_state"))

    model_config = ConfigDict(extra="allow")

    @property
    def new(self) -> Optional[Dict[str, Any]]:
        if self.new_state is not None:
            return self.new_state
        return self.data.new if self.data else None

    @property
    def old(self) -> Optional[Dict[str, Any]]:
        if self.old_state is not None:
            return self.old_state
        return self.data.old if self.data else None


class WebhookAck(BaseModel):
    success: bool
    message: str
    error: Optional[str] = None
