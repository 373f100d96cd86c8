"""Pydantic model for A2A negotiation tasks."""

from __future__ import annotations

from typing import Any, Dict, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

TaskStatus = Union[str, Dict[str, Any]]


class NegotiationTask(BaseModel):
    """A unit of agent work; unknown A2A fields are carried verbatim."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    status: TaskStatus = "submitted"
    context_id: Optional[str] = Field(default=None, alias="contextId")
    kind: str = "task"

    @property
    def status_label(self) -> Optional[str]:
        """Plain state label, whether the status is a label or structured."""

        if isinstance(self.status, str):
            return self.status
        state = self.status.get("state")
        return state if isinstance(state, str) else None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
