"""
Model arbitration output schema and tagged results.

Model output is never trusted as-is: it is validated into ``ArbiterOutput``
every time it is used and wrapped in a result tagged ``ok``,
``schema_invalid`` or ``error``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

ARBITER_SCHEMA_VERSION = "arbiter-v2"


class ArbiterOutput(BaseModel):
    winning_item_id: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    resolution_strategy: Literal["hierarchy", "temporal", "specificity", "conservative"]
    rationale: str
    requires_human_review: bool = False
    human_review_reason: str | None = None


class AgentOk(BaseModel):
    status: Literal["ok"] = "ok"
    output: ArbiterOutput
    schema_version: str = ARBITER_SCHEMA_VERSION
    from_cache: bool = False


class AgentSchemaInvalid(BaseModel):
    status: Literal["schema_invalid"] = "schema_invalid"
    errors: list[str]
    raw: dict[str, Any] | None = None


class AgentError(BaseModel):
    status: Literal["error"] = "error"
    error: str


AgentResult = Annotated[
    Union[AgentOk, AgentSchemaInvalid, AgentError],
    Field(discriminator="status"),
]
