"""Base models for the chat API: unknown fields are rejected in both directions."""

from pydantic import BaseModel, ConfigDict


class StrictModel(BaseModel):
    """Response DTO base."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class StrictRequestModel(StrictModel):
    """Request DTO base. Bodies are validated as sent; field validators decide on trimming."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True, str_strip_whitespace=False)
