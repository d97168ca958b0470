"""Schema baselines that reject unknown fields."""

from pydantic import BaseModel, ConfigDict


class StrictModel(BaseModel):
    """Base for result DTOs returned by services."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class StrictRequestModel(StrictModel):
    """Base for inbound command DTOs."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True, str_strip_whitespace=True)
