from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field, StringConstraints

CountryCode = Annotated[str, StringConstraints(strip_whitespace=True, to_upper=True, pattern=r"^[A-Za-z]{2}$")]


class PolicyConfig(BaseModel):
    """Eligibility rules stored with a policy version. Country codes are ISO 3166-1 alpha-2."""

    allowed_countries: list[CountryCode] = Field(default_factory=list)
    blocked_countries: list[CountryCode] = Field(default_factory=list)


class PolicyOut(BaseModel):
    id: str
    version: int
    is_active: bool
    config: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    activated_at: datetime | None = None


class PolicyCreateRequest(BaseModel):
    config: PolicyConfig = Field(default_factory=PolicyConfig)
