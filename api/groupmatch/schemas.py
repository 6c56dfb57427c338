from typing import Any

from pydantic import BaseModel, Field, field_validator

from .services.domain import Location, Member


class LocationIn(BaseModel):
    zone: str | None = None
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)


class MemberIn(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    age_group: str | None = None
    location: LocationIn | None = None
    family_stage: str | None = None
    gender: str | None = None
    life_stage: str | None = None
    season_interest: str | None = None
    group_interest: str | None = None
    work_from_home: str | None = None
    interests: list[str] = Field(default_factory=list)
    availability: list[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _strip_id(cls, value):
        return value.strip() if isinstance(value, str) else value

    def to_member(self) -> Member:
        location = None
        if self.location is not None:
            location = Location(zone=self.location.zone, lat=self.location.lat, lng=self.location.lng)
        return Member(
            id=self.id,
            age_group=self.age_group,
            location=location,
            family_stage=self.family_stage,
            gender=self.gender,
            life_stage=self.life_stage,
            season_interest=self.season_interest,
            group_interest=self.group_interest,
            work_from_home=self.work_from_home,
            interests=frozenset(t.strip().lower() for t in self.interests if t.strip()),
            availability=frozenset(t.strip().lower() for t in self.availability if t.strip()),
        )


class MemberImportRequest(BaseModel):
    members: list[dict[str, Any]] = Field(default_factory=list)


class SimulateRequest(BaseModel):
    policy_overrides: dict[str, Any] = Field(default_factory=dict)


class GenerateRequest(BaseModel):
    policy: dict[str, Any] | None = None
    force: bool = False


class SimulationResponse(BaseModel):
    eligible_members: int
    potential_groups: int
    waitlist_members: int
    simulation_details: dict[str, Any]


class PolicyTemplate(BaseModel):
    id: str
    name: str
    description: str
    config: dict[str, Any]
