import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint, func

from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class MatchingPolicyRow(Base):
    __tablename__ = "matching_policy"

    id = Column(String(36), primary_key=True, default=_uuid)
    zone_id = Column(String, nullable=False, unique=True)
    config = Column(JSON, nullable=False)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CommunityMember(Base):
    __tablename__ = "community_member"

    id = Column(String(36), primary_key=True, default=_uuid)
    zone_id = Column(String, nullable=False)
    member_id = Column(String, nullable=False)
    age_group = Column(String, nullable=True)
    family_stage = Column(String, nullable=True)
    gender = Column(String, nullable=True)
    life_stage = Column(String, nullable=True)
    season_interest = Column(String, nullable=True)
    group_interest = Column(String, nullable=True)
    work_from_home = Column(String, nullable=True)
    location_zone = Column(String, nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    interests = Column(JSON, nullable=False, default=list)
    availability = Column(JSON, nullable=False, default=list)
    active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("zone_id", "member_id", name="uq_community_member_zone_member"),
        Index("idx_community_member_zone", "zone_id"),
    )


class MatchRun(Base):
    __tablename__ = "match_run"

    id = Column(String(36), primary_key=True, default=_uuid)
    zone_id = Column(String, nullable=False)
    fingerprint = Column(String(64), nullable=False)
    policy_snapshot = Column(JSON, nullable=False)
    groups_created = Column(Integer, nullable=False, default=0)
    members_matched = Column(Integer, nullable=False, default=0)
    waitlist = Column(JSON, nullable=False, default=list)
    excluded_members = Column(JSON, nullable=False, default=dict)
    diagnostics = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("idx_match_run_zone_created", "zone_id", "created_at"),)


class MatchGroup(Base):
    __tablename__ = "match_group"

    id = Column(String(36), primary_key=True, default=_uuid)
    run_id = Column(String(36), ForeignKey("match_run.id", ondelete="CASCADE"), nullable=False)
    zone_id = Column(String, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="draft")
    compatibility_score = Column(Float, nullable=False)
    target_size = Column(Integer, nullable=False)
    partial = Column(Boolean, nullable=False, default=False)
    relaxed = Column(Boolean, nullable=False, default=False)
    breakdown = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("idx_match_group_zone", "zone_id"),)


class MatchGroupMember(Base):
    __tablename__ = "match_group_member"

    id = Column(String(36), primary_key=True, default=_uuid)
    group_id = Column(String(36), ForeignKey("match_group.id", ondelete="CASCADE"), nullable=False)
    member_id = Column(String, nullable=False)
    position = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("group_id", "member_id", name="uq_match_group_member"),
        Index("idx_match_group_member_group", "group_id"),
    )
