"""Source-side domain objects for the membership organisation."""

from __future__ import annotations

import base64
import enum
import hashlib
from dataclasses import dataclass, field
from datetime import date
from typing import Optional


def id_for_email(email: str) -> str:
    """Stable user identifier: unpadded urlsafe base64 of sha256(normalised email)."""
    digest = hashlib.sha256(email.strip().lower().encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class MemberClass(str, enum.Enum):
    REGULAR = "regular"
    LIFETIME = "lifetime"
    COMPLIMENTARY = "complimentary"

    @classmethod
    def parse(cls, value: Optional[str]) -> "MemberClass":
        if not value:
            return cls.REGULAR
        return cls(value.strip().lower())


class MemberType(str, enum.Enum):
    REGULAR = "regular"
    AFFILIATE = "affiliate"

    @classmethod
    def parse(cls, value: Optional[str]) -> "MemberType":
        if not value:
            return cls.REGULAR
        normalised = value.strip().lower()
        if normalised in ("field_home_club", "regular"):
            return cls.REGULAR
        if normalised in ("field_memberships", "affiliate"):
            return cls.AFFILIATE
        raise ValueError(f"unexpected member type {value!r}")


class MemberStatus(str, enum.Enum):
    CURRENT = "current"
    LAPSED = "lapsed"

    @classmethod
    def parse(cls, value) -> "MemberStatus":
        """Accept the source status term ids (947/1099 current, 951 lapsed) or names."""
        if value is None or value == "":
            return cls.CURRENT
        if isinstance(value, str) and not value.strip().isdigit():
            return cls(value.strip().lower())
        code = int(value)
        if code in (947, 1099):
            return cls.CURRENT
        if code == 951:
            return cls.LAPSED
        raise ValueError(f"unexpected member status {value!r}")


class DateFilter(enum.Enum):
    """Leadership date window. AS_OF takes the date as a query argument."""

    CURRENT = "current"
    ALL = "all"
    AS_OF = "as_of"


class LeadershipKind(str, enum.Enum):
    CLUB = "club"
    REGION = "region"
    STANDING_COMMITTEE = "standing_committee"
    INTERNATIONAL = "international"


@dataclass(frozen=True)
class User:
    uid: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    birthday: Optional[date] = None
    phone_mobile: Optional[str] = None
    phone_home: Optional[str] = None
    last_login: Optional[date] = None

    @property
    def id(self) -> str:
        return id_for_email(self.email)


@dataclass(frozen=True)
class Region:
    uid: int
    number: Optional[int] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class Club:
    uid: int
    number: Optional[int] = None
    name: str = ""
    region: Optional[int] = None


@dataclass(frozen=True)
class StandingCommittee:
    uid: int
    name: str
    active: bool = True


@dataclass(frozen=True)
class Address:
    user_uid: Optional[int]
    street_address: Optional[str] = None
    street_address_2: Optional[str] = None
    zip_code: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


@dataclass(frozen=True)
class Role:
    uid: int
    title: str


@dataclass(frozen=True)
class Leadership:
    entity_uid: Optional[int]
    role: Role
    user: User
    start_date: date
    end_date: Optional[date] = None


@dataclass(frozen=True)
class Member:
    primary: User
    local_club: Club
    partner: Optional[User] = None
    member_class: MemberClass = MemberClass.REGULAR
    member_type: MemberType = MemberType.REGULAR
    member_status: MemberStatus = MemberStatus.CURRENT
    expiration_date: Optional[date] = None
    join_date: Optional[date] = None
    brns: tuple[str, ...] = field(default_factory=tuple)


def dedupe_members(members: list[Member]) -> list[Member]:
    """Collapse duplicate memberships per primary email.

    Regular memberships are keyed by email, a later one replacing an
    earlier one. Affiliates whose email already has a regular membership
    are dropped; the remaining affiliates are added, again later wins.
    """
    regulars = [m for m in members if m.member_type != MemberType.AFFILIATE]
    affiliates = [m for m in members if m.member_type == MemberType.AFFILIATE]

    by_email: dict[str, Member] = {m.primary.email: m for m in regulars}
    remaining = [a for a in affiliates if a.primary.email not in by_email]
    for affiliate in remaining:
        by_email[affiliate.primary.email] = affiliate
    return list(by_email.values())
