"""Destination table layouts and their natural keys."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

Row = Mapping[str, Any]


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: tuple[str, ...]
    key_columns: tuple[str, ...]

    @property
    def update_columns(self) -> tuple[str, ...]:
        return tuple(c for c in self.columns if c not in self.key_columns)

    def key_of(self, row: Row) -> tuple:
        return tuple(row[c] for c in self.key_columns)

    def values(self, row: Row) -> tuple:
        return tuple(row.get(c) for c in self.columns)


USERS = TableSpec(
    "users",
    ("id", "uid", "email", "first_name", "last_name", "birthday",
     "phone_mobile", "phone_home", "last_login"),
    ("id",),
)
REGIONS = TableSpec("regions", ("number", "uid", "name"), ("number",))
CLUBS = TableSpec("clubs", ("number", "uid", "name", "region"), ("number",))
STANDING_COMMITTEES = TableSpec(
    "standing_committees", ("uid", "name", "active"), ("uid",)
)
ADDRESSES = TableSpec(
    "addresses",
    ("user_id", "street_address", "street_address_2", "zip_code", "city",
     "state", "country"),
    ("user_id",),
)
BRNS = TableSpec("brns", ("number", "user_id"), ("number",))
MEMBERS = TableSpec(
    "members",
    ("primary_user", "partner_user", "member_class", "member_type",
     "member_status", "expiration_date", "join_date", "local_club"),
    ("primary_user",),
)
LEADERSHIP_ROLE = TableSpec("leadership_role", ("uid", "title"), ("uid",))
LEADERSHIP_CLUB = TableSpec(
    "leadership_club",
    ("club", "user_id", "role", "start_date", "end_date"),
    ("club", "user_id", "role", "start_date"),
)
LEADERSHIP_REGION = TableSpec(
    "leadership_region",
    ("region", "user_id", "role", "start_date", "end_date"),
    ("region", "user_id", "role", "start_date"),
)
LEADERSHIP_STANDING_COMMITTEE = TableSpec(
    "leadership_standing_committee",
    ("standing_committee", "user_id", "role", "start_date", "end_date"),
    ("standing_committee", "user_id", "role", "start_date"),
)
LEADERSHIP_INTERNATIONAL = TableSpec(
    "leadership_international",
    ("user_id", "role", "start_date", "end_date"),
    ("user_id", "role", "start_date"),
)

ALL_TABLES: dict[str, TableSpec] = {
    spec.name: spec
    for spec in (
        USERS, REGIONS, CLUBS, STANDING_COMMITTEES, ADDRESSES, BRNS, MEMBERS,
        LEADERSHIP_ROLE, LEADERSHIP_CLUB, LEADERSHIP_REGION,
        LEADERSHIP_STANDING_COMMITTEE, LEADERSHIP_INTERNATIONAL,
    )
}
