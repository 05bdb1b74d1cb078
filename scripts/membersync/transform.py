"""Entity transformer: flat source rows -> domain objects -> target rows.

Builder functions turn the joined rows returned by the source queries into
nested domain objects. Row mappers turn domain objects into dicts keyed by
destination column (see tables.py).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from scripts.membersync import tables
from scripts.membersync.models import (
    Address,
    Club,
    Leadership,
    LeadershipKind,
    Member,
    MemberClass,
    MemberStatus,
    MemberType,
    Region,
    Role,
    StandingCommittee,
    User,
)

logger = logging.getLogger("membersync.transform")

SourceRow = Mapping[str, Any]


# ----------------------------------------------------------------------
# Row builders
# ----------------------------------------------------------------------


def user_from_row(row: SourceRow, prefix: str = "") -> Optional[User]:
    """Build a User from columns named ``{prefix}uid``, ``{prefix}email``, ..."""
    uid = row.get(f"{prefix}uid")
    email = (row.get(f"{prefix}email") or "").strip()
    if uid is None or not email:
        return None
    return User(
        uid=int(uid),
        email=email,
        first_name=row.get(f"{prefix}first_name"),
        last_name=row.get(f"{prefix}last_name"),
        birthday=row.get(f"{prefix}birthday"),
        phone_mobile=row.get(f"{prefix}phone_mobile"),
        phone_home=row.get(f"{prefix}phone_home"),
        last_login=row.get(f"{prefix}last_login"),
    )


def partner_from_row(row: SourceRow) -> Optional[User]:
    return user_from_row(row, prefix="partner_")


def club_from_row(row: SourceRow, prefix: str = "") -> Club:
    number = row.get(f"{prefix}number")
    region = row.get(f"{prefix}region")
    return Club(
        uid=int(row.get(f"{prefix}uid") or 0),
        number=int(number) if number is not None else None,
        name=row.get(f"{prefix}name") or "",
        region=int(region) if region is not None else None,
    )


def region_from_row(row: SourceRow) -> Region:
    number = row.get("number")
    return Region(
        uid=int(row["uid"]),
        number=int(number) if number is not None else None,
        name=row.get("name"),
    )


def standing_committee_from_row(row: SourceRow) -> StandingCommittee:
    return StandingCommittee(uid=int(row["uid"]), name=row["name"], active=bool(row["active"]))


def role_from_row(row: SourceRow) -> Role:
    return Role(uid=int(row["role_uid"]), title=row["role_title"])


def brns_from_value(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def member_from_row(row: SourceRow) -> Optional[Member]:
    """None when the row has no resolvable primary user."""
    primary = user_from_row(row)
    if primary is None:
        return None
    return Member(
        primary=primary,
        partner=partner_from_row(row),
        local_club=club_from_row(row, prefix="club_"),
        member_class=MemberClass.parse(row.get("member_class")),
        member_type=MemberType.parse(row.get("member_type")),
        member_status=MemberStatus.parse(row.get("member_status")),
        expiration_date=row.get("expiration_date"),
        join_date=row.get("join_date"),
        brns=brns_from_value(row.get("brns")),
    )


def leadership_from_row(row: SourceRow) -> Optional[Leadership]:
    user = user_from_row(row)
    if user is None or row.get("role_uid") is None or row.get("start_date") is None:
        return None
    entity_uid = row.get("entity_uid")
    return Leadership(
        entity_uid=int(entity_uid) if entity_uid is not None else None,
        role=role_from_row(row),
        user=user,
        start_date=row["start_date"],
        end_date=row.get("end_date"),
    )


def address_from_row(row: SourceRow) -> Address:
    user_uid = row.get("user_id")
    return Address(
        user_uid=int(user_uid) if user_uid is not None else None,
        street_address=row.get("street_address"),
        street_address_2=row.get("street_address_2"),
        zip_code=row.get("zip_code"),
        city=row.get("city"),
        state=row.get("state"),
        country=row.get("country"),
    )


# ----------------------------------------------------------------------
# Target row mappers
# ----------------------------------------------------------------------


def user_row(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "uid": user.uid,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "birthday": user.birthday,
        "phone_mobile": user.phone_mobile,
        "phone_home": user.phone_home,
        "last_login": user.last_login,
    }


def region_row(region: Region) -> dict[str, Any]:
    return {"number": region.number, "uid": region.uid, "name": region.name}


def club_row(club: Club) -> dict[str, Any]:
    return {"number": club.number, "uid": club.uid, "name": club.name, "region": club.region}


def standing_committee_row(committee: StandingCommittee) -> dict[str, Any]:
    return {"uid": committee.uid, "name": committee.name, "active": committee.active}


def member_row(member: Member) -> dict[str, Any]:
    return {
        "primary_user": member.primary.id,
        "partner_user": member.partner.id if member.partner else None,
        "member_class": member.member_class.value,
        "member_type": member.member_type.value,
        "member_status": member.member_status.value,
        "expiration_date": member.expiration_date,
        "join_date": member.join_date,
        "local_club": member.local_club.number,
    }


def address_row(address: Address, member: Member) -> dict[str, Any]:
    return {
        "user_id": member.primary.id,
        "street_address": address.street_address,
        "street_address_2": address.street_address_2,
        "zip_code": address.zip_code,
        "city": address.city,
        "state": address.state,
        "country": address.country,
    }


def brn_rows(member: Member) -> list[dict[str, Any]]:
    return [{"number": number, "user_id": member.primary.id} for number in member.brns]


def role_row(role: Role) -> dict[str, Any]:
    return {"uid": role.uid, "title": role.title}


_HOLDER_COLUMN = {
    LeadershipKind.CLUB: "club",
    LeadershipKind.REGION: "region",
    LeadershipKind.STANDING_COMMITTEE: "standing_committee",
}


def leadership_row(kind: LeadershipKind, leadership: Leadership) -> dict[str, Any]:
    row: dict[str, Any] = {
        "user_id": leadership.user.id,
        "role": leadership.role.uid,
        "start_date": leadership.start_date,
        "end_date": leadership.end_date,
    }
    holder = _HOLDER_COLUMN.get(kind)
    if holder:
        row[holder] = leadership.entity_uid
    return row


LEADERSHIP_TABLES = {
    LeadershipKind.CLUB: tables.LEADERSHIP_CLUB.name,
    LeadershipKind.REGION: tables.LEADERSHIP_REGION.name,
    LeadershipKind.STANDING_COMMITTEE: tables.LEADERSHIP_STANDING_COMMITTEE.name,
    LeadershipKind.INTERNATIONAL: tables.LEADERSHIP_INTERNATIONAL.name,
}


# ----------------------------------------------------------------------
# Snapshot assembly
# ----------------------------------------------------------------------


def collect_users(
    members: Iterable[Member], leadership: Iterable[Leadership]
) -> list[User]:
    """Unique by uid across member primaries, partners and leaders; first wins."""
    users: dict[int, User] = {}
    for member in members:
        users.setdefault(member.primary.uid, member.primary)
        if member.partner:
            users.setdefault(member.partner.uid, member.partner)
    for lead in leadership:
        users.setdefault(lead.user.uid, lead.user)
    return list(users.values())


def collect_roles(leadership: Iterable[Leadership]) -> list[Role]:
    roles: dict[int, Role] = {}
    for lead in leadership:
        roles.setdefault(lead.role.uid, lead.role)
    return list(roles.values())


@dataclass
class SourceSnapshot:
    """Everything fetched from the source for one pass."""

    regions: list[Region] = field(default_factory=list)
    clubs: list[Club] = field(default_factory=list)
    standing_committees: list[StandingCommittee] = field(default_factory=list)
    members: list[Member] = field(default_factory=list)
    addresses: dict[int, Address] = field(default_factory=dict)
    leadership: dict[LeadershipKind, list[Leadership]] = field(default_factory=dict)


def _numbered(items: Iterable, entity_type: str) -> list:
    kept = []
    for item in items:
        if item.number is None:
            logger.warning(
                "Skipping %s uid=%s without a number", entity_type, item.uid,
                extra={"entity_type": entity_type, "missing_key": item.uid},
            )
            continue
        kept.append(item)
    return kept


def build_target_rows(snapshot: SourceSnapshot) -> dict[str, list[dict[str, Any]]]:
    """Map a source snapshot to target rows keyed by destination table name."""
    all_leadership = [lead for leads in snapshot.leadership.values() for lead in leads]

    rows: dict[str, list[dict[str, Any]]] = {
        tables.REGIONS.name: [region_row(r) for r in _numbered(snapshot.regions, "regions")],
        tables.CLUBS.name: [club_row(c) for c in _numbered(snapshot.clubs, "clubs")],
        tables.STANDING_COMMITTEES.name: [
            standing_committee_row(sc) for sc in snapshot.standing_committees
        ],
        tables.USERS.name: [user_row(u) for u in collect_users(snapshot.members, all_leadership)],
        tables.LEADERSHIP_ROLE.name: [role_row(r) for r in collect_roles(all_leadership)],
        tables.MEMBERS.name: [member_row(m) for m in snapshot.members],
        tables.BRNS.name: [row for m in snapshot.members for row in brn_rows(m)],
        tables.ADDRESSES.name: [
            address_row(snapshot.addresses[m.primary.uid], m)
            for m in snapshot.members
            if m.primary.uid in snapshot.addresses
        ],
    }
    for kind, table_name in LEADERSHIP_TABLES.items():
        rows[table_name] = [
            leadership_row(kind, lead) for lead in snapshot.leadership.get(kind, [])
        ]
    return rows
