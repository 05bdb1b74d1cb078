from __future__ import annotations

import logging
from datetime import date

from scripts.membersync import tables
from scripts.membersync.models import (
    Address,
    Club,
    Leadership,
    LeadershipKind,
    Member,
    MemberStatus,
    MemberType,
    Region,
    Role,
    User,
    id_for_email,
)
from scripts.membersync.transform import (
    SourceSnapshot,
    brns_from_value,
    build_target_rows,
    leadership_from_row,
    leadership_row,
    member_from_row,
    user_from_row,
)

MEMBER_ROW = {
    "uid": 11,
    "email": "jane@club.org",
    "first_name": "Jane",
    "last_name": "Doe",
    "birthday": date(1980, 4, 2),
    "partner_uid": 12,
    "partner_email": "john@club.org",
    "partner_first_name": "John",
    "member_class": "Regular",
    "member_type": "field_home_club",
    "member_status": 951,
    "club_uid": 300,
    "club_number": 42,
    "club_name": "Harbour",
    "club_region": 7,
    "brns": "B1, B2,",
    "expiration_date": date(2026, 12, 31),
    "join_date": date(2001, 1, 1),
}


def test_member_from_row_builds_nested_member():
    member = member_from_row(MEMBER_ROW)

    assert member.primary == User(
        uid=11, email="jane@club.org", first_name="Jane", last_name="Doe",
        birthday=date(1980, 4, 2),
    )
    assert member.partner.uid == 12
    assert member.partner.first_name == "John"
    assert member.local_club == Club(uid=300, number=42, name="Harbour", region=7)
    assert member.member_status is MemberStatus.LAPSED
    assert member.member_type is MemberType.REGULAR
    assert member.brns == ("B1", "B2")


def test_member_without_partner_or_primary():
    row = dict(MEMBER_ROW, partner_uid=None, partner_email=None)
    assert member_from_row(row).partner is None
    assert member_from_row(dict(MEMBER_ROW, email="")) is None


def test_user_from_row_requires_uid_and_email():
    assert user_from_row({"uid": None, "email": "a@b.c"}) is None
    assert user_from_row({"uid": 1, "email": "  "}) is None


def test_brns_from_value():
    assert brns_from_value(None) == ()
    assert brns_from_value("X9") == ("X9",)


def test_leadership_from_row_requires_role_and_start():
    row = {
        "entity_uid": 300, "role_uid": 5, "role_title": "President",
        "start_date": date(2024, 7, 1), "end_date": None,
        "uid": 11, "email": "jane@club.org",
    }

    lead = leadership_from_row(row)

    assert lead.role == Role(5, "President")
    assert lead.entity_uid == 300
    assert leadership_from_row(dict(row, start_date=None)) is None
    assert leadership_from_row(dict(row, role_uid=None)) is None


def test_leadership_row_sets_holder_column_per_kind():
    lead = Leadership(300, Role(5, "President"), User(11, "jane@club.org"), date(2024, 7, 1))

    club = leadership_row(LeadershipKind.CLUB, lead)
    international = leadership_row(LeadershipKind.INTERNATIONAL, lead)

    assert club["club"] == 300
    assert club["user_id"] == id_for_email("jane@club.org")
    assert "club" not in international
    assert set(international) == set(tables.LEADERSHIP_INTERNATIONAL.columns)


def test_build_target_rows(caplog):
    member = member_from_row(MEMBER_ROW)
    leader = User(20, "lead@club.org")
    lead = Leadership(300, Role(5, "President"), leader, date(2024, 7, 1))
    snapshot = SourceSnapshot(
        regions=[Region(uid=70, number=7, name="North"), Region(uid=71, number=None)],
        clubs=[member.local_club],
        members=[member],
        addresses={11: Address(user_uid=11, zip_code="1234", country="NO")},
        leadership={LeadershipKind.CLUB: [lead]},
    )

    with caplog.at_level(logging.WARNING, logger="membersync.transform"):
        rows = build_target_rows(snapshot)

    assert rows["regions"] == [{"number": 7, "uid": 70, "name": "North"}]
    assert "uid=71" in caplog.text
    assert {r["uid"] for r in rows["users"]} == {11, 12, 20}
    assert rows["members"][0]["primary_user"] == id_for_email("jane@club.org")
    assert rows["members"][0]["partner_user"] == id_for_email("john@club.org")
    assert rows["members"][0]["local_club"] == 42
    assert rows["members"][0]["member_status"] == "lapsed"
    assert [r["number"] for r in rows["brns"]] == ["B1", "B2"]
    assert rows["addresses"][0]["user_id"] == id_for_email("jane@club.org")
    assert rows["leadership_role"] == [{"uid": 5, "title": "President"}]
    assert rows["leadership_club"][0]["club"] == 300
    assert rows["leadership_region"] == []
    assert set(rows) == set(tables.ALL_TABLES)


def test_build_target_rows_rows_fit_table_columns():
    member = Member(primary=User(1, "a@x.org"), local_club=Club(uid=2, number=3))

    rows = build_target_rows(SourceSnapshot(members=[member], clubs=[member.local_club]))

    for name, table_rows in rows.items():
        for row in table_rows:
            assert set(row) == set(tables.ALL_TABLES[name].columns)
