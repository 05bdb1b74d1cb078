"""Project members onto audience records and membership tags."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from scripts.membersync.mailchimp.members import (
    AudienceMember,
    TagUpdate,
    is_valid_email,
    member_id,
)
from scripts.membersync.mailchimp.merge_fields import MergeFields
from scripts.membersync.models import (
    Address,
    Member,
    MemberClass,
    MemberStatus,
    MemberType,
    User,
)


def _values(merge_fields: MergeFields, pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for tag, value in pairs:
        formatted = merge_fields.to_value(tag, value)
        if formatted is not None:
            out[formatted[0]] = formatted[1]
    return out


def _to_member(
    member: Member, address: Optional[Address], user: User, merge_fields: MergeFields
) -> AudienceMember:
    pairs: list[tuple[str, Any]] = [
        ("FNAME", user.first_name),
        ("LNAME", user.last_name),
        ("UID", user.uid),
        ("BDAY", user.birthday),
        ("LLOGIN", user.last_login),
        ("JOIN", member.join_date),
        ("EXPIRE", member.expiration_date),
        ("BRN", member.brns[0] if member.brns else None),
        ("CLUB", member.local_club.name or None),
        ("CLUB_NR", member.local_club.number),
        ("REGION", member.local_club.region),
    ]
    if address is not None:
        pairs += [
            ("ZIP", address.zip_code),
            ("STATE", address.state),
            ("COUNTRY", address.country),
        ]
    return AudienceMember(email_address=user.email, merge_fields=_values(merge_fields, pairs))


def to_members(
    member: Member, address: Optional[Address], merge_fields: MergeFields
) -> list[AudienceMember]:
    """Primary and partner audience records; invalid addresses are left out."""
    result = []
    if member.partner is not None and is_valid_email(member.partner.email):
        partner = _to_member(member, address, member.partner, merge_fields)
        primary_value = merge_fields.to_value("PRIMARY", member.primary.email)
        if primary_value is not None:
            partner.merge_fields[primary_value[0]] = primary_value[1]
        result.append(partner)
    if is_valid_email(member.primary.email):
        result.append(_to_member(member, address, member.primary, merge_fields))
    return result


def to_audience(
    members: list[Member], addresses: Mapping[int, Address], merge_fields: MergeFields
) -> list[AudienceMember]:
    return [
        audience_member
        for member in members
        for audience_member in to_members(member, addresses.get(member.primary.uid), merge_fields)
    ]


def member_tags(member: Member) -> list[TagUpdate]:
    return [
        TagUpdate("affiliate", member.member_type == MemberType.AFFILIATE),
        TagUpdate("member", member.member_type == MemberType.REGULAR),
        TagUpdate("lifetime", member.member_class == MemberClass.LIFETIME),
        TagUpdate("lapsed", member.member_status == MemberStatus.LAPSED),
    ]


def to_tag_updates(members: list[Member]) -> list[tuple[str, list[TagUpdate]]]:
    """(member id, tags) for the primary and partner of every member."""
    updates = []
    for member in members:
        tags = member_tags(member)
        if is_valid_email(member.primary.email):
            updates.append((member_id(member.primary.email), tags))
        if member.partner is not None and is_valid_email(member.partner.email):
            updates.append((member_id(member.partner.email), tags))
    return updates
