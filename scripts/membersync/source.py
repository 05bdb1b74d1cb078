"""Snapshot fetcher: read-only queries against the source MySQL database."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from typing import Any, Generator, Iterable, Optional
from urllib.parse import unquote, urlsplit

import pymysql
import pymysql.cursors

from scripts.membersync.config import SourceConfig
from scripts.membersync.errors import ConfigurationError
from scripts.membersync.models import (
    Address,
    Club,
    DateFilter,
    Leadership,
    LeadershipKind,
    Member,
    Region,
    StandingCommittee,
    User,
    dedupe_members,
)
from scripts.membersync.transform import (
    address_from_row,
    club_from_row,
    leadership_from_row,
    member_from_row,
    region_from_row,
    standing_committee_from_row,
    user_from_row,
)

logger = logging.getLogger("membersync.source")

REGIONS_QUERY = """
    SELECT region.entity_id AS uid,
           region.field_region_number_value AS number,
           fields.title AS name
    FROM node__field_region_number region
    INNER JOIN node_field_data fields ON fields.nid = region.entity_id
"""

CLUBS_QUERY = """
    SELECT DISTINCT pc.field_club_target_id AS uid,
           cn.field_club_number_value AS number,
           nd.title AS name,
           rn.field_region_number_value AS region
    FROM paragraph__field_club pc
    LEFT JOIN node__field_club_number cn ON cn.entity_id = pc.field_club_target_id
    LEFT JOIN node_field_data nd ON nd.nid = pc.field_club_target_id
    INNER JOIN node__field_region nr ON nr.entity_id = cn.entity_id
    INNER JOIN node__field_region_number rn ON rn.entity_id = nr.field_region_target_id
"""

STANDING_COMMITTEES_QUERY = """
    SELECT nd.nid AS uid, nd.title AS name, nd.status AS active
    FROM node_field_data nd
    WHERE nd.type = 'ssp_standing_committees'
"""

USER_QUERY = """
    SELECT DISTINCT u.uid AS uid,
           u.mail AS email,
           fn.field_first_name_value AS first_name,
           ln.field_last_name_value AS last_name,
           CAST(bd.field_birth_date_value AS DATE) AS birthday,
           DATE(FROM_UNIXTIME(u.login)) AS last_login
    FROM users_field_data u
    LEFT JOIN user__field_first_name fn ON fn.entity_id = u.uid
    LEFT JOIN user__field_last_name ln ON ln.entity_id = u.uid
    LEFT JOIN user__field_birth_date bd ON bd.entity_id = u.uid
    WHERE u.mail IS NOT NULL
"""

# Active membership paragraphs, one row per member, flattened with the
# partner, the home club and its region, and the comma separated BRNs.
MEMBERS_QUERY = """
    SELECT u.uid AS uid,
           md.email AS email,
           md.first_name AS first_name,
           md.last_name AS last_name,
           CAST(md.birthdate AS DATE) AS birthday,
           DATE(FROM_UNIXTIME(u.login)) AS last_login,
           CAST(md.partner_user_id AS UNSIGNED) AS partner_uid,
           md.partner_email AS partner_email,
           md.partner_first_name AS partner_first_name,
           md.partner_last_name AS partner_last_name,
           CAST(md.partner_birthdate AS DATE) AS partner_birthday,
           IF(classterm.name IS NULL, 'Regular', classterm.name) AS member_class,
           p.parent_field_name AS member_type,
           md.personal_status_id AS member_status,
           club.nid AS club_uid,
           CAST(cnum.field_club_number_value AS SIGNED) AS club_number,
           club.title AS club_name,
           rnum.field_region_number_value AS club_region,
           brns.brns_values AS brns,
           CAST(md.membership_expire AS DATE) AS expiration_date,
           CAST(md.membership_join_year AS DATE) AS join_date
    FROM paragraphs_item_field_data p
    INNER JOIN paragraph__field_club pc ON pc.entity_id = p.id AND pc.deleted = '0'
    INNER JOIN node_field_data club ON club.nid = pc.field_club_target_id
    LEFT JOIN node__field_club_number cnum ON cnum.entity_id = club.nid
    LEFT JOIN node__field_region creg ON creg.entity_id = club.nid AND creg.deleted = '0'
    LEFT JOIN node__field_region_number rnum ON rnum.entity_id = creg.field_region_target_id
    LEFT JOIN paragraph__field_join_date jd ON jd.entity_id = p.id AND jd.deleted = '0'
    LEFT JOIN paragraph__field_leave_date lv ON lv.entity_id = p.id AND lv.deleted = '0'
    INNER JOIN users_field_data u ON u.uid = p.parent_id
    INNER JOIN z_member_search_main md ON md.user_id = u.uid
    INNER JOIN ssp_membership_international_membership im ON im.user_id = u.uid
    LEFT JOIN paragraph__field_membership_class mclass ON mclass.entity_id = im.paragraph_id
    LEFT JOIN taxonomy_term_field_data classterm ON classterm.tid = mclass.field_membership_class_target_id
    LEFT JOIN user__field_primary_member pm ON pm.entity_id = u.uid
    LEFT JOIN v_brns brns ON brns.user_id = u.uid
    WHERE p.status = '1'
      AND p.type = 'membership'
      AND md.personal_status_id IN ('947', '951', '1099')
      AND jd.field_join_date_value IS NOT NULL
      AND CAST(jd.field_join_date_value AS DATE) <= NOW()
      AND lv.field_leave_date_value IS NOT NULL
      AND CAST(lv.field_leave_date_value AS DATE) >= DATE_SUB(NOW(), INTERVAL 1 YEAR)
      AND pm.field_primary_member_target_id IS NULL
"""

MAILING_ADDRESS_QUERY = """
    SELECT ua.entity_id AS user_id,
           addr.field_address_value AS street_address,
           addr2.field_street_address_2_value AS street_address_2,
           zip.field_zip_code_value AS zip_code,
           city.field_city_value AS city,
           state.field_state_name_value AS state,
           country.field_country_value AS country
    FROM paragraph__field_use_as_mailing_address mail
    INNER JOIN user__field_address ua ON ua.field_address_target_id = mail.entity_id
    INNER JOIN paragraph__field_address addr ON addr.entity_id = mail.entity_id
    LEFT JOIN paragraph__field_street_address_2 addr2 ON addr2.entity_id = mail.entity_id
    LEFT JOIN paragraph__field_zip_code zip ON zip.entity_id = mail.entity_id
    LEFT JOIN paragraph__field_city city ON city.entity_id = mail.entity_id
    LEFT JOIN paragraph__field_state_name state ON state.entity_id = mail.entity_id
    LEFT JOIN paragraph__field_country country ON country.entity_id = mail.entity_id
    WHERE mail.field_use_as_mailing_address_value = 1
"""

LEADERSHIP_QUERY = """
    SELECT entity.nid AS entity_uid,
           role_term.tid AS role_uid,
           role_term.name AS role_title,
           DATE(start.field_start_date_value) AS start_date,
           DATE(end.field_end_date_value) AS end_date,
           usr.uid AS uid,
           COALESCE(md.email, usr.mail) AS email,
           ufn.field_first_name_value AS first_name,
           uln.field_last_name_value AS last_name,
           CAST(ubd.field_birth_date_value AS DATE) AS birthday,
           DATE(FROM_UNIXTIME(usr.login)) AS last_login
    FROM node_field_data entity
    JOIN node__field_leadership_ssp l ON l.entity_id = entity.nid AND l.deleted = '0'
    JOIN paragraphs_item_field_data p ON p.id = l.field_leadership_ssp_target_id
    LEFT JOIN paragraph__field_role r ON r.entity_id = p.id AND r.deleted = '0'
    LEFT JOIN taxonomy_term_field_data role_term ON role_term.tid = r.field_role_target_id
    LEFT JOIN paragraph__field_start_date start ON start.entity_id = p.id AND start.deleted = '0'
    LEFT JOIN paragraph__field_end_date end ON end.entity_id = p.id AND end.deleted = '0'
    LEFT JOIN paragraph__field_user u ON u.entity_id = p.id AND u.deleted = '0'
    LEFT JOIN paragraph__field_member m ON m.entity_id = p.id AND m.deleted = '0'
    JOIN users_field_data usr ON usr.uid = COALESCE(u.field_user_target_id, m.field_member_target_id)
    LEFT JOIN z_member_search_main md ON md.user_id = usr.uid
    LEFT JOIN user__field_first_name ufn ON ufn.entity_id = usr.uid
    LEFT JOIN user__field_last_name uln ON uln.entity_id = usr.uid
    LEFT JOIN user__field_birth_date ubd ON ubd.entity_id = usr.uid
    WHERE start.field_start_date_value IS NOT NULL
      AND entity.type = %s
"""

LEADERSHIP_NODE_TYPES = {
    LeadershipKind.CLUB: "ssp_club",
    LeadershipKind.REGION: "ssp_region",
    LeadershipKind.STANDING_COMMITTEE: "ssp_standing_committees",
    LeadershipKind.INTERNATIONAL: "ssp_international_leadership",
}


def _connect_args(url: str) -> dict[str, Any]:
    parts = urlsplit(url)
    if parts.scheme not in ("mysql", "mysql+pymysql", "mariadb"):
        raise ConfigurationError(f"unsupported source database scheme {parts.scheme!r}")
    return {
        "host": parts.hostname or "localhost",
        "port": parts.port or 3306,
        "user": unquote(parts.username or ""),
        "password": unquote(parts.password or ""),
        "database": parts.path.lstrip("/"),
    }


class SourceDatabase:
    """Opens one PyMySQL connection per call so worker threads never share one."""

    def __init__(self, config: SourceConfig) -> None:
        self._connect_args = _connect_args(config.url)
        self._connect_timeout = config.connect_timeout

    @contextmanager
    def cursor(self) -> Generator:
        conn = pymysql.connect(
            **self._connect_args,
            connect_timeout=self._connect_timeout,
            cursorclass=pymysql.cursors.DictCursor,
            charset="utf8mb4",
        )
        try:
            with conn.cursor() as cur:
                yield cur
        finally:
            conn.close()

    def _fetch_all(self, sql: str, args: Optional[tuple] = None) -> list[dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(sql, args)
            return list(cur.fetchall())

    def _fetch_one(self, sql: str, args: tuple) -> Optional[dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(sql, args)
            return cur.fetchone()

    # -- organisational units ------------------------------------------

    def regions(self) -> list[Region]:
        return [region_from_row(r) for r in self._fetch_all(REGIONS_QUERY)]

    def region_by_uid(self, uid: int) -> Optional[Region]:
        row = self._fetch_one(REGIONS_QUERY + " WHERE region.entity_id = %s", (uid,))
        return region_from_row(row) if row else None

    def clubs(self) -> list[Club]:
        return [club_from_row(r) for r in self._fetch_all(CLUBS_QUERY)]

    def club_by_uid(self, uid: int) -> Optional[Club]:
        row = self._fetch_one(CLUBS_QUERY + " WHERE pc.field_club_target_id = %s", (uid,))
        return club_from_row(row) if row else None

    def club_by_number(self, number: int) -> Optional[Club]:
        row = self._fetch_one(CLUBS_QUERY + " WHERE cn.field_club_number_value = %s", (number,))
        return club_from_row(row) if row else None

    def standing_committees(self) -> list[StandingCommittee]:
        return [standing_committee_from_row(r) for r in self._fetch_all(STANDING_COMMITTEES_QUERY)]

    def standing_committee_by_uid(self, uid: int) -> Optional[StandingCommittee]:
        row = self._fetch_one(STANDING_COMMITTEES_QUERY + " AND nd.nid = %s", (uid,))
        return standing_committee_from_row(row) if row else None

    # -- people -----------------------------------------------------------

    def user_by_uid(self, uid: int) -> Optional[User]:
        row = self._fetch_one(USER_QUERY + " AND u.uid = %s", (uid,))
        return user_from_row(row) if row else None

    def user_by_email(self, email: str) -> Optional[User]:
        row = self._fetch_one(USER_QUERY + " AND u.mail = %s", (email,))
        return user_from_row(row) if row else None

    def _members(self, extra_where: str = "", args: tuple = ()) -> list[Member]:
        rows = self._fetch_all(MEMBERS_QUERY + extra_where, args or None)
        members = []
        for row in rows:
            member = member_from_row(row)
            if member is None:
                logger.debug("Skipping membership without primary user: uid=%s", row.get("uid"))
                continue
            members.append(member)
        return dedupe_members(members)

    def members(self) -> list[Member]:
        """Members by home club."""
        return self._members(" AND p.parent_field_name = 'field_home_club'")

    def members_by_club(self, club_uid: int) -> list[Member]:
        return self._members(" AND club.nid = %s", (club_uid,))

    def members_by_region(self, region_uid: int) -> list[Member]:
        return self._members(" AND creg.field_region_target_id = %s", (region_uid,))

    def member_by_email(self, email: str) -> Optional[Member]:
        members = self._members(" AND md.email = %s", (email,))
        return members[0] if members else None

    def mailing_addresses(self, user_uids: Optional[Iterable[int]] = None) -> dict[int, Address]:
        """Mailing addresses keyed by user uid; all users when uids is None."""
        if user_uids is None:
            rows = self._fetch_all(MAILING_ADDRESS_QUERY)
        else:
            uids = sorted(set(user_uids))
            if not uids:
                return {}
            placeholders = ", ".join(["%s"] * len(uids))
            rows = self._fetch_all(
                MAILING_ADDRESS_QUERY + f" AND ua.entity_id IN ({placeholders})",
                tuple(uids),
            )
        addresses = (address_from_row(r) for r in rows)
        return {a.user_uid: a for a in addresses if a.user_uid is not None}

    # -- leadership -------------------------------------------------------

    def leadership(
        self,
        kind: LeadershipKind,
        date_filter: DateFilter = DateFilter.CURRENT,
        as_of: Optional[date] = None,
        entity_uid: Optional[int] = None,
    ) -> list[Leadership]:
        sql = LEADERSHIP_QUERY
        args: list[Any] = [LEADERSHIP_NODE_TYPES[kind]]
        if date_filter is DateFilter.CURRENT:
            sql += (
                " AND DATE(start.field_start_date_value) <= CURRENT_DATE"
                " AND (end.field_end_date_value IS NULL"
                " OR DATE(end.field_end_date_value) >= CURRENT_DATE)"
            )
        elif date_filter is DateFilter.AS_OF:
            if as_of is None:
                raise ValueError("as_of date required for DateFilter.AS_OF")
            sql += (
                " AND DATE(start.field_start_date_value) <= %s"
                " AND (end.field_end_date_value IS NULL"
                " OR DATE(end.field_end_date_value) >= %s)"
            )
            args.extend([as_of, as_of])
        if entity_uid is not None:
            sql += " AND entity.nid = %s"
            args.append(entity_uid)

        results = []
        for row in self._fetch_all(sql, tuple(args)):
            lead = leadership_from_row(row)
            if lead is None:
                logger.debug("Skipping incomplete %s leadership row", kind.value)
                continue
            results.append(lead)
        return results
