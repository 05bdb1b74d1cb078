"""Audience merge-field schemas: YAML declarations and remote three-way sync."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import yaml

from scripts.membersync.errors import ConfigurationError, MergeFieldTagError
from scripts.membersync.mailchimp.client import Client
from scripts.membersync.mailchimp.retry import RetryPolicy

logger = logging.getLogger("membersync.mailchimp.merge_fields")

MAX_TAG_LENGTH = 10


class MergeType(str, enum.Enum):
    TEXT = "text"
    NUMBER = "number"
    ADDRESS = "address"
    PHONE = "phone"
    DATE = "date"
    URL = "url"
    IMAGEURL = "imageurl"
    RADIO = "radio"
    DROPDOWN = "dropdown"
    BIRTHDAY = "birthday"
    ZIP = "zip"


@dataclass(frozen=True)
class MergeField:
    tag: str
    name: str
    type: MergeType
    merge_id: Optional[int] = None

    def same_definition(self, other: "MergeField") -> bool:
        return self.name == other.name and self.type == other.type

    def body(self) -> dict[str, Any]:
        return {"tag": self.tag, "name": self.name, "type": self.type.value}

    @classmethod
    def from_remote(cls, item: Mapping[str, Any]) -> "MergeField":
        return cls(
            tag=item["tag"],
            name=item.get("name", ""),
            type=MergeType(item.get("type", "text")),
            merge_id=item.get("merge_id"),
        )


@dataclass
class MergeFieldDiff:
    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    # Target definitions for the updated tags, carrying the remote merge_id
    patches: list[MergeField] = field(default_factory=list, repr=False)


class MergeFields:
    """Declared target schema, keyed by tag."""

    def __init__(self, fields: Iterable[MergeField]) -> None:
        self._fields: dict[str, MergeField] = {}
        for f in fields:
            if f.tag in self._fields:
                raise ConfigurationError(f"duplicate merge field tag {f.tag}")
            self._fields[f.tag] = f

    @classmethod
    def load(cls, path: str | Path) -> "MergeFields":
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"merge field file not found at {path}")
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"failed to parse {path}: {exc}") from exc

        fields = []
        for entry in raw.get("fields") or []:
            try:
                fields.append(
                    MergeField(
                        tag=str(entry["tag"]).strip(),
                        name=str(entry["name"]).strip(),
                        type=MergeType(str(entry.get("type", "text")).lower()),
                    )
                )
            except KeyError as exc:
                raise ConfigurationError(f"{path}: merge field missing {exc}") from exc
            except ValueError as exc:
                raise ConfigurationError(f"{path}: {exc}") from exc
        return cls(fields)

    def __iter__(self):
        return iter(self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)

    def __contains__(self, tag: object) -> bool:
        return tag in self._fields

    def get(self, tag: str) -> Optional[MergeField]:
        return self._fields.get(tag)

    def validate(self) -> None:
        too_long = sorted(tag for tag in self._fields if len(tag) > MAX_TAG_LENGTH)
        if too_long:
            raise MergeFieldTagError(too_long, MAX_TAG_LENGTH)

    def to_value(self, tag: str, value: Any) -> Optional[tuple[str, Any]]:
        """(tag, formatted value) for a declared tag; None to leave it out."""
        f = self._fields.get(tag)
        if f is None or value is None:
            return None
        if f.type == MergeType.NUMBER:
            return tag, int(value)
        if f.type == MergeType.BIRTHDAY:
            if isinstance(value, (date, datetime)):
                return tag, value.strftime("%m/%d")
            return tag, str(value)
        if f.type == MergeType.DATE:
            if isinstance(value, (date, datetime)):
                return tag, value.strftime("%Y-%m-%d")
            return tag, str(value)
        return tag, str(value)


def diff(current: Iterable[MergeField], target: Iterable[MergeField]) -> MergeFieldDiff:
    """Compare remote fields with the target, tag by tag."""
    remote = {f.tag: f for f in current}
    wanted = {f.tag: f for f in target}

    result = MergeFieldDiff(
        added=[tag for tag in wanted if tag not in remote],
        deleted=[tag for tag in remote if tag not in wanted],
    )
    for tag, want in wanted.items():
        have = remote.get(tag)
        if have is None or have.same_definition(want):
            continue
        result.updated.append(tag)
        result.patches.append(replace(want, merge_id=have.merge_id))
    return result


def remote_fields(client: Client, list_id: str) -> list[MergeField]:
    return [
        MergeField.from_remote(item)
        for item in client.fetch_stream(
            f"/3.0/lists/{list_id}/merge-fields",
            "merge_fields",
            {"fields": "merge_fields.merge_id,merge_fields.tag,merge_fields.name,merge_fields.type"},
        )
    ]


def sync(
    client: Client,
    list_id: str,
    target: MergeFields,
    process_deletes: bool = False,
    retry: Optional[RetryPolicy] = None,
) -> MergeFieldDiff:
    """Bring the audience's merge fields in line with target.

    Extra remote fields are only removed when process_deletes is set.
    """
    target.validate()
    retry = retry or RetryPolicy()
    base = f"/3.0/lists/{list_id}/merge-fields"

    current = remote_fields(client, list_id)
    by_tag = {f.tag: f for f in current}
    result = diff(current, target)

    if process_deletes:
        for tag in result.deleted:
            merge_id = by_tag[tag].merge_id
            retry.call(lambda: client.delete(f"{base}/{merge_id}"), f"delete field {tag}")
    elif result.deleted:
        logger.info(
            "Keeping %d remote-only fields: %s", len(result.deleted), ", ".join(result.deleted),
            extra={"list_id": list_id},
        )

    for tag in result.added:
        body = target.get(tag).body()
        retry.call(lambda: client.post(base, body), f"create field {tag}")

    for f in result.patches:
        retry.call(lambda: client.patch(f"{base}/{f.merge_id}", f.body()), f"update field {f.tag}")

    logger.info(
        "Merge fields synced: %d added, %d deleted, %d updated",
        len(result.added), len(result.deleted) if process_deletes else 0, len(result.updated),
        extra={"list_id": list_id},
    )
    return result
