from __future__ import annotations

from datetime import date

import pytest

from scripts.membersync.config import DEFAULT_FIELDS_DIR
from scripts.membersync.errors import ConfigurationError, MergeFieldTagError
from scripts.membersync.mailchimp import merge_fields
from scripts.membersync.mailchimp.client import Client
from scripts.membersync.mailchimp.merge_fields import MergeField, MergeFields, MergeType, diff
from scripts.membersync.mailchimp.retry import RetryPolicy

API_KEY = "abc-us5"


def _remote(*fields):
    return {
        "merge_fields": [
            {"merge_id": i + 1, "tag": tag, "name": name, "type": type_}
            for i, (tag, name, type_) in enumerate(fields)
        ]
    }


def test_diff_reports_added_deleted_updated():
    current = [
        MergeField("A", "A", MergeType.TEXT, merge_id=1),
        MergeField("B", "B", MergeType.NUMBER, merge_id=2),
    ]
    target = [MergeField("B", "B", MergeType.NUMBER), MergeField("C", "C", MergeType.DATE)]

    result = diff(current, target)

    assert result.added == ["C"]
    assert result.deleted == ["A"]
    assert result.updated == []
    assert result.patches == []


def test_diff_patches_carry_remote_merge_id():
    current = [MergeField("B", "Old", MergeType.TEXT, merge_id=9)]
    target = [MergeField("B", "New", MergeType.NUMBER)]

    result = diff(current, target)

    assert result.updated == ["B"]
    assert result.patches == [MergeField("B", "New", MergeType.NUMBER, merge_id=9)]


def test_long_tag_rejected_before_any_request(fake_session):
    session = fake_session([])
    target = MergeFields([MergeField("ELEVENCHARS", "Too long", MergeType.TEXT)])

    with pytest.raises(MergeFieldTagError) as excinfo:
        merge_fields.sync(Client(API_KEY, session=session), "L1", target)

    assert excinfo.value.tags == ["ELEVENCHARS"]
    assert session.calls == []


def test_sync_creates_and_patches_but_keeps_remote_only(fake_session, fake_response):
    session = fake_session([
        fake_response(json_data=_remote(("A", "A", "text"), ("B", "Old", "number"))),
        fake_response(json_data={"merge_fields": []}),
        fake_response(json_data={"merge_id": 3}),
        fake_response(json_data={"merge_id": 2}),
    ])
    target = MergeFields([MergeField("B", "B", MergeType.NUMBER), MergeField("C", "C", MergeType.DATE)])

    result = merge_fields.sync(Client(API_KEY, session=session), "L1", target, retry=RetryPolicy.none())

    writes = [(c["method"], c["url"].rsplit("/3.0", 1)[1]) for c in session.calls[2:]]
    assert writes == [
        ("POST", "/lists/L1/merge-fields"),
        ("PATCH", "/lists/L1/merge-fields/2"),
    ]
    assert session.calls[2]["json"] == {"tag": "C", "name": "C", "type": "date"}
    assert result.deleted == ["A"]


def test_sync_process_deletes_removes_remote_only(fake_session, fake_response):
    session = fake_session([
        fake_response(json_data=_remote(("A", "A", "text"))),
        fake_response(json_data={"merge_fields": []}),
        fake_response(status_code=204),
    ])

    merge_fields.sync(
        Client(API_KEY, session=session), "L1", MergeFields([]),
        process_deletes=True, retry=RetryPolicy.none(),
    )

    assert session.calls[-1]["method"] == "DELETE"
    assert session.calls[-1]["url"].endswith("/lists/L1/merge-fields/1")


def test_load_yaml(tmp_path):
    path = tmp_path / "fields.yaml"
    path.write_text(
        """
fields:
  - tag: FNAME
    name: First Name
  - tag: CLUB_NR
    name: Club Number
    type: number
""",
        encoding="utf-8",
    )

    fields = MergeFields.load(path)

    assert len(fields) == 2
    assert fields.get("FNAME").type is MergeType.TEXT
    assert fields.get("CLUB_NR").type is MergeType.NUMBER


@pytest.mark.parametrize(
    "content",
    [
        "fields:\n  - name: No Tag\n",
        "fields:\n  - tag: X\n    name: X\n    type: colour\n",
        "fields:\n  - tag: X\n    name: X\n  - tag: X\n    name: Again\n",
        "fields: [unclosed\n",
    ],
)
def test_load_yaml_rejects_bad_schemas(tmp_path, content):
    path = tmp_path / "fields.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        MergeFields.load(path)


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        MergeFields.load(tmp_path / "nope.yaml")


def test_shipped_schemas_are_valid():
    for name in ("fields-all.yaml", "fields-club.yaml"):
        fields = MergeFields.load(DEFAULT_FIELDS_DIR / name)
        fields.validate()
        assert "FNAME" in fields


def test_to_value_formats_by_type():
    fields = MergeFields([
        MergeField("BDAY", "Birthday", MergeType.BIRTHDAY),
        MergeField("JOIN", "Joined", MergeType.DATE),
        MergeField("CLUB_NR", "Club", MergeType.NUMBER),
        MergeField("FNAME", "First", MergeType.TEXT),
    ])

    assert fields.to_value("BDAY", date(1980, 4, 2)) == ("BDAY", "04/02")
    assert fields.to_value("JOIN", date(2001, 1, 5)) == ("JOIN", "2001-01-05")
    assert fields.to_value("CLUB_NR", "42") == ("CLUB_NR", 42)
    assert fields.to_value("FNAME", "Jane") == ("FNAME", "Jane")
    assert fields.to_value("FNAME", None) is None
    assert fields.to_value("UNKNOWN", "x") is None
