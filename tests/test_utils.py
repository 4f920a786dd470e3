import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel

from chaptersync.storage import claim_next_job, complete_job, enqueue_job, get_job, init_db
from chaptersync.utils import canonical_decimal, json_dumps, parse_iso, slugify, to_iso


@dataclass
class Payload:
    value: str


class PayloadModel(BaseModel):
    name: str


def test_canonical_decimal_normalizes_chapter_numbers():
    assert canonical_decimal("1105") == "1105"
    assert canonical_decimal("1105.50") == "1105.5"
    assert canonical_decimal(" 7 ") == "7"
    assert canonical_decimal(10) == "10"
    assert canonical_decimal(12.5) == "12.5"
    assert canonical_decimal("1e3") == "1000"
    assert canonical_decimal("0.00") == "0"
    assert canonical_decimal(Decimal("3.10")) == "3.1"


def test_canonical_decimal_keeps_half_chapters_distinct():
    assert canonical_decimal("1105") != canonical_decimal("1105.5")


def test_canonical_decimal_rejects_invalid_values():
    for value in (None, True, "", "abc", "-1", -2, float("nan"), float("inf"), "Infinity", [1]):
        try:
            canonical_decimal(value)
        except ValueError:
            continue
        raise AssertionError(f"Expected ValueError for {value!r}")


def test_to_iso_normalizes_to_utc():
    assert to_iso("2025-03-01T10:00:00Z") == "2025-03-01T10:00:00+00:00"
    assert to_iso("2025-03-01T12:00:00+02:00") == "2025-03-01T10:00:00+00:00"
    assert to_iso(datetime(2025, 3, 1, 10, 0)) == "2025-03-01T10:00:00+00:00"
    assert to_iso("not a date") is None
    assert to_iso(None) is None
    assert parse_iso("2025-03-01T10:00:00").tzinfo is not None


def test_json_dumps_handles_supported_types():
    encoded = json_dumps(
        {
            "dataclass": Payload(value="ok"),
            "model": PayloadModel(name="example"),
            "when": datetime(2025, 1, 1, tzinfo=timezone.utc),
            "number": Decimal("1105.5"),
            "tuple": ("x", "y"),
        }
    )
    decoded = json.loads(encoded)
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["model"]["name"] == "example"
    assert decoded["when"].startswith("2025-01-01T00:00:00")
    assert decoded["number"] == "1105.5"
    assert decoded["tuple"] == ["x", "y"]


def test_job_result_serialization_handles_complex_types(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job_id = enqueue_job(conn, "poll_source", {"seriesSourceId": "src-1"})
    assert claim_next_job(conn, "worker-1") is not None

    result = {"payload": Payload(value="ok"), "when": datetime(2025, 1, 1, tzinfo=timezone.utc)}
    assert complete_job(conn, job_id, result=result) is True
    assert get_job(conn, job_id).result["payload"] == {"value": "ok"}


def test_canonical_decimal_rejects_huge_exponents():
    for value in ("1e999999999", "1e999998", "1e-40", "9" * 65, 10**40):
        try:
            canonical_decimal(value)
        except ValueError:
            continue
        raise AssertionError(f"Expected ValueError for {value!r}")
    assert canonical_decimal("1e32") == "1" + "0" * 32


def test_slugify():
    assert slugify("Extra") == "extra"
    assert slugify("Côte d'Ivoire Special!") == "cote-d-ivoire-special"
    assert slugify("!!!") == "untitled"
