from __future__ import annotations

from datetime import UTC, datetime

import pytest

from ingest_hub.record_parser import (
    CATEGORY_BOTTOM_10,
    CATEGORY_STANDARD,
    CATEGORY_TOP_10,
    ParseDefaults,
    classify_category,
    detect_environment,
    detect_type,
    extract_content,
    infer_job_defaults,
    parse_row,
    parse_timestamp,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("top_10", CATEGORY_TOP_10),
        ("Top 10%", CATEGORY_TOP_10),
        ("selected", CATEGORY_TOP_10),
        ("better", CATEGORY_TOP_10),
        ("bottom_10", CATEGORY_BOTTOM_10),
        ("Rejected", CATEGORY_BOTTOM_10),
        ("worse", CATEGORY_BOTTOM_10),
        ("5", CATEGORY_TOP_10),
        ("4.5 stars", CATEGORY_TOP_10),
        ("0.95", CATEGORY_TOP_10),
        ("3", CATEGORY_STANDARD),
        ("2", CATEGORY_BOTTOM_10),
        ("0.1", CATEGORY_BOTTOM_10),
        ("meh", CATEGORY_STANDARD),
    ],
)
def test_classify_category_from_rating_candidates(value: str, expected: str):
    assert classify_category({"quality_rating": value}) == expected


def test_classify_category_treats_zero_rating_as_populated():
    # Both a CSV "0" and a JSON 0 sit at the bottom of the 0-1 scale.
    assert classify_category({"rating": "0"}) == CATEGORY_BOTTOM_10
    assert classify_category({"rating": 0}) == CATEGORY_BOTTOM_10


def test_classify_category_scans_rating_keys_when_text_rating_matches_nothing():
    assert classify_category({"quality_score": "5", "category": "misc"}) == CATEGORY_TOP_10
    assert classify_category({"label": "n/a", "reviewer_rating": "bottom pick"}) == CATEGORY_BOTTOM_10
    assert classify_category({"category": "misc"}) == CATEGORY_STANDARD


def test_classify_category_keeps_mid_scale_numbers_standard():
    assert classify_category({"rating": "3", "reviewer_rating": "top pick"}) == CATEGORY_STANDARD


def test_classify_category_uses_first_populated_candidate():
    row = {"prompt_quality_rating": "", "quality_rating": "top", "score": "1"}
    assert classify_category(row) == CATEGORY_TOP_10


def test_classify_category_falls_back_to_any_rating_or_score_key():
    assert classify_category({"reviewer_rating_value": "Top pick"}) == CATEGORY_TOP_10
    assert classify_category({"final_scorecard": "1"}) == CATEGORY_BOTTOM_10
    assert classify_category({"final_scorecard": "7"}) == CATEGORY_STANDARD
    assert classify_category({"prompt": "no rating at all"}) == CATEGORY_STANDARD


def test_detect_type_and_environment():
    assert detect_type({"type": "Feedback"}, "TASK") == "FEEDBACK"
    assert detect_type({"type": "prompt"}, "FEEDBACK") == "TASK"
    assert detect_type({"type": "other"}, "FEEDBACK") == "FEEDBACK"
    assert detect_environment({"environment": "  prod  "}, "default") == "prod"
    assert detect_environment({"env_key": "k1", "env": "k2"}, "default") == "k1"
    assert detect_environment({"env": "   "}, "default") == "default"


def test_extract_content_prefers_known_fields_then_longest_text():
    assert extract_content({"feedback": "This is the feedback body", "text": "other text here!"}) == (
        "This is the feedback body"
    )
    row = {"prompt": "short", "notes": "a much longer free text note", "other": "mid length text"}
    assert extract_content(row) == "a much longer free text note"
    assert extract_content({"prompt": "hello"}) == "hello"


def test_extract_content_serializes_row_when_nothing_textual():
    content = extract_content({"a": 1, "b": None})
    assert content == '{"a": 1, "b": null}'


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("2024-01-02T03:04:05Z", datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)),
        ("2024-01-02 03:04:05", datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)),
        (1700000000, datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)),
        ("1700000000000", datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)),
        ("not a date", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected


def test_parse_row_builds_record_with_identity_and_creator():
    outcome = parse_row(
        {
            "task_id": 42,
            "task_key": "TK-1",
            "prompt": "Summarize the quarterly report",
            "rating": "5",
            "env_key": "team-a",
            "author_name": "Sam",
            "created_by_email": "sam@example.com",
            "created_at": "2024-05-01T00:00:00+00:00",
            "modified_at": "garbage",
        },
        ParseDefaults(type="TASK", environment="default"),
    )
    record = outcome.record
    assert record is not None
    assert record.identity_id == "42"
    assert record.identity_key == "TK-1"
    assert record.environment == "team-a"
    assert record.category == CATEGORY_TOP_10
    assert record.created_by_name == "Sam"
    assert record.created_by_email == "sam@example.com"
    assert record.created_at == datetime(2024, 5, 1, tzinfo=UTC)
    assert record.updated_at is None

    row = record.to_row(record_id="r1", source="csv", job_id="job-1")
    assert row["metadata"]["ingestJobId"] == "job-1"
    assert row["metadata"]["task_id"] == 42


def test_parse_row_keyword_filter_is_case_insensitive():
    defaults = ParseDefaults(filter_keywords=["Invoice"])
    assert parse_row({"prompt": "please check this INVOICE now"}, defaults).record is not None
    rejected = parse_row({"prompt": "unrelated content entirely"}, defaults)
    assert rejected.record is None
    assert rejected.skip_reason == "Keyword Mismatch"


def test_parse_row_accepts_non_mapping_rows():
    outcome = parse_row("a bare string row", ParseDefaults())
    assert outcome.record is not None
    assert outcome.record.content == "a bare string row"
    assert outcome.record.metadata == {"value": "a bare string row"}


def test_infer_job_defaults_from_first_row():
    assert infer_job_defaults([{"environment_name": "e1", "record_type": "feedback"}]) == ("e1", "FEEDBACK")
    assert infer_job_defaults([{"env": "e2", "type": "task"}]) == ("e2", "TASK")
    assert infer_job_defaults([{"prompt": "x"}]) == (None, "TASK")
    assert infer_job_defaults([]) == (None, None)
