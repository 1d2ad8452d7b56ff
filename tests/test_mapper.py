from datetime import datetime

import pytest

from candidate_intake.domain.imports.mapper import (
    normalize_email,
    normalize_row,
    parse_experience,
    split_full_name,
    split_skills,
    validate_candidate,
)
from candidate_intake.utils.phone import digits_only_phone


MAPPING = {
    "Name": "full_name",
    "Email": "email",
    "Phone": "phone",
    "Exp": "experience_years",
    "Skills": "skills",
    "Notes": None,
}


def test_normalize_row_cleans_contact_fields():
    row = {"Name": "Asha Rao", "Email": "  X@Y.COM ", "Phone": "+1 (555) 123-4567", "Notes": "call later"}

    fields = normalize_row(row, MAPPING)

    assert fields["email"] == "x@y.com"
    assert fields["phone"] == "15551234567"
    assert fields["first_name"] == "Asha"
    assert fields["last_name"] == "Rao"
    assert "Notes" not in fields and "notes" not in fields


def test_numeric_phone_cell_loses_float_suffix():
    assert digits_only_phone(9876543210.0) == "9876543210"


def test_short_phone_is_dropped():
    assert digits_only_phone("12-34") is None


@pytest.mark.parametrize(
    "value,expected",
    [("5 yrs exp", 5.0), ("5.5", 5.5), (3, 3.0), ("fresher", None), (None, None)],
)
def test_parse_experience(value, expected):
    assert parse_experience(value) == expected


@pytest.mark.parametrize("value", ["na", "N/A", "not-an-email", "", None])
def test_unusable_email_is_absent(value):
    assert normalize_email(value) is None


def test_absent_email_is_omitted_not_empty():
    fields = normalize_row({"Name": "Asha", "Email": "na", "Phone": "9876543210"}, MAPPING)

    assert "email" not in fields
    assert fields["phone"] == "9876543210"


def test_split_full_name():
    assert split_full_name("Jane Q Doe") == {"first_name": "Jane", "last_name": "Q Doe"}
    assert split_full_name("Cher") == {"first_name": "Cher", "last_name": ""}


def test_explicit_name_parts_are_not_overwritten():
    mapping = {"Full": "full_name", "First": "first_name"}

    fields = normalize_row({"Full": "Jane Doe", "First": "Janet"}, mapping)

    assert fields["first_name"] == "Janet"
    assert "last_name" not in fields


def test_split_skills_dedupes_case_insensitively():
    assert split_skills("Python, SQL | python ;  ; Excel") == ["Python", "SQL", "Excel"]


def test_first_usable_value_wins_for_duplicate_targets():
    mapping = {"Email 1": "email", "Email 2": "email"}

    fields = normalize_row({"Email 1": "na", "Email 2": "b@c.com"}, mapping)

    assert fields["email"] == "b@c.com"


def test_rich_and_formula_cells_are_unwrapped():
    mapping = {"Email": "email", "Exp": "experience_years"}

    fields = normalize_row({"Email": {"text": "A@B.com"}, "Exp": {"formula": "=2+3", "result": 5}}, mapping)

    assert fields == {"email": "a@b.com", "experience_years": 5.0}


def test_dates_are_stringified():
    fields = normalize_row({"Submitted": datetime(2024, 3, 1)}, {"Submitted": "submission_date"})

    assert fields["submission_date"] == "2024-03-01"


def test_validate_candidate_requires_contact():
    assert validate_candidate({"full_name": "Asha"}) is not None
    assert validate_candidate({"full_name": "Asha"}, require_contact=False) is None
    assert validate_candidate({"email": "a@b.com"}) is None
    assert validate_candidate({}) is not None


def test_single_token_name_gets_empty_last_name():
    fields = normalize_row({"Name": "Asha", "Phone": "(555) 123-4567"}, MAPPING)

    assert fields == {"full_name": "Asha", "phone": "5551234567", "first_name": "Asha", "last_name": ""}
