import pytest

from candidate_intake.core.exceptions import InvalidMappingException, OracleResponseException
from candidate_intake.domain.imports.mapper import normalize_row
from candidate_intake.domain.imports.schema_mapper import (
    CANONICAL_FIELDS,
    NeedsManualMapping,
    ResolvedMapping,
    canonical_field_name,
    canonicalize_manual_mapping,
    canonicalize_oracle_mapping,
    map_headers_heuristically,
    match_header,
    resolve_headers,
)


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Email", "email"),
        ("email_id", "email"),
        ("Mobile Number", "phone"),
        ("Candidate Name", "full_name"),
        ("First-Name", "first_name"),
        ("Total Exp", "experience_years"),
        ("Key Skills", "skills"),
        ("Current Company", "current_company"),
        ("Job Location", "job_location"),
        ("Status", "candidate_status"),
    ],
)
def test_exact_alias_matches(header, expected):
    assert match_header(header) == expected


def test_containment_prefers_longest_alias():
    # "current location" (two words) beats the single-word "location".
    assert match_header("Candidate Current Location") == "location"
    # "job location" beats "location" for job_location.
    assert match_header("Preferred Job Location") == "job_location"


def test_containment_requires_whole_words():
    assert match_header("Username") is None
    assert match_header("Email Notes") == "email"


@pytest.mark.parametrize(
    "header",
    [
        "Company Name",
        "College Name",
        "Recruiter Email",
        "Client Email",
        "Emergency Contact Number",
        "Reporting Manager Phone",
    ],
)
def test_other_party_headers_do_not_map_to_candidate_fields(header):
    assert match_header(header) is None


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Current Company Name", "current_company"),
        ("End Client Name", "client_name"),
        ("Recruiter Name", "recruiter_name"),
        ("Client", "client_name"),
        ("Candidate Email ID", "email"),
    ],
)
def test_party_words_still_resolve_their_own_fields(header, expected):
    assert match_header(header) == expected


def test_company_column_before_candidate_name_keeps_candidate_name():
    headers = ["Company Name", "Candidate Name", "Recruiter Email", "Email"]
    mapping = map_headers_heuristically(headers)

    fields = normalize_row(
        {
            "Company Name": "Infosys",
            "Candidate Name": "Asha Rao",
            "Recruiter Email": "hr@infosys.com",
            "Email": "asha@example.com",
        },
        mapping,
    )

    assert mapping["Company Name"] is None
    assert mapping["Recruiter Email"] is None
    assert fields["full_name"] == "Asha Rao"
    assert fields["first_name"] == "Asha"
    assert fields["email"] == "asha@example.com"


def test_unrelated_header_stays_unmapped():
    assert match_header("Zodiac Sign") is None


def test_map_headers_skips_blanks():
    mapping = map_headers_heuristically(["Email", "", None, "Shoe Size"])

    assert mapping == {"Email": "email", "Shoe Size": None}


def test_canonical_field_name_variants():
    assert canonical_field_name("fullName") == "full_name"
    assert canonical_field_name("total_experience") == "experience_years"
    assert canonical_field_name("unmapped") is None
    assert canonical_field_name(None) is None
    with pytest.raises(ValueError):
        canonical_field_name("favourite_colour")


def test_oracle_mapping_accepts_object_and_pairs():
    headers = ["Naam", "Dak", "Extra"]

    from_object = canonicalize_oracle_mapping({"Naam": "full_name", "Dak": "email"}, headers)
    from_pairs = canonicalize_oracle_mapping([["naam", "fullName"], {"header": "Dak", "field": "email"}], headers)

    assert from_object == {"Naam": "full_name", "Dak": "email", "Extra": None}
    assert from_pairs == from_object


def test_oracle_mapping_drops_unknown_fields_and_headers():
    mapping = canonicalize_oracle_mapping({"Naam": "nickname", "Other": "email"}, ["Naam"])

    assert mapping == {"Naam": None}


def test_oracle_mapping_rejects_bad_shapes():
    with pytest.raises(OracleResponseException):
        canonicalize_oracle_mapping("full_name", ["Naam"])
    with pytest.raises(OracleResponseException):
        canonicalize_oracle_mapping([42], ["Naam"])


def test_manual_mapping_validation():
    mapping = canonicalize_manual_mapping({"Naam": "full_name", "Dak": None}, ["Naam", "Dak"])
    assert mapping == {"Naam": "full_name", "Dak": None}

    with pytest.raises(InvalidMappingException):
        canonicalize_manual_mapping({"Naam": "shoe_size"}, ["Naam"])
    with pytest.raises(InvalidMappingException):
        canonicalize_manual_mapping({"Naam": None}, ["Naam"])


def test_resolve_uses_heuristics_without_calling_oracle():
    class ExplodingOracle:
        def suggest_mapping(self, headers):
            raise AssertionError("oracle should not be consulted")

    result = resolve_headers(["Email", "Mobile"], oracle=ExplodingOracle())

    assert isinstance(result, ResolvedMapping)
    assert result.source == "heuristic"
    assert result.per_header == {"Email": "email", "Mobile": "phone"}


def test_resolve_falls_back_to_oracle_when_nothing_matches():
    class FakeOracle:
        def suggest_mapping(self, headers):
            return {"Naam": "full_name", "Dak Pata": "email"}

    result = resolve_headers(["Naam", "Dak Pata"], oracle=FakeOracle())

    assert isinstance(result, ResolvedMapping)
    assert result.source == "oracle"
    assert result.mapped_fields == {"Naam": "full_name", "Dak Pata": "email"}


def test_resolve_retries_oracle_with_backoff():
    calls = []
    delays = []

    class FlakyOracle:
        def suggest_mapping(self, headers):
            calls.append(headers)
            if len(calls) < 3:
                raise TimeoutError("slow")
            return {"Naam": "full_name"}

    result = resolve_headers(["Naam"], oracle=FlakyOracle(), max_retries=3, retry_delay=0.5, sleep=delays.append)

    assert isinstance(result, ResolvedMapping)
    assert len(calls) == 3
    assert delays == [0.5, 1.0]


def test_resolve_needs_manual_mapping_when_oracle_keeps_failing():
    class BrokenOracle:
        def suggest_mapping(self, headers):
            return "not json at all"

    result = resolve_headers(["Naam", "Dak"], oracle=BrokenOracle(), max_retries=2, sleep=lambda _: None)

    assert isinstance(result, NeedsManualMapping)
    assert result.headers == ["Naam", "Dak"]


def test_resolve_without_oracle_needs_manual_mapping():
    result = resolve_headers(["Naam", "Dak"])

    assert isinstance(result, NeedsManualMapping)


def test_canonical_fields_are_snake_case():
    assert all(name == name.lower() and " " not in name for name in CANONICAL_FIELDS)
