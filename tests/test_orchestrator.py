import pytest
from sqlalchemy import select

from candidate_intake.core.exceptions import JobNotFoundException, JobStateException, SpreadsheetReadException
from candidate_intake.db.models import Candidate, insert_candidates_batch
from candidate_intake.domain.imports.jobs import create_upload_job, get_upload_job, list_job_errors
from candidate_intake.domain.imports.orchestrator import (
    MISSING_MAPPING_MESSAGE,
    IngestionEngine,
    build_raw_row,
)
from candidate_intake.domain.imports.processors.excel_processor import SheetRow
from candidate_intake.domain.imports.schema_mapper import map_headers_heuristically

from conftest import CANDIDATE_HEADERS


def _new_job(engine, path="people.xlsx"):
    return create_upload_job(engine, source_file_name="people.xlsx", storage_path=path)["id"]


def _candidates(engine):
    with engine.connect() as conn:
        return conn.execute(select(Candidate.__table__).order_by(Candidate.__table__.c.id)).mappings().all()


def test_uniqueness_violation_fails_only_that_row(engine, test_settings, write_xlsx, candidate_rows):
    insert_candidates_batch(engine, [{"email": "meera@example.com"}])
    path = write_xlsx("people.xlsx", candidate_rows)
    job_id = _new_job(engine, path)

    result = IngestionEngine(engine, test_settings).run(path, map_headers_heuristically(CANDIDATE_HEADERS), job_id)

    assert result.status == "completed"
    assert result.total_rows == 3
    assert result.processed_rows == 2
    assert result.error_count == 1

    job = get_upload_job(engine, job_id)
    assert job["status"] == "completed"
    assert job["processed_rows"] == 2
    assert job["completed_at"] is not None

    errors = list_job_errors(engine, job_id)
    assert len(errors) == 1
    assert errors[0]["row_number"] == 4
    assert errors[0]["raw_row"]["Email ID"] == "meera@example.com"


def test_inserted_candidates_keep_source_snapshot(engine, test_settings, write_xlsx, candidate_rows):
    path = write_xlsx("people.xlsx", candidate_rows)
    job_id = _new_job(engine, path)

    IngestionEngine(engine, test_settings).run(path, map_headers_heuristically(CANDIDATE_HEADERS), job_id)

    rows = _candidates(engine)
    assert len(rows) == 3
    first = rows[0]
    assert first["first_name"] == "Asha"
    assert first["last_name"] == "Rao"
    assert first["phone"] == "9876543210"
    assert first["experience_years"] == 5.0
    assert first["skills"] == ["Python", "SQL"]
    assert first["raw_data"]["Total Exp"] == "5 yrs"
    assert first["source_file"] == "people.xlsx"
    assert first["source_row_number"] == 2
    assert first["upload_job_id"] == job_id


def test_reader_failure_mid_stream_marks_job_failed(engine, test_settings):
    job_id = _new_job(engine)
    headers = ["Email"]

    def failing_reader(_path):
        for index in range(50):
            if index == 10:
                raise SpreadsheetReadException("Excel file is corrupt or truncated")
            yield SheetRow(row_number=index + 2, values=[f"user{index}@example.com"])

    ingestion = IngestionEngine(
        engine,
        test_settings.model_copy(update={"ingest_batch_size": 4}),
        header_reader=lambda _path: headers,
        row_reader=failing_reader,
    )

    result = ingestion.run("people.xlsx", {"Email": "email"}, job_id)

    assert result.status == "failed"
    assert result.processed_rows <= 10
    assert result.processed_rows == 8  # two full batches reached the store
    assert "corrupt" in result.error_message

    job = get_upload_job(engine, job_id)
    assert job["status"] == "failed"
    assert job["processed_rows"] <= job["total_rows"] == 10
    assert job["error_message"] == result.error_message

    errors = list_job_errors(engine, job_id)
    assert any(error["row_number"] is None for error in errors)
    assert len(_candidates(engine)) == 8


def test_finished_job_cannot_run_again(engine, test_settings, write_xlsx, candidate_rows):
    path = write_xlsx("people.xlsx", candidate_rows)
    job_id = _new_job(engine, path)
    ingestion = IngestionEngine(engine, test_settings)
    mapping = map_headers_heuristically(CANDIDATE_HEADERS)

    ingestion.run(path, mapping, job_id)

    with pytest.raises(JobStateException):
        ingestion.run(path, mapping, job_id)
    assert len(_candidates(engine)) == 3


def test_unknown_job_is_rejected(engine, test_settings):
    with pytest.raises(JobNotFoundException):
        IngestionEngine(engine, test_settings).run("people.xlsx", {"Email": "email"}, "missing")


def test_missing_mapping_is_job_fatal(engine, test_settings, write_xlsx, candidate_rows):
    path = write_xlsx("people.xlsx", candidate_rows)
    job_id = _new_job(engine, path)

    result = IngestionEngine(engine, test_settings).run(path, {"Candidate Name": None}, job_id)

    assert result.status == "failed"
    assert result.error_message == MISSING_MAPPING_MESSAGE
    assert get_upload_job(engine, job_id)["status"] == "failed"
    assert list_job_errors(engine, job_id)[0]["message"] == MISSING_MAPPING_MESSAGE


def test_in_file_duplicates_and_contactless_rows_are_row_errors(engine, test_settings, write_xlsx):
    path = write_xlsx(
        "people.xlsx",
        [
            CANDIDATE_HEADERS,
            ["Asha Rao", "asha@example.com", "", "", ""],
            ["Asha R", "ASHA@example.com", "", "", ""],
            ["No Contact", "na", "", "2", "Python"],
            ["Ravi", "", "9876543210", "", ""],
        ],
    )
    job_id = _new_job(engine, path)

    result = IngestionEngine(engine, test_settings).run(path, map_headers_heuristically(CANDIDATE_HEADERS), job_id)

    assert result.status == "completed"
    assert result.processed_rows == 2
    messages = {error["row_number"]: error["message"] for error in list_job_errors(engine, job_id)}
    assert messages[3] == "Duplicate email in file"
    assert 4 in messages


def test_shared_phone_numbers_are_not_duplicates(engine, test_settings, write_xlsx):
    path = write_xlsx(
        "agency.xlsx",
        [
            CANDIDATE_HEADERS,
            ["Asha Rao", "asha@example.com", "080 4000 1000", "", ""],
            ["Ravi Kumar", "ravi@example.com", "080 4000 1000", "", ""],
            ["Meera Iyer", "", "080 4000 1000", "", ""],
        ],
    )
    job_id = _new_job(engine, path)

    result = IngestionEngine(engine, test_settings).run(path, map_headers_heuristically(CANDIDATE_HEADERS), job_id)

    assert result.processed_rows == 3
    assert result.error_count == 0
    assert {row["phone"] for row in _candidates(engine)} == {"08040001000"}


def test_email_dedup_falls_back_to_the_store_past_its_limit(engine, test_settings, write_xlsx):
    path = write_xlsx(
        "people.xlsx",
        [
            CANDIDATE_HEADERS,
            ["Asha Rao", "asha@example.com", "", "", ""],
            ["Ravi Kumar", "ravi@example.com", "", "", ""],
            ["Ravi K", "ravi@example.com", "", "", ""],
            ["Asha R", "asha@example.com", "", "", ""],
        ],
    )
    job_id = _new_job(engine, path)
    limited = test_settings.model_copy(update={"ingest_dedup_max_entries": 1})

    result = IngestionEngine(engine, limited).run(path, map_headers_heuristically(CANDIDATE_HEADERS), job_id)

    assert result.processed_rows == 2
    assert result.error_count == 2
    messages = {error["row_number"]: error["message"] for error in list_job_errors(engine, job_id)}
    assert messages[5] == "Duplicate email in file"
    assert messages[4] != "Duplicate email in file"


def test_progress_is_persisted_while_processing(engine, test_settings):
    job_id = _new_job(engine)
    snapshots = []

    def reader(_path):
        for index in range(5):
            if index == 3:
                snapshots.append(get_upload_job(engine, job_id))
            yield SheetRow(row_number=index + 2, values=[f"user{index}@example.com"])

    ingestion = IngestionEngine(
        engine,
        test_settings.model_copy(update={"ingest_batch_size": 2, "ingest_progress_interval": 2}),
        header_reader=lambda _path: ["Email"],
        row_reader=reader,
    )

    result = ingestion.run("people.xlsx", {"Email": "email"}, job_id)

    assert snapshots[0]["status"] == "processing"
    assert snapshots[0]["total_rows"] == 2
    assert snapshots[0]["processed_rows"] <= snapshots[0]["total_rows"]
    assert result.processed_rows == 5


def test_duplicate_headers_keep_first_value():
    assert build_raw_row(["Email", "Email", "", "Name"], ["a@b.com", "c@d.com", "x"]) == {
        "Email": "a@b.com",
        "Name": None,
    }
