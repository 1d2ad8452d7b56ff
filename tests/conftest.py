"""
Pytest configuration and fixtures for Candidate Intake tests.

Every test gets its own SQLite database file and upload directory, so tests
never share state or need a running PostgreSQL server.
"""
import time
import zipfile
from typing import Any, List, Sequence

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook

from candidate_intake.core.config import Settings
from candidate_intake.db.models import create_tables
from candidate_intake.db.session import build_engine
from candidate_intake.domain.imports.service import IngestionService
from candidate_intake.main import create_app


@pytest.fixture
def engine(tmp_path):
    db_engine = build_engine(f"sqlite:///{tmp_path / 'candidates.db'}")
    create_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'candidates.db'}",
        upload_dir=str(tmp_path / "uploads"),
        mapping_oracle_provider="heuristic",
        anthropic_api_key="",
        ingest_batch_size=250,
        ingest_error_flush_size=200,
        ingest_progress_interval=250,
        ingest_max_workers=1,
        llm_retry_delay_seconds=0,
    )


@pytest.fixture
def write_xlsx(tmp_path):
    """Factory writing rows (header first) into a single-sheet workbook."""

    def _write(name: str, rows: Sequence[Sequence[Any]]) -> str:
        path = tmp_path / name
        workbook = Workbook()
        sheet = workbook.active
        for row in rows:
            sheet.append(list(row))
        workbook.save(path)
        return str(path)

    return _write


def xlsx_bytes(path: str) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()


def truncate_sheet_xml(path: str) -> None:
    """Cut the first worksheet's XML in half, leaving the zip container intact."""
    with zipfile.ZipFile(path) as source:
        entries = {name: source.read(name) for name in source.namelist()}

    sheet = entries["xl/worksheets/sheet1.xml"]
    entries["xl/worksheets/sheet1.xml"] = sheet[: len(sheet) // 2]

    with zipfile.ZipFile(path, "w") as target:
        for name, data in entries.items():
            target.writestr(name, data)


CANDIDATE_HEADERS: List[str] = ["Candidate Name", "Email ID", "Mobile", "Total Exp", "Key Skills"]


@pytest.fixture
def candidate_rows():
    return [
        CANDIDATE_HEADERS,
        ["Asha Rao", "asha@example.com", "98765 43210", "5 yrs", "Python, SQL"],
        ["Vikram Singh", "vikram@example.com", "+91 91234-56789", "3.5", "Java|Spring"],
        ["Meera Iyer", "meera@example.com", "9988776655", "7", "Excel; Python"],
    ]


@pytest.fixture
def client(engine, test_settings):
    app = create_app(
        engine,
        test_settings,
        service_factory=lambda db_engine, config: IngestionService(db_engine, config, oracle=None),
    )
    with TestClient(app) as test_client:
        yield test_client


def wait_for_job(client: TestClient, job_id: str, timeout: float = 10.0) -> dict:
    """Poll the status endpoint until the job reaches a terminal state."""
    deadline = time.time() + timeout
    while True:
        response = client.get(f"/api/uploads/{job_id}/status")
        assert response.status_code == 200, response.text
        body = response.json()
        if body["status"] in ("completed", "failed") or time.time() > deadline:
            return body
        time.sleep(0.05)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
