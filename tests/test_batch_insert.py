from sqlalchemy import func, select

from candidate_intake.db.models import Candidate, insert_candidates_batch


def _count(engine):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(Candidate.__table__)).scalar()


def test_clean_batch_inserts_everything(engine):
    result = insert_candidates_batch(
        engine,
        [{"email": "a@b.com", "skills": ["Python"]}, {"email": "c@d.com"}, {"phone": "9876543210"}],
    )

    assert result.succeeded_count == 3
    assert result.failures == []
    assert _count(engine) == 3


def test_uniqueness_violation_is_attributed_to_its_row(engine):
    insert_candidates_batch(engine, [{"email": "taken@b.com"}])

    result = insert_candidates_batch(
        engine,
        [{"email": "new1@b.com"}, {"email": "taken@b.com"}, {"email": "new2@b.com"}],
    )

    assert result.succeeded_count == 2
    assert [failure.index for failure in result.failures] == [1]
    assert "Duplicate" in result.failures[0].message
    assert _count(engine) == 3


def test_empty_batch_is_a_no_op(engine):
    result = insert_candidates_batch(engine, [])

    assert result.succeeded_count == 0
    assert result.failures == []


def test_unknown_keys_are_ignored(engine):
    result = insert_candidates_batch(engine, [{"email": "a@b.com", "favourite_colour": "teal"}])

    assert result.succeeded_count == 1
