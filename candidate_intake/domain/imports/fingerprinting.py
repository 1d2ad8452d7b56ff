import hashlib
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from candidate_intake.core.exceptions import MappingCacheUnavailableException
from candidate_intake.db.models import HeaderMapping, utcnow

logger = logging.getLogger(__name__)

_mappings = HeaderMapping.__table__


def normalize_header(value: Any) -> str:
    """Stringify and trim a raw header cell; None becomes an empty string."""
    if value is None:
        return ""
    return str(value).strip()


def calculate_header_signature(headers: Sequence[Any]) -> str:
    """
    Calculate a deterministic, order-independent fingerprint for a header set.

    Headers are trimmed and lower-cased, empties are dropped, and the sorted
    result is hashed so the same layout always yields the same key.
    """
    normalized = [normalize_header(h).lower() for h in headers or []]
    normalized = sorted(n for n in normalized if n)
    content = "|".join(normalized)
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


def _row_to_mapping(row: Any) -> Dict[str, Any]:
    return {
        "header_signature": row["header_signature"],
        "original_headers": list(row["original_headers"] or []),
        "mapped_headers": dict(row["mapped_headers"] or {}),
        "source": row["source"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def get_header_mapping(engine: Engine, header_signature: str) -> Optional[Dict[str, Any]]:
    """Return the cached mapping for a signature, or None when it has never been resolved."""
    try:
        with engine.connect() as conn:
            row = conn.execute(
                select(_mappings).where(_mappings.c.header_signature == header_signature)
            ).mappings().first()
    except SQLAlchemyError as e:
        raise MappingCacheUnavailableException(f"Header mapping cache unavailable: {e}") from e

    if row is None:
        logger.info("Header mapping cache miss (signature: %s)", header_signature[:8])
        return None
    logger.info("Header mapping cache hit (signature: %s)", header_signature[:8])
    return _row_to_mapping(row)


def find_header_mapping(engine: Engine, headers: Sequence[Any]) -> Optional[Dict[str, Any]]:
    """Convenience lookup by raw headers."""
    return get_header_mapping(engine, calculate_header_signature(headers))


def _upsert_statement(dialect_name: str, values: Dict[str, Any]):
    if dialect_name == "postgresql":
        stmt = postgresql.insert(_mappings).values(**values)
    elif dialect_name == "sqlite":
        stmt = sqlite.insert(_mappings).values(**values)
    else:
        return None
    return stmt.on_conflict_do_update(
        index_elements=[_mappings.c.header_signature],
        set_={
            "original_headers": stmt.excluded.original_headers,
            "mapped_headers": stmt.excluded.mapped_headers,
            "source": stmt.excluded.source,
            "updated_at": stmt.excluded.updated_at,
        },
    )


def upsert_header_mapping(
    engine: Engine,
    headers: Sequence[Any],
    mapped_headers: Dict[str, Optional[str]],
    *,
    source: str = "heuristic",
) -> Dict[str, Any]:
    """
    Store or replace the mapping for a header set.

    Last writer wins: re-confirming the same layout overwrites the entry
    rather than adding a second one.
    """
    original_headers: List[str] = [normalize_header(h) for h in headers if normalize_header(h)]
    header_signature = calculate_header_signature(original_headers)
    now = utcnow()
    values = {
        "header_signature": header_signature,
        "original_headers": original_headers,
        "mapped_headers": dict(mapped_headers),
        "source": source,
        "created_at": now,
        "updated_at": now,
    }

    try:
        with engine.begin() as conn:
            stmt = _upsert_statement(engine.dialect.name, values)
            if stmt is not None:
                conn.execute(stmt)
            else:
                existing = conn.execute(
                    select(_mappings.c.header_signature)
                    .where(_mappings.c.header_signature == header_signature)
                    .with_for_update()
                ).first()
                if existing:
                    conn.execute(
                        update(_mappings)
                        .where(_mappings.c.header_signature == header_signature)
                        .values(
                            original_headers=original_headers,
                            mapped_headers=dict(mapped_headers),
                            source=source,
                            updated_at=now,
                        )
                    )
                else:
                    conn.execute(_mappings.insert().values(**values))
            row = conn.execute(
                select(_mappings).where(_mappings.c.header_signature == header_signature)
            ).mappings().first()
    except SQLAlchemyError as e:
        raise MappingCacheUnavailableException(f"Header mapping cache unavailable: {e}") from e

    logger.info(
        "Stored %s header mapping for %d headers (signature: %s)",
        source,
        len(original_headers),
        header_signature[:8],
    )
    return _row_to_mapping(row)
