"""
Header-to-canonical-field resolution for candidate spreadsheets.

Headers are matched against an ordered synonym table. When none of the
headers can be matched, an optional mapping oracle (for example an LLM) is
asked for a suggestion. Its answer is canonicalized into the same
``ResolvedMapping`` shape the heuristics produce, so nothing downstream has
to care where a mapping came from.

Matching precedence (per header):

1. Exact: the normalized header equals an alias. The first field in table
   order wins.
2. Whole-word containment: an alias appears in the header as a contiguous run
   of complete words ("email" in "Email Notes", but "name" is not found in
   "Username"). The alias with the most words wins, then table order.

Containment is restricted in two ways. Headers that name another party
("Company Name", "Recruiter Email", "Emergency Contact") never match the
candidate's own name or contact fields, and single-word party aliases such as
"client" or "company" only match exactly.

Anything else stays unmapped (None). Headers are never guessed.
"""
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from candidate_intake.core.exceptions import InvalidMappingException, OracleResponseException
from candidate_intake.domain.imports.fingerprinting import normalize_header

logger = logging.getLogger(__name__)


HEADER_SYNONYMS: Dict[str, List[str]] = {
    "first_name": ["first name", "firstname", "candidate first name", "given name", "fname"],
    "last_name": ["last name", "lastname", "surname", "family name", "lname"],
    "full_name": [
        "full name", "candidate name", "name", "applicant name",
        "employee name", "candidate full name",
    ],
    "email": [
        "email", "email id", "email address", "mail", "e mail",
        "official email", "personal email", "candidate email",
    ],
    "phone": [
        "phone", "mobile", "mobile number", "phone number", "contact",
        "contact number", "contact no", "cell", "cell number", "mob",
    ],
    "experience_years": [
        "total exp", "experience", "total experience", "overall experience",
        "years of experience", "exp", "work experience", "experience years",
    ],
    "skills": ["skills", "skill", "key skills", "skill set", "skillset", "technical skills", "primary skills"],
    "designation": ["designation", "position", "job title", "title", "role", "applied position", "profile", "job role"],
    "current_company": [
        "current company", "current employer", "present company", "present employer",
        "current organization", "company", "organization", "employer",
    ],
    "location": ["current location", "current city", "present location", "location", "city", "residing location"],
    "job_location": ["job location", "work location", "preferred location", "preferred locations", "posting location"],
    "highest_qualification": [
        "highest qualification", "qualification", "education",
        "educational qualification", "degree", "highest degree",
    ],
    "recruiter_name": ["recruiter", "recruiter name", "hr", "hr name", "talent acquisition", "sourcer"],
    "client_name": ["client", "client name", "hiring company", "customer", "end client"],
    "industry": ["industry", "domain", "sector"],
    "submission_date": [
        "date of submission", "submitted on", "date of application",
        "application date", "cv submitted date",
    ],
    "candidate_status": ["status", "final status", "candidate status", "selection status", "result"],
}

CANONICAL_FIELDS: Tuple[str, ...] = tuple(HEADER_SYNONYMS.keys())

# Fields describing the candidate themself.
PERSON_FIELDS = frozenset({"first_name", "last_name", "full_name", "email", "phone"})

# Words marking a header as belonging to someone other than the candidate.
PARTY_WORDS = frozenset({
    "company", "college", "university", "school", "institute", "employer",
    "organization", "organisation", "recruiter", "hr", "client", "customer",
    "vendor", "manager", "referrer", "reference", "father", "mother", "spouse",
    "emergency", "reporting", "sourcer",
})

# Field names other mapping sources are known to emit.
_LEGACY_FIELD_ALIASES = {
    "total_experience": "experience_years",
    "current_location": "location",
    "company": "current_company",
    "name": "full_name",
    "status": "candidate_status",
}

_UNMAPPED_MARKERS = {"", "unmapped", "null", "none", "skip", "ignore"}


@dataclass
class ResolvedMapping:
    """A complete header -> canonical field (or None) mapping."""
    per_header: Dict[str, Optional[str]]
    source: str = "heuristic"

    @property
    def mapped_fields(self) -> Dict[str, str]:
        return {header: target for header, target in self.per_header.items() if target}

    @property
    def is_empty(self) -> bool:
        return not self.mapped_fields


@dataclass
class NeedsManualMapping:
    """No confident mapping exists; the caller must collect explicit choices."""
    headers: List[str]
    suggestions: Dict[str, Optional[str]] = field(default_factory=dict)


MappingResolution = Union[ResolvedMapping, NeedsManualMapping]


def normalize_header_for_matching(value: Any) -> str:
    """Lower-case, trim and collapse whitespace, underscores and hyphens to single spaces."""
    text = normalize_header(value).lower()
    text = re.sub(r"[_\-]+", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def _tokens(text: str) -> Tuple[str, ...]:
    return tuple(re.findall(r"[a-z0-9]+", text))


def _contains_run(haystack: Tuple[str, ...], needle: Tuple[str, ...]) -> bool:
    if not needle or len(needle) > len(haystack):
        return False
    width = len(needle)
    return any(haystack[i:i + width] == needle for i in range(len(haystack) - width + 1))


def _names_other_party(header_tokens: Tuple[str, ...], alias_tokens: Tuple[str, ...]) -> bool:
    return any(token in PARTY_WORDS and token not in alias_tokens for token in header_tokens)


_ALIAS_TABLE: List[Tuple[int, str, str, Tuple[str, ...]]] = [
    (order, field_name, alias, _tokens(alias))
    for order, (field_name, aliases) in enumerate(HEADER_SYNONYMS.items())
    for alias in aliases
]


def match_header(header: Any) -> Optional[str]:
    """Return the canonical field for a single header, or None when nothing matches."""
    normalized = normalize_header_for_matching(header)
    if not normalized:
        return None
    header_tokens = _tokens(normalized)
    joined = " ".join(header_tokens)

    for _, field_name, alias, _ in _ALIAS_TABLE:
        if normalized == alias or joined == alias:
            return field_name

    best: Optional[Tuple[int, int, str]] = None
    for order, field_name, _, alias_tokens in _ALIAS_TABLE:
        if len(alias_tokens) == 1 and alias_tokens[0] in PARTY_WORDS:
            continue
        if not _contains_run(header_tokens, alias_tokens):
            continue
        if field_name in PERSON_FIELDS and _names_other_party(header_tokens, alias_tokens):
            continue
        rank = (-len(alias_tokens), order)
        if best is None or rank < best[:2]:
            best = (rank[0], rank[1], field_name)
    return best[2] if best else None


def map_headers_heuristically(headers: Sequence[Any]) -> Dict[str, Optional[str]]:
    """Map every non-empty header through the synonym table."""
    mapping: Dict[str, Optional[str]] = {}
    for header in headers:
        key = normalize_header(header)
        if not key:
            continue
        mapping[key] = match_header(key)
    return mapping


def canonical_field_name(value: Any) -> Optional[str]:
    """
    Translate a target field name from any source into a canonical field.

    Accepts snake_case, camelCase and a few legacy names. Returns None for
    explicit "unmapped" markers; raises ValueError for unknown names.
    """
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in _UNMAPPED_MARKERS:
        return None
    snake = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", text)
    snake = re.sub(r"[\s\-]+", "_", snake).lower()
    snake = _LEGACY_FIELD_ALIASES.get(snake, snake)
    if snake not in CANONICAL_FIELDS:
        raise ValueError(f"Unknown canonical field '{value}'")
    return snake


def _pairs_from_payload(payload: Any) -> List[Tuple[Any, Any]]:
    if isinstance(payload, dict):
        inner = payload.get("mapping") if set(payload.keys()) == {"mapping"} else None
        if inner is not None:
            return _pairs_from_payload(inner)
        return list(payload.items())

    if isinstance(payload, list):
        pairs: List[Tuple[Any, Any]] = []
        for entry in payload:
            if isinstance(entry, (list, tuple)) and len(entry) == 2:
                pairs.append((entry[0], entry[1]))
            elif isinstance(entry, dict) and "header" in entry:
                pairs.append((entry["header"], entry.get("field", entry.get("target"))))
            else:
                raise OracleResponseException(f"Unrecognised mapping entry: {entry!r}")
        return pairs

    raise OracleResponseException(
        f"Mapping must be an object or a list of pairs, got {type(payload).__name__}"
    )


def canonicalize_oracle_mapping(payload: Any, headers: Sequence[Any]) -> Dict[str, Optional[str]]:
    """
    Convert an oracle answer (object or list of pairs) into one header -> field mapping.

    Headers the oracle did not mention, and fields that are not canonical,
    become None. Structurally invalid payloads raise OracleResponseException.
    """
    known = {normalize_header(h): normalize_header(h) for h in headers if normalize_header(h)}
    by_lower = {key.lower(): key for key in known}
    mapping: Dict[str, Optional[str]] = {key: None for key in known}

    for raw_header, raw_field in _pairs_from_payload(payload):
        header = normalize_header(raw_header)
        header = known.get(header) or by_lower.get(header.lower())
        if header is None:
            logger.debug("Ignoring oracle mapping for unknown header %r", raw_header)
            continue
        try:
            mapping[header] = canonical_field_name(raw_field)
        except ValueError:
            logger.debug("Ignoring oracle field %r for header %r", raw_field, header)
            mapping[header] = None
    return mapping


def canonicalize_manual_mapping(mapping: Dict[str, Any], headers: Sequence[Any]) -> Dict[str, Optional[str]]:
    """Validate a user-confirmed mapping; unknown fields are rejected rather than dropped."""
    if not isinstance(mapping, dict):
        raise InvalidMappingException("Mapping must be an object of header -> field.")

    result = {normalize_header(h): None for h in headers if normalize_header(h)}
    unknown_fields = []
    for raw_header, raw_field in mapping.items():
        header = normalize_header(raw_header)
        if not header:
            continue
        try:
            result[header] = canonical_field_name(raw_field)
        except ValueError:
            unknown_fields.append(str(raw_field))

    if unknown_fields:
        raise InvalidMappingException(
            f"Unknown canonical field(s): {', '.join(sorted(set(unknown_fields)))}. "
            f"Allowed: {', '.join(CANONICAL_FIELDS)}"
        )
    if not any(result.values()):
        raise InvalidMappingException("Mapping must assign at least one header to a canonical field.")
    return result


def _ask_oracle(
    oracle: Any,
    headers: List[str],
    *,
    max_retries: int,
    retry_delay: float,
    sleep: Callable[[float], None],
) -> Optional[Dict[str, Optional[str]]]:
    """Call the oracle with linear backoff; None when every attempt failed."""
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            payload = oracle.suggest_mapping(headers)
            return canonicalize_oracle_mapping(payload, headers)
        except Exception as e:
            logger.warning(
                "Mapping oracle attempt %d/%d failed: %s",
                attempt,
                attempts,
                e,
            )
            if attempt < attempts:
                sleep(retry_delay * attempt)
    return None


def resolve_headers(
    headers: Sequence[Any],
    *,
    oracle: Any = None,
    max_retries: int = 3,
    retry_delay: float = 0.8,
    sleep: Callable[[float], None] = time.sleep,
) -> MappingResolution:
    """
    Produce a best-effort mapping for headers that have no cached resolution.

    Returns NeedsManualMapping when no header could be mapped confidently.
    """
    clean_headers = [normalize_header(h) for h in headers if normalize_header(h)]
    heuristic = map_headers_heuristically(clean_headers)
    resolved = ResolvedMapping(per_header=heuristic, source="heuristic")

    if resolved.is_empty and oracle is not None and clean_headers:
        logger.info("Heuristics mapped none of %d headers; consulting mapping oracle", len(clean_headers))
        suggestion = _ask_oracle(
            oracle,
            clean_headers,
            max_retries=max_retries,
            retry_delay=retry_delay,
            sleep=sleep,
        )
        if suggestion is not None:
            resolved = ResolvedMapping(per_header=suggestion, source="oracle")
        else:
            logger.warning("Mapping oracle unavailable; falling back to heuristic result")

    if resolved.is_empty:
        return NeedsManualMapping(headers=clean_headers, suggestions=resolved.per_header)

    logger.info(
        "Resolved %d of %d headers via %s",
        len(resolved.mapped_fields),
        len(clean_headers),
        resolved.source,
    )
    return resolved
