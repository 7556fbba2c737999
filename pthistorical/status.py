"""
Derives a normalized job Status from raw Historical PowerTrack payloads.

The server answers with one of two JSON shapes that share field names:

* a job list, ``{"jobs": [{"title": ..., "jobURL": ..., "status": ...}, ...]}``
* a single job, ``{"title": ..., "status": ..., "quote": {...}, "results": {...}}``

The shape is decided by a structural probe, checked in this order:

1. a top-level ``jobs`` list means a job list;
2. a top-level ``status`` or ``results`` key means a single job;
3. anything else (including invalid JSON) is ``unknown``.

The probe order matters because a job list entry carries ``status`` too.
`classify` is a pure function and never raises.
"""

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

NEW = 'new'
ESTIMATING = 'estimating'
QUOTED = 'quoted'
ACCEPTED = 'accepted'
REJECTED = 'rejected'
RUNNING = 'running'
FINISHED = 'finished'
UNKNOWN = 'unknown'

STATUS_NAMES = (NEW, ESTIMATING, QUOTED, ACCEPTED, REJECTED, RUNNING, FINISHED, UNKNOWN)
# Stages at which the server has produced a quote.
QUOTED_OR_LATER = frozenset({QUOTED, ACCEPTED, REJECTED, RUNNING, FINISHED})
# Raw server names for a completed job.
COMPLETED_ALIASES = frozenset({FINISHED, 'delivered'})


@dataclass(frozen=True)
class Quote:
    """Server estimate that must be accepted before the job runs."""
    cost_dollars: Optional[float] = None
    estimated_activity_count: Optional[int] = None
    estimated_duration_hours: Optional[float] = None
    estimated_file_size_mb: Optional[float] = None
    expires_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'Quote':
        return cls(
            cost_dollars=_to_float(payload.get('costDollars')),
            estimated_activity_count=_to_int(payload.get('estimatedActivityCount')),
            estimated_duration_hours=_to_float(payload.get('estimatedDurationHours')),
            estimated_file_size_mb=_to_float(payload.get('estimatedFileSizeMb')),
            expires_at=_to_str(payload.get('expiresAt')),
        )

    def describe(self) -> str:
        parts = []
        if self.cost_dollars is not None: parts.append(f"cost ${self.cost_dollars:,.2f}")
        if self.estimated_activity_count is not None: parts.append(f"~{self.estimated_activity_count:,} activities")
        if self.estimated_duration_hours is not None: parts.append(f"~{self.estimated_duration_hours:g} h")
        if self.estimated_file_size_mb is not None: parts.append(f"~{self.estimated_file_size_mb:g} MB")
        if self.expires_at: parts.append(f"expires {self.expires_at}")
        return ', '.join(parts) or 'no quote details'


@dataclass(frozen=True)
class Results:
    """Delivery details of a finished job."""
    activity_count: Optional[int] = None
    file_count: Optional[int] = None
    file_size_mb: Optional[float] = None
    completed_at: Optional[str] = None
    data_url: Optional[str] = None
    expires_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'Results':
        return cls(
            activity_count=_to_int(payload.get('activityCount')),
            file_count=_to_int(payload.get('fileCount')),
            file_size_mb=_to_float(payload.get('fileSizeMb')),
            completed_at=_to_str(payload.get('completedAt')),
            data_url=_to_str(payload.get('dataURL')),
            expires_at=_to_str(payload.get('expiresAt')),
        )


@dataclass(frozen=True)
class Status:
    """
    Normalized view of a job's lifecycle stage.

    `results` is set if and only if `name` is finished, and `quote` is set only
    at the quoted stage or later. `job_url` and `identifier` are filled when the
    status came from a job list entry.
    """
    name: str = UNKNOWN
    percent_complete: int = 0
    message: str = ''
    quote: Optional[Quote] = None
    results: Optional[Results] = None
    job_url: Optional[str] = None
    identifier: Optional[str] = None

    def __str__(self) -> str:
        text = f"{self.name} ({self.percent_complete}%)"
        return f"{text}: {self.message}" if self.message else text


def classify(raw_body: Union[bytes, str], job_title: str) -> Status:
    """
    Maps a raw job list or single job response body to a Status.

    Args:
        raw_body: Response body as returned by the transport.
        job_title: Title of the job being tracked; only used for job lists.

    Returns:
        A freshly derived Status. Unrecognized input yields `unknown`.
    """
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode('utf-8', 'replace')
    try:
        document = json.loads(raw_body)
    except (TypeError, ValueError):
        return Status()

    if not isinstance(document, dict):
        return Status()
    if isinstance(document.get('jobs'), list):
        return _classify_job_list(document['jobs'], job_title)
    if 'status' in document or 'results' in document:
        return _classify_single_job(document)
    return Status()


def job_identifier_from_url(job_url: str) -> str:
    """`.../jobs/axep43s8rv.json` -> `axep43s8rv`."""
    return job_url.rstrip('/').split('/')[-1].split('.')[0]


def _classify_job_list(jobs: list, job_title: str) -> Status:
    entry = next((j for j in jobs if isinstance(j, dict) and j.get('title') == job_title), None)
    if entry is None:
        return Status(name=NEW)

    raw_name = _normalize_name(entry.get('status'))
    # List entries never carry results, so a completed entry is still
    # awaiting the single job fetch that exposes them.
    name = RUNNING if raw_name in COMPLETED_ALIASES else _known_or_unknown(raw_name)

    job_url = _to_str(entry.get('jobURL'))
    return Status(
        name=name,
        percent_complete=_to_percent(entry.get('percentComplete')),
        message=_to_str(entry.get('statusMessage')) or '',
        job_url=job_url,
        identifier=job_identifier_from_url(job_url) if job_url else None,
    )


def _classify_single_job(document: Dict[str, Any]) -> Status:
    raw_name = _normalize_name(document.get('status'))
    results_payload = document.get('results')

    # Results are the authoritative completion signal, whatever the status says.
    if isinstance(results_payload, dict):
        name = FINISHED
    elif raw_name in COMPLETED_ALIASES:
        name = UNKNOWN
    else:
        name = _known_or_unknown(raw_name)

    quote_payload = document.get('quote')
    quote = Quote.from_payload(quote_payload) if isinstance(quote_payload, dict) and name in QUOTED_OR_LATER else None

    return Status(
        name=name,
        percent_complete=_to_percent(document.get('percentComplete')),
        message=_to_str(document.get('statusMessage')) or '',
        quote=quote,
        results=Results.from_payload(results_payload) if name == FINISHED else None,
    )


def _normalize_name(value: Any) -> str:
    return value.strip().lower() if isinstance(value, str) else ''


def _known_or_unknown(name: str) -> str:
    return name if name in STATUS_NAMES else UNKNOWN


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _to_percent(value: Any) -> int:
    number = _to_int(value)
    if number is None:
        return 0
    return max(0, min(100, number))
