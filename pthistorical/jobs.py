"""
Defines the data class for a historical job and its description loader.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .config import read_document
from .exceptions import ConfigurationError
from .rules import RuleSet

logger = logging.getLogger(__name__)

REQUIRED_JOB_FIELDS = ('title', 'from_date', 'to_date')


@dataclass
class Job:
    """
    Represents one bulk historical extraction request.

    Attributes:
        title: Unique within the account; the correlation key until an identifier exists.
        from_date: Start of the extraction window, `YYYYMMDDhhmm`.
        to_date: End of the extraction window, `YYYYMMDDhhmm`.
        publisher: Data publisher.
        stream_type: Product stream the rules run against.
        data_format: Output activity format.
        service_name: Optional service user name sent as `serviceUsername`.
        rules: The ordered rule set filtering the job.
        identifier: Server-assigned token, set once the job is found in the job list.
        job_url: Canonical URL of this job, set together with the identifier.
    """
    title: str
    from_date: str
    to_date: str
    publisher: str = 'twitter'
    stream_type: str = 'track'
    data_format: str = 'activity-streams'
    service_name: Optional[str] = None
    rules: RuleSet = field(default_factory=RuleSet)
    identifier: Optional[str] = None
    job_url: Optional[str] = None

    def assign_identifier(self, identifier: str, job_url: str):
        """Records the server identifier. It may be set only once."""
        if self.identifier is not None and self.identifier != identifier:
            raise ValueError(f"Job '{self.title}' already has identifier {self.identifier}, refusing {identifier}")
        self.identifier = identifier
        self.job_url = job_url

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            'title': self.title,
            'publisher': self.publisher,
            'fromDate': str(self.from_date),
            'toDate': str(self.to_date),
            'streamType': self.stream_type,
            'dataFormat': self.data_format,
        }
        if self.service_name:
            payload['serviceUsername'] = self.service_name
        payload['rules'] = self.rules.to_list()
        return payload

    def to_json(self) -> str:
        """Returns the job submission body."""
        return json.dumps(self.to_payload())


def load_job_description(path: Path) -> Job:
    """
    Loads a job description file.

    The file holds a `job:` section (title, from_date, to_date and the optional
    classification fields) and a `rules_file` entry naming the rule set. A
    relative `rules_file` resolves against the description's own directory.

    Raises:
        ConfigurationError: If the description or its rules file is missing or invalid.
    """
    path = Path(path)
    data = read_document(path)
    if not isinstance(data, dict) or not isinstance(data.get('job'), dict):
        raise ConfigurationError(f"{path} has no 'job' section.")
    job_section = data['job']

    missing = [name for name in REQUIRED_JOB_FIELDS if job_section.get(name) in (None, '')]
    if missing:
        raise ConfigurationError(f"{path} is missing job field(s): {', '.join(missing)}")

    rules = RuleSet()
    rules_file = data.get('rules_file')
    if rules_file:
        rules_path = Path(rules_file)
        if not rules_path.is_absolute():
            rules_path = path.parent / rules_path
        rules = RuleSet.from_file(rules_path)
    elif isinstance(data.get('rules'), list):
        rules = RuleSet(r for r in data['rules'] if isinstance(r, dict))
    if not len(rules):
        logger.warning(f"Job description {path} defines no rules.")

    # Unset optional fields fall back to the dataclass defaults.
    optional = {
        name: job_section[name]
        for name in ('publisher', 'stream_type', 'data_format', 'service_name')
        if job_section.get(name)
    }
    return Job(
        title=str(job_section['title']),
        from_date=str(job_section['from_date']),
        to_date=str(job_section['to_date']),
        rules=rules,
        **optional,
    )
