"""
Pytest configuration and shared fixtures for the pt-historical tests.

This module provides a scripted REST transport and reusable job payloads.
"""

import json
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from pthistorical.config import Settings
from pthistorical.jobs import Job
from pthistorical.rules import RuleSet

# Configure pytest-asyncio for the coroutine tests
pytest_plugins = ('pytest_asyncio',)

JOB_ID = 'axep43s8rv'
JOB_TITLE = 'Louisville Rain Events'
JOBS_URL = 'https://historical.gnip.com/accounts/jim/jobs.json'
JOB_URL = f'https://historical.gnip.com:443/accounts/jim/publishers/twitter/historical/track/jobs/{JOB_ID}.json'
DATA_URL = f'https://historical.gnip.com:443/accounts/jim/publishers/twitter/historical/track/jobs/{JOB_ID}/results.json'


# =============================================================================
# Test Helpers
# =============================================================================

class FakeTransport:
    """
    Replays scripted `(status_code, body)` responses per (method, url).

    The last scripted response for a key repeats once the queue is drained.
    Every call is recorded in `calls` as (method, url, body).
    """

    def __init__(self):
        self.responses: Dict[Tuple[str, str], deque] = defaultdict(deque)
        self.calls: List[Tuple[str, str, Optional[str]]] = []

    def script(self, method: str, url: str, *responses: Tuple[int, Any]):
        for code, body in responses:
            text = body if isinstance(body, str) else json.dumps(body)
            self.responses[(method, url)].append((code, text))
        return self

    def _respond(self, method: str, url: str, body: Optional[str]) -> Tuple[int, str]:
        self.calls.append((method, url, body))
        queue = self.responses.get((method, url))
        if not queue:
            return 404, '{"error": "not scripted"}'
        if len(queue) > 1:
            return queue.popleft()
        return queue[0]

    def get(self, url, body=None):
        return self._respond('GET', url, body)

    def post(self, url, body=None):
        return self._respond('POST', url, body)

    def put(self, url, body=None):
        return self._respond('PUT', url, body)

    def delete(self, url, body=None):
        return self._respond('DELETE', url, body)

    def close(self):
        pass

    def methods(self) -> List[str]:
        return [f"{method} {url}" for method, url, _ in self.calls]


def job_list(*entries: Dict[str, Any]) -> Dict[str, Any]:
    return {'jobs': list(entries)}


def list_entry(status: str, title: str = JOB_TITLE, percent: int = 0) -> Dict[str, Any]:
    return {
        'title': title,
        'jobURL': JOB_URL,
        'status': status,
        'publisher': 'twitter',
        'streamType': 'track',
        'fromDate': '201103010500',
        'toDate': '201106010500',
        'percentComplete': percent,
        'expiresAt': '2013-02-07T22:42:17Z',
    }


def single_job(status: str, percent: int = 0, quote: bool = False, results: bool = False,
               message: str = '') -> Dict[str, Any]:
    document: Dict[str, Any] = {
        'title': JOB_TITLE,
        'account': 'jim',
        'publisher': 'twitter',
        'streamType': 'track',
        'format': 'activity-streams',
        'fromDate': '201103010500',
        'toDate': '201106010500',
        'status': status,
        'statusMessage': message,
        'jobURL': JOB_URL,
        'percentComplete': percent,
    }
    if quote:
        document['quote'] = {
            'costDollars': 5000,
            'estimatedActivityCount': 2500,
            'estimatedDurationHours': '12.0',
            'estimatedFileSizeMb': '2.5',
            'expiresAt': '2013-02-21T21:59:28Z',
        }
    if results:
        document['results'] = {
            'activityCount': 1544,
            'fileCount': 1255,
            'fileSizeMb': '1.44',
            'completedAt': '2013-02-15T08:24:40Z',
            'dataURL': DATA_URL,
            'expiresAt': '2013-03-01T23:12:22Z',
        }
    return document


def file_url(n: int, job_id: str = JOB_ID) -> str:
    return (
        f'https://s3-us-west-1.amazonaws.com/archive.replay.historical/customers/jim/publishers/twitter/'
        f'historical/track/jobs/{job_id}/2013/02/15/{n:02d}/00_activities.json.gz?AWSAccessKeyId=AKIA&Signature=x{n}'
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        account_name='jim',
        user_name='jim@example.com',
        password_encoded='c2VjcmV0',  # "secret"
        base_output_folder=tmp_path / 'output',
        log_dir=tmp_path / 'logs',
        poll_interval_seconds=300,
        submit_confirm_seconds=60,
    )


@pytest.fixture
def job() -> Job:
    rules = RuleSet()
    rules.add_rule('(rain OR flood OR storm OR weather)', 'weather')
    rules.add_rule('ThisRuleWillNotMatchAndHasNoTag')
    return Job(title=JOB_TITLE, from_date='201103010500', to_date='201106010500', rules=rules)
