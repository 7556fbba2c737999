"""
Unit tests for JobOrchestrator.

Tests orchestration logic:
- Submission of new jobs and identifier discovery
- Quote acceptance, acceptance failure and manual acceptance mode
- Waiting on estimation and execution
- Handoff to the downloader and finisher only once finished
- Halting on unknown status, transport failures and cancellation
"""

import json
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from pthistorical.downloads import DownloadReport
from pthistorical.exceptions import (
    AcceptanceError, JobStatusUnknownError, JobSubmissionError, ManifestError,
    OrchestrationCancelled, TransportError,
)
from pthistorical.finisher import FinishReport
from pthistorical.orchestrator import JobOrchestrator
from pthistorical.status import FINISHED, QUOTED, REJECTED

from conftest import (
    DATA_URL, JOB_ID, JOB_TITLE, JOB_URL, JOBS_URL, FakeTransport, file_url, job_list, list_entry, single_job,
)

GET_LIST = f'GET {JOBS_URL}'
POST_LIST = f'POST {JOBS_URL}'
GET_JOB = f'GET {JOB_URL}'
PUT_JOB = f'PUT {JOB_URL}'


def make_orchestrator(settings, job, transport, events=None, **kwargs):
    """Builds an orchestrator with mocked retrieval and a recording sleep."""
    events = events if events is not None else []
    downloader = MagicMock()
    downloader.download_sync.side_effect = lambda *args: events.append('download') or DownloadReport(
        total=2,
        written=[Path('a.gz'), Path('b.gz')],
        manifest={'urlList': [file_url(0), file_url(1)], 'suspectMinutesUrl': 'https://example.com/suspect'},
    )
    finisher = MagicMock()
    finisher.finish.side_effect = lambda *args: events.append('finish') or FinishReport()
    sleeps = []

    orchestrator = JobOrchestrator(
        settings, job, transport=transport, downloader=downloader, finisher=finisher,
        sleep=sleeps.append, **kwargs,
    )
    return orchestrator, downloader, finisher, sleeps


class TestFullLifecycle:
    """Tests for a job driven from submission to download."""

    def test_new_job_runs_to_completion(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list()), (200, job_list(list_entry('estimating'))))
        transport.script('POST', JOBS_URL, (201, '{}'))
        transport.script(
            'GET', JOB_URL,
            (200, single_job('estimating', percent=50)),
            (200, single_job('quoted', quote=True)),
            (200, single_job('running', percent=41, quote=True)),
            (200, single_job('delivered', percent=100, quote=True, results=True)),
        )
        transport.script('PUT', JOB_URL, (200, '{}'))
        orchestrator, downloader, finisher, sleeps = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert transport.methods() == [GET_LIST, POST_LIST, GET_LIST, GET_JOB, GET_JOB, PUT_JOB, GET_JOB, GET_JOB]
        assert sleeps == [60, 300, 300, 300]
        assert outcome.finished
        assert outcome.status.name == FINISHED
        assert outcome.identifier == JOB_ID
        assert outcome.output_folder == settings.base_output_folder / JOB_ID
        assert outcome.output_folder.is_dir()
        assert outcome.download_report.total == 2
        assert job.identifier == JOB_ID
        assert job.job_url == JOB_URL

        downloader.download_sync.assert_called_once_with(DATA_URL, outcome.output_folder, JOB_ID, 30)
        job_document, manifest, folder = finisher.finish.call_args[0]
        assert job_document['results']['dataURL'] == DATA_URL
        assert manifest['suspectMinutesUrl'] == 'https://example.com/suspect'
        assert folder == outcome.output_folder

    def test_submission_body_is_job_payload(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list()), (200, job_list(list_entry('rejected'))))
        transport.script('POST', JOBS_URL, (201, '{}'))
        transport.script('GET', JOB_URL, (200, single_job('rejected')))
        orchestrator, *_ = make_orchestrator(settings, job, transport)

        orchestrator.manage()

        posted = json.loads(transport.calls[1][2])
        assert posted['title'] == JOB_TITLE
        assert posted['fromDate'] == '201103010500'
        assert posted['rules'][0] == {'value': '(rain OR flood OR storm OR weather)', 'tag': 'weather'}

    def test_existing_job_is_not_resubmitted(self, settings, job, transport):
        """A job already in the list is resumed where it stands."""
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('running', percent=80))))
        transport.script('GET', JOB_URL, (200, single_job('running', percent=90)), (200, single_job('running', results=True)))
        orchestrator, downloader, _, sleeps = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert POST_LIST not in transport.methods()
        assert PUT_JOB not in transport.methods()
        assert sleeps == [300]
        assert outcome.finished
        downloader.download_sync.assert_called_once()

    def test_accept_only_after_quoted_and_download_only_after_finished(self, settings, job, transport):
        events = []
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('estimating'))))
        transport.script(
            'GET', JOB_URL,
            (200, single_job('estimating')),
            (200, single_job('quoted', quote=True)),
            (200, single_job('accepted', quote=True)),
            (200, single_job('running', results=True, quote=True)),
        )
        transport.script('PUT', JOB_URL, (204, ''))
        orchestrator, *_ = make_orchestrator(settings, job, transport, events=events)

        original_get = transport.get
        def recording_get(url, body=None):
            code, text = original_get(url, body)
            if url == JOB_URL:
                events.append(f"saw {json.loads(text)['status']}" + (' results' if 'results' in text else ''))
            return code, text
        transport.get = recording_get
        original_put = transport.put
        transport.put = lambda url, body=None: events.append(f'put {body}') or original_put(url, body)

        orchestrator.manage()

        assert events == [
            'saw estimating',
            'saw quoted',
            'put {"status":"accept"}',
            'saw accepted',
            'saw running results',
            'download',
            'finish',
        ]

    def test_quoted_after_accept_is_not_accepted_twice(self, settings, job, transport):
        """The server may lag behind a successful accept."""
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('quoted'))))
        transport.script(
            'GET', JOB_URL,
            (200, single_job('quoted', quote=True)),
            (200, single_job('quoted', quote=True)),
            (200, single_job('running', results=True)),
        )
        transport.script('PUT', JOB_URL, (200, '{}'))
        orchestrator, *_ = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert transport.methods().count(PUT_JOB) == 1
        assert outcome.finished

    def test_friendly_folder_names(self, settings, transport, job):
        settings = settings.model_copy(update={'friendly_folder_names': True})
        job.title = 'Rain (2011, spring)'
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('rejected', title=job.title))))
        transport.script('GET', JOB_URL, (200, single_job('rejected')))
        orchestrator, *_ = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert outcome.output_folder == settings.base_output_folder / 'Rain_2011_spring_'

    @pytest.mark.parametrize('title, folder', [
        ('../../etc/cron.d', '_.._etc_cron.d'),
        ('a/b\\c', 'a_b_c'),
        ('..', JOB_ID),
    ])
    def test_friendly_folder_stays_inside_base(self, settings, transport, job, title, folder):
        settings = settings.model_copy(update={'friendly_folder_names': True})
        job.title = title
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('rejected', title=title))))
        transport.script('GET', JOB_URL, (200, single_job('rejected')))
        orchestrator, *_ = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert outcome.output_folder == settings.base_output_folder / folder
        assert outcome.output_folder.parent == settings.base_output_folder


class TestSubmission:
    """Tests for submission failures, which are always fatal."""

    def test_non_2xx_submission_is_fatal(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list()))
        transport.script('POST', JOBS_URL, (400, '{"reason": "bad rules"}'))
        orchestrator, downloader, _, sleeps = make_orchestrator(settings, job, transport)

        with pytest.raises(JobSubmissionError) as exc_info:
            orchestrator.manage()

        assert exc_info.value.status_code == 400
        assert 'bad rules' in exc_info.value.body
        assert sleeps == []
        assert transport.methods() == [GET_LIST, POST_LIST]
        downloader.download_sync.assert_not_called()

    def test_job_list_is_rechecked_until_submission_registers(self, settings, job, transport):
        """A slow job list after a 2xx submission is waited out, not treated as failure."""
        transport.script(
            'GET', JOBS_URL,
            (200, job_list()), (200, job_list()), (200, job_list()), (200, job_list(list_entry('rejected'))),
        )
        transport.script('POST', JOBS_URL, (201, '{}'))
        transport.script('GET', JOB_URL, (200, single_job('rejected')))
        orchestrator, _, _, sleeps = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert transport.methods() == [GET_LIST, POST_LIST, GET_LIST, GET_LIST, GET_LIST, GET_JOB]
        assert sleeps == [60, 60, 60]
        assert outcome.identifier == JOB_ID

    def test_job_missing_after_all_checks_is_fatal(self, settings, job, transport):
        settings = settings.model_copy(update={'submit_confirm_attempts': 3})
        transport.script('GET', JOBS_URL, (200, job_list()))
        transport.script('POST', JOBS_URL, (200, '{}'))
        orchestrator, _, _, sleeps = make_orchestrator(settings, job, transport)

        with pytest.raises(JobSubmissionError, match='not in the job list after 3 check'):
            orchestrator.manage()
        assert transport.methods().count(GET_LIST) == 4
        assert transport.methods().count(POST_LIST) == 1
        assert sleeps == [60, 60, 60]

    def test_transport_failure_on_submit_is_fatal(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list()))
        transport.post = MagicMock(side_effect=TransportError('connection refused'))
        orchestrator, *_ = make_orchestrator(settings, job, transport)

        with pytest.raises(JobSubmissionError, match='connection refused'):
            orchestrator.manage()


class TestAcceptance:
    """Tests for the quote acceptance step."""

    def test_acceptance_403_stays_quoted(self, settings, job, transport):
        """A refused accept is reported, not raised, and the run stops at quoted."""
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('quoted'))))
        transport.script('GET', JOB_URL, (200, single_job('quoted', quote=True)))
        transport.script('PUT', JOB_URL, (403, '{"reason": "trial accounts cannot accept"}'))
        orchestrator, downloader, finisher, _ = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert outcome.status.name == QUOTED
        assert outcome.needs_acceptance
        assert isinstance(outcome.acceptance_error, AcceptanceError)
        assert outcome.acceptance_error.status_code == 403
        assert outcome.status.quote.cost_dollars == 5000.0
        assert transport.methods().count(PUT_JOB) == 1
        downloader.download_sync.assert_not_called()
        finisher.finish.assert_not_called()

    def test_manual_acceptance_mode_stops_at_quote(self, settings, job, transport):
        settings = settings.model_copy(update={'auto_accept': False})
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('quoted'))))
        transport.script('GET', JOB_URL, (200, single_job('quoted', quote=True)))
        orchestrator, *_ = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert outcome.needs_acceptance
        assert outcome.acceptance_error is None
        assert PUT_JOB not in transport.methods()

    def test_caller_can_reject_after_quote(self, settings, job, transport):
        settings = settings.model_copy(update={'auto_accept': False})
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('quoted'))))
        transport.script('GET', JOB_URL, (200, single_job('quoted', quote=True)))
        transport.script('PUT', JOB_URL, (200, '{}'))
        orchestrator, *_ = make_orchestrator(settings, job, transport)

        orchestrator.manage()
        orchestrator.reject()

        assert transport.calls[-1] == ('PUT', JOB_URL, '{"status":"reject"}')

    def test_accept_before_job_url_known(self, settings, job, transport):
        orchestrator, *_ = make_orchestrator(settings, job, transport)

        with pytest.raises(AcceptanceError):
            orchestrator.accept()
        assert transport.calls == []

    def test_rejected_job_is_terminal(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('rejected'))))
        transport.script('GET', JOB_URL, (200, single_job('rejected', quote=True)))
        orchestrator, downloader, *_ = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert outcome.status.name == REJECTED
        assert not outcome.needs_acceptance
        downloader.download_sync.assert_not_called()


class TestHalting:
    """Tests for conditions that stop the run instead of looping."""

    def test_unknown_status_halts(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('running'))))
        transport.script('GET', JOB_URL, (200, '{"status": "exploded", "statusMessage": "internal error"}'))
        orchestrator, downloader, _, sleeps = make_orchestrator(settings, job, transport)

        with pytest.raises(JobStatusUnknownError, match='internal error'):
            orchestrator.manage()
        assert sleeps == []
        downloader.download_sync.assert_not_called()

    def test_unknown_list_entry_halts(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('mystery'))))
        orchestrator, *_ = make_orchestrator(settings, job, transport)

        with pytest.raises(JobStatusUnknownError):
            orchestrator.manage()

    def test_poll_errors_are_retried(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('running'))))
        transport.script('GET', JOB_URL, (503, 'busy'), (503, 'busy'), (200, single_job('running', results=True)))
        orchestrator, _, _, sleeps = make_orchestrator(settings, job, transport)

        outcome = orchestrator.manage()

        assert outcome.finished
        assert sleeps == [300, 300]

    def test_repeated_poll_errors_are_fatal(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('running'))))
        transport.script('GET', JOB_URL, (503, 'busy'))
        orchestrator, _, _, sleeps = make_orchestrator(settings, job, transport)

        with pytest.raises(TransportError, match='503'):
            orchestrator.manage()
        assert transport.methods().count(GET_JOB) == 3
        assert len(sleeps) == 2

    def test_manifest_error_propagates(self, settings, job, transport):
        """Without a URL list there is nothing to retrieve."""
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('running'))))
        transport.script('GET', JOB_URL, (200, single_job('running', results=True)))
        transport.script('GET', DATA_URL, (404, 'gone'))
        orchestrator = JobOrchestrator(settings, job, transport=transport, sleep=lambda s: None)

        with pytest.raises(ManifestError):
            orchestrator.manage()


class TestCancellation:
    """Tests for the external cancel signal."""

    def test_preset_cancel_stops_before_polling(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('running'))))
        cancel_event = threading.Event()
        cancel_event.set()
        orchestrator = JobOrchestrator(settings, job, transport=transport, downloader=MagicMock(),
                                       finisher=MagicMock(), cancel_event=cancel_event)

        with pytest.raises(OrchestrationCancelled):
            orchestrator.manage()
        assert GET_JOB not in transport.methods()

    def test_default_downloader_shares_the_cancel_event(self, settings, job, transport):
        orchestrator = JobOrchestrator(settings, job, transport=transport)

        assert orchestrator.downloader.cancel_event is orchestrator.cancel_event

    def test_cancel_during_download_stops_admission(self, settings, job, transport):
        """Files not yet started are skipped and the finisher never runs."""
        urls = [file_url(n) for n in range(5)]
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('running'))))
        transport.script('GET', JOB_URL, (200, single_job('running', results=True)))
        transport.script('GET', DATA_URL, (200, {'urlCount': len(urls), 'urlList': urls}))
        finisher = MagicMock()
        orchestrator = JobOrchestrator(settings, job, transport=transport, finisher=finisher, sleep=lambda s: None)
        fetched = []

        async def fetch_then_cancel(session, unit):
            fetched.append(unit.url)
            orchestrator.cancel()
            unit.destination.write_bytes(b'data')

        orchestrator.downloader._fetch_to_file = fetch_then_cancel

        with pytest.raises(OrchestrationCancelled, match='1/5'):
            orchestrator.manage()
        assert len(fetched) == 1
        finisher.finish.assert_not_called()

    def test_cancel_interrupts_a_long_wait(self, settings, job, transport):
        transport.script('GET', JOBS_URL, (200, job_list(list_entry('running'))))
        transport.script('GET', JOB_URL, (200, single_job('running', percent=10)))
        orchestrator = JobOrchestrator(settings, job, transport=transport, downloader=MagicMock(), finisher=MagicMock())
        errors = []

        def run():
            try:
                orchestrator.manage()
            except OrchestrationCancelled as e:
                errors.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        while GET_JOB not in transport.methods() and worker.is_alive():
            worker.join(timeout=0.01)
        orchestrator.cancel()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert len(errors) == 1
