"""
Drives one historical job from submission to downloaded, decompressed files.

The workflow is level-triggered: every iteration re-fetches the job record and
re-derives its Status, because the remote record is the only source of truth
and the process may have been restarted between polls. Waits are plain timed
sleeps on a cancel event, since the server offers no notifications.
"""
import json
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .config import Settings
from .constants import ACCEPT_BODY, REJECT_BODY
from .downloads import BulkDownloader, DownloadReport
from .exceptions import (
    AcceptanceError, JobStatusUnknownError, JobSubmissionError, OrchestrationCancelled, TransportError,
)
from .finisher import FinishReport, RetrievalFinisher
from .jobs import Job
from .rest import RestClient, is_success
from .status import (
    Status, classify, NEW, ESTIMATING, QUOTED, ACCEPTED, REJECTED, RUNNING, FINISHED, UNKNOWN,
)


@dataclass
class RunOutcome:
    """
    Where a `manage()` run stopped.

    A run ends at `finished` with reports, at `rejected`, or at `quoted` when
    acceptance failed or is left to a person. In the last case the caller may
    retry acceptance later with `JobOrchestrator.accept()`.
    """
    status: Status
    identifier: Optional[str] = None
    output_folder: Optional[Path] = None
    download_report: Optional[DownloadReport] = None
    finish_report: Optional[FinishReport] = None
    acceptance_error: Optional[AcceptanceError] = None

    @property
    def finished(self) -> bool:
        return self.status.name == FINISHED

    @property
    def needs_acceptance(self) -> bool:
        return self.status.name == QUOTED


class JobOrchestrator:
    """Marshals exactly one job through the Historical PowerTrack workflow."""

    def __init__(self, settings: Settings, job: Job, transport=None,
                 downloader: Optional[BulkDownloader] = None,
                 finisher: Optional[RetrievalFinisher] = None,
                 cancel_event: Optional[threading.Event] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Initializes the JobOrchestrator.

        Args:
            settings: Account and run configuration for this job only.
            job: The job to manage.
            transport: REST transport; a `RestClient` for the account by default.
            downloader: Bulk downloader; built from `settings` by default.
            finisher: Retrieval finisher; built from `settings` by default.
            cancel_event: Event that aborts the run when set.
            sleep: Replacement for the cancellable wait, mainly for tests.
        """
        self.settings = settings
        self.job = job
        self.logger = logging.getLogger(__name__)
        self.cancel_event = cancel_event or threading.Event()
        self.transport = transport or RestClient(settings.user_name, settings.password)
        self.downloader = downloader or BulkDownloader(
            self.transport,
            concurrency_limit=settings.concurrency_limit,
            batch_size=settings.batch_size,
            retry_failed=settings.retry_failed_downloads,
            progress_callback=self._log_download_progress,
            cancel_event=self.cancel_event,
        )
        self.finisher = finisher or RetrievalFinisher(self.transport, decompress=settings.decompress)
        self._sleep = sleep or self._wait
        self._accept_sent = False
        self.output_folder: Optional[Path] = None

    @property
    def jobs_url(self) -> str:
        return self.settings.jobs_url

    def cancel(self):
        """Signals the run to stop at its next wait."""
        self.logger.info("Cancellation requested.")
        self.cancel_event.set()

    def manage(self) -> RunOutcome:
        """
        Runs the whole lifecycle for this job.

        Raises:
            JobSubmissionError: If the job cannot be created.
            JobStatusUnknownError: If a status payload cannot be classified.
            TransportError: If the server stays unreachable.
            ManifestError: If the finished job's manifest is unusable.
            OrchestrationCancelled: If `cancel()` interrupts a wait.
        """
        self.logger.info(f"Managing historical job '{self.job.title}'")
        self._locate_job()
        self.output_folder = self._prepare_output_folder()

        handler_map = {
            NEW: self._handle_pending,
            ESTIMATING: self._handle_pending,
            QUOTED: self._handle_quoted,
            ACCEPTED: self._handle_running,
            RUNNING: self._handle_running,
            REJECTED: self._handle_rejected,
            FINISHED: self._handle_finished,
        }
        failed_polls = 0
        while True:
            self._check_cancelled()
            try:
                body = self._fetch(self.job.job_url)
            except TransportError as e:
                failed_polls += 1
                if failed_polls >= self.settings.max_poll_errors:
                    raise
                self.logger.warning(f"Poll failed ({failed_polls}/{self.settings.max_poll_errors}): {e}")
                self._sleep(self.settings.poll_interval_seconds)
                continue
            failed_polls = 0

            status = classify(body, self.job.title)
            self.logger.debug(f"Status of '{self.job.title}': {status}")
            handler = handler_map.get(status.name)
            if handler is None:
                raise JobStatusUnknownError(
                    f"Could not classify the status of job {self.job.identifier}: {status.message or 'no message'}",
                    raw_body=body[:500],
                )
            outcome = handler(status, body)
            if outcome is not None:
                return outcome

    # --- Lifecycle steps ---

    def submit(self):
        """
        Submits the job description for estimation.

        Raises:
            JobSubmissionError: On a non-2xx answer or a transport failure.
        """
        self.logger.info(f"Submitting job '{self.job.title}' with {len(self.job.rules)} rule(s)...")
        try:
            status_code, body = self.transport.post(self.jobs_url, self.job.to_json())
        except TransportError as e:
            raise JobSubmissionError(f"Job submission failed: {e}") from e
        if not is_success(status_code):
            self.logger.error(f"HTTP error code: {status_code} | {body}")
            raise JobSubmissionError(f"Job submission returned HTTP {status_code}", status_code, body)
        self.logger.info("Job submitted.")

    def accept(self):
        """
        Accepts the job's quote.

        Raises:
            AcceptanceError: If the server refuses; the job stays quoted.
        """
        self._send_decision(ACCEPT_BODY, 'accept')

    def reject(self):
        """
        Rejects the job's quote. Never issued automatically.

        Raises:
            AcceptanceError: If the server refuses.
        """
        self._send_decision(REJECT_BODY, 'reject')

    def _send_decision(self, body: str, decision: str):
        if not self.job.job_url:
            raise AcceptanceError(f"Cannot {decision} job '{self.job.title}' before its URL is known.")
        try:
            status_code, response_body = self.transport.put(self.job.job_url, body)
        except TransportError as e:
            raise AcceptanceError(f"Job could not be {decision}ed: {e}") from e
        if not is_success(status_code):
            raise AcceptanceError(f"Job could not be {decision}ed (HTTP {status_code}).", status_code, response_body)
        self.logger.info(f"Job {self.job.identifier} {decision}ed.")

    def _locate_job(self):
        """Finds the job in the account's job list, submitting it first if it is new."""
        status = classify(self._fetch(self.jobs_url), self.job.title)
        if status.name == NEW:
            self.submit()
            attempts = self.settings.submit_confirm_attempts
            for attempt in range(1, attempts + 1):
                self.logger.info(
                    f"Waiting {self.settings.submit_confirm_seconds:g}s for the submission to register "
                    f"(check {attempt}/{attempts})..."
                )
                self._sleep(self.settings.submit_confirm_seconds)
                status = classify(self._fetch(self.jobs_url), self.job.title)
                if status.name != NEW:
                    break
            else:
                raise JobSubmissionError(
                    f"Job '{self.job.title}' is not in the job list after {attempts} check(s) following submission."
                )

        if status.name == UNKNOWN or not status.identifier:
            raise JobStatusUnknownError(
                f"Job list entry for '{self.job.title}' has no usable status or job URL: {status.message or 'no message'}"
            )
        self.job.assign_identifier(status.identifier, status.job_url)
        self.logger.info(f"Job '{self.job.title}' has identifier {self.job.identifier} ({status})")

    def _prepare_output_folder(self) -> Path:
        """`<base>/<identifier>`, or a folder named after the title when friendly names are on."""
        name = self.job.identifier
        if self.settings.friendly_folder_names:
            # Separators and leading dots would let a title leave the base folder.
            name = re.sub(r'[,()/\\]', '_', self.job.title.replace(' ', '')).strip('.') or name
        folder = Path(self.settings.base_output_folder) / name
        folder.mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Output folder: {folder}")
        return folder

    # --- State handlers: return a RunOutcome to stop, None to keep polling ---

    def _handle_pending(self, status: Status, body: str) -> Optional[RunOutcome]:
        self.logger.info(f"Estimate not ready yet ({status.percent_complete}%), sleeping for {self.settings.poll_interval_seconds:g}s...")
        self._sleep(self.settings.poll_interval_seconds)
        return None

    def _handle_quoted(self, status: Status, body: str) -> Optional[RunOutcome]:
        if self._accept_sent:
            # Accepted already; the server has not caught up yet.
            self._sleep(self.settings.poll_interval_seconds)
            return None

        self.logger.info(f"Job has been quoted. | {status.quote.describe() if status.quote else 'no quote details'}")
        if not self.settings.auto_accept:
            self.logger.warning("Automatic acceptance is disabled; the job is waiting for a decision.")
            return self._outcome(status)

        try:
            self.accept()
        except AcceptanceError as e:
            self.logger.error(f"{e} The job stays quoted; acceptance can be retried later.")
            return self._outcome(status, acceptance_error=e)
        self._accept_sent = True
        self._sleep(self.settings.poll_interval_seconds)
        return None

    def _handle_running(self, status: Status, body: str) -> Optional[RunOutcome]:
        self.logger.info(f"Job is {status.name}... {status.percent_complete}% finished.")
        self._sleep(self.settings.poll_interval_seconds)
        return None

    def _handle_rejected(self, status: Status, body: str) -> Optional[RunOutcome]:
        self.logger.warning(f"Job {self.job.identifier} was rejected. {status.message}".strip())
        return self._outcome(status)

    def _handle_finished(self, status: Status, body: str) -> Optional[RunOutcome]:
        results = status.results
        self.logger.info(
            f"Job is finished: {results.activity_count} activities in {results.file_count} file(s), "
            f"completed {results.completed_at}."
        )
        download_report = self.downloader.download_sync(
            results.data_url, self.output_folder, self.job.identifier, self.settings.concurrency_limit
        )
        if download_report.failures:
            self.logger.warning(f"{len(download_report.failures)} file(s) could not be downloaded:")
            for failure in download_report.failures:
                self.logger.warning(f"  {failure.url} | {failure.reason}")

        finish_report = self.finisher.finish(json.loads(body), download_report.manifest, self.output_folder)
        return self._outcome(status, download_report=download_report, finish_report=finish_report)

    # --- Helpers ---

    def _outcome(self, status: Status, **kwargs) -> RunOutcome:
        return RunOutcome(status=status, identifier=self.job.identifier, output_folder=self.output_folder, **kwargs)

    def _log_download_progress(self, done: int, total: int):
        self.logger.info(f"Download progress: {done}/{total} file(s) accounted for.")

    def _fetch(self, url: str) -> str:
        status_code, body = self.transport.get(url)
        if not is_success(status_code):
            raise TransportError(f"GET {url} returned HTTP {status_code}: {body[:200]}")
        return body

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise OrchestrationCancelled(f"Run for job '{self.job.title}' was cancelled.")

    def _wait(self, seconds: float):
        if self.cancel_event.wait(seconds):
            raise OrchestrationCancelled(f"Run for job '{self.job.title}' was cancelled while waiting.")
