"""Fetches a finished job's result manifest and downloads every file it lists."""
import asyncio
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiofiles
import aiohttp

from .constants import (
    DEFAULT_CONCURRENCY_LIMIT, DEFAULT_BATCH_SIZE, COMPRESSED_MARKER, PARTIAL_SUFFIX,
    DOWNLOAD_CHUNK_SIZE, DOWNLOAD_SOCK_READ_TIMEOUT,
)
from .exceptions import FilenameDerivationError, ManifestError, OrchestrationCancelled
from .rest import is_success

CANCELLED_REASON = "Cancelled before start"


def derive_filename(url: str, job_identifier: str, marker: str = COMPRESSED_MARKER) -> str:
    """
    Maps a signed file URL to a flat local file name.

    The name is the part of the URL starting at the job identifier and ending
    just past the first compressed-file marker after it, with path separators
    replaced by underscores:

        https://host/.../jobs/axep43s8rv/2013/02/15/00/00_activities.json.gz?Sig=...
        -> axep43s8rv_2013_02_15_00_00_activities.json.gz

    Raises:
        FilenameDerivationError: If the identifier is empty, absent or appears more
            than once, or if no marker follows it.
    """
    if not job_identifier:
        raise FilenameDerivationError("Job identifier is empty.")
    occurrences = url.count(job_identifier)
    if occurrences == 0:
        raise FilenameDerivationError(f"Job identifier '{job_identifier}' not found in URL: {url}")
    if occurrences > 1:
        raise FilenameDerivationError(f"Job identifier '{job_identifier}' appears {occurrences} times in URL: {url}")

    start = url.index(job_identifier)
    marker_at = url.find(marker, start + len(job_identifier))
    if marker_at < 0:
        raise FilenameDerivationError(f"No '{marker}' marker after the job identifier in URL: {url}")
    return url[start:marker_at + len(marker)].replace('/', '_')


def parse_manifest(body: str) -> Dict[str, Any]:
    """
    Parses a result manifest and checks its `urlList`.

    Raises:
        ManifestError: If the body is not a JSON object with a list of URL strings.
    """
    try:
        manifest = json.loads(body)
    except (TypeError, ValueError) as e:
        raise ManifestError(f"Manifest is not valid JSON: {e}") from e
    if not isinstance(manifest, dict):
        raise ManifestError(f"Manifest is a {type(manifest).__name__}, expected an object.")
    urls = manifest.get('urlList')
    if not isinstance(urls, list):
        raise ManifestError("Manifest has no 'urlList' array.")
    if not all(isinstance(u, str) for u in urls):
        raise ManifestError("Manifest 'urlList' contains non-string entries.")
    return manifest


@dataclass
class DownloadUnit:
    """One signed file URL and the local path it is written to."""
    url: str
    destination: Path


@dataclass
class DownloadFailure:
    url: str
    reason: str


@dataclass
class DownloadReport:
    """
    Outcome of one download phase.

    Every manifest URL ends up either in `written` or in `failures`.
    """
    total: int = 0
    written: List[Path] = field(default_factory=list)
    failures: List[DownloadFailure] = field(default_factory=list)
    manifest: Dict[str, Any] = field(default_factory=dict)
    peak_in_flight: int = 0
    elapsed_seconds: float = 0.0

    @property
    def outcome_count(self) -> int:
        return len(self.written) + len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class _RunState:
    """Per-invocation bookkeeping shared by the fetch tasks of one download run."""
    in_flight: int = 0
    peak_in_flight: int = 0


class BulkDownloader:
    """
    Downloads a manifest's files with at most `concurrency_limit` fetches in flight.

    URLs are dispatched in batches of `batch_size` to bound the number of live
    task objects; within a batch an `asyncio.Semaphore` is acquired before each
    fetch starts and released when it ends. A failed unit never cancels its
    siblings, and with `retry_failed` it is re-enqueued once under the same
    semaphore before being reported.

    Setting `cancel_event` stops admission. Units that have not started are
    recorded as cancelled, fetches already running finish, and once every
    task is joined the run raises `OrchestrationCancelled`.
    """

    def __init__(self, transport, concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
                 batch_size: int = DEFAULT_BATCH_SIZE, retry_failed: bool = True,
                 compressed_marker: str = COMPRESSED_MARKER,
                 progress_callback: Optional[Callable[[int, int], None]] = None,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initializes the BulkDownloader.

        Args:
            transport: Authenticated REST transport used to fetch the manifest.
            concurrency_limit: Default maximum number of fetches in flight.
            batch_size: Number of URLs dispatched per batch.
            retry_failed: Re-enqueue failed units once before reporting them.
            compressed_marker: File extension that ends the derived file name.
            progress_callback: Called with (outcomes_so_far, total) after each batch.
            cancel_event: Event that stops admitting new fetches when set.
        """
        if concurrency_limit < 1 or batch_size < 1:
            raise ValueError("concurrency_limit and batch_size must be at least 1")
        self.transport = transport
        self.concurrency_limit = concurrency_limit
        self.batch_size = batch_size
        self.retry_failed = retry_failed
        self.compressed_marker = compressed_marker
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event or threading.Event()
        self.logger = logging.getLogger(__name__)

    def download_sync(self, manifest_url: str, destination_dir: Path, job_identifier: str,
                      concurrency_limit: Optional[int] = None) -> DownloadReport:
        """Runs `download` on a fresh event loop and blocks until every task is joined."""
        return asyncio.run(self.download(manifest_url, destination_dir, job_identifier, concurrency_limit))

    async def download(self, manifest_url: str, destination_dir: Path, job_identifier: str,
                       concurrency_limit: Optional[int] = None) -> DownloadReport:
        """
        Fetches the manifest at `manifest_url` and downloads every listed file.

        Raises:
            ManifestError: If the manifest cannot be fetched or has no URL list.
            OrchestrationCancelled: If `cancel_event` was set during the run.
        """
        manifest = await self.fetch_manifest(manifest_url)
        report = await self.download_urls(manifest['urlList'], destination_dir, job_identifier, concurrency_limit)
        report.manifest = manifest
        return report

    async def fetch_manifest(self, manifest_url: str) -> Dict[str, Any]:
        """Fetches and validates the result manifest through the REST transport."""
        if not manifest_url:
            raise ManifestError("Finished job has no result manifest URL.")
        self.logger.info(f"Fetching result manifest: {manifest_url}")
        status_code, body = await asyncio.to_thread(self.transport.get, manifest_url)
        if not is_success(status_code):
            raise ManifestError(f"Manifest request returned HTTP {status_code}: {body[:200]}")
        manifest = parse_manifest(body)
        self.logger.info(f"Manifest lists {len(manifest['urlList'])} file(s) to download.")
        return manifest

    async def download_urls(self, urls: List[str], destination_dir: Path, job_identifier: str,
                            concurrency_limit: Optional[int] = None) -> DownloadReport:
        """Downloads `urls` into `destination_dir`, returning once every unit has an outcome."""
        limit = concurrency_limit or self.concurrency_limit
        if limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        destination_dir = Path(destination_dir)
        await asyncio.to_thread(destination_dir.mkdir, parents=True, exist_ok=True)

        report = DownloadReport(total=len(urls))
        units, naming_failures = self._plan_units(urls, destination_dir, job_identifier)
        report.failures.extend(naming_failures)

        state = _RunState()
        semaphore = asyncio.Semaphore(limit)
        begin_time = time.monotonic()
        timeout = aiohttp.ClientTimeout(total=None, sock_read=DOWNLOAD_SOCK_READ_TIMEOUT)
        connector = aiohttp.TCPConnector(limit=limit)

        async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
            failed = await self._run_batches(session, units, semaphore, state, report)
            if failed and self.retry_failed and not self.cancel_event.is_set():
                self.logger.info(f"Retrying {len(failed)} failed download(s) once.")
                failed = await self._run_batches(session, [unit for unit, _ in failed], semaphore, state, report)

        report.failures.extend(DownloadFailure(unit.url, reason) for unit, reason in failed)
        report.peak_in_flight = state.peak_in_flight
        report.elapsed_seconds = time.monotonic() - begin_time

        self.logger.info(
            f"Downloaded {len(report.written)}/{report.total} file(s) in {report.elapsed_seconds:.1f}s "
            f"({len(report.failures)} failed, peak {report.peak_in_flight} concurrent)."
        )
        for failure in report.failures:
            self.logger.warning(f"Download failed: {failure.url} | {failure.reason}")
        if self.cancel_event.is_set():
            raise OrchestrationCancelled(
                f"Download cancelled with {len(report.written)}/{report.total} file(s) written to {destination_dir}."
            )
        return report

    def _plan_units(self, urls: List[str], destination_dir: Path,
                    job_identifier: str) -> Tuple[List[DownloadUnit], List[DownloadFailure]]:
        """Derives every destination up front; naming problems are recorded, not retried."""
        units: List[DownloadUnit] = []
        failures: List[DownloadFailure] = []
        seen: Dict[str, str] = {}
        for url in urls:
            try:
                name = derive_filename(url, job_identifier, self.compressed_marker)
            except FilenameDerivationError as e:
                failures.append(DownloadFailure(url, str(e)))
                continue
            if name in seen:
                failures.append(DownloadFailure(url, f"duplicate destination '{name}' (also derived from {seen[name]})"))
                continue
            seen[name] = url
            units.append(DownloadUnit(url, destination_dir / name))
        return units, failures

    async def _run_batches(self, session: aiohttp.ClientSession, units: List[DownloadUnit],
                           semaphore: asyncio.Semaphore, state: _RunState,
                           report: DownloadReport) -> List[Tuple[DownloadUnit, str]]:
        """Dispatches `units` batch by batch and joins every task. Returns the failed units."""
        failed: List[Tuple[DownloadUnit, str]] = []
        batch_count = (len(units) + self.batch_size - 1) // self.batch_size
        for batch_no, start in enumerate(range(0, len(units), self.batch_size), start=1):
            batch = units[start:start + self.batch_size]
            tasks = [asyncio.create_task(self._guarded_fetch(session, unit, semaphore, state)) for unit in batch]
            errors = await asyncio.gather(*tasks)
            for unit, error in zip(batch, errors):
                if error is None:
                    report.written.append(unit.destination)
                else:
                    failed.append((unit, error))
            self.logger.info(f"Batch {batch_no}/{batch_count}: {len(report.written)} written so far, {len(failed)} failed in this pass.")
            if self.progress_callback:
                self.progress_callback(report.outcome_count + len(failed), report.total)
        return failed

    async def _guarded_fetch(self, session: aiohttp.ClientSession, unit: DownloadUnit,
                             semaphore: asyncio.Semaphore, state: _RunState) -> Optional[str]:
        """Fetches one unit under the admission semaphore. Returns an error message or None."""
        async with semaphore:
            if self.cancel_event.is_set():
                return CANCELLED_REASON
            state.in_flight += 1
            state.peak_in_flight = max(state.peak_in_flight, state.in_flight)
            try:
                await self._fetch_to_file(session, unit)
                return None
            except aiohttp.ClientResponseError as e:
                return f"HTTP {e.status}: {e.message}"
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                return f"Network error: {e!r}"
            except OSError as e:
                return f"File error: {e}"
            except Exception as e:
                self.logger.exception(f"Unexpected error downloading {unit.url}")
                return f"Unexpected error: {e!r}"
            finally:
                state.in_flight -= 1

    async def _fetch_to_file(self, session: aiohttp.ClientSession, unit: DownloadUnit):
        """Streams one URL to `<destination>.part`, then moves it into place."""
        partial_path = unit.destination.with_name(unit.destination.name + PARTIAL_SUFFIX)
        try:
            async with session.get(unit.url) as r:
                r.raise_for_status()
                async with aiofiles.open(partial_path, 'wb') as f_out:
                    async for chunk in r.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                        await f_out.write(chunk)
            await asyncio.to_thread(os.replace, partial_path, unit.destination)
        except BaseException:
            if partial_path.exists():
                try: partial_path.unlink()
                except OSError: pass # Already gone
            raise
        self.logger.debug(f"Saved {unit.destination.name}")
