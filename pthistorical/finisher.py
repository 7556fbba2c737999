"""Post-download steps: the suspect minutes report and archive decompression."""
import gzip
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .constants import COMPRESSED_MARKER, SUSPECT_MINUTES_FILE
from .exceptions import TransportError
from .rest import is_success


@dataclass
class FinishReport:
    suspect_minutes_path: Optional[Path] = None
    decompressed: List[Path] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def find_suspect_minutes_url(job_document: Optional[Dict[str, Any]], manifest: Optional[Dict[str, Any]]) -> Optional[str]:
    """Looks in the manifest first, then the job document, then its results section."""
    candidates = [manifest or {}, job_document or {}]
    results = (job_document or {}).get('results')
    if isinstance(results, dict):
        candidates.append(results)
    for source in candidates:
        url = source.get('suspectMinutesUrl')
        if isinstance(url, str) and url:
            return url
    return None


class RetrievalFinisher:
    """
    Best-effort closing steps for a finished job.

    Neither step raises: problems are logged and collected on the report so a
    partial download still gets decompressed.
    """

    def __init__(self, transport, decompress: bool = True):
        self.transport = transport
        self.decompress = decompress
        self.logger = logging.getLogger(__name__)

    def finish(self, job_document: Optional[Dict[str, Any]], manifest: Optional[Dict[str, Any]],
               destination_dir: Path) -> FinishReport:
        report = FinishReport()
        destination_dir = Path(destination_dir)
        self.save_suspect_minutes(find_suspect_minutes_url(job_document, manifest), destination_dir, report)
        if self.decompress:
            self.decompress_archives(destination_dir, report)
        return report

    def save_suspect_minutes(self, url: Optional[str], destination_dir: Path, report: FinishReport):
        """Writes the suspect minutes report verbatim, if the job has one."""
        if not url:
            self.logger.info("No suspect minutes reported for this job.")
            return
        try:
            status_code, body = self.transport.get(url)
        except TransportError as e:
            report.errors.append(f"Suspect minutes request failed: {e}")
            self.logger.warning(report.errors[-1])
            return
        if not is_success(status_code):
            report.errors.append(f"Suspect minutes request returned HTTP {status_code}")
            self.logger.warning(report.errors[-1])
            return

        path = destination_dir / SUSPECT_MINUTES_FILE
        try:
            destination_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(body, encoding='utf-8')
        except OSError as e:
            report.errors.append(f"Could not write {path}: {e}")
            self.logger.warning(report.errors[-1])
            return
        report.suspect_minutes_path = path
        self.logger.info(f"Saved suspect minutes report to {path}")

    def decompress_archives(self, destination_dir: Path, report: FinishReport):
        """Gunzips every archive in the directory, removing each archive once expanded."""
        if not destination_dir.is_dir():
            self.logger.warning(f"Nothing to decompress, {destination_dir} does not exist.")
            return
        archives = sorted(destination_dir.glob(f"*{COMPRESSED_MARKER}"))
        self.logger.info(f"Decompressing {len(archives)} archive(s) in {destination_dir}...")
        for archive in archives:
            target = archive.with_name(archive.name[:-len(COMPRESSED_MARKER)])
            try:
                with gzip.open(archive, 'rb') as f_in, open(target, 'wb') as f_out:
                    shutil.copyfileobj(f_in, f_out)
                archive.unlink()
                report.decompressed.append(target)
            except (OSError, EOFError) as e:
                report.errors.append(f"Could not decompress {archive.name}: {e}")
                self.logger.warning(report.errors[-1])
                if target.exists():
                    try: target.unlink()
                    except OSError: pass # Already gone
        self.logger.info(f"Decompressed {len(report.decompressed)} archive(s).")
