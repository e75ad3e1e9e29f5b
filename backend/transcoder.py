"""
Streaming CSV transcoder.

Reads an uploaded CSV one record at a time, validates each record, and writes
it straight to the result file with two trailing columns appended. Only the
current record is held in memory, so upload size does not affect memory use.
"""

import codecs
import csv
import logging
import os
import time
from collections.abc import Iterator
from pathlib import Path

import csv_utils
import storage
from lifecycle import JobLifecycleManager, empty_stats
from validator import INVALID, RISKY, VALID, RecordValidator

logger = logging.getLogger(__name__)

STATUS_COLUMN = "Validation Status"
REASON_COLUMN = "Validation Reason"

# Leading bytes inspected for encoding and delimiter detection
SNIFF_BYTES = 64 * 1024

STATS_KEY = {VALID: "valid", INVALID: "invalid", RISKY: "risky"}


class TranscodeError(Exception):
    """Input could not be read or parsed. The job has already been marked failed."""


class RecordShapeError(ValueError):
    """A record does not fit the header row."""


def detect_encoding(path: str | Path) -> str:
    """
    Pick the text encoding of an upload from its leading bytes.
    UTF-8 (with or without BOM) is preferred; anything else is read as latin-1,
    which accepts every byte sequence.
    """
    with open(path, "rb") as f:
        head = f.read(SNIFF_BYTES)
    decoder = codecs.getincrementaldecoder("utf-8-sig")()
    try:
        # final=False tolerates a multi-byte character cut at the sample boundary
        decoder.decode(head, final=False)
    except UnicodeDecodeError:
        return "latin-1"
    return "utf-8-sig"


class Transcoder:
    """
    Validates an upload into a result file and reports progress.

    Args:
        validator: classifies one record
        lifecycle: receives progress and the terminal transition
        batch_size: records between two progress reports
    """

    def __init__(
        self,
        validator: RecordValidator,
        lifecycle: JobLifecycleManager,
        batch_size: int = 10,
    ):
        self.validator = validator
        self.lifecycle = lifecycle
        self.batch_size = batch_size

    def run(self, job_id: str, input_path: str | Path, output_path: str | Path) -> dict[str, int]:
        """
        Transcode input_path into output_path and complete the job.

        Read and parse errors stop processing: the partial output is closed
        and kept, the job is failed with the error detail, and TranscodeError
        is raised. Any other exception propagates unreported.

        Returns:
            Final stats {"valid", "invalid", "risky"}
        """
        start_time = time.time()
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        stats = empty_stats()
        processed = 0

        try:
            encoding = detect_encoding(input_path)
            with (
                open(input_path, newline="", encoding=encoding) as src,
                open(output_path, "w", newline="", encoding="utf-8") as dst,
            ):
                delimiter = csv_utils.detect_delimiter(src.read(SNIFF_BYTES))
                src.seek(0)

                reader = csv.reader(src, delimiter=delimiter, strict=True)
                writer = csv.writer(dst)

                header = self._read_header(reader)
                keys, header_info = csv_utils.normalize_headers(header)
                if header_info["had_duplicates"]:
                    logger.info(
                        f"Duplicate headers renamed: {header_info['duplicates']}",
                        extra={"job_id": job_id},
                    )
                writer.writerow(header + [STATUS_COLUMN, REASON_COLUMN])
                width = len(header)

                for row in reader:
                    if len(row) > width:
                        raise RecordShapeError(
                            f"line {reader.line_num} has {len(row)} fields, header has {width}"
                        )
                    if len(row) < width:
                        # a blank line arrives as [] and becomes an empty record
                        row = row + [""] * (width - len(row))

                    result = self.validator.validate(dict(zip(keys, row)))
                    writer.writerow(row + [result.status, result.reason])

                    stats[STATS_KEY[result.status]] += 1
                    processed += 1
                    if processed % self.batch_size == 0:
                        self.lifecycle.report_progress(job_id, processed, stats)

                dst.flush()
                os.fsync(dst.fileno())
        except (csv.Error, UnicodeDecodeError, RecordShapeError) as e:
            detail = f"{type(e).__name__}: {e}"
            logger.warning(
                "Input rejected, job failed",
                extra={"job_id": job_id, "processed_count": processed},
            )
            self.lifecycle.fail(job_id, detail)
            raise TranscodeError(detail) from e

        self.lifecycle.complete(job_id, stats, storage.download_url(job_id))

        logger.info(
            f"Job transcoded: {stats['valid']} valid, {stats['invalid']} invalid, "
            f"{stats['risky']} risky",
            extra={
                "job_id": job_id,
                "processed_count": processed,
                "elapsed_ms": int((time.time() - start_time) * 1000),
            },
        )
        return stats

    @staticmethod
    def _read_header(reader: Iterator[list[str]]) -> list[str]:
        for row in reader:
            if row:
                return row
        raise RecordShapeError("missing header row")
