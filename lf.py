#!/usr/bin/env python3
"""
lf

Recursively normalize line endings (CRLF and lone CR) to LF in text files,
using a pool of worker threads.
"""

import argparse
import concurrent.futures
import enum
import errno
import logging
import os
import re
import stat
import sys
import tempfile
import time
import traceback
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

__version__ = "1.0.0"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("lf")

# Number of leading bytes inspected when deciding text vs. binary
SAMPLE_SIZE = 8192
# Fraction of non-text bytes above which a sample counts as binary
NON_TEXT_THRESHOLD = 0.3
# Outstanding tasks allowed per worker before the walk blocks
QUEUE_FACTOR = 4
MAX_WORKERS = 32
# Temp names do not grow with the original name
TEMP_PREFIX = ".lf-"
TEMP_SUFFIX = ".lf-tmp"

BINARY_EXTENSIONS = frozenset(
    {
        ".bin",
        ".exe",
        ".dll",
        ".so",
        ".dylib",
        ".o",
        ".a",
        ".lib",
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".bmp",
        ".ico",
        ".tif",
        ".tiff",
        ".zip",
        ".tar",
        ".gz",
        ".bz2",
        ".xz",
        ".7z",
        ".rar",
        ".pdf",
        ".doc",
        ".docx",
        ".xls",
        ".xlsx",
        ".ppt",
        ".pptx",
        ".class",
        ".pyc",
        ".pyo",
        ".pyd",
        ".mp3",
        ".mp4",
        ".avi",
        ".mov",
    }
)

BINARY_SIGNATURES = (b"\x89PNG", b"GIF8", b"\xff\xd8\xff", b"%PDF", b"PK\x03\x04")

TEXT_BYTES = bytes(
    bytearray({7, 8, 9, 10, 12, 13, 27} | set(range(0x20, 0x100)) - {0x7F})
)

_LINE_ENDING_RE = re.compile(rb"\r\n?")


class Classification(enum.Enum):
    DIRECTORY = "directory"
    TEXT_FILE = "text"
    BINARY_FILE = "binary"
    SYMLINK = "symlink"
    UNREADABLE = "unreadable"


class OutcomeStatus(enum.Enum):
    CONVERTED = "converted"
    ALREADY_NORMALIZED = "already normalized"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class FileTask:
    """A discovered file, owned by a single worker until its outcome is reported."""

    path: str


@dataclass(frozen=True)
class ConversionOutcome:
    """What happened to one file.

    ``reason`` explains a SKIPPED outcome. ``error`` carries the error message of a
    FAILED outcome, or of a file skipped because it could not be inspected.
    """

    path: str
    status: OutcomeStatus
    reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class AggregateResult:
    """Run-wide summary, built by the single thread collecting outcomes."""

    converted: int = 0
    already_normalized: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)
    warnings: List[Tuple[str, str]] = field(default_factory=list)
    interrupted: bool = False
    elapsed: float = 0.0

    @property
    def total(self) -> int:
        return self.converted + self.already_normalized + self.skipped + self.failed

    @property
    def ok(self) -> bool:
        return not self.failures

    def counts(self) -> Dict[OutcomeStatus, int]:
        return {
            OutcomeStatus.CONVERTED: self.converted,
            OutcomeStatus.ALREADY_NORMALIZED: self.already_normalized,
            OutcomeStatus.SKIPPED: self.skipped,
            OutcomeStatus.FAILED: self.failed,
        }

    def add(self, outcome: ConversionOutcome) -> None:
        if outcome.status is OutcomeStatus.CONVERTED:
            self.converted += 1
        elif outcome.status is OutcomeStatus.ALREADY_NORMALIZED:
            self.already_normalized += 1
        elif outcome.status is OutcomeStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.failures.append((outcome.path, outcome.error or "unknown error"))

    def add_warning(self, err: OSError) -> None:
        self.warnings.append((str(err.filename), err.strerror or str(err)))


def normalize(data: bytes) -> Tuple[bytes, bool]:
    """
    Replace every CRLF pair and every lone CR in ``data`` with LF.

    Works in a single pass and never fails. Returns the normalized bytes and
    whether they differ from the input, which is the case exactly when the
    input contains a CR byte.
    """
    if b"\r" not in data:
        return data, False
    return _LINE_ENDING_RE.sub(b"\n", data), True


def classify_sample(sample: bytes) -> Classification:
    """Decide text vs. binary from the leading bytes of a file."""
    if not sample:
        return Classification.TEXT_FILE

    if b"\x00" in sample:
        return Classification.BINARY_FILE

    if sample.startswith(BINARY_SIGNATURES):
        return Classification.BINARY_FILE

    non_text: bytes = sample.translate(None, TEXT_BYTES)
    if float(len(non_text)) / len(sample) > NON_TEXT_THRESHOLD:
        return Classification.BINARY_FILE
    return Classification.TEXT_FILE


def _classify(path: str) -> Tuple[Classification, Optional[str]]:
    # Returns the classification and, for UNREADABLE, the reason.
    try:
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            try:
                st = os.stat(path)
            except OSError as e:
                return Classification.UNREADABLE, str(e)
            # Symlinked directories are never followed
            if stat.S_ISDIR(st.st_mode):
                return Classification.SYMLINK, None

        if stat.S_ISDIR(st.st_mode):
            return Classification.DIRECTORY, None
        if not stat.S_ISREG(st.st_mode):
            return Classification.UNREADABLE, f"not a regular file: {path}"

        if os.path.splitext(path)[1].lower() in BINARY_EXTENSIONS:
            return Classification.BINARY_FILE, None
        if st.st_size == 0:
            return Classification.TEXT_FILE, None

        with open(path, "rb") as f:
            sample: bytes = f.read(SAMPLE_SIZE)
    except OSError as e:
        return Classification.UNREADABLE, str(e)

    return classify_sample(sample), None


def classify(path: str) -> Classification:
    """
    Classify a filesystem entry.

    Only the first SAMPLE_SIZE bytes of a regular file are read. Any error
    while inspecting the entry yields UNREADABLE; this function never raises.
    """
    return _classify(path)[0]


def atomic_write(path: str, data: bytes, mode: Optional[int] = None) -> None:
    """
    Replace the contents of ``path`` with ``data`` without ever exposing a
    partially written file.

    The data is written to a temporary file in the same directory, synced to
    disk, given ``mode`` and then renamed over ``path``. If any step fails the
    temporary file is removed, the original is left untouched and the error
    propagates.
    """
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(
        prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=directory or "."
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError as cleanup_err:
            logger.error(
                "Could not remove temporary file %s: %s", tmp_path, cleanup_err
            )
        raise


def rewrite(task: FileTask) -> ConversionOutcome:
    """Normalize the line endings of one file in place."""
    path = task.path
    # Rewrite the target of a symlink, leaving the link itself intact
    target = os.path.realpath(path)

    kind, reason = _classify(target)
    if kind is Classification.BINARY_FILE:
        logger.debug("Skipping binary file: %s", path)
        return ConversionOutcome(path, OutcomeStatus.SKIPPED, reason="binary")
    if kind is Classification.UNREADABLE:
        logger.warning("Skipping unreadable file %s: %s", path, reason)
        return ConversionOutcome(
            path, OutcomeStatus.SKIPPED, reason="unreadable", error=reason
        )
    if kind is not Classification.TEXT_FILE:
        logger.debug("Skipping %s: %s", kind.value, path)
        return ConversionOutcome(path, OutcomeStatus.SKIPPED, reason="not a file")

    try:
        with open(target, "rb") as f:
            data: bytes = f.read()
            mode = stat.S_IMODE(os.fstat(f.fileno()).st_mode)

        new_data, changed = normalize(data)
        if not changed:
            logger.debug("No changes needed for file: %s", path)
            return ConversionOutcome(path, OutcomeStatus.ALREADY_NORMALIZED)

        if not os.access(target, os.W_OK):
            raise PermissionError(errno.EACCES, "File is not writable", target)

        atomic_write(target, new_data, mode)
    except OSError as e:
        logger.error("Error converting %s: %s", path, e)
        return ConversionOutcome(path, OutcomeStatus.FAILED, error=str(e))

    logger.info("Converted: %s", path)
    return ConversionOutcome(path, OutcomeStatus.CONVERTED)


def process_task(task: FileTask) -> ConversionOutcome:
    """Worker entry point: always reports an outcome, never raises."""
    try:
        return rewrite(task)
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("Unhandled error processing %s: %s", task.path, e)
        return ConversionOutcome(task.path, OutcomeStatus.FAILED, error=str(e))


def _is_within(path: str, root: str) -> bool:
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        # Different drives
        return False


def walk(
    root: str,
    ignore_dirs: Optional[Iterable[str]] = None,
    on_error: Optional[Callable[[OSError], None]] = None,
) -> Iterator[FileTask]:
    """
    Lazily yield a FileTask for every candidate file under ``root``.

    Directories are recursed, but symlinks to directories never are, so cyclic
    links cannot make the walk loop. A symlink to a file is yielded only when
    its target lies outside the tree and has not been yielded through another
    link; targets inside the tree are reached directly. Unreadable directories
    are logged, passed to ``on_error`` and skipped.
    """
    root = os.path.abspath(root)

    def handle_error(err: OSError) -> None:
        logger.warning("Cannot read directory %s: %s", err.filename, err.strerror or err)
        if on_error is not None:
            on_error(err)

    if not os.path.isdir(root):
        if os.path.lexists(root):
            yield FileTask(root)
        else:
            handle_error(
                FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), root)
            )
        return

    ignored: Set[str] = set(ignore_dirs or ())
    real_root: str = os.path.realpath(root)
    seen_targets: Set[str] = set()

    for dirpath, dirnames, filenames in os.walk(root, onerror=handle_error):
        kept: List[str] = []
        for dirname in dirnames:
            dir_path = os.path.join(dirpath, dirname)
            if dirname in ignored:
                logger.debug("Ignoring directory: %s", dir_path)
            elif os.path.islink(dir_path):
                logger.debug("Not following symlinked directory: %s", dir_path)
            else:
                kept.append(dirname)
        dirnames[:] = kept

        for filename in filenames:
            file_path: str = os.path.join(dirpath, filename)
            if os.path.islink(file_path):
                target = os.path.realpath(file_path)
                if os.path.isfile(target):
                    if _is_within(target, real_root) or target in seen_targets:
                        logger.debug(
                            "Skipping symlink %s, target %s is already covered",
                            file_path,
                            target,
                        )
                        continue
                    seen_targets.add(target)
                yield FileTask(file_path)
            elif os.path.isfile(file_path):
                yield FileTask(file_path)
            else:
                logger.debug("Skipping special file: %s", file_path)


def default_worker_count() -> int:
    cpu_count: Optional[int] = os.cpu_count()
    return min((cpu_count or 2) * 2, MAX_WORKERS)


def _collect(
    pending: Dict["concurrent.futures.Future[ConversionOutcome]", FileTask],
    on_outcome: Callable[[ConversionOutcome], None],
    return_when: str,
) -> None:
    done, _ = concurrent.futures.wait(list(pending), return_when=return_when)
    for future in done:
        task = pending[future]
        try:
            outcome = future.result()
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Unhandled error processing %s: %s", task.path, e)
            outcome = ConversionOutcome(task.path, OutcomeStatus.FAILED, error=str(e))
        on_outcome(outcome)
        # Only forget the future once its outcome is recorded
        del pending[future]


def _run_pool(
    tasks: Iterator[FileTask],
    worker_count: int,
    on_outcome: Callable[[ConversionOutcome], None],
) -> None:
    capacity = worker_count * QUEUE_FACTOR
    pending: Dict["concurrent.futures.Future[ConversionOutcome]", FileTask] = {}

    with concurrent.futures.ThreadPoolExecutor(
        max_workers=worker_count, thread_name_prefix="lf-worker"
    ) as executor:
        try:
            for task in tasks:
                while len(pending) >= capacity:
                    _collect(pending, on_outcome, concurrent.futures.FIRST_COMPLETED)
                pending[executor.submit(process_task, task)] = task
            _collect(pending, on_outcome, concurrent.futures.ALL_COMPLETED)
        except KeyboardInterrupt:
            # Abandon queued tasks; running ones finish their rename and still report
            for future in list(pending):
                if future.cancel():
                    del pending[future]
            _collect(pending, on_outcome, concurrent.futures.ALL_COMPLETED)
            raise


def run(
    root: str,
    worker_count: Optional[int] = None,
    ignore_dirs: Optional[Iterable[str]] = None,
    progress: bool = False,
) -> AggregateResult:
    """
    Normalize every text file under ``root`` using ``worker_count`` threads.

    ``None`` picks a worker count from the CPU count. 0 and 1 both mean a single
    worker. The worker count only affects speed, never the result. An
    interrupt stops the walk, abandons tasks that have not started and returns
    the partial result with ``interrupted`` set.
    """
    if worker_count is None:
        worker_count = default_worker_count()
    elif worker_count < 0:
        raise ValueError(f"worker_count must be >= 0, got {worker_count}")
    worker_count = max(worker_count, 1)

    result = AggregateResult()
    start_time: float = time.monotonic()
    logger.debug("Using %d worker threads for %s", worker_count, root)

    with logging_redirect_tqdm(), tqdm(
        desc="Normalizing", unit="file", disable=not progress
    ) as pbar:

        def on_outcome(outcome: ConversionOutcome) -> None:
            result.add(outcome)
            pbar.update(1)

        try:
            _run_pool(
                walk(root, ignore_dirs, on_error=result.add_warning),
                worker_count,
                on_outcome,
            )
        except KeyboardInterrupt:
            result.interrupted = True
            logger.warning("Interrupted, tasks not yet started were abandoned.")

    result.elapsed = time.monotonic() - start_time
    return result


def format_duration(execution_time: float) -> str:
    if execution_time < 60:
        return f"{execution_time:.2f} seconds"
    if execution_time < 3600:
        minutes = int(execution_time // 60)
        seconds = execution_time % 60
        return f"{minutes} minute{'s' if minutes != 1 else ''} {seconds:.2f} seconds"
    hours = int(execution_time // 3600)
    minutes = int((execution_time % 3600) // 60)
    seconds = execution_time % 60
    return (
        f"{hours} hour{'s' if hours != 1 else ''} "
        f"{minutes} minute{'s' if minutes != 1 else ''} "
        f"{seconds:.2f} seconds"
    )


def report(result: AggregateResult) -> None:
    """Log a human-readable summary of a run."""
    if result.warnings:
        logger.warning("%d directories could not be read", len(result.warnings))
    for path, message in result.failures:
        logger.error("Failed: %s: %s", path, message)

    logger.info(
        "Converted: %d, Already LF: %d, Skipped: %d, Failed: %d",
        result.converted,
        result.already_normalized,
        result.skipped,
        result.failed,
    )
    logger.info(
        "%s %d files in %s.",
        "Stopped after" if result.interrupted else "Done! Processed",
        result.total,
        format_duration(result.elapsed),
    )


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _worker_count(value: str) -> int:
    count = int(value)
    if count < 0:
        raise argparse.ArgumentTypeError(f"invalid worker count: {value}")
    return count


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lf",
        description="Recursively convert CRLF and CR line endings to LF",
    )
    parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Directory or file to process (default: current directory)",
    )
    parser.add_argument(
        "--workers",
        type=_worker_count,
        default=None,
        help="Number of worker threads (default: auto-detect based on CPU count)",
    )
    parser.add_argument(
        "--ignore-dir",
        dest="ignore_dirs",
        action="append",
        default=[],
        metavar="NAME",
        help="Directory name to skip during the walk (repeatable)",
    )
    parser.add_argument(
        "--no-progress", action="store_true", help="Do not show a progress bar"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--log-file", default=None, help="Also append log output to this file"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"lf v{__version__}",
        help="Show program version and exit",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    try:
        root: str = os.path.abspath(args.path if args.path else os.getcwd())
        if not os.path.lexists(root):
            logger.error("Error: '%s' does not exist.", root)
            return 1

        logger.info("lf v%s - normalizing line endings under %s", __version__, root)
        if args.ignore_dirs:
            logger.info("Ignoring directories: %s", ", ".join(args.ignore_dirs))

        result = run(
            root,
            worker_count=args.workers,
            ignore_dirs=args.ignore_dirs,
            progress=not args.no_progress,
        )
        report(result)

        if result.interrupted:
            return 130
        return 0 if result.ok else 1
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 130
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("An unexpected error occurred: %s", str(e))
        logger.debug("Traceback: %s", traceback.format_exc())
        return 1


if __name__ == "__main__":
    sys.exit(main())
