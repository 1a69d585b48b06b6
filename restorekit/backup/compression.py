"""
Archive handlers for backups.

Supports multiple formats:
- zip: Standard zip compression
- tar: Plain tar (optionally gzipped afterwards by the backup engine)
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar

Archives hold the contents of one directory with paths relative to it.
Extraction refuses members that would land outside the target directory.
"""

import gzip
import logging
import lzma
import os
import shutil
import tarfile
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from restorekit.errors import ArchiveError, NotFoundError

logger = logging.getLogger(__name__)

ENCRYPTED_SUFFIX = '.enc'

EXTENSIONS = {
    'zip': 'zip',
    'tar': 'tar',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
}

_TAR_MODES = {
    'tar': 'w',
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
}

_COPY_BUFFER = 1024 * 1024


@dataclass(frozen=True)
class ArchiveInfo:
    path: str
    file_count: int
    original_size: int


def sanitize_name(name: str) -> str:
    """Replace anything but letters, digits, '-' and '_' with underscores."""
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in name
    ) or 'root'


def should_exclude(relative_path: str, patterns: List[str]) -> bool:
    """
    Check a path against wildcard patterns (case-insensitive).

    Patterns are matched against the file name and the relative path.
    """
    if not patterns:
        return False

    name = os.path.basename(relative_path).lower()
    rel = relative_path.replace(os.sep, '/').lower()

    for pattern in patterns:
        pattern = pattern.lower()
        if fnmatch(name, pattern) or fnmatch(rel, pattern):
            return True
        if pattern.startswith('**/') and fnmatch(name, pattern[3:]):
            return True

    return False


def iter_source_files(
    source_dir: str,
    exclude_patterns: Optional[List[str]] = None,
    excluded_paths: Optional[List[str]] = None,
    max_file_size: Optional[int] = None
) -> Iterator[Tuple[str, str, int]]:
    """
    Walk a directory and yield (full_path, relative_path, size) for every
    regular file that passes the exclusion rules, in sorted order.
    """
    exclude_patterns = exclude_patterns or []
    excluded_roots = [os.path.abspath(p) for p in excluded_paths or []]
    source_dir = os.path.abspath(source_dir)

    for root, dirs, files in os.walk(source_dir):
        kept_dirs = []
        for d in sorted(dirs):
            full = os.path.join(root, d)
            rel = os.path.relpath(full, source_dir)
            if os.path.islink(full) or should_exclude(rel, exclude_patterns) or _under(full, excluded_roots):
                continue
            kept_dirs.append(d)
        dirs[:] = kept_dirs

        for name in sorted(files):
            full = os.path.join(root, name)
            rel = os.path.relpath(full, source_dir)
            if os.path.islink(full) or not os.path.isfile(full):
                continue
            if should_exclude(rel, exclude_patterns) or _under(full, excluded_roots):
                continue

            try:
                size = os.path.getsize(full)
            except OSError as e:
                logger.warning(f"Skipping unreadable file {full}: {e}")
                continue

            if max_file_size is not None and size > max_file_size:
                logger.debug(f"Skipping large file: {full} ({size / 1024 / 1024:.2f} MB)")
                continue

            yield full, rel, size


def _under(path: str, roots: List[str]) -> bool:
    return any(path == root or path.startswith(root + os.sep) for root in roots)


def create_archive(
    source_dir: str,
    output_path: str,
    archive_format: str = 'zip',
    exclude_patterns: Optional[List[str]] = None,
    excluded_paths: Optional[List[str]] = None,
    max_file_size: Optional[int] = None,
    cancellation_check: Optional[Callable[[], None]] = None
) -> ArchiveInfo:
    """
    Archive the contents of a directory.

    Args:
        source_dir: Directory whose contents are archived (recursively)
        output_path: Path where archive should be created (without extension)
        archive_format: One of 'zip', 'tar', 'tar.gz', 'tar.bz2', 'tar.xz'
        exclude_patterns: Wildcard patterns of files/directories to skip
        excluded_paths: Absolute paths to skip entirely
        max_file_size: Skip files larger than this many bytes
        cancellation_check: Called between files; raises to abandon the archive

    Returns:
        ArchiveInfo with archive path, file count and total input size

    Raises:
        ArchiveError: If archive creation fails
        NotFoundError: If source_dir is not a directory
    """
    if not os.path.isdir(source_dir):
        raise NotFoundError(f"Source directory does not exist: {source_dir}")

    if archive_format not in EXTENSIONS:
        raise ArchiveError(
            f"Invalid archive format: {archive_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )

    archive_path = f"{output_path}.{EXTENSIONS[archive_format]}"
    entries = iter_source_files(source_dir, exclude_patterns, excluded_paths, max_file_size)

    try:
        if archive_format == 'zip':
            file_count, total_size = _create_zip(entries, archive_path, cancellation_check)
        else:
            file_count, total_size = _create_tar(entries, archive_path, _TAR_MODES[archive_format], cancellation_check)
    except (OSError, tarfile.TarError, zipfile.BadZipFile, lzma.LZMAError) as e:
        _remove_quietly(archive_path)
        raise ArchiveError(f"Failed to create archive: {e}") from e
    except Exception:
        _remove_quietly(archive_path)
        raise

    return ArchiveInfo(path=archive_path, file_count=file_count, original_size=total_size)


def _create_zip(entries, archive_path: str, cancellation_check) -> Tuple[int, int]:
    file_count = 0
    total_size = 0

    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED, allowZip64=True) as zipf:
        for full, rel, size in entries:
            if cancellation_check:
                cancellation_check()
            zipf.write(full, rel.replace(os.sep, '/'))
            file_count += 1
            total_size += size

    return file_count, total_size


def _create_tar(entries, archive_path: str, mode: str, cancellation_check) -> Tuple[int, int]:
    file_count = 0
    total_size = 0

    with tarfile.open(archive_path, mode) as tar:
        for full, rel, size in entries:
            if cancellation_check:
                cancellation_check()
            tar.add(full, arcname=rel.replace(os.sep, '/'), recursive=False)
            file_count += 1
            total_size += size

    return file_count, total_size


def gzip_file(path: str) -> str:
    """
    Gzip a file next to itself and remove the original.

    Returns:
        Path of the .gz file
    """
    gz_path = f"{path}.gz"

    try:
        with open(path, 'rb') as src, gzip.open(gz_path, 'wb') as dst:
            shutil.copyfileobj(src, dst, _COPY_BUFFER)
        os.remove(path)
    except OSError as e:
        _remove_quietly(gz_path)
        raise ArchiveError(f"Failed to compress {path}: {e}") from e

    return gz_path


def extract_archive(archive_path: str, target_dir: str) -> Tuple[int, int]:
    """
    Extract a zip or tar (any compression) archive into target_dir.

    Existing files are overwritten. Members with absolute paths or '..'
    components escaping target_dir, links and device files are rejected.

    Returns:
        Tuple of (files extracted, bytes extracted)

    Raises:
        ArchiveError: If the archive is unreadable, contains unsafe members
            or cannot be written to target_dir
    """
    target = Path(target_dir).resolve()

    try:
        target.mkdir(parents=True, exist_ok=True)
        if zipfile.is_zipfile(archive_path):
            return _extract_zip(archive_path, target)
        return _extract_tar(archive_path, target)
    except ArchiveError:
        raise
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, lzma.LZMAError, gzip.BadGzipFile) as e:
        raise ArchiveError(f"Failed to read archive {os.path.basename(archive_path)}: {e}") from e
    except OSError as e:
        raise ArchiveError(f"Failed to extract archive {os.path.basename(archive_path)}: {e}") from e


def _safe_destination(target: Path, member_name: str) -> Path:
    destination = (target / member_name).resolve()
    if destination != target and target not in destination.parents:
        raise ArchiveError(f"Archive member escapes target directory: {member_name}")
    return destination


def _extract_zip(archive_path: str, target: Path) -> Tuple[int, int]:
    file_count = 0
    total_size = 0

    with zipfile.ZipFile(archive_path) as zipf:
        for info in zipf.infolist():
            destination = _safe_destination(target, info.filename)
            if info.is_dir():
                destination.mkdir(parents=True, exist_ok=True)
                continue

            destination.parent.mkdir(parents=True, exist_ok=True)
            with zipf.open(info) as src, open(destination, 'wb') as dst:
                shutil.copyfileobj(src, dst, _COPY_BUFFER)

            file_count += 1
            total_size += info.file_size

    return file_count, total_size


def _extract_tar(archive_path: str, target: Path) -> Tuple[int, int]:
    file_count = 0
    total_size = 0

    with tarfile.open(archive_path, 'r:*') as tar:
        for member in tar:
            destination = _safe_destination(target, member.name)
            if member.isdir():
                destination.mkdir(parents=True, exist_ok=True)
                continue
            if not member.isfile():
                raise ArchiveError(f"Unsupported archive member type: {member.name}")

            destination.parent.mkdir(parents=True, exist_ok=True)
            src = tar.extractfile(member)
            with src, open(destination, 'wb') as dst:
                shutil.copyfileobj(src, dst, _COPY_BUFFER)

            file_count += 1
            total_size += member.size

    return file_count, total_size


def generate_archive_filename(
    dir_name: str,
    archive_format: str,
    compressed: bool = False,
    encrypted: bool = False,
    now: Optional[datetime] = None
) -> str:
    """
    Generate a standardized archive filename.

    Format: backup_{dir_name}_{YYYYmmddTHHMMSSffffffZ}.{ext}[.gz][.enc]

    Args:
        dir_name: Name of the backed-up directory
        archive_format: Archive format
        compressed: Whether the archive gets an extra gzip stage
        encrypted: Whether the archive is encrypted
        now: Timestamp to use (default: current UTC time)

    Returns:
        Filename (without path)
    """
    timestamp = (now or datetime.now(timezone.utc)).strftime('%Y%m%dT%H%M%S%fZ')
    extension = EXTENSIONS.get(archive_format, 'zip')

    filename = f"backup_{sanitize_name(dir_name)}_{timestamp}.{extension}"
    if compressed:
        filename += '.gz'
    if encrypted:
        filename += ENCRYPTED_SUFFIX
    return filename


def is_encrypted(filename: str) -> bool:
    return filename.lower().endswith(ENCRYPTED_SUFFIX)


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive (and encryption) extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz
    """
    if is_encrypted(filename):
        filename = filename[:-len(ENCRYPTED_SUFFIX)]

    for extension in ('.tar.gz', '.tar.bz2', '.tar.xz', '.zip.gz', '.zip', '.tar'):
        if filename.endswith(extension):
            return filename[:-len(extension)]

    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError as e:
        raise ArchiveError(f"Archive not found: {archive_path}") from e
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}") from e


def _remove_quietly(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial archive {path}: {e}")
