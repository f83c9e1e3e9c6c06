"""
Compression handlers for backup archives.

Supports multiple formats:
- tar.gz: Gzip compressed tar (default)
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- zip: Standard zip compression
- none: No compression (tar only)
"""

import os
import tarfile
import zipfile
import logging
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


FORMAT_EXTENSIONS = {
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'zip': 'zip',
    'none': 'tar',
}

# Longest first so 'tar' doesn't shadow 'tar.gz'
ARCHIVE_EXTENSIONS = ('.tar.gz', '.tar.bz2', '.tar.xz', '.zip', '.tar')


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


def create_archive(
    source_paths: List[str],
    output_path: str,
    compression_format: str = 'tar.gz'
) -> str:
    """
    Create a compressed archive from source paths.

    Args:
        source_paths: List of file/directory paths to include in archive
        output_path: Path where archive should be created (without extension)
        compression_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    handlers = {
        'zip': _create_zip,
        'tar.gz': _create_tar,
        'tar.bz2': _create_tar,
        'tar.xz': _create_tar,
        'none': _create_tar
    }

    if compression_format not in handlers:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(handlers.keys())}"
        )

    archive_path = f"{output_path}.{FORMAT_EXTENSIONS[compression_format]}"

    try:
        handlers[compression_format](source_paths, archive_path, compression_format)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError as cleanup_error:
                logger.warning(f"Could not remove partial archive {archive_path}: {cleanup_error}")
        raise CompressionError(f"Failed to create archive: {e}")


def _create_zip(source_paths: List[str], archive_path: str, compression_format: str):
    """
    Create a ZIP archive.

    Args:
        source_paths: List of paths to include
        archive_path: Output archive path
        compression_format: Not used for zip, kept for interface consistency
    """
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for source_path in source_paths:
            source = Path(source_path)

            if source.is_file():
                zipf.write(source, source.name)
            elif source.is_dir():
                for item in source.rglob('*'):
                    if item.is_file():
                        zipf.write(item, item.relative_to(source.parent))
            else:
                raise CompressionError(f"Invalid path type: {source_path}")


def _create_tar(source_paths: List[str], archive_path: str, compression_format: str):
    """
    Create a TAR archive with optional compression.

    Args:
        source_paths: List of paths to include
        archive_path: Output archive path
        compression_format: Compression format ('tar.gz', 'tar.bz2', 'tar.xz', 'none')
    """
    mode_map = {
        'tar.gz': 'w:gz',
        'tar.bz2': 'w:bz2',
        'tar.xz': 'w:xz',
        'none': 'w'
    }

    mode = mode_map.get(compression_format, 'w:gz')

    with tarfile.open(archive_path, mode) as tar:
        for source_path in source_paths:
            source = Path(source_path)

            if not source.exists():
                raise CompressionError(f"Path does not exist: {source_path}")

            # Basename as arcname keeps the set directory at the archive root
            tar.add(source, arcname=source.name, recursive=True)


def create_tarball(
    base_dir: str,
    members: Iterable[str],
    archive_path: str,
    exclude_patterns: Optional[List[str]] = None
) -> List[str]:
    """
    Write a tar.gz of ``members`` taken relative to ``base_dir``.

    Members that don't exist are skipped. Sockets, fifos and device nodes are
    never archived.

    Args:
        base_dir: Directory the member names are relative to
        members: Names inside base_dir to include (recursively)
        archive_path: Output .tar.gz path
        exclude_patterns: Glob patterns matched against file names and paths

    Returns:
        Member names actually archived

    Raises:
        CompressionError: If nothing could be archived or writing fails
    """
    exclude_patterns = exclude_patterns or []
    base = Path(base_dir)

    def _filter(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        if not (info.isfile() or info.isdir() or info.issym() or info.islnk()):
            return None
        name = os.path.basename(info.name)
        for pattern in exclude_patterns:
            if fnmatch(name, pattern) or fnmatch(info.name, pattern):
                return None
        return info

    present = [m for m in members if (base / m).exists() or (base / m).is_symlink()]
    if not present:
        raise CompressionError(f"Nothing to archive under {base_dir}")

    try:
        with tarfile.open(archive_path, 'w:gz') as tar:
            for member in present:
                tar.add(str(base / member), arcname=member, recursive=True, filter=_filter)
    except (OSError, tarfile.TarError) as e:
        if os.path.exists(archive_path):
            os.remove(archive_path)
        raise CompressionError(f"Failed to archive {base_dir}: {e}")

    return present


def _check_member_path(dest: Path, name: str):
    normalized = os.path.normpath(name)
    if normalized == '.':
        return
    if os.path.isabs(normalized) or normalized == '..' or normalized.startswith('..' + os.sep):
        raise CompressionError(f"Refusing to extract member outside destination: {name}")
    # Resolve the parent only; the member itself may replace an existing link
    parent = (dest / normalized).parent.resolve()
    if parent != dest and dest not in parent.parents:
        raise CompressionError(f"Refusing to extract member outside destination: {name}")


def _through_link(name: str, links: Set[str]) -> bool:
    parts = os.path.normpath(name).split(os.sep)
    return any(os.sep.join(parts[:i]) in links for i in range(1, len(parts)))


def _check_tar_members(dest: Path, members: List[tarfile.TarInfo], overlay: bool):
    links = set()
    for member in members:
        _check_member_path(dest, member.name)
        if _through_link(member.name, links):
            raise CompressionError(f"Refusing member below a link member: {member.name}")
        if member.isdev():
            raise CompressionError(f"Refusing device member: {member.name}")
        if member.islnk():
            _check_member_path(dest, member.linkname)
        elif member.issym():
            links.add(os.path.normpath(member.name))
            if overlay:
                continue
            link_target = (dest / os.path.dirname(member.name) / member.linkname).resolve()
            if os.path.isabs(member.linkname) or (link_target != dest and dest not in link_target.parents):
                raise CompressionError(f"Refusing link member pointing outside destination: {member.name}")


def extract_archive(archive_path: str, dest_dir: str, overlay: bool = False) -> str:
    """
    Extract an archive into dest_dir, refusing members that would escape it.

    With overlay=True the archive is being laid back over the live tree it
    was taken from, so symlink targets are kept as archived (absolute ones
    included). Member paths are still confined to dest_dir and may not pass
    through a link member.

    Args:
        archive_path: Archive in any supported format
        dest_dir: Destination directory (created if missing)
        overlay: Accept symlinks pointing outside dest_dir

    Returns:
        dest_dir

    Raises:
        CompressionError: If the archive is unreadable or unsafe
    """
    dest = Path(dest_dir).resolve()
    dest.mkdir(parents=True, exist_ok=True)

    try:
        if archive_path.endswith('.zip'):
            with zipfile.ZipFile(archive_path) as zipf:
                for name in zipf.namelist():
                    _check_member_path(dest, name)
                zipf.extractall(dest)
        else:
            with tarfile.open(archive_path, 'r:*') as tar:
                members = tar.getmembers()
                _check_tar_members(dest, members, overlay)
                # Replace existing links instead of writing through them (as GNU tar does)
                for member in members:
                    existing = dest / member.name
                    if not member.isdir() and existing.is_symlink():
                        existing.unlink()
                # Members were checked above; keep ownership and modes as archived
                extract_kwargs = {'filter': 'fully_trusted'} if hasattr(tarfile, 'fully_trusted_filter') else {}
                tar.extractall(dest, members=members, **extract_kwargs)
    except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
        raise CompressionError(f"Failed to extract {archive_path}: {e}")

    return str(dest)


def is_archive_name(filename: str) -> bool:
    return filename.endswith(ARCHIVE_EXTENSIONS)


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz
    """
    for extension in ARCHIVE_EXTENSIONS:
        if filename.endswith(extension):
            return filename[:-len(extension)]
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
