"""Extraction of the nested ``layer.tar`` from a gzip-compressed image export."""

import gzip
import io
import logging
import os
import tarfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Union

from ..errors import (
    ArchiveError,
    CorruptArchiveError,
    ExtractionAborted,
    LayerNotFoundError,
    LinkEscapeError,
    PathEscapeError,
    UnsupportedEntryError,
)

logger = logging.getLogger(__name__)

LAYER_SUFFIX = "/layer.tar"

# Mode for parent directories the archive did not declare itself
IMPLICIT_DIR_MODE = 0o755

_COPY_CHUNK = 64 * 1024
# Same limit the kernel applies to nested symlink lookups
_MAX_LINK_HOPS = 40
_READ_ERRORS = (tarfile.TarError, zlib.error, EOFError, gzip.BadGzipFile)


@dataclass
class ExtractionStats:
    """Counters for one extraction run."""

    directories: int = 0
    files: int = 0
    symlinks: int = 0
    bytes_written: int = 0


def is_within(root: str, path: str) -> bool:
    """Check that ``path`` equals ``root`` or lies below it.

    Both paths must be absolute and normalized. Compares whole path
    components, so ``/tmp/abcd`` is not inside ``/tmp/abc``.
    """
    try:
        return os.path.commonpath([root, path]) == root
    except ValueError:
        return False


def _iter_members(tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
    while True:
        try:
            member = tar.next()
        except _READ_ERRORS as e:
            raise CorruptArchiveError(f"Unreadable archive stream: {e}") from e
        if member is None:
            return
        yield member


def _open_stream(fileobj: BinaryIO, mode: str) -> tarfile.TarFile:
    try:
        return tarfile.open(fileobj=fileobj, mode=mode)
    except _READ_ERRORS as e:
        raise CorruptArchiveError(f"Unreadable archive stream: {e}") from e


class LayerExtractor:
    """Writes the entries of one layer stream below a destination root."""

    def __init__(
        self,
        destination: Union[str, Path],
        should_abort: Optional[Callable[[], bool]] = None,
    ):
        self.root = os.path.abspath(destination)
        self.real_root = os.path.realpath(self.root)
        self.should_abort = should_abort
        self.stats = ExtractionStats()
        self._directory_modes: list[tuple[str, int]] = []

    def extract(self, layer: tarfile.TarFile) -> ExtractionStats:
        """Extract every entry of ``layer`` in stream order."""
        for member in _iter_members(layer):
            if self.should_abort is not None and self.should_abort():
                raise ExtractionAborted("Extraction aborted on request")
            self._extract_member(layer, member)

        # Deepest first, so read-only parents are locked last
        for path, mode in reversed(self._directory_modes):
            if not os.path.islink(path):
                os.chmod(path, mode)

        return self.stats

    def resolve_target(self, name: str) -> str:
        """Map an entry name to its absolute path below the root.

        Raises:
            PathEscapeError: If the name resolves outside the root.
        """
        target = os.path.normpath(os.path.join(self.root, name.lstrip("/")))
        if not is_within(self.root, target):
            raise PathEscapeError(
                f"Entry points outside of target directory: {name!r} -> {target}",
                entry_name=name,
            )

        # A previously extracted symlink must not redirect writes elsewhere
        if target != self.root:
            real_parent = os.path.realpath(os.path.dirname(target))
            if not is_within(self.real_root, real_parent):
                raise PathEscapeError(
                    f"Entry parent resolves outside of target directory: "
                    f"{name!r} -> {real_parent}",
                    entry_name=name,
                )
        return target

    def resolve_link(self, name: str, target: str, linkname: str) -> str:
        """Resolve symlink text the way the sandbox will see it.

        Relative text resolves against the link's parent directory,
        absolute text against the extraction root. Links already extracted
        below the root are followed on the way, with the same rules.

        Raises:
            LinkEscapeError: If the link target escapes the root.
        """
        if os.path.isabs(linkname):
            path = linkname
        else:
            parent = os.path.relpath(os.path.dirname(target), self.root)
            path = os.path.join(parent, linkname)

        resolved = self._follow_in_root(path)
        if resolved is None:
            raise LinkEscapeError(
                f"Symbolic link points outside of target directory: {name!r} -> {linkname!r}",
                entry_name=name,
            )
        return resolved

    def _follow_in_root(self, path: str) -> Optional[str]:
        """Walk ``path`` below the real root, following symlinks.

        Returns the resolved absolute path, or None if any step climbs
        above the root or the links nest too deeply.
        """
        parts: list[str] = []
        pending = path.split("/")
        hops = 0

        while pending:
            component = pending.pop(0)
            if component in ("", "."):
                continue
            if component == "..":
                if not parts:
                    return None
                parts.pop()
                continue

            candidate = os.path.join(self.real_root, *parts, component)
            if not os.path.islink(candidate):
                parts.append(component)
                continue

            hops += 1
            if hops > _MAX_LINK_HOPS:
                return None
            link_text = os.readlink(candidate)
            if os.path.isabs(link_text):
                parts = []
            pending = link_text.split("/") + pending

        return os.path.join(self.real_root, *parts)

    def _extract_member(self, layer: tarfile.TarFile, member: tarfile.TarInfo) -> None:
        target = self.resolve_target(member.name)
        mode = member.mode & 0o7777

        try:
            if member.isdir():
                self._make_directory(target, mode)
            elif member.isreg():
                self._write_file(layer, member, target, mode)
            elif member.issym():
                self.resolve_link(member.name, target, member.linkname)
                self._prepare_parent(target)
                self._remove_existing(target)
                os.symlink(member.linkname, target)
                self.stats.symlinks += 1
            else:
                raise UnsupportedEntryError(
                    f"Unsupported entry type {member.type!r} for {member.name!r}"
                )
        except OSError as e:
            raise ArchiveError(f"Failed to extract {member.name!r}: {e}") from e

    def _make_directory(self, target: str, mode: int) -> None:
        if os.path.islink(target):
            os.unlink(target)
        # Owner access stays open until the stream is done
        os.makedirs(target, mode=0o700, exist_ok=True)
        self._directory_modes.append((target, mode))
        self.stats.directories += 1

    def _write_file(
        self,
        layer: tarfile.TarFile,
        member: tarfile.TarInfo,
        target: str,
        mode: int,
    ) -> None:
        self._prepare_parent(target)
        self._remove_existing(target)

        source = layer.extractfile(member)
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_NOFOLLOW, 0o600)
        with os.fdopen(fd, "wb") as out:
            if source is not None:
                self.stats.bytes_written += self._copy(source, out)
            os.fchmod(out.fileno(), mode)
        self.stats.files += 1

    def _copy(self, source: BinaryIO, out: BinaryIO) -> int:
        written = 0
        while True:
            try:
                chunk = source.read(_COPY_CHUNK)
            except _READ_ERRORS as e:
                raise CorruptArchiveError(f"Unreadable entry content: {e}") from e
            if not chunk:
                return written
            out.write(chunk)
            written += len(chunk)

    def _prepare_parent(self, target: str) -> None:
        parent = os.path.dirname(target)
        if not os.path.isdir(parent):
            os.makedirs(parent, mode=IMPLICIT_DIR_MODE, exist_ok=True)

    def _remove_existing(self, target: str) -> None:
        # Replace files and links, never follow them
        if os.path.islink(target) or os.path.isfile(target):
            os.unlink(target)


def open_layer(outer: tarfile.TarFile) -> tarfile.TarFile:
    """Position ``outer`` on its first ``*/layer.tar`` entry and open it.

    Raises:
        LayerNotFoundError: If the stream ends without such an entry.
    """
    for member in _iter_members(outer):
        if not member.isreg():
            continue
        if not member.name.endswith(LAYER_SUFFIX):
            continue

        logger.debug(f"Found layer entry {member.name} ({member.size} bytes)")
        content = outer.extractfile(member)
        if content is None:
            break
        return _open_stream(content, "r|")

    raise LayerNotFoundError()


def extract_layer(
    archive: bytes,
    destination: Union[str, Path],
    should_abort: Optional[Callable[[], bool]] = None,
) -> ExtractionStats:
    """Extract the nested layer of a gzip-compressed image export.

    The destination must already exist. On error nothing is rolled back;
    the caller owns the destination and should discard it.

    Args:
        archive: Raw bytes of the gzip-compressed outer tar stream
        destination: Existing directory to extract into
        should_abort: Optional callable polled before each entry

    Returns:
        ExtractionStats for the extracted layer

    Raises:
        ArchiveError: On malformed input, containment violations or
            unsupported entries
    """
    if not os.path.isdir(destination):
        raise ArchiveError(f"Extraction destination is not a directory: {destination}")

    with _open_stream(io.BytesIO(archive), "r|gz") as outer:
        with open_layer(outer) as layer:
            stats = LayerExtractor(destination, should_abort).extract(layer)

    logger.debug(
        f"Extracted {stats.files} files, {stats.directories} directories, "
        f"{stats.symlinks} symlinks ({stats.bytes_written} bytes) into {destination}"
    )
    return stats
