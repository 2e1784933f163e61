#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
pybasebackup: Pure Python Base Backup Client for PostgreSQL
===========================================================

Takes a physical, file-level base backup of a running PostgreSQL cluster over
a replication connection. The server answers a single BASE_BACKUP command with
a manifest of tablespaces followed by one tar stream per tablespace; this
module either writes those streams to disk as archives (optionally
compressed) or unpacks them on the fly into a directory tree.

Quick Start:
-----------
    >>> from pybasebackup import BackupRequest, BaseBackupSession, PgWireTransport
    >>>
    >>> transport = PgWireTransport.connect(host="db1", port=5432, user="replicator")
    >>> request = BackupRequest(basedir="/srv/backup/db1", show_progress=True)
    >>> try:
    ...     result = BaseBackupSession(transport, request).run()
    ... finally:
    ...     transport.close()
    >>> result.print_stats()

Output Formats:
--------------
    plain:  every tablespace unpacked into a directory tree, permissions kept
    tar:    base.tar plus <oid>.tar per extra tablespace, optionally
            compressed with gzip (.tar.gz), lz4 (.tar.lz4) or zstd (.tar.zst)

Stream Handling:
---------------
    The tar stream arrives in CopyData frames with no alignment guarantee:
    a header or file body may be split at any byte. TarBlockParser keeps an
    explicit cursor (awaiting header / body / padding) so that extraction
    is independent of how the bytes were chunked.

CLI Usage:
---------
    $ pybasebackup -D /srv/backup/db1 -P -v
    $ pybasebackup -D /srv/backup/db1 -F tar -Z 6
    $ pybasebackup -D /srv/backup/db1 -F tar -Z 3 --compression-method zstd
    $ pybasebackup -D - -F tar > base.tar
    $ pybasebackup --help

Copyright:
---------
    Original pg_basebackup (C): Magnus Hagander, PostgreSQL Global Development Group
    Python implementation: Alejandro Sanchez (2024-2026)
    License: GPLv3+
"""

from __future__ import annotations

__version__ = "1.0.0"
__author__ = "Alejandro Sanchez"
__email__ = "alesangreat@gmail.com"
__license__ = "GPL-3.0-or-later"
__copyright__ = "Copyright (C) 2024-2026 Alejandro Sanchez"

# Public API exports
__all__ = [
    # Session
    'BaseBackupSession',
    'BackupRequest',
    'StorageAreaDescriptor',
    'CaptureResult',
    'OutputFormat',
    'CheckpointMode',

    # Transport
    'Transport',
    'PgWireTransport',
    'CompletionStatus',
    'BulkStreamReader',

    # Tar handling
    'TarBlockParser',
    'TarEntryHeader',
    'TarEntryType',
    'TarEvent',
    'TarEventKind',
    'ParserState',

    # Sinks
    'ArchiveSink',
    'RawSink',
    'ExtractingSink',

    # Compression
    'CompressionType',
    'CompressionRegistry',

    # Progress
    'ProgressReporter',

    # Exceptions
    'BaseBackupError',
    'ValidationError',
    'TransportError',
    'ServerError',
    'ProtocolError',
    'FormatError',
    'IncompleteEntryError',
    'FileIOError',

    # Configuration
    'Config',
    'Colors',

    # Directory checks
    'DirState',
    'check_directory',
    'verify_dir_is_empty_or_create',

    # Constants
    'TAR_BLOCK_SIZE',
    'TAR_END_OF_ARCHIVE',
    'STDOUT_TARGET',

    # Utility functions
    'format_size',
    'format_time',

    # CLI
    'create_parser',
    'parse_args',
    'validate_options',
    'build_request',
    'main',
]

import os
import sys
import argparse
import getpass
import gzip
import logging
import socket
import struct
import time
from typing import (
    Optional, Tuple, List, Dict, Any, BinaryIO, ClassVar, Iterator,
    NamedTuple, TextIO, Sequence, cast
)
from enum import Enum
from dataclasses import dataclass, field
from abc import ABC, abstractmethod

# Streaming compressors for tar output
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

# Normalize untyped third-party imports to `Any` so strict type-checkers
# don't treat member access as Unknown.
_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)


# ============================================================================
# GLOBAL CONFIGURATION - Behavior tuning
# ============================================================================

class Config:
    """
    Global configuration for pybasebackup behavior.

    Attributes:
        DEFAULT_LABEL (str): Backup label sent when none is given
        DEFAULT_HOST (str): Server host when neither -h nor PGHOST is set
        DEFAULT_PORT (int): Server port when neither -p nor PGPORT is set
        APPLICATION_NAME (str): application_name reported to the server
        DIRECTORY_MODE (int): Mode for directories created before a backup
        VERIFY_TAR_CHECKSUM (bool): Reject tar headers with a bad checksum
        SOCKET_TIMEOUT (float|None): Socket timeout, None blocks forever
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        VERBOSE_LOGGING (bool): Enable verbose logging output

    Example:
        >>> Config.VERIFY_TAR_CHECKSUM = True
        >>> Config.reset_defaults()
    """
    # Backup settings
    DEFAULT_LABEL: ClassVar[str] = "pg_basebackup base backup"
    DIRECTORY_MODE: ClassVar[int] = 0o700

    # Connection settings
    DEFAULT_HOST: ClassVar[str] = "localhost"
    DEFAULT_PORT: ClassVar[int] = 5432
    APPLICATION_NAME: ClassVar[str] = "pybasebackup"
    SOCKET_TIMEOUT: ClassVar[Optional[float]] = None

    # Tar parsing. The server never sends corrupt headers in practice and
    # pg_basebackup itself does not check, so validation is opt-in.
    VERIFY_TAR_CHECKSUM: ClassVar[bool] = False

    # UI settings
    USE_COLORS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "DEFAULT_LABEL": "pg_basebackup base backup",
            "DIRECTORY_MODE": 0o700,
            "DEFAULT_HOST": "localhost",
            "DEFAULT_PORT": 5432,
            "APPLICATION_NAME": "pybasebackup",
            "SOCKET_TIMEOUT": None,
            "VERIFY_TAR_CHECKSUM": False,
            "USE_COLORS": True,
            "VERBOSE_LOGGING": False,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# CONSTANTS - tar layout and wire protocol
# ============================================================================

TAR_BLOCK_SIZE = 512
# Two zero blocks terminate a tar archive. The server omits them.
TAR_END_OF_ARCHIVE = b"\0" * (2 * TAR_BLOCK_SIZE)
_ZERO_BLOCK = b"\0" * TAR_BLOCK_SIZE

# ustar header field offsets (POSIX.1-1988)
_TAR_NAME = slice(0, 100)
_TAR_MODE = slice(100, 108)
_TAR_SIZE = slice(124, 136)
_TAR_CHKSUM = slice(148, 156)
_TAR_TYPEFLAG = 156
_TAR_LINKNAME = slice(157, 257)
_TAR_MAGIC = slice(257, 265)
_TAR_PREFIX = slice(345, 500)
POSIX_MAGIC = b"ustar\x0000"

# Type flags
REGTYPE = b"0"
AREGTYPE = b"\0"
SYMTYPE = b"2"
DIRTYPE = b"5"
CONTTYPE = b"7"

# Refuse to follow a symlink when opening an extracted file
_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)

# Destination that selects standard output in tar mode
STDOUT_TARGET = "-"

# Frontend/backend protocol 3.0
PG_PROTOCOL_VERSION = 3 << 16

# Backend message types
MSG_AUTHENTICATION = b"R"
MSG_BACKEND_KEY_DATA = b"K"
MSG_COMMAND_COMPLETE = b"C"
MSG_COPY_DATA = b"d"
MSG_COPY_DONE = b"c"
MSG_COPY_OUT_RESPONSE = b"H"
MSG_DATA_ROW = b"D"
MSG_ERROR_RESPONSE = b"E"
MSG_NOTICE_RESPONSE = b"N"
MSG_PARAMETER_STATUS = b"S"
MSG_READY_FOR_QUERY = b"Z"
MSG_ROW_DESCRIPTION = b"T"

# Frontend message types
MSG_QUERY = b"Q"
MSG_TERMINATE = b"X"

AUTH_OK = 0


# ============================================================================
# UTILITY FUNCTIONS - Formatting and helpers
# ============================================================================

def format_size(size: int) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    value: float = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(value) < 1024.0:
            return f"{value:.2f} {unit}" if unit != 'B' else f"{int(value)} {unit}"
        value = value / 1024.0
    return f"{value:.2f} PB"


def format_time(seconds: float) -> str:
    """
    Format time duration in human-readable format.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.0f}µs"
    elif seconds < 1.0:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"


# ============================================================================
# TERMINAL COLORS - For CLI output (auto-detects TTY)
# ============================================================================

class Colors:
    """
    ANSI color codes for terminal output.

    Messages go to stderr (stdout may carry a tar stream), so colors are
    enabled only when stderr is a TTY and Config.USE_COLORS is set.

    Example:
        >>> print(Colors.success("base backup completed"))
        ✓ base backup completed
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'

    @classmethod
    def _is_enabled(cls) -> bool:
        """Check if colors should be enabled."""
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X)."""
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow with !)."""
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        """Format text as bold."""
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# Keep stderr quiet by default; the CLI raises the level with -v.
_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('pybasebackup')
logger.setLevel(_default_log_level)


def configure_logging(verbose: int) -> None:
    """Map the CLI verbosity count onto the module logger level."""
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1 or Config.VERBOSE_LOGGING:
        level = logging.INFO
    else:
        level = logging.WARNING
    logger.setLevel(level)


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class BaseBackupError(Exception):
    """
    Base exception for all pybasebackup errors.

    Attributes:
        message: Human-readable error description
        code: Process exit code used by the CLI

    Example:
        >>> raise BaseBackupError("Operation failed", code=1)
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(BaseBackupError):
    """
    Raised when options or manifest preconditions are violated.

    Always raised before any backup data is written.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class TransportError(BaseBackupError):
    """
    Raised when the connection to the server is unusable.

    Covers connect failures, unsupported authentication and unexpected
    end of the connection at any point of the capture.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=3)


class ServerError(BaseBackupError):
    """
    Raised when the server reports an error.

    This includes ErrorResponse messages and a missing or failed final
    command completion.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=4)


class ProtocolError(BaseBackupError):
    """
    Raised for malformed or out-of-order wire protocol messages.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=5)


class FormatError(BaseBackupError):
    """
    Raised for a malformed tar stream.

    Examples are an unparseable size or mode field, an unknown type flag or
    an entry name pointing outside the extraction directory.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=6)


class IncompleteEntryError(FormatError):
    """Raised when a tar stream ends in the middle of an entry."""


class FileIOError(BaseBackupError):
    """
    Raised for local file I/O errors.

    This wraps OS-level errors with the path that was being written.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=7)


# ============================================================================
# DATA MODEL - Request and manifest
# ============================================================================

class OutputFormat(Enum):
    """Backup output format (-F)."""
    PLAIN = "plain"
    TAR = "tar"

    @classmethod
    def from_arg(cls, value: str) -> "OutputFormat":
        if value in ("p", "plain"):
            return cls.PLAIN
        if value in ("t", "tar"):
            return cls.TAR
        raise ValidationError(f'invalid output format "{value}", must be "plain" or "tar"')


class CheckpointMode(Enum):
    """Checkpoint urgency requested from the server (-c)."""
    FAST = "fast"
    SPREAD = "spread"

    @classmethod
    def from_arg(cls, value: str) -> "CheckpointMode":
        lowered = value.lower()
        for mode in cls:
            if mode.value == lowered:
                return mode
        raise ValidationError(
            f'invalid checkpoint argument "{value}", must be "fast" or "spread"'
        )


class CompressionType(Enum):
    """
    Compression applied to tar output.

    GZIP matches the original pg_basebackup (.tar.gz). LZ4 and ZSTD use
    the lz4 and zstandard streaming writers.
    """
    NONE = "none"
    GZIP = "gzip"
    LZ4 = "lz4"
    ZSTD = "zstd"

    @property
    def extension(self) -> str:
        return _COMPRESSION_EXTENSIONS[self]


_COMPRESSION_EXTENSIONS: Dict[CompressionType, str] = {
    CompressionType.NONE: ".tar",
    CompressionType.GZIP: ".tar.gz",
    CompressionType.LZ4: ".tar.lz4",
    CompressionType.ZSTD: ".tar.zst",
}


def _default_label() -> str:
    return Config.DEFAULT_LABEL


@dataclass(frozen=True)
class BackupRequest:
    """
    What to back up and how to write it. Immutable once created.

    Attributes:
        basedir: Target directory, or "-" for standard output (tar only)
        label: Backup label recorded by the server
        checkpoint: FAST asks the server for an immediate checkpoint
        show_progress: Ask the server for size estimates and print progress
        output_format: PLAIN unpacks the tree, TAR writes archives
        compress_level: 0 disables compression, 1-9 selects the level
        compression: Compression method used when compress_level > 0
        verbose: Verbosity count; adds file names to the progress line
    """
    basedir: str
    label: str = field(default_factory=_default_label)
    checkpoint: CheckpointMode = CheckpointMode.SPREAD
    show_progress: bool = False
    output_format: OutputFormat = OutputFormat.PLAIN
    compress_level: int = 0
    compression: CompressionType = CompressionType.GZIP
    verbose: int = 0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check option combinations. Raises ValidationError."""
        if not self.basedir:
            raise ValidationError("no target directory specified")
        if not 0 <= self.compress_level <= 9:
            raise ValidationError(f'invalid compression level "{self.compress_level}"')
        if "\0" in self.label:
            raise ValidationError("backup label must not contain NUL characters")
        if self.output_format is OutputFormat.PLAIN:
            if self.compress_level > 0:
                raise ValidationError("only tar mode backups can be compressed")
            if self.writes_to_stdout:
                raise ValidationError("cannot write a plain format backup to standard output")
        if self.writes_to_stdout and self.compress_level > 0:
            raise ValidationError("compression is not supported on standard output")

    @property
    def writes_to_stdout(self) -> bool:
        return self.basedir == STDOUT_TARGET

    @property
    def effective_compression(self) -> CompressionType:
        if self.compress_level <= 0:
            return CompressionType.NONE
        return self.compression

    def to_command(self) -> str:
        """Build the BASE_BACKUP replication command for this request."""
        escaped = self.label.replace("'", "''")
        parts = [f"BASE_BACKUP LABEL '{escaped}'"]
        if self.show_progress:
            parts.append("PROGRESS")
        if self.checkpoint is CheckpointMode.FAST:
            parts.append("FAST")
        return " ".join(parts)


@dataclass(frozen=True)
class StorageAreaDescriptor:
    """
    One tablespace listed in the BASE_BACKUP manifest.

    Attributes:
        oid: Tablespace OID as text, None for the main data directory
        location: Tablespace directory on the server (None for the primary)
        size: Estimated size in bytes, None unless PROGRESS was requested
    """
    oid: Optional[str]
    location: Optional[str] = None
    size: Optional[int] = None

    @property
    def is_primary(self) -> bool:
        return not self.oid

    @property
    def display_name(self) -> str:
        return "base" if self.is_primary else str(self.oid)

    def archive_name(self, compression: CompressionType = CompressionType.NONE) -> str:
        """File name used by tar mode: base.tar or <oid>.tar, plus extension."""
        return self.display_name + compression.extension

    @classmethod
    def from_row(cls, row: Dict[str, Optional[str]]) -> "StorageAreaDescriptor":
        """
        Build a descriptor from a manifest row.

        The server reports (spcoid, spclocation, size) with size in
        kilobytes; rows with other column names are read by position.
        """
        if "spcoid" in row:
            oid, location, size_text = row.get("spcoid"), row.get("spclocation"), row.get("size")
        else:
            values = list(row.values()) + [None, None, None]
            oid, location, size_text = values[0], values[1], values[2]

        size: Optional[int] = None
        if size_text is not None and size_text != "":
            try:
                size_kb = int(size_text)
            except ValueError as e:
                raise ProtocolError(f'invalid tablespace size "{size_text}" in manifest') from e
            if size_kb >= 0:
                size = size_kb * 1024
        return cls(oid=oid or None, location=location or None, size=size)


@dataclass
class CaptureResult:
    """Outcome of a completed base backup."""
    areas: List[StorageAreaDescriptor] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    bytes_received: int = 0
    files: int = 0
    directories: int = 0
    symlinks: int = 0
    elapsed: float = 0.0

    def print_stats(self, stream: Optional[TextIO] = None) -> None:
        """Print a short summary of the capture."""
        out = stream if stream is not None else sys.stderr
        print(Colors.bold("\nBASE BACKUP SUMMARY"), file=out)
        print(f"Number of tablespaces: {len(self.areas):,}", file=out)
        for path in self.outputs:
            print(f"  {path}", file=out)
        if self.files or self.directories or self.symlinks:
            print(f"Files extracted: {self.files:,}", file=out)
            print(f"Directories created: {self.directories:,}", file=out)
            print(f"Symbolic links created: {self.symlinks:,}", file=out)
        print(f"Total received: {format_size(self.bytes_received)}", file=out)
        print(f"Elapsed time: {format_time(self.elapsed)}", file=out)
        print(file=out)


# ============================================================================
# COMPRESSION - Streaming compressors for tar output
# ============================================================================

class CompressionRegistry:
    """Registry of streaming compressors used by RawSink.

    Every writer wraps an already-open binary file object, accepts write()
    calls of any size and finishes its container on close() without closing
    the wrapped file.
    """
    # Accepted level range per method
    _LEVELS: ClassVar[Dict[CompressionType, Tuple[int, int]]] = {
        CompressionType.NONE: (0, 0),
        CompressionType.GZIP: (1, 9),
        CompressionType.LZ4: (0, 16),
        CompressionType.ZSTD: (1, 22),
    }

    @classmethod
    def open_writer(cls, fileobj: BinaryIO, comp_type: CompressionType, level: int) -> BinaryIO:
        """Wrap fileobj in a streaming compressor.

        Raises:
            ValidationError: If the level is out of range for the method
        """
        low, high = cls._LEVELS[comp_type]
        if comp_type is not CompressionType.NONE and not low <= level <= high:
            raise ValidationError(f"could not set compression level {level} for {comp_type.value}")

        if comp_type is CompressionType.NONE:
            return fileobj
        elif comp_type is CompressionType.GZIP:
            # Default strategy, no preset dictionary, like gzsetparams()
            return cast(BinaryIO, gzip.GzipFile(fileobj=fileobj, mode="wb", compresslevel=level))
        elif comp_type is CompressionType.LZ4:
            return cast(BinaryIO, _lz4_frame.LZ4FrameFile(fileobj, mode="wb", compression_level=level))
        elif comp_type is CompressionType.ZSTD:
            cctx = _zstandard.ZstdCompressor(level=level)
            return cast(BinaryIO, cctx.stream_writer(fileobj, closefd=False))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def from_name(cls, name: str) -> CompressionType:
        for comp_type in CompressionType:
            if comp_type.value == name:
                return comp_type
        raise ValidationError(f'invalid compression method "{name}"')

    @classmethod
    def method_names(cls) -> List[str]:
        return [t.value for t in CompressionType if t is not CompressionType.NONE]


# ============================================================================
# TRANSPORT - Replication connection (frontend/backend protocol 3.0)
# ============================================================================

class CompletionStatus(NamedTuple):
    """Final acknowledgment of the BASE_BACKUP command."""
    ok: bool
    message: str


class Transport(ABC):
    """
    Control connection to the server.

    The session only needs four operations: send one command, read the
    result rows that follow, read bulk frames for one tar stream at a time
    (None marks the end of each stream) and read the final completion.
    """

    @abstractmethod
    def send_command(self, text: str) -> None:
        pass

    @abstractmethod
    def read_result_rows(self) -> List[Dict[str, Optional[str]]]:
        pass

    @abstractmethod
    def read_bulk_frame(self) -> Optional[bytes]:
        pass

    @abstractmethod
    def read_completion_status(self) -> CompletionStatus:
        pass

    def close(self) -> None:
        pass


def _read_cstring(payload: bytes, offset: int) -> Tuple[str, int]:
    """Read a NUL-terminated string starting at offset."""
    end = payload.find(b"\0", offset)
    if end < 0:
        raise ProtocolError("unterminated string in protocol message")
    return payload[offset:end].decode("utf-8", errors="replace"), end + 1


def _parse_error_fields(payload: bytes) -> Dict[str, str]:
    """Decode the (code, value) fields of an ErrorResponse or NoticeResponse."""
    fields: Dict[str, str] = {}
    offset = 0
    while offset < len(payload) and payload[offset] != 0:
        code = chr(payload[offset])
        value, offset = _read_cstring(payload, offset + 1)
        fields[code] = value
    return fields


def _error_message(payload: bytes) -> str:
    fields = _parse_error_fields(payload)
    message = fields.get("M", "unknown server error")
    severity = fields.get("S")
    return f"{severity}:  {message}" if severity else message


class PgWireTransport(Transport):
    """
    Transport speaking the PostgreSQL frontend/backend protocol over a socket.

    Every message is a one-byte type followed by a big-endian int32 length
    that includes itself. Only the messages produced by a replication
    connection running BASE_BACKUP are understood.
    """

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.parameters: Dict[str, str] = {}
        self.backend_pid: Optional[int] = None
        self._in_copy = False
        self._closed = False

    @classmethod
    def connect(
        cls,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        application_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> "PgWireTransport":
        """
        Open a replication connection and complete the startup phase.

        A host starting with '/' names a Unix socket directory, like libpq.
        Only servers that accept the connection without a password
        (AuthenticationOk) are supported.
        """
        host = host or os.environ.get("PGHOST") or Config.DEFAULT_HOST
        if not port:
            env_port = os.environ.get("PGPORT")
            try:
                port = int(env_port) if env_port else Config.DEFAULT_PORT
            except ValueError as e:
                raise ValidationError(f'invalid port number "{env_port}" in PGPORT') from e
        user = user or os.environ.get("PGUSER") or getpass.getuser()
        timeout = timeout if timeout is not None else Config.SOCKET_TIMEOUT

        try:
            if host.startswith("/"):
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                try:
                    sock.settimeout(timeout)
                    sock.connect(os.path.join(host, f".s.PGSQL.{port}"))
                except OSError:
                    sock.close()
                    raise
            else:
                sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise TransportError(f"could not connect to server: {e}") from e

        logger.info(f"Connected to {host}:{port} as {user}")
        transport = cls(sock)
        try:
            transport.startup(user, application_name or Config.APPLICATION_NAME)
        except BaseBackupError:
            transport.close()
            raise
        return transport

    def startup(self, user: str, application_name: str) -> None:
        """Send the StartupMessage and wait for ReadyForQuery."""
        params = [
            ("user", user),
            ("database", "replication"),
            ("replication", "true"),
            ("application_name", application_name),
        ]
        body = struct.pack("!I", PG_PROTOCOL_VERSION)
        for key, value in params:
            body += key.encode("utf-8") + b"\0" + value.encode("utf-8") + b"\0"
        body += b"\0"
        self._write_raw(struct.pack("!I", len(body) + 4) + body)

        while True:
            msg_type, payload = self._read_message()
            if msg_type == MSG_AUTHENTICATION:
                if len(payload) < 4:
                    raise ProtocolError("truncated authentication request")
                auth_code = struct.unpack("!I", payload[:4])[0]
                if auth_code != AUTH_OK:
                    raise TransportError(
                        f"could not connect to server: authentication method {auth_code} is not supported"
                    )
            elif msg_type == MSG_PARAMETER_STATUS:
                self._store_parameter(payload)
            elif msg_type == MSG_BACKEND_KEY_DATA:
                if len(payload) >= 4:
                    self.backend_pid = struct.unpack("!I", payload[:4])[0]
            elif msg_type == MSG_NOTICE_RESPONSE:
                self._log_notice(payload)
            elif msg_type == MSG_ERROR_RESPONSE:
                raise TransportError(f"could not connect to server: {_error_message(payload)}")
            elif msg_type == MSG_READY_FOR_QUERY:
                return
            else:
                raise ProtocolError(f"unexpected message type {msg_type!r} during startup")

    def send_command(self, text: str) -> None:
        """Send a simple Query message."""
        logger.debug(f"Sending command: {text}")
        self._send_message(MSG_QUERY, text.encode("utf-8") + b"\0")

    def read_result_rows(self) -> List[Dict[str, Optional[str]]]:
        """Read one result set: RowDescription, DataRows, CommandComplete."""
        columns: Optional[List[str]] = None
        rows: List[Dict[str, Optional[str]]] = []
        while True:
            msg_type, payload = self._read_message()
            if msg_type == MSG_ROW_DESCRIPTION:
                columns = self._parse_row_description(payload)
            elif msg_type == MSG_DATA_ROW:
                if columns is None:
                    raise ProtocolError("DataRow received before RowDescription")
                values = self._parse_data_row(payload)
                if len(values) != len(columns):
                    raise ProtocolError(
                        f"DataRow has {len(values)} columns, expected {len(columns)}"
                    )
                rows.append(dict(zip(columns, values)))
            elif msg_type == MSG_COMMAND_COMPLETE:
                if columns is None:
                    raise ProtocolError("command completed without returning a result set")
                return rows
            elif msg_type == MSG_ERROR_RESPONSE:
                raise ServerError(_error_message(payload))
            elif msg_type == MSG_NOTICE_RESPONSE:
                self._log_notice(payload)
            elif msg_type == MSG_PARAMETER_STATUS:
                self._store_parameter(payload)
            else:
                raise ProtocolError(f"unexpected message type {msg_type!r} while reading result rows")

    def read_bulk_frame(self) -> Optional[bytes]:
        """Return the next CopyData payload, or None at CopyDone."""
        while True:
            msg_type, payload = self._read_message()
            if msg_type == MSG_COPY_DATA:
                if not self._in_copy:
                    raise ProtocolError("CopyData received outside of a COPY stream")
                return payload
            elif msg_type == MSG_COPY_DONE:
                if not self._in_copy:
                    raise ProtocolError("CopyDone received outside of a COPY stream")
                self._in_copy = False
                return None
            elif msg_type == MSG_COPY_OUT_RESPONSE:
                if self._in_copy:
                    raise ProtocolError("CopyOutResponse received inside a COPY stream")
                self._in_copy = True
            elif msg_type == MSG_ERROR_RESPONSE:
                self._in_copy = False
                raise ServerError(f"could not read COPY data: {_error_message(payload)}")
            elif msg_type == MSG_COMMAND_COMPLETE and not self._in_copy:
                raise ServerError("could not get COPY data stream: command completed early")
            elif msg_type == MSG_NOTICE_RESPONSE:
                self._log_notice(payload)
            elif msg_type == MSG_PARAMETER_STATUS:
                self._store_parameter(payload)
            else:
                raise ProtocolError(f"unexpected message type {msg_type!r} while reading COPY data")

    def read_completion_status(self) -> CompletionStatus:
        """Read CommandComplete (or ErrorResponse) and the ReadyForQuery after it."""
        status: Optional[CompletionStatus] = None
        while True:
            try:
                msg_type, payload = self._read_message()
            except TransportError as e:
                if status is not None:
                    logger.debug(f"Connection closed after command completion: {e}")
                    return status
                return CompletionStatus(False, str(e))

            if msg_type == MSG_COMMAND_COMPLETE:
                tag, _ = _read_cstring(payload, 0)
                if status is None:
                    status = CompletionStatus(True, tag)
            elif msg_type == MSG_ERROR_RESPONSE:
                status = CompletionStatus(False, _error_message(payload))
            elif msg_type == MSG_READY_FOR_QUERY:
                if status is None:
                    return CompletionStatus(False, "no command completion received")
                return status
            elif msg_type == MSG_NOTICE_RESPONSE:
                self._log_notice(payload)
            elif msg_type == MSG_PARAMETER_STATUS:
                self._store_parameter(payload)
            else:
                return CompletionStatus(False, f"unexpected message type {msg_type!r}")

    def close(self) -> None:
        """Send Terminate and close the socket."""
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.sendall(MSG_TERMINATE + struct.pack("!I", 4))
        except OSError as e:
            logger.debug(f"Could not send Terminate: {e}")
        finally:
            self.sock.close()

    # -- framing -------------------------------------------------------------

    def _read_exact(self, size: int) -> bytes:
        chunks: List[bytes] = []
        remaining = size
        while remaining > 0:
            try:
                part = self.sock.recv(remaining)
            except OSError as e:
                raise TransportError(f"could not receive data from server: {e}") from e
            if not part:
                raise TransportError("server closed the connection unexpectedly")
            chunks.append(part)
            remaining -= len(part)
        data = b"".join(chunks)
        return data

    def _read_message(self) -> Tuple[bytes, bytes]:
        header = self._read_exact(5)
        msg_type = header[:1]
        length = struct.unpack("!I", header[1:5])[0]
        if length < 4:
            raise ProtocolError(f"invalid message length {length} for message type {msg_type!r}")
        payload = self._read_exact(length - 4) if length > 4 else b""
        return msg_type, payload

    def _write_raw(self, data: bytes) -> None:
        try:
            self.sock.sendall(data)
        except OSError as e:
            raise TransportError(f"could not send data to server: {e}") from e

    def _send_message(self, msg_type: bytes, payload: bytes) -> None:
        self._write_raw(msg_type + struct.pack("!I", len(payload) + 4) + payload)

    # -- message bodies ------------------------------------------------------

    @staticmethod
    def _parse_row_description(payload: bytes) -> List[str]:
        if len(payload) < 2:
            raise ProtocolError("truncated RowDescription")
        count = struct.unpack("!H", payload[:2])[0]
        offset = 2
        names: List[str] = []
        for _ in range(count):
            name, offset = _read_cstring(payload, offset)
            # table oid, column number, type oid, type size, type modifier, format
            offset += 18
            if offset > len(payload):
                raise ProtocolError("truncated RowDescription")
            names.append(name)
        return names

    @staticmethod
    def _parse_data_row(payload: bytes) -> List[Optional[str]]:
        if len(payload) < 2:
            raise ProtocolError("truncated DataRow")
        count = struct.unpack("!H", payload[:2])[0]
        offset = 2
        values: List[Optional[str]] = []
        for _ in range(count):
            if offset + 4 > len(payload):
                raise ProtocolError("truncated DataRow")
            length = struct.unpack("!i", payload[offset:offset + 4])[0]
            offset += 4
            if length < 0:
                values.append(None)
                continue
            if offset + length > len(payload):
                raise ProtocolError("truncated DataRow")
            values.append(payload[offset:offset + length].decode("utf-8", errors="replace"))
            offset += length
        return values

    def _store_parameter(self, payload: bytes) -> None:
        name, offset = _read_cstring(payload, 0)
        value, _ = _read_cstring(payload, offset)
        self.parameters[name] = value

    @staticmethod
    def _log_notice(payload: bytes) -> None:
        logger.warning(f"Server notice: {_error_message(payload)}")


# ============================================================================
# BULK STREAM READER - One tablespace's COPY stream as plain bytes
# ============================================================================

class BulkStreamReader:
    """
    Turns the transport's frame primitive into a sequence of byte buffers.

    next_frame() returns a non-empty bytes object or None once the stream
    for the current tablespace has ended; it never buffers beyond what the
    transport hands over.
    """

    def __init__(self, transport: Transport) -> None:
        self.transport = transport
        self.finished = False
        self.frames_read = 0
        self.bytes_read = 0

    def next_frame(self) -> Optional[bytes]:
        if self.finished:
            return None
        while True:
            frame = self.transport.read_bulk_frame()
            if frame is None:
                self.finished = True
                return None
            if frame:
                self.frames_read += 1
                self.bytes_read += len(frame)
                return bytes(frame)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame


# ============================================================================
# TAR BLOCK PARSER - Incremental ustar reader
# ============================================================================

class TarEntryType(Enum):
    """Kinds of tar entries the extractor can materialize."""
    REGULAR = "regular"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    UNSUPPORTED = "unsupported"


def _nts(field_bytes: bytes) -> str:
    """Convert a NUL-terminated header field to str."""
    return field_bytes.split(b"\0", 1)[0].decode("utf-8", errors="surrogateescape")


def _parse_number(field_bytes: bytes, what: str) -> int:
    """
    Parse a numeric header field.

    Octal text padded with spaces or NULs, or GNU base-256 when the high
    bit of the first byte is set (sizes of 8 GiB and more).
    """
    if field_bytes and field_bytes[0] & 0x80:
        if field_bytes[0] & 0x40:
            raise FormatError(f"could not parse file {what}: negative base-256 value")
        value = field_bytes[0] & 0x3F
        for byte in field_bytes[1:]:
            value = (value << 8) | byte
        return value
    text = field_bytes.split(b"\0", 1)[0].strip(b" ")
    try:
        return int(text, 8)
    except ValueError as e:
        raise FormatError(f"could not parse file {what}: {field_bytes!r}") from e


def _tar_checksums(block: bytes) -> Tuple[int, int]:
    """Unsigned and signed header sums with the checksum field as spaces."""
    unsigned = 256 + sum(block[:148]) + sum(block[156:512])
    signed = 256 + sum(struct.unpack("148b", block[:148])) + sum(struct.unpack("356b", block[156:512]))
    return unsigned, signed


@dataclass(frozen=True)
class TarEntryHeader:
    """
    Decoded 512-byte ustar header.

    Attributes:
        name: Entry path, '/'-separated, ustar prefix already joined
        mode: Permission bits
        size: Declared body size in bytes
        typeflag: Raw one-byte type flag
        linkname: Symlink target
    """
    name: str
    mode: int
    size: int
    typeflag: bytes
    linkname: str = ""

    @property
    def entry_type(self) -> TarEntryType:
        if self.typeflag == DIRTYPE:
            return TarEntryType.DIRECTORY
        if self.typeflag == SYMTYPE:
            return TarEntryType.SYMLINK
        if self.typeflag in (REGTYPE, AREGTYPE, CONTTYPE):
            return TarEntryType.REGULAR
        return TarEntryType.UNSUPPORTED

    @property
    def has_body(self) -> bool:
        return self.entry_type is TarEntryType.REGULAR and self.size > 0

    @property
    def padding(self) -> int:
        """Zero bytes after the body up to the next 512-byte boundary."""
        return ((self.size + TAR_BLOCK_SIZE - 1) & ~(TAR_BLOCK_SIZE - 1)) - self.size

    @classmethod
    def parse(cls, block: bytes, verify_checksum: bool = False) -> "TarEntryHeader":
        """
        Decode one header block.

        Raises:
            FormatError: For a short block, unparseable numeric fields or,
                with verify_checksum, a checksum mismatch
        """
        if len(block) != TAR_BLOCK_SIZE:
            raise FormatError(f"invalid tar block header size: {len(block)}")

        if verify_checksum:
            stored = _parse_number(block[_TAR_CHKSUM], "checksum")
            if stored not in _tar_checksums(block):
                raise FormatError(f'tar header checksum mismatch for "{_nts(block[_TAR_NAME])}"')

        size = _parse_number(block[_TAR_SIZE], "size")
        mode = _parse_number(block[_TAR_MODE], "mode")

        name = _nts(block[_TAR_NAME])
        # GNU headers ("ustar  \0") keep atime/ctime where POSIX has the prefix
        if block[_TAR_MAGIC] == POSIX_MAGIC:
            prefix = _nts(block[_TAR_PREFIX])
            if prefix:
                name = f"{prefix}/{name}"

        return cls(
            name=name,
            mode=mode,
            size=size,
            typeflag=block[_TAR_TYPEFLAG:_TAR_TYPEFLAG + 1],
            linkname=_nts(block[_TAR_LINKNAME]),
        )


class TarEventKind(Enum):
    HEADER = "header"
    DATA = "data"
    END = "end"


class TarEvent(NamedTuple):
    """One step of parser output: an entry starts, carries data, or ends."""
    kind: TarEventKind
    header: TarEntryHeader
    data: bytes = b""


class ParserState(Enum):
    AWAITING_HEADER = "awaiting_header"
    AWAITING_BODY = "awaiting_body"
    AWAITING_PADDING = "awaiting_padding"
    END_OF_ARCHIVE = "end_of_archive"


class TarBlockParser:
    """
    Incremental tar reader driven by byte chunks of any size.

    The extraction cursor is held as data between feed() calls:

        AWAITING_HEADER   collecting the next 512-byte header
        AWAITING_BODY     `remaining` body bytes still to come
        AWAITING_PADDING  `padding` zero bytes to discard

    Every header yields HEADER; regular files with a body yield one or more
    DATA events; END follows once the body and its padding are consumed, or
    directly after HEADER for entries without a body. Padding is never
    reported as data.

    Example:
        >>> parser = TarBlockParser()
        >>> for chunk in chunks:
        ...     for event in parser.feed(chunk):
        ...         handle(event)
        >>> parser.finish()
    """

    def __init__(self, verify_checksum: Optional[bool] = None) -> None:
        self.verify_checksum = Config.VERIFY_TAR_CHECKSUM if verify_checksum is None else verify_checksum
        self.state = ParserState.AWAITING_HEADER
        self.current: Optional[TarEntryHeader] = None
        self.remaining = 0
        self.padding = 0
        self.entries = 0
        self._header_buf = bytearray()

    @property
    def at_entry_boundary(self) -> bool:
        """True when no entry is open and no partial header is buffered."""
        return (
            self.state in (ParserState.AWAITING_HEADER, ParserState.END_OF_ARCHIVE)
            and not self._header_buf
        )

    def feed(self, data: bytes) -> Iterator[TarEvent]:
        """
        Consume a chunk and yield the events it completes.

        This is a generator: the chunk is only consumed while the caller
        iterates, so the result must be iterated to exhaustion.
        """
        view = memoryview(data)
        pos = 0
        end = len(view)
        while pos < end:
            if self.state is ParserState.AWAITING_HEADER:
                take = min(TAR_BLOCK_SIZE - len(self._header_buf), end - pos)
                self._header_buf.extend(view[pos:pos + take])
                pos += take
                if len(self._header_buf) < TAR_BLOCK_SIZE:
                    break
                block = bytes(self._header_buf)
                self._header_buf.clear()
                yield from self._start_entry(block)

            elif self.state is ParserState.AWAITING_BODY:
                assert self.current is not None
                take = min(self.remaining, end - pos)
                chunk = bytes(view[pos:pos + take])
                pos += take
                self.remaining -= take
                yield TarEvent(TarEventKind.DATA, self.current, chunk)
                if self.remaining == 0:
                    if self.padding == 0:
                        yield self._end_entry()
                    else:
                        self.state = ParserState.AWAITING_PADDING

            elif self.state is ParserState.AWAITING_PADDING:
                take = min(self.padding, end - pos)
                pos += take
                self.padding -= take
                if self.padding == 0:
                    yield self._end_entry()

            else:
                # Zero blocks and record padding after the end marker
                pos = end

    def finish(self) -> None:
        """
        Check that the stream ended on an entry boundary.

        Raises:
            IncompleteEntryError: If an entry or a header was left unfinished
        """
        if self.state in (ParserState.AWAITING_BODY, ParserState.AWAITING_PADDING):
            assert self.current is not None
            raise IncompleteEntryError(
                f'last file was never finished: "{self.current.name}" '
                f"({self.remaining} of {self.current.size} bytes missing)"
            )
        if self._header_buf:
            raise IncompleteEntryError(
                f"tar stream ended inside a header block ({len(self._header_buf)} of {TAR_BLOCK_SIZE} bytes)"
            )

    def _start_entry(self, block: bytes) -> Iterator[TarEvent]:
        if block == _ZERO_BLOCK:
            logger.debug("End-of-archive marker reached")
            self.state = ParserState.END_OF_ARCHIVE
            return

        header = TarEntryHeader.parse(block, verify_checksum=self.verify_checksum)
        entry_type = header.entry_type
        if header.name.endswith("/"):
            # A trailing slash means directory or symlink to a directory
            if entry_type not in (TarEntryType.DIRECTORY, TarEntryType.SYMLINK):
                raise FormatError(f'unknown link indicator "{header.typeflag.decode("latin-1")}"')
        elif entry_type is TarEntryType.UNSUPPORTED:
            raise FormatError(
                f'unsupported tar entry type "{header.typeflag.decode("latin-1")}" for "{header.name}"'
            )

        self.entries += 1
        self.current = header
        yield TarEvent(TarEventKind.HEADER, header)

        if header.has_body:
            self.remaining = header.size
            self.padding = header.padding
            self.state = ParserState.AWAITING_BODY
        else:
            yield self._end_entry()

    def _end_entry(self) -> TarEvent:
        assert self.current is not None
        event = TarEvent(TarEventKind.END, self.current)
        self.current = None
        self.remaining = 0
        self.padding = 0
        self.state = ParserState.AWAITING_HEADER
        return event


# ============================================================================
# ARCHIVE SINKS - Raw archive files and on-the-fly extraction
# ============================================================================

class ArchiveSink(ABC):
    """
    Destination for one tablespace's tar stream.

    write() is called once per frame in arrival order, finish() once at the
    end of the stream. close() releases resources on any path and is safe
    to call more than once; using the sink as a context manager calls it.
    """

    def __init__(self) -> None:
        self.bytes_written = 0

    @property
    @abstractmethod
    def destination(self) -> str:
        pass

    @property
    def current_name(self) -> str:
        """Name shown on the progress line."""
        return self.destination

    @abstractmethod
    def write(self, data: bytes) -> None:
        pass

    @abstractmethod
    def finish(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self) -> "ArchiveSink":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()


class RawSink(ArchiveSink):
    """
    Writes the tar stream verbatim, optionally through a compressor.

    finish() always appends two zero blocks: the server's stream does not
    carry the end-of-archive marker that tar programs expect.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        compression: CompressionType = CompressionType.NONE,
        level: int = 0,
        stream: Optional[BinaryIO] = None,
    ) -> None:
        super().__init__()
        if path is None and stream is None:
            raise ValidationError("RawSink needs a destination path or stream")
        self.path = path
        self.compression = compression if level > 0 else CompressionType.NONE
        self._owns_file = path is not None
        self._closed = False

        raw: BinaryIO
        if path is not None:
            try:
                raw = open(path, "wb")
            except OSError as e:
                raise FileIOError(f'could not create file "{path}": {e.strerror or e}') from e
        else:
            raw = cast(BinaryIO, stream)
        self._raw = raw

        try:
            self._out = CompressionRegistry.open_writer(self._raw, self.compression, level)
        except BaseBackupError:
            if self._owns_file:
                self._raw.close()
            raise

    @property
    def destination(self) -> str:
        return self.path if self.path is not None else STDOUT_TARGET

    def write(self, data: bytes) -> None:
        if self._closed:
            raise FileIOError(f'could not write to file "{self.destination}": already closed')
        try:
            self._out.write(data)
        except OSError as e:
            raise FileIOError(f'could not write to file "{self.destination}": {e}') from e
        self.bytes_written += len(data)

    def finish(self) -> None:
        self.write(TAR_END_OF_ARCHIVE)
        self._close(strict=True)

    def close(self) -> None:
        self._close(strict=False)

    def _close(self, strict: bool) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            try:
                if self._out is not self._raw:
                    self._out.close()
            finally:
                if self._owns_file:
                    self._raw.close()
                else:
                    self._raw.flush()
        except OSError as e:
            if strict:
                raise FileIOError(f'could not close file "{self.destination}": {e}') from e
            logger.debug(f'Error closing "{self.destination}" after failure: {e}')


class ExtractingSink(ArchiveSink):
    """
    Unpacks a tar stream into a directory as it arrives.

    Only regular files, directories and symbolic links are supported.
    Directories and files get the mode from their header; a failure to set
    it is logged as a warning and does not stop the backup. At most one
    file handle is open at a time and it never outlives its entry, also
    when an error interrupts the stream.
    """

    def __init__(self, root: str, verify_checksum: Optional[bool] = None) -> None:
        super().__init__()
        self.root = root
        self.parser = TarBlockParser(verify_checksum=verify_checksum)
        self.files = 0
        self.directories = 0
        self.symlinks = 0
        self._file: Optional[BinaryIO] = None
        self._file_path: Optional[str] = None
        self._current_name = ""

    @property
    def destination(self) -> str:
        return self.root

    @property
    def current_name(self) -> str:
        return self._current_name

    @property
    def has_open_file(self) -> bool:
        return self._file is not None

    def write(self, data: bytes) -> None:
        self.feed(data)

    def feed(self, data: bytes) -> None:
        """Consume a chunk of the tar stream."""
        try:
            for event in self.parser.feed(data):
                if event.kind is TarEventKind.HEADER:
                    self._begin_entry(event.header)
                elif event.kind is TarEventKind.DATA:
                    self._write_body(event.data)
                else:
                    self._close_file()
        except Exception:
            self._discard_file()
            raise
        self.bytes_written += len(data)

    def finish(self) -> None:
        try:
            self.parser.finish()
        finally:
            self._discard_file()

    def close(self) -> None:
        self._discard_file()

    def _target_path(self, name: str) -> str:
        parts = [part for part in name.split("/") if part not in ("", ".")]
        if name.startswith("/") or ".." in parts:
            raise FormatError(f'tar entry "{name}" points outside the target directory')
        # Symlinks unpacked earlier in the stream must not redirect later entries
        path = self.root
        for part in parts[:-1]:
            path = os.path.join(path, part)
            if os.path.islink(path):
                raise FormatError(f'tar entry "{name}" passes through symbolic link "{path}"')
        return os.path.join(self.root, *parts)

    def _begin_entry(self, header: TarEntryHeader) -> None:
        path = self._target_path(header.name)
        self._current_name = header.name
        entry_type = header.entry_type
        if entry_type is not TarEntryType.SYMLINK and os.path.islink(path):
            raise FormatError(f'tar entry "{header.name}" would replace symbolic link "{path}"')

        if entry_type is TarEntryType.DIRECTORY:
            self._make_directory(path, header.mode)
        elif entry_type is TarEntryType.SYMLINK:
            try:
                os.symlink(header.linkname, path)
            except OSError as e:
                raise FileIOError(
                    f'could not create symbolic link from "{path}" to "{header.linkname}": {e}'
                ) from e
            self.symlinks += 1
        else:
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | _O_NOFOLLOW, 0o600)
                self._file = cast(BinaryIO, os.fdopen(fd, "wb"))
            except OSError as e:
                raise FileIOError(f'could not create file "{path}": {e}') from e
            self._file_path = path
            self.files += 1
            self._apply_mode(path, header.mode, "file")

    def _make_directory(self, path: str, mode: int) -> None:
        try:
            os.mkdir(path, 0o700)
        except FileExistsError:
            if not os.path.isdir(path):
                raise FileIOError(f'could not create directory "{path}": a file is in the way')
            logger.debug(f'Directory "{path}" already exists')
        except OSError as e:
            raise FileIOError(f'could not create directory "{path}": {e}') from e
        else:
            self.directories += 1
        self._apply_mode(path, mode, "directory")

    @staticmethod
    def _apply_mode(path: str, mode: int, kind: str) -> None:
        if os.name == "nt":
            return
        try:
            os.chmod(path, mode & 0o7777)
        except OSError as e:
            logger.warning(f'could not set permissions on {kind} "{path}": {e}')

    def _write_body(self, data: bytes) -> None:
        assert self._file is not None
        try:
            self._file.write(data)
        except OSError as e:
            raise FileIOError(f'could not write to file "{self._file_path}": {e}') from e

    def _close_file(self) -> None:
        if self._file is None:
            return
        handle, self._file = self._file, None
        try:
            handle.close()
        except OSError as e:
            raise FileIOError(f'could not close file "{self._file_path}": {e}') from e

    def _discard_file(self) -> None:
        """Close the open file, if any, on an error path."""
        if self._file is None:
            return
        handle, self._file = self._file, None
        try:
            handle.close()
        except OSError as e:
            logger.debug(f'Error closing "{self._file_path}" after failure: {e}')


# ============================================================================
# PROGRESS REPORTING
# ============================================================================

class ProgressReporter:
    """
    Single-line progress display on stderr.

    Bytes are counted across the whole backup, never reset per tablespace.
    The percentage is only shown when the server reported a total; a total
    that turns out too small is raised to the bytes already received.
    """

    def __init__(
        self,
        total_bytes: int = 0,
        verbose: bool = False,
        stream: Optional[TextIO] = None,
        enabled: bool = True,
    ) -> None:
        self.total_bytes = max(0, total_bytes)
        self.bytes_done = 0
        self.verbose = verbose
        self.enabled = enabled
        self.stream = stream

    def advance(self, nbytes: int) -> None:
        if nbytes < 0:
            raise ValueError(f"cannot advance progress by {nbytes} bytes")
        self.bytes_done += nbytes

    @property
    def percent(self) -> Optional[int]:
        if self.total_bytes <= 0:
            return None
        total = max(self.total_bytes, self.bytes_done)
        return self.bytes_done * 100 // total

    def render(self, area_index: int, total_areas: int, current_name: str = "") -> str:
        done_kb = self.bytes_done // 1024
        percent = self.percent
        if percent is not None:
            total_kb = max(self.total_bytes, self.bytes_done) // 1024
            line = f"{done_kb}/{total_kb} kB ({percent}%) {area_index}/{total_areas} tablespaces"
        else:
            line = f"{done_kb} kB {area_index}/{total_areas} tablespaces"
        if self.verbose:
            line += f" ({current_name:<30})"
        return line

    def report(self, area_index: int, total_areas: int, current_name: str = "") -> None:
        """Redraw the progress line. Output errors are ignored."""
        if not self.enabled:
            return
        stream = self.stream if self.stream is not None else sys.stderr
        try:
            stream.write(self.render(area_index, total_areas, current_name) + "\r")
            stream.flush()
        except (OSError, ValueError) as e:
            logger.debug(f"Progress output failed: {e}")

    def finish(self) -> None:
        """Move past the progress line."""
        if not self.enabled:
            return
        stream = self.stream if self.stream is not None else sys.stderr
        try:
            stream.write("\n")
            stream.flush()
        except (OSError, ValueError) as e:
            logger.debug(f"Progress output failed: {e}")


# ============================================================================
# DIRECTORY CHECKS - Target directories must be empty or absent
# ============================================================================

class DirState(Enum):
    MISSING = "missing"
    EMPTY = "empty"
    NOT_EMPTY = "not_empty"


def check_directory(path: str) -> DirState:
    """
    Classify a target directory.

    Raises:
        FileIOError: If the path exists but cannot be read as a directory
    """
    try:
        entries = os.listdir(path)
    except FileNotFoundError:
        return DirState.MISSING
    except OSError as e:
        raise FileIOError(f'could not access directory "{path}": {e}') from e
    return DirState.NOT_EMPTY if entries else DirState.EMPTY


def verify_dir_is_empty_or_create(path: str) -> None:
    """
    Make sure path is an empty directory, creating it when missing.

    Raises:
        ValidationError: If the directory exists and is not empty
        FileIOError: If it cannot be accessed or created
    """
    state = check_directory(path)
    if state is DirState.MISSING:
        try:
            os.makedirs(path, Config.DIRECTORY_MODE)
        except OSError as e:
            raise FileIOError(f'could not create directory "{path}": {e}') from e
        logger.info(f'Created directory "{path}"')
    elif state is DirState.NOT_EMPTY:
        raise ValidationError(f'directory "{path}" exists but is not empty')


# ============================================================================
# SESSION CONTROLLER - BASE_BACKUP command and per-tablespace fetch
# ============================================================================

class BaseBackupSession:
    """
    Runs one base backup over an open transport.

    All state of the capture (manifest, counters, progress) lives on the
    session, so independent captures can run in the same process.

    Steps:
        1. send BASE_BACKUP with label, PROGRESS and FAST options
        2. read the manifest and check its preconditions
        3. sum up the size estimates when progress was requested
        4. drain each tablespace's stream into its sink, strictly in order
        5. read the final command completion

    Output already written is left in place when a step fails.
    """

    def __init__(
        self,
        transport: Transport,
        request: BackupRequest,
        progress_stream: Optional[TextIO] = None,
        stdout: Optional[BinaryIO] = None,
    ) -> None:
        self.transport = transport
        self.request = request
        self.stdout = stdout
        self.areas: List[StorageAreaDescriptor] = []
        self.result = CaptureResult()
        self.progress = ProgressReporter(
            verbose=request.verbose > 0,
            stream=progress_stream,
            enabled=request.show_progress,
        )

    def run(self) -> CaptureResult:
        start = time.perf_counter()
        command = self.request.to_command()
        logger.info(f"Starting base backup: {command}")
        self.transport.send_command(command)

        self.areas = self.read_manifest()
        self.check_manifest(self.areas)
        self.result.areas = list(self.areas)

        if self.request.show_progress:
            self.progress.total_bytes = sum(area.size or 0 for area in self.areas)

        for index, area in enumerate(self.areas):
            self._receive_area(index, area)

        if self.request.show_progress:
            self.progress.report(len(self.areas), len(self.areas), "")
            self.progress.finish()

        status = self.transport.read_completion_status()
        if not status.ok:
            raise ServerError(f"final receive failed: {status.message}")

        self.result.elapsed = time.perf_counter() - start
        logger.info("Base backup completed")
        return self.result

    def read_manifest(self) -> List[StorageAreaDescriptor]:
        """Read the tablespace list that answers BASE_BACKUP."""
        try:
            rows = self.transport.read_result_rows()
        except ServerError as e:
            raise ServerError(f"could not initiate base backup: {e.message}") from e
        if not rows:
            raise ServerError("no data returned from server")
        areas = [StorageAreaDescriptor.from_row(row) for row in rows]
        logger.info(f"Server reported {len(areas)} tablespace(s)")
        return areas

    def check_manifest(self, areas: Sequence[StorageAreaDescriptor]) -> None:
        """
        Validate the manifest before any data is transferred.

        Raises:
            ValidationError: Several tablespaces to stdout, or a non-empty
                tablespace directory in plain mode
            ProtocolError: A tablespace without a location in plain mode
        """
        request = self.request
        if request.output_format is OutputFormat.TAR:
            if request.writes_to_stdout and len(areas) > 1:
                raise ValidationError(
                    f"can only write single tablespace to stdout, database has {len(areas)}"
                )
            return

        # The main data directory was verified by the caller and may be relocated.
        for area in areas:
            if area.is_primary:
                continue
            if not area.location:
                raise ProtocolError(f"tablespace {area.oid} has no location")
            verify_dir_is_empty_or_create(area.location)

    def _open_sink(self, area: StorageAreaDescriptor) -> ArchiveSink:
        request = self.request
        if request.output_format is OutputFormat.TAR:
            if request.writes_to_stdout:
                return RawSink(stream=self.stdout if self.stdout is not None else sys.stdout.buffer)
            compression = request.effective_compression
            path = os.path.join(request.basedir, area.archive_name(compression))
            return RawSink(path, compression, request.compress_level)

        root = request.basedir if area.is_primary else cast(str, area.location)
        return ExtractingSink(root)

    def _receive_area(self, index: int, area: StorageAreaDescriptor) -> None:
        total = len(self.areas)
        reader = BulkStreamReader(self.transport)
        with self._open_sink(area) as sink:
            logger.info(f"Receiving tablespace {index + 1}/{total} ({area.display_name}) into {sink.destination}")
            for frame in reader:
                sink.write(frame)
                self.progress.advance(len(frame))
                self.result.bytes_received += len(frame)
                self.progress.report(index, total, sink.current_name)
            sink.finish()

        self.result.outputs.append(sink.destination)
        if isinstance(sink, ExtractingSink):
            self.result.files += sink.files
            self.result.directories += sink.directories
            self.result.symlinks += sink.symlinks
        logger.debug(f"Tablespace {area.display_name}: {reader.frames_read} frames, {reader.bytes_read} bytes")


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

PROG = "pybasebackup"


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser. -h selects the host, help is -? / --help."""
    parser = argparse.ArgumentParser(
        prog=PROG,
        add_help=False,
        allow_abbrev=False,
        description=f"{PROG} takes base backups of running PostgreSQL servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    output = parser.add_argument_group("Options controlling the output")
    output.add_argument('-D', '--pgdata', dest='basedir', metavar='DIRECTORY',
                        help='receive base backup into directory ("-" for stdout in tar mode)')
    output.add_argument('-F', '--format', default='plain', metavar='p|t',
                        help='output format (plain, tar)')
    output.add_argument('-Z', '--compress', type=int, default=0, metavar='0-9',
                        help='compress tar output')
    output.add_argument('--compression-method', default=CompressionType.GZIP.value,
                        choices=CompressionRegistry.method_names(),
                        help='compressor used with -Z (default: gzip)')

    general = parser.add_argument_group("General options")
    general.add_argument('-c', '--checkpoint', default=CheckpointMode.SPREAD.value, metavar='fast|spread',
                         help='set fast or spread checkpointing')
    general.add_argument('-l', '--label', default=None,
                         help='set backup label')
    general.add_argument('-P', '--progress', action='store_true',
                         help='show progress information')
    general.add_argument('-v', '--verbose', action='count', default=0,
                         help='output verbose messages')
    general.add_argument('--stats', action='store_true',
                         help='print a summary when the backup completes')
    general.add_argument('-?', '--help', action='help',
                         help='show this help, then exit')
    general.add_argument('-V', '--version', action='store_true',
                         help='output version information, then exit')

    connection = parser.add_argument_group("Connection options")
    connection.add_argument('-h', '--host', default=None, metavar='HOSTNAME',
                            help='database server host or socket directory')
    connection.add_argument('-p', '--port', type=int, default=None, metavar='PORT',
                            help='database server port number')
    connection.add_argument('-U', '--username', default=None, metavar='NAME',
                            help='connect as specified database user')
    return parser


def validate_options(opts: argparse.Namespace) -> None:
    """
    Check option combinations that argparse cannot express.

    Raises:
        ValidationError: On the first violated rule
    """
    if not opts.basedir:
        raise ValidationError("no target directory specified")
    output_format = OutputFormat.from_arg(opts.format)
    CheckpointMode.from_arg(opts.checkpoint)
    if not 0 <= opts.compress <= 9:
        raise ValidationError(f'invalid compression level "{opts.compress}"')
    if output_format is OutputFormat.PLAIN and opts.compress > 0:
        raise ValidationError("only tar mode backups can be compressed")
    if opts.compress > 0 and opts.basedir == STDOUT_TARGET:
        raise ValidationError("compression is not supported on standard output")
    if opts.port is not None and opts.port <= 0:
        raise ValidationError(f'invalid port number "{opts.port}"')


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse and validate command-line arguments."""
    opts = create_parser().parse_args(list(argv) if argv is not None else None)
    if not opts.version:
        validate_options(opts)
    return opts


def build_request(opts: argparse.Namespace) -> BackupRequest:
    return BackupRequest(
        basedir=opts.basedir,
        label=opts.label if opts.label is not None else Config.DEFAULT_LABEL,
        checkpoint=CheckpointMode.from_arg(opts.checkpoint),
        show_progress=opts.progress,
        output_format=OutputFormat.from_arg(opts.format),
        compress_level=opts.compress,
        compression=CompressionRegistry.from_name(opts.compression_method),
        verbose=opts.verbose,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 for success, the error's code otherwise)
    """
    try:
        opts = parse_args(argv)
        if opts.version:
            print(f"{PROG} {__version__}")
            return 0

        configure_logging(opts.verbose)
        request = build_request(opts)

        # Tar output to stdout is the only case without a target directory
        if not request.writes_to_stdout:
            verify_dir_is_empty_or_create(request.basedir)

        transport = PgWireTransport.connect(host=opts.host, port=opts.port, user=opts.username)
        try:
            result = BaseBackupSession(transport, request).run()
        finally:
            transport.close()

        if opts.stats:
            result.print_stats()
        if opts.verbose:
            print(Colors.success(f"{PROG}: base backup completed"), file=sys.stderr)
        return 0
    except BaseBackupError as e:
        print(Colors.error(f"{PROG}: {e}"), file=sys.stderr)
        return e.code
    except KeyboardInterrupt:
        print(Colors.warning(f"\n{PROG}: operation cancelled by user"), file=sys.stderr)
        return 1


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
