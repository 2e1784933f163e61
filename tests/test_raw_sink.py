#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Test Raw Sink - pybasebackup

Archives written in tar mode must be readable by standard tools, so every
test decompresses the output and checks for the end-of-archive marker.
"""

import gzip
import io
import tarfile
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

import lz4.frame
import zstandard

from pybasebackup import (
    CompressionRegistry,
    CompressionType,
    FileIOError,
    RawSink,
    StorageAreaDescriptor,
    TAR_BLOCK_SIZE,
    TAR_END_OF_ARCHIVE,
    ValidationError,
)


def tar_entry(name: str, data: bytes) -> bytes:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mtime = 1700000000
    header = info.tobuf(format=tarfile.USTAR_FORMAT, encoding="utf-8", errors="strict")
    return header + data + b"\0" * ((-len(data)) % TAR_BLOCK_SIZE)


PAYLOAD = tar_entry("PG_VERSION", b"9.1\n") + tar_entry("global/pg_control", b"\x07" * 8192)


class TestRawSink(unittest.TestCase):

    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def _write(self, path: Path, compression: CompressionType, level: int) -> bytes:
        sink = RawSink(str(path), compression, level)
        for i in range(0, len(PAYLOAD), 1000):
            sink.write(PAYLOAD[i:i + 1000])
        sink.finish()
        return path.read_bytes()

    def test_uncompressed_gets_end_marker(self):
        path = self.tmp / "base.tar"
        self.assertEqual(self._write(path, CompressionType.NONE, 0), PAYLOAD + TAR_END_OF_ARCHIVE)
        with tarfile.open(path) as tar:
            self.assertEqual(tar.getnames(), ["PG_VERSION", "global/pg_control"])

    def test_gzip(self):
        data = self._write(self.tmp / "base.tar.gz", CompressionType.GZIP, 6)
        self.assertEqual(gzip.decompress(data), PAYLOAD + TAR_END_OF_ARCHIVE)

    def test_lz4(self):
        data = self._write(self.tmp / "base.tar.lz4", CompressionType.LZ4, 3)
        self.assertEqual(lz4.frame.decompress(data), PAYLOAD + TAR_END_OF_ARCHIVE)

    def test_zstd(self):
        data = self._write(self.tmp / "base.tar.zst", CompressionType.ZSTD, 3)
        decompressed = zstandard.ZstdDecompressor().decompressobj().decompress(data)
        self.assertEqual(decompressed, PAYLOAD + TAR_END_OF_ARCHIVE)

    def test_level_zero_disables_compression(self):
        sink = RawSink(str(self.tmp / "base.tar"), CompressionType.GZIP, 0)
        self.assertEqual(sink.compression, CompressionType.NONE)
        sink.close()

    def test_stream_is_not_closed(self):
        buf = io.BytesIO()
        sink = RawSink(stream=buf)
        sink.write(PAYLOAD)
        sink.finish()
        self.assertEqual(buf.getvalue(), PAYLOAD + TAR_END_OF_ARCHIVE)
        self.assertEqual(sink.destination, "-")

    def test_abort_leaves_partial_file(self):
        path = self.tmp / "base.tar"
        with RawSink(str(path)) as sink:
            sink.write(PAYLOAD[:700])
        self.assertEqual(path.read_bytes(), PAYLOAD[:700])
        sink.close()

    def test_write_after_finish(self):
        sink = RawSink(str(self.tmp / "base.tar"))
        sink.finish()
        with self.assertRaises(FileIOError):
            sink.write(b"late")

    def test_cannot_create_file(self):
        with self.assertRaises(FileIOError):
            RawSink(str(self.tmp / "missing" / "base.tar"))

    def test_needs_destination(self):
        with self.assertRaises(ValidationError):
            RawSink()

    def test_bytes_written_counts_terminator(self):
        buf = io.BytesIO()
        sink = RawSink(stream=buf)
        sink.write(PAYLOAD)
        sink.finish()
        self.assertEqual(sink.bytes_written, len(PAYLOAD) + 2 * TAR_BLOCK_SIZE)


class TestArchiveNames(unittest.TestCase):

    def test_primary_area(self):
        area = StorageAreaDescriptor(oid=None)
        self.assertEqual(area.archive_name(), "base.tar")
        self.assertEqual(area.archive_name(CompressionType.GZIP), "base.tar.gz")

    def test_tablespace_area(self):
        area = StorageAreaDescriptor(oid="16385", location="/srv/ts", size=1024)
        self.assertEqual(area.archive_name(), "16385.tar")
        self.assertEqual(area.archive_name(CompressionType.LZ4), "16385.tar.lz4")
        self.assertEqual(area.archive_name(CompressionType.ZSTD), "16385.tar.zst")


class TestCompressionRegistry(unittest.TestCase):

    def test_from_name(self):
        self.assertEqual(CompressionRegistry.from_name("zstd"), CompressionType.ZSTD)
        with self.assertRaises(ValidationError):
            CompressionRegistry.from_name("bzip2")

    def test_method_names(self):
        self.assertEqual(CompressionRegistry.method_names(), ["gzip", "lz4", "zstd"])

    def test_level_out_of_range(self):
        with self.assertRaises(ValidationError):
            CompressionRegistry.open_writer(io.BytesIO(), CompressionType.GZIP, 10)


if __name__ == "__main__":
    unittest.main(verbosity=2)
