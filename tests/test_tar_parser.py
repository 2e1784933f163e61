#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Test Tar Block Parser - pybasebackup

The server hands the tar stream over in frames with no alignment guarantee,
so these tests feed the same archive in many chunkings and check that the
parser reports identical entries every time.

Tests cover:
- Header decoding (octal and base-256 numbers, ustar prefix, checksum)
- Body and padding accounting around the 512-byte boundary
- Chunk-size independence
- Malformed and truncated streams
"""

import tarfile
import unittest
from typing import List, Tuple

from pybasebackup import (
    Config,
    FormatError,
    IncompleteEntryError,
    ParserState,
    TarBlockParser,
    TarEntryHeader,
    TarEntryType,
    TarEventKind,
    TAR_BLOCK_SIZE,
)


def tar_entry(name: str, data: bytes = b"", mode: int = 0o644,
              type: bytes = tarfile.REGTYPE, linkname: str = "") -> bytes:
    """One ustar entry (header, body, padding) as the server sends it."""
    info = tarfile.TarInfo(name)
    info.type = type
    info.mode = mode
    info.size = len(data) if type == tarfile.REGTYPE else 0
    info.linkname = linkname
    info.mtime = 1700000000
    header = info.tobuf(format=tarfile.USTAR_FORMAT, encoding="utf-8", errors="strict")
    return header + data + b"\0" * ((-len(data)) % TAR_BLOCK_SIZE)


def chunked(data: bytes, size: int) -> List[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


def collect(parser: TarBlockParser, chunks: List[bytes]) -> List[Tuple[str, bytes, bool]]:
    """Run chunks through the parser; return (name, body, ended) per entry."""
    entries: List[list] = []
    for chunk in chunks:
        for event in parser.feed(chunk):
            if event.kind is TarEventKind.HEADER:
                entries.append([event.header.name, bytearray(), False])
            elif event.kind is TarEventKind.DATA:
                entries[-1][1].extend(event.data)
            else:
                entries[-1][2] = True
    return [(name, bytes(body), ended) for name, body, ended in entries]


class TestTarEntryHeader(unittest.TestCase):
    """Decoding of single header blocks"""

    def test_regular_file_fields(self):
        block = tar_entry("PG_VERSION", b"9.1\n", mode=0o600)[:TAR_BLOCK_SIZE]
        header = TarEntryHeader.parse(block)
        self.assertEqual(header.name, "PG_VERSION")
        self.assertEqual(header.size, 4)
        self.assertEqual(header.mode, 0o600)
        self.assertEqual(header.entry_type, TarEntryType.REGULAR)
        self.assertEqual(header.padding, 508)

    def test_padding_on_block_boundary(self):
        block = tar_entry("f", b"x" * 512)[:TAR_BLOCK_SIZE]
        self.assertEqual(TarEntryHeader.parse(block).padding, 0)
        block = tar_entry("f", b"x" * 513)[:TAR_BLOCK_SIZE]
        self.assertEqual(TarEntryHeader.parse(block).padding, 511)

    def test_directory_and_symlink_types(self):
        block = tar_entry("base", type=tarfile.DIRTYPE, mode=0o700)[:TAR_BLOCK_SIZE]
        header = TarEntryHeader.parse(block)
        self.assertEqual(header.name, "base/")
        self.assertEqual(header.entry_type, TarEntryType.DIRECTORY)

        block = tar_entry("pg_tblspc/16385", type=tarfile.SYMTYPE, linkname="/srv/ts")[:TAR_BLOCK_SIZE]
        header = TarEntryHeader.parse(block)
        self.assertEqual(header.entry_type, TarEntryType.SYMLINK)
        self.assertEqual(header.linkname, "/srv/ts")

    def test_ustar_prefix_is_joined(self):
        name = "a" * 60 + "/" + "b" * 60 + "/relation_file"
        block = tar_entry(name, b"data")[:TAR_BLOCK_SIZE]
        self.assertEqual(TarEntryHeader.parse(block).name, name)

    def test_gnu_header_has_no_prefix(self):
        info = tarfile.TarInfo("PG_VERSION")
        info.size = 4
        info.mtime = 1700000000
        block = bytearray(info.tobuf(format=tarfile.GNU_FORMAT, encoding="utf-8", errors="strict"))
        self.assertEqual(bytes(block[257:265]), b"ustar  \0")
        # GNU keeps atime and ctime where POSIX ustar has the name prefix
        block[345:357] = b"14524770400\0"
        block[357:369] = b"14524770400\0"
        self.assertEqual(TarEntryHeader.parse(bytes(block)).name, "PG_VERSION")

    def test_base256_size(self):
        block = bytearray(tar_entry("huge")[:TAR_BLOCK_SIZE])
        block[124:136] = b"\x80" + (2 ** 34).to_bytes(11, "big")
        self.assertEqual(TarEntryHeader.parse(bytes(block)).size, 2 ** 34)

    def test_unparseable_size(self):
        block = bytearray(tar_entry("f", b"abc")[:TAR_BLOCK_SIZE])
        block[124:136] = b"zzzzzzzzzzz\0"
        with self.assertRaises(FormatError):
            TarEntryHeader.parse(bytes(block))

    def test_unparseable_mode(self):
        block = bytearray(tar_entry("f", b"abc")[:TAR_BLOCK_SIZE])
        block[100:108] = b"rw-r--r-"
        with self.assertRaises(FormatError):
            TarEntryHeader.parse(bytes(block))

    def test_short_block(self):
        with self.assertRaises(FormatError):
            TarEntryHeader.parse(b"\0" * 100)


class TestChecksumVerification(unittest.TestCase):
    """Header checksums are only checked when asked for"""

    def tearDown(self):
        Config.reset_defaults()

    def _corrupted(self) -> bytes:
        block = bytearray(tar_entry("f", b"abc"))
        # Change one mtime digit; the header still parses
        block[137] = ord("7") if block[137] != ord("7") else ord("6")
        return bytes(block)

    def test_valid_checksum_accepted(self):
        parser = TarBlockParser(verify_checksum=True)
        self.assertEqual(collect(parser, [tar_entry("f", b"abc")]), [("f", b"abc", True)])

    def test_mismatch_ignored_by_default(self):
        parser = TarBlockParser()
        self.assertEqual(collect(parser, [self._corrupted()]), [("f", b"abc", True)])

    def test_mismatch_rejected_when_enabled(self):
        parser = TarBlockParser(verify_checksum=True)
        with self.assertRaises(FormatError):
            collect(parser, [self._corrupted()])

    def test_config_switch(self):
        Config.VERIFY_TAR_CHECKSUM = True
        parser = TarBlockParser()
        with self.assertRaises(FormatError):
            collect(parser, [self._corrupted()])


class TestTarBlockParser(unittest.TestCase):
    """Event sequences and cursor state"""

    def test_zero_length_file_ends_immediately(self):
        parser = TarBlockParser()
        stream = tar_entry("empty") + tar_entry("next", b"x")
        kinds = [(e.kind, e.header.name) for e in parser.feed(stream)]
        self.assertEqual(kinds, [
            (TarEventKind.HEADER, "empty"),
            (TarEventKind.END, "empty"),
            (TarEventKind.HEADER, "next"),
            (TarEventKind.DATA, "next"),
            (TarEventKind.END, "next"),
        ])
        self.assertTrue(parser.at_entry_boundary)

    def test_exact_block_body_has_no_padding(self):
        parser = TarBlockParser()
        stream = tar_entry("a", b"A" * 512) + tar_entry("b", b"B")
        self.assertEqual(collect(parser, [stream]), [("a", b"A" * 512, True), ("b", b"B", True)])

    def test_one_byte_over_block(self):
        parser = TarBlockParser()
        stream = tar_entry("a", b"A" * 513) + tar_entry("b", b"B")
        self.assertEqual(len(stream), 512 + 1024 + 1024)
        self.assertEqual(collect(parser, [stream]), [("a", b"A" * 513, True), ("b", b"B", True)])

    def test_padding_never_reported_as_data(self):
        parser = TarBlockParser()
        data = b"".join(e.data for e in parser.feed(tar_entry("a", b"abc")))
        self.assertEqual(data, b"abc")

    def test_chunking_does_not_change_result(self):
        stream = (
            tar_entry("global", type=tarfile.DIRTYPE, mode=0o700)
            + tar_entry("global/pg_control", bytes(range(256)) * 32)
            + tar_entry("empty")
            + tar_entry("block", b"\x01" * 512)
            + tar_entry("odd", b"\x02" * 513)
            + tar_entry("pg_tblspc/16385", type=tarfile.SYMTYPE, linkname="/srv/ts")
            + tar_entry("tail", b"end")
        )
        expected = collect(TarBlockParser(), [stream])
        self.assertEqual(len(expected), 7)
        for size in (1, 7, 511, 512, 513, 4096, len(stream)):
            with self.subTest(chunk_size=size):
                parser = TarBlockParser()
                self.assertEqual(collect(parser, chunked(stream, size)), expected)
                parser.finish()

    def test_state_between_chunks(self):
        parser = TarBlockParser()
        stream = tar_entry("a", b"x" * 1000)
        list(parser.feed(stream[:600]))
        self.assertEqual(parser.state, ParserState.AWAITING_BODY)
        self.assertEqual(parser.remaining, 912)
        list(parser.feed(stream[600:1512]))
        self.assertEqual(parser.state, ParserState.AWAITING_PADDING)
        self.assertEqual(parser.padding, 24)
        list(parser.feed(stream[1512:]))
        self.assertEqual(parser.state, ParserState.AWAITING_HEADER)

    def test_zero_block_ends_archive(self):
        parser = TarBlockParser()
        stream = tar_entry("a", b"1") + b"\0" * 1024 + b"trailing record padding"
        self.assertEqual(collect(parser, [stream]), [("a", b"1", True)])
        self.assertEqual(parser.state, ParserState.END_OF_ARCHIVE)
        parser.finish()

    def test_unfinished_body(self):
        parser = TarBlockParser()
        list(parser.feed(tar_entry("big", b"x" * 1000)[:700]))
        with self.assertRaises(IncompleteEntryError) as ctx:
            parser.finish()
        self.assertIn("last file was never finished", str(ctx.exception))

    def test_unfinished_padding(self):
        parser = TarBlockParser()
        list(parser.feed(tar_entry("a", b"abc")[:520]))
        with self.assertRaises(IncompleteEntryError):
            parser.finish()

    def test_partial_header(self):
        parser = TarBlockParser()
        list(parser.feed(tar_entry("a", b"abc")[:100]))
        self.assertFalse(parser.at_entry_boundary)
        with self.assertRaises(IncompleteEntryError):
            parser.finish()

    def test_trailing_slash_on_regular_file(self):
        parser = TarBlockParser()
        with self.assertRaises(FormatError) as ctx:
            list(parser.feed(tar_entry("weird/")))
        self.assertIn("unknown link indicator", str(ctx.exception))

    def test_trailing_slash_on_symlink(self):
        parser = TarBlockParser()
        stream = tar_entry("pg_tblspc/16385/", type=tarfile.SYMTYPE, linkname="/srv/ts")
        self.assertEqual(collect(parser, [stream]), [("pg_tblspc/16385/", b"", True)])

    def test_unsupported_entry_type(self):
        parser = TarBlockParser()
        with self.assertRaises(FormatError):
            list(parser.feed(tar_entry("fifo", type=tarfile.FIFOTYPE)))

    def test_entry_count(self):
        parser = TarBlockParser()
        list(parser.feed(tar_entry("a") + tar_entry("b", b"x")))
        self.assertEqual(parser.entries, 2)


if __name__ == "__main__":
    unittest.main(verbosity=2)
