#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# zipcast - Stream storage listings into ZIP archives of known size
# Copyright (C) 2024-2025 zipcast contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Streaming ZIP encoder.

Every entry is written as local file header, body, then a data descriptor carrying
CRC-32 and sizes (general purpose bit 3), so nothing has to be known about the body
before it is streamed. Layout of one archive (PKWARE APPNOTE.TXT):

    [LFH][body][DD] ... [LFH][body][DD] [CDH] ... [CDH] ([ZIP64 EOCD][ZIP64 locator]) [EOCD]

The same encoder serves two passes:
- the size pass, with trustDeclaredSize=True and empty content, which only advances
  offsets by each entry's declared size;
- the streaming pass, which reads real content and writes every byte.
Both produce the same layout for Stored entries, which is what makes the size exact.
"""

import datetime
import io
import struct
import zipfile
import zlib

from enum import Enum
from typing import BinaryIO, List, Optional

from zipcast.Entries import ArchiveEntry, CompressionMode
from zipcast.Errors import ContentReadError, InvalidStateError
from zipcast.Kernel import getLogger
from zipcast.Settings import SettingsGetter

logger = getLogger(__name__)

# Record signatures (PKWARE APPNOTE.TXT), taken from zipfile where it defines them
LOCAL_FILE_HEADER_SIGNATURE = struct.unpack('<I', zipfile.stringFileHeader)[0] # 0x04034b50
CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringCentralDir)[0] # 0x02014b50
END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive)[0] # 0x06054b50
ZIP64_END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive64)[0] # 0x06064b50
ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive64Locator)[0] # 0x07064b50
DATA_DESCRIPTOR_SIGNATURE = 0x08074b50

# General purpose bit flags
DATA_DESCRIPTOR_FLAG = 0x0008 # Bit 3: sizes/CRC in data descriptor
UTF8_FLAG = 0x0800 # Bit 11: filename is UTF-8 encoded

ZIP64_EXTRA_TAG = 0x0001
ZIP64_LIMIT = 0xFFFFFFFF # Fields at or above this value move to ZIP64 records
ZIP64_COUNT_LIMIT = 0xFFFF

VERSION_DEFAULT = 20 # 2.0: deflate, data descriptor
VERSION_ZIP64 = 45 # 4.5: ZIP64 extensions

ARCHIVE_ATTRIBUTE = 0x20 # MS-DOS "archive" attribute for regular files

# Fixed record layouts
LOCAL_FILE_HEADER = struct.Struct(
    '<I' # Signature
    'H' # Version needed to extract
    'H' # General purpose bit flag
    'H' # Compression method
    'H' # File last modification time
    'H' # File last modification date
    'I' # CRC-32 (0, in data descriptor)
    'I' # Compressed size (0, in data descriptor)
    'I' # Uncompressed size (0, in data descriptor)
    'H' # Filename length
    'H' # Extra field length
)
DATA_DESCRIPTOR = struct.Struct('<IIII') # Signature, CRC-32, compressed, uncompressed
DATA_DESCRIPTOR64 = struct.Struct('<IIQQ')
CENTRAL_DIR_HEADER = struct.Struct(
    '<I' # Signature
    'H' # Version made by
    'H' # Version needed to extract
    'H' # General purpose bit flag
    'H' # Compression method
    'H' # Last mod file time
    'H' # Last mod file date
    'I' # CRC-32
    'I' # Compressed size
    'I' # Uncompressed size
    'H' # Filename length
    'H' # Extra field length
    'H' # File comment length
    'H' # Disk number start
    'H' # Internal file attributes
    'I' # External file attributes
    'I' # Relative offset of local header
)
ZIP64_END_OF_CENTRAL_DIR = struct.Struct('<IQHHIIQQQQ')
ZIP64_END_OF_CENTRAL_DIR_LOCATOR = struct.Struct('<IIQI')
END_OF_CENTRAL_DIR = struct.Struct('<IHHHHIIH')

# Size of the smallest possible archive: a bare end-of-central-directory record
EMPTY_ARCHIVE_SIZE = END_OF_CENTRAL_DIR.size


class EntryState(Enum):
    PENDING = 'pending'
    HEADER_WRITTEN = 'header-written'
    BODY_STREAMING = 'body-streaming'
    FINALIZED = 'finalized'


class ArchiveState(Enum):
    OPEN = 'open'
    ENTRIES_WRITTEN = 'entries-written'
    CENTRAL_DIRECTORY_WRITTEN = 'central-directory-written'
    CLOSED = 'closed'


def unixToDosTime(timestamp):
    """
    Convert Unix timestamp to DOS time and date format

    Args:
        timestamp: Unix timestamp (seconds since epoch) or None

    Returns:
        tuple: (dosTime, dosDate) - both as 16-bit integers

    DOS time format (16 bits):
        bits 0-4: seconds / 2 (0-29)
        bits 5-10: minutes (0-59)
        bits 11-15: hours (0-23)

    DOS date format (16 bits):
        bits 0-4: day (1-31)
        bits 5-8: month (1-12)
        bits 9-15: year - 1980 (0-127, representing 1980-2107)
    """
    if timestamp is None or timestamp <= 0:
        # 1980-01-01 00:00:00
        return 0, (1 << 5) | 1

    try:
        dt = datetime.datetime.fromtimestamp(timestamp)
    except (ValueError, OverflowError, OSError):
        return 0, (1 << 5) | 1

    if dt.year < 1980:
        return 0, (1 << 5) | 1

    if dt.year > 2107:
        # Latest representable moment: 2107-12-31 23:59:58
        return (23 << 11) | (59 << 5) | 29, (127 << 9) | (12 << 5) | 31

    dosTime = (dt.hour << 11) | (dt.minute << 5) | (dt.second // 2)
    dosDate = ((dt.year - 1980) << 9) | (dt.month << 5) | dt.day
    return dosTime, dosDate


class NullContent(io.RawIOBase):
    """Zero-length content stream, stands in for real files during the size pass"""

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        return 0


class CountingSink:
    """Output that discards bytes and only counts them"""

    def __init__(self):
        self.bytesWritten = 0

    def write(self, data) -> int:
        self.bytesWritten += len(data)
        return len(data)


class EncodedEntry:
    """Per-pass encoding state of one ArchiveEntry"""

    __slots__ = ('entry', 'offset', 'useDeflate', 'crc', 'compressedSize', 'uncompressedSize', 'state')

    def __init__(self, entry: ArchiveEntry, offset: int, useDeflate: bool):
        self.entry = entry
        self.offset = offset
        self.useDeflate = useDeflate
        self.crc = 0
        self.compressedSize = 0
        self.uncompressedSize = 0
        self.state = EntryState.PENDING

    @property
    def compressionMethod(self) -> int:
        return CompressionMode.DEFLATED if self.useDeflate else CompressionMode.STORED

    @property
    def needsZip64Descriptor(self) -> bool:
        return self.compressedSize >= ZIP64_LIMIT or self.uncompressedSize >= ZIP64_LIMIT

    @property
    def needsZip64Extra(self) -> bool:
        return self.needsZip64Descriptor or self.offset >= ZIP64_LIMIT


class ZipStreamEncoder:
    """
    ZIP container state machine writing to any object with a write(bytes) method.

    Entry states:   PENDING -> HEADER_WRITTEN -> BODY_STREAMING -> FINALIZED
    Archive states: OPEN -> ENTRIES_WRITTEN -> CENTRAL_DIRECTORY_WRITTEN -> CLOSED

    The running offset is owned by the encoder and advances only as bytes are committed
    to its output (or, with trustDeclaredSize, by the declared body size).
    """

    def __init__(
        self,
        output,
        chunkSize: int = None,
        deflateLevel: int = None,
        trustDeclaredSize: bool = False,
        strictSize: bool = None,
    ):
        """
        Args:
            output: Object with write(bytes); receives chunks of at most chunkSize bytes
                    (body chunks may be written as read)
            chunkSize: Source read size and output flush threshold
            deflateLevel: zlib level for Deflated entries
            trustDeclaredSize: Size pass mode - take body sizes from the entries instead of
                               the content streams, and write no body bytes
            strictSize: Fail Stored entries whose content length differs from the declared size
        """
        settingsGetter = SettingsGetter.getInstance()

        self.output = output
        self.chunkSize = chunkSize or settingsGetter.chunkSize
        self.deflateLevel = settingsGetter.deflateLevel if deflateLevel is None else deflateLevel
        self.trustDeclaredSize = trustDeclaredSize
        self.strictSize = settingsGetter.strictSize if strictSize is None else strictSize

        self.offset = 0
        self.state = ArchiveState.OPEN
        self.entries: List[EncodedEntry] = []
        self._current: Optional[EncodedEntry] = None
        self._buffer = bytearray()

    @property
    def bytesWritten(self) -> int:
        """Logical archive length so far"""
        return self.offset

    def _emit(self, data: bytes):
        """Commit bytes to the archive; flush whole chunks to the output"""
        if not data:
            return

        self._buffer.extend(data)
        self.offset += len(data)

        while len(self._buffer) >= self.chunkSize:
            self.output.write(bytes(self._buffer[:self.chunkSize]))
            del self._buffer[:self.chunkSize]

    def _flush(self):
        if self._buffer:
            self.output.write(bytes(self._buffer))
            self._buffer.clear()

    def addEntry(self, entry: ArchiveEntry, content: BinaryIO, compress: bool = None):
        """
        Write one entry: local header now, then the body streamed from content, then
        its data descriptor.

        Args:
            entry: Entry metadata
            content: Readable binary stream; read until exhausted, not closed here
            compress: Override the entry's compression mode

        Raises:
            InvalidStateError: Archive already finished, or another entry is mid-body
            ContentReadError: Content stream failed, or size disagrees with the listing
        """
        if self.state != ArchiveState.OPEN:
            raise InvalidStateError(f"Cannot add '{entry.name}': archive is {self.state.value}")

        if self._current is not None:
            raise InvalidStateError(
                f"Cannot add '{entry.name}': '{self._current.entry.name}' is still {self._current.state.value}"
            )

        useDeflate = entry.compress if compress is None else compress
        if useDeflate and self.trustDeclaredSize:
            raise InvalidStateError("Declared sizes cannot describe Deflated entries")

        record = EncodedEntry(entry, self.offset, useDeflate)
        self._current = record
        self.entries.append(record)

        self._emit(self._makeLocalFileHeader(record))
        record.state = EntryState.HEADER_WRITTEN

        record.state = EntryState.BODY_STREAMING
        if self.trustDeclaredSize:
            self._skipBody(record, content)
        elif useDeflate:
            self._streamDeflated(record, content)
        else:
            self._streamStored(record, content)

        self._emit(self._makeDataDescriptor(record))
        record.state = EntryState.FINALIZED
        self._current = None

        logger.debug(
            f"Entry {entry.index} '{entry.name}': offset={record.offset}, "
            f"size={record.uncompressedSize}, compressed={record.compressedSize}"
        )

    def _read(self, record: EncodedEntry, content: BinaryIO) -> bytes:
        try:
            return content.read(self.chunkSize)
        except OSError as e:
            raise ContentReadError(
                f"Failed reading '{record.entry.name}' after {record.uncompressedSize} bytes: {e}",
                path=record.entry.name,
                bytesRead=record.uncompressedSize,
            ) from e

    def _skipBody(self, record: EncodedEntry, content: BinaryIO):
        """Size pass: the body is exactly the declared size, nothing is read or written"""
        if self._read(record, content):
            raise InvalidStateError("Size pass expects empty content streams")

        record.uncompressedSize = record.entry.declaredSize
        record.compressedSize = record.entry.declaredSize
        self.offset += record.entry.declaredSize

    def _sizeMismatch(self, record: EncodedEntry, actual: int):
        message = (
            f"Size of '{record.entry.name}' changed since listing "
            f"(listed {record.entry.declaredSize}, read {actual})"
        )
        if self.strictSize:
            logger.error(message)
            raise ContentReadError(message, path=record.entry.name, bytesRead=actual)

        logger.warning(message)

    def _streamStored(self, record: EncodedEntry, content: BinaryIO):
        declaredSize = record.entry.declaredSize
        crc = 0

        while True:
            data = self._read(record, content)
            if not data:
                break

            if record.uncompressedSize + len(data) > declaredSize:
                # Checked before writing so the extra bytes never reach the output
                self._sizeMismatch(record, record.uncompressedSize + len(data))

            crc = zlib.crc32(data, crc)
            record.uncompressedSize += len(data)
            self._emit(data)

        if record.uncompressedSize < declaredSize:
            self._sizeMismatch(record, record.uncompressedSize)

        record.crc = crc
        record.compressedSize = record.uncompressedSize

    def _streamDeflated(self, record: EncodedEntry, content: BinaryIO):
        compressor = zlib.compressobj(self.deflateLevel, zlib.DEFLATED, -zlib.MAX_WBITS)
        crc = 0

        while True:
            data = self._read(record, content)
            if not data:
                break

            crc = zlib.crc32(data, crc)
            record.uncompressedSize += len(data)

            compressed = compressor.compress(data)
            if compressed:
                record.compressedSize += len(compressed)
                self._emit(compressed)

        compressed = compressor.flush()
        if compressed:
            record.compressedSize += len(compressed)
            self._emit(compressed)

        if record.uncompressedSize != record.entry.declaredSize:
            logger.warning(
                f"Size of '{record.entry.name}' changed since listing "
                f"(listed {record.entry.declaredSize}, read {record.uncompressedSize})"
            )

        record.crc = crc

    def finish(self) -> int:
        """
        Write the central directory and end records, flush and close the archive.

        Returns:
            int: Total archive length in bytes

        Raises:
            InvalidStateError: Archive already finished, or an entry is mid-body
        """
        if self.state != ArchiveState.OPEN:
            raise InvalidStateError(f"Cannot finish: archive is {self.state.value}")

        if self._current is not None:
            raise InvalidStateError(f"Cannot finish: '{self._current.entry.name}' is {self._current.state.value}")

        self.state = ArchiveState.ENTRIES_WRITTEN

        centralDirStart = self.offset
        for record in self.entries:
            self._emit(self._makeCentralDirHeader(record))
        centralDirSize = self.offset - centralDirStart
        self.state = ArchiveState.CENTRAL_DIRECTORY_WRITTEN

        needsZip64 = (
            len(self.entries) >= ZIP64_COUNT_LIMIT or centralDirSize >= ZIP64_LIMIT or
            centralDirStart >= ZIP64_LIMIT
        )
        if needsZip64:
            zip64EocdOffset = self.offset
            self._emit(self._makeZip64EndOfCentralDir(centralDirSize, centralDirStart))
            self._emit(self._makeZip64Locator(zip64EocdOffset))

        self._emit(self._makeEndOfCentralDir(centralDirSize, centralDirStart))
        self._flush()
        self.state = ArchiveState.CLOSED

        logger.debug(
            f"ZIP finished: entries={len(self.entries)}, centralDir={centralDirStart}+{centralDirSize}, "
            f"zip64={needsZip64}, totalSize={self.offset}"
        )
        return self.offset

    def _makeLocalFileHeader(self, record: EncodedEntry) -> bytes:
        entry = record.entry
        dosTime, dosDate = unixToDosTime(entry.modTime)

        needsZip64 = entry.declaredSize >= ZIP64_LIMIT or record.offset >= ZIP64_LIMIT

        header = LOCAL_FILE_HEADER.pack(
            LOCAL_FILE_HEADER_SIGNATURE,
            VERSION_ZIP64 if needsZip64 else VERSION_DEFAULT,
            DATA_DESCRIPTOR_FLAG | UTF8_FLAG,
            record.compressionMethod,
            dosTime,
            dosDate,
            0,
            0,
            0,
            len(entry.nameBytes),
            0,
        )
        return header + entry.nameBytes

    def _makeDataDescriptor(self, record: EncodedEntry) -> bytes:
        if record.needsZip64Descriptor:
            return DATA_DESCRIPTOR64.pack(
                DATA_DESCRIPTOR_SIGNATURE, record.crc & 0xFFFFFFFF, record.compressedSize, record.uncompressedSize
            )

        return DATA_DESCRIPTOR.pack(
            DATA_DESCRIPTOR_SIGNATURE, record.crc & 0xFFFFFFFF, record.compressedSize, record.uncompressedSize
        )

    def _makeCentralDirHeader(self, record: EncodedEntry) -> bytes:
        entry = record.entry
        dosTime, dosDate = unixToDosTime(entry.modTime)

        # ZIP64 extra field carries, in this order, only the values that overflowed
        extraData = b''
        if record.uncompressedSize >= ZIP64_LIMIT:
            extraData += struct.pack('<Q', record.uncompressedSize)
        if record.compressedSize >= ZIP64_LIMIT:
            extraData += struct.pack('<Q', record.compressedSize)
        if record.offset >= ZIP64_LIMIT:
            extraData += struct.pack('<Q', record.offset)

        extraField = b''
        if extraData:
            extraField = struct.pack('<HH', ZIP64_EXTRA_TAG, len(extraData)) + extraData

        version = VERSION_ZIP64 if record.needsZip64Extra else VERSION_DEFAULT

        header = CENTRAL_DIR_HEADER.pack(
            CENTRAL_DIR_SIGNATURE,
            version,
            version,
            DATA_DESCRIPTOR_FLAG | UTF8_FLAG,
            record.compressionMethod,
            dosTime,
            dosDate,
            record.crc & 0xFFFFFFFF,
            min(record.compressedSize, ZIP64_LIMIT),
            min(record.uncompressedSize, ZIP64_LIMIT),
            len(entry.nameBytes),
            len(extraField),
            0,
            0,
            0,
            ARCHIVE_ATTRIBUTE,
            min(record.offset, ZIP64_LIMIT),
        )
        return header + entry.nameBytes + extraField

    def _makeZip64EndOfCentralDir(self, centralDirSize: int, centralDirStart: int) -> bytes:
        return ZIP64_END_OF_CENTRAL_DIR.pack(
            ZIP64_END_OF_CENTRAL_DIR_SIGNATURE,
            ZIP64_END_OF_CENTRAL_DIR.size - 12, # Size of the remaining record
            VERSION_ZIP64, # Version made by
            VERSION_ZIP64, # Version needed to extract
            0, # Number of this disk
            0, # Disk where central directory starts
            len(self.entries), # Number of entries on this disk
            len(self.entries), # Total number of entries
            centralDirSize,
            centralDirStart,
        )

    def _makeZip64Locator(self, zip64EocdOffset: int) -> bytes:
        return ZIP64_END_OF_CENTRAL_DIR_LOCATOR.pack(
            ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE,
            0, # Disk number with zip64 EOCD
            zip64EocdOffset,
            1, # Total number of disks
        )

    def _makeEndOfCentralDir(self, centralDirSize: int, centralDirStart: int) -> bytes:
        # Overflowing values become 0xFFFF/0xFFFFFFFF markers pointing at the ZIP64 record
        entryCount = min(len(self.entries), ZIP64_COUNT_LIMIT)

        return END_OF_CENTRAL_DIR.pack(
            END_OF_CENTRAL_DIR_SIGNATURE,
            0, # Number of this disk
            0, # Disk where central directory starts
            entryCount,
            entryCount,
            min(centralDirSize, ZIP64_LIMIT),
            min(centralDirStart, ZIP64_LIMIT),
            0, # Comment length
        )
