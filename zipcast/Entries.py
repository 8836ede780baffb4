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

import datetime
import re
import zipfile

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List, Optional, Union

from zipcast.Errors import InvalidEntryError
from zipcast.Kernel import getLogger

logger = getLogger(__name__)

MAX_NAME_LENGTH = 0xFFFF # Filename length is a 16-bit field

# RFC 3339 as printed by rclone: 2017-05-31T16:15:57.034468261+01:00
_FRACTION_PATTERN = re.compile(r'\.(\d+)')


class CompressionMode(IntEnum):
    """ZIP compression methods (from zipfile module)"""
    STORED = zipfile.ZIP_STORED # 0
    DEFLATED = zipfile.ZIP_DEFLATED # 8


def parseModTime(value) -> Optional[float]:
    """
    Convert a listing timestamp to a Unix timestamp.

    Accepts numbers (already Unix time), datetime objects and RFC 3339 strings with
    any number of fractional digits. Returns None when the value is missing or unreadable;
    the encoder maps None to the DOS epoch.
    """
    if value is None or value == '':
        return None

    if isinstance(value, bool):
        raise TypeError(f"Invalid modification time: {value!r}")

    if isinstance(value, (int, float)):
        return float(value)

    if isinstance(value, datetime.datetime):
        return value.timestamp()

    text = str(value).strip()
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'
    # fromisoformat before 3.11 takes exactly 3 or 6 fraction digits; datetime keeps microseconds
    text = _FRACTION_PATTERN.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)

    try:
        return datetime.datetime.fromisoformat(text).timestamp()
    except (ValueError, OverflowError, OSError) as e:
        logger.warning(f"Unreadable modification time {value!r}: {e}")
        return None


@dataclass(frozen=True)
class FileRecord:
    """One file to be archived, as reported by the source listing"""
    path: str # Relative, slash-separated; also the archive entry name
    size: int # Byte count reported by the listing, not by reading the file
    modTime: Optional[float] = None # Unix timestamp

    @classmethod
    def fromListing(cls, item: dict) -> Optional['FileRecord']:
        """
        Build a record from one listing object.

        Understands rclone `lsjson` objects (Path/Size/ModTime/IsDir) as well as
        lower-case path/size/modTime dicts. Directory objects yield None.
        """
        if item.get('IsDir', item.get('isDir', False)):
            return None

        path = item.get('Path', item.get('path'))
        size = item.get('Size', item.get('size'))
        modTime = item.get('ModTime', item.get('modTime'))

        if path is None:
            raise InvalidEntryError(f"Listing item has no path: {item!r}")

        try:
            size = int(size)
        except (TypeError, ValueError):
            raise InvalidEntryError(f"Listing item has no usable size: {item!r}", path=path)

        return cls(path=path, size=size, modTime=parseModTime(modTime))


@dataclass(frozen=True)
class ArchiveEntry:
    """
    Container-format view of a FileRecord.

    Entries are immutable and shared by the size pass and the streaming pass, so both
    passes see the same order, names and declared sizes. Per-pass encoding state
    (offset, CRC, final sizes) lives in the encoder.
    """
    index: int
    name: str
    nameBytes: bytes
    compressionMode: CompressionMode
    declaredSize: int
    modTime: Optional[float]

    @property
    def compress(self) -> bool:
        return self.compressionMode == CompressionMode.DEFLATED


def normalizePath(path: str) -> str:
    """
    Validate and normalize an entry path (no I/O).

    Raises:
        InvalidEntryError: For empty, absolute or parent-relative paths
    """
    if path is None or path == '':
        raise InvalidEntryError("Empty path in file listing", path=path)

    normalized = path.replace('\\', '/')

    if normalized.startswith('/') or re.match(r'^[a-zA-Z]:', normalized):
        raise InvalidEntryError(f"Absolute path in file listing: {path}", path=path)

    if '..' in normalized.split('/'):
        raise InvalidEntryError(f"Invalid relative path in file listing: {path}", path=path)

    if normalized.endswith('/'):
        raise InvalidEntryError(f"File path cannot end with '/': {path}", path=path)

    return normalized


def buildEntries(records: Iterable[Union[FileRecord, dict]], compress: bool = False) -> List[ArchiveEntry]:
    """
    Turn an ordered listing into ArchiveEntry objects, preserving order exactly.

    Args:
        records: FileRecord objects (or listing dicts, see FileRecord.fromListing)
        compress: Deflate every entry when True, store otherwise

    Returns:
        list: ArchiveEntry objects in input order

    Raises:
        InvalidEntryError: Empty/duplicate/unsafe path, negative size or over-long name
    """
    mode = CompressionMode.DEFLATED if compress else CompressionMode.STORED
    entries = []
    seen = set()

    for record in records:
        if isinstance(record, dict):
            record = FileRecord.fromListing(record)
            if record is None:
                continue

        name = normalizePath(record.path)

        if name in seen:
            raise InvalidEntryError(f"Duplicate path in file listing: {name}", path=name)
        seen.add(name)

        if record.size is None or record.size < 0:
            raise InvalidEntryError(f"Invalid size {record.size} for {name}", path=name)

        nameBytes = name.encode('utf-8')
        if len(nameBytes) > MAX_NAME_LENGTH:
            raise InvalidEntryError(f"Path too long for a ZIP entry: {name[:64]}...", path=name)

        entries.append(
            ArchiveEntry(
                index=len(entries),
                name=name,
                nameBytes=nameBytes,
                compressionMode=mode,
                declaredSize=record.size,
                modTime=record.modTime,
            )
        )

    logger.debug(f"Built {len(entries)} archive entries (compress={compress})")
    return entries
