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
Archive orchestration: listing -> entries -> size pass -> destination -> streaming pass.

The size is computed once, before the destination is opened, and is what the
destination is told and what the caller gets back. The streaming pass uses a fresh
encoder over the same entries.
"""

import time

from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from zipcast import FileSystems
from zipcast.Destinations import Destination, baseName, openDestination
from zipcast.Encoder import ZipStreamEncoder
from zipcast.Entries import ArchiveEntry, FileRecord, buildEntries
from zipcast.Errors import ContentReadError
from zipcast.Kernel import ZipcastEvent, getLogger
from zipcast.Progress import ArchiveProgress
from zipcast.Sizing import computeSize

logger = getLogger(__name__)

# JSON value of an indeterminate size
UNKNOWN_SIZE = -1


@dataclass
class ArchiveOptions:
    compress: bool = False # Deflate entries; makes the size indeterminate
    dryRun: bool = False # Stop after the size pass, write nothing
    progress: bool = False # Report transferred bytes on stderr


@dataclass
class ArchiveResult:
    destinationPath: str
    destinationName: str
    totalSize: Optional[int] # None when compression makes it indeterminate

    @property
    def sizeKnown(self) -> bool:
        return self.totalSize is not None

    def toDict(self) -> dict:
        """rclone-style object: {"Path", "Name", "Size"}, Size -1 when unknown"""
        return {
            'Path': self.destinationPath,
            'Name': self.destinationName,
            'Size': UNKNOWN_SIZE if self.totalSize is None else self.totalSize,
        }


class ProgressWriter:
    """Passes encoder output to the destination and publishes the running byte count"""

    def __init__(self, destination: Destination, totalSize: Optional[int]):
        self.destination = destination
        self.totalSize = totalSize
        self.bytesWritten = 0

    def write(self, data: bytes) -> int:
        written = self.destination.write(data)
        self.bytesWritten += len(data)
        ZipcastEvent.archiveProgressUpdate.trigger(bytesWritten=self.bytesWritten, totalSize=self.totalSize)
        return written


def _listRecords(source, fileSystem):
    if isinstance(source, str):
        fileSystem = fileSystem or FileSystems.build(source)
        return fileSystem.list(), fileSystem

    if fileSystem is None and hasattr(source, 'list') and hasattr(source, 'open'):
        return source.list(), source

    return list(source), fileSystem


def _openContent(fileSystem, entry: ArchiveEntry):
    try:
        return fileSystem.open(entry.name)
    except OSError as e:
        raise ContentReadError(f"Cannot open '{entry.name}': {e}", path=entry.name) from e


def streamEntries(
    entries: List[ArchiveEntry],
    fileSystem,
    destination: str,
    totalSize: Optional[int],
    options: ArchiveOptions,
    opener=openDestination,
) -> int:
    """
    Streaming pass: open the destination and encode every entry into it, in order.

    Any failure aborts the destination before propagating; a partially written archive
    is never completed.

    Returns:
        int: Bytes actually written
    """
    startTime = time.time()
    logger.debug(f"ZIP build START: {len(entries)} entries -> {destination} (size hint: {totalSize})")

    output = opener(destination, sizeHint=totalSize, progress=options.progress)

    progress = None
    completed = False
    try:
        if options.progress and output.showsProgressBar:
            progress = ArchiveProgress(totalSize).start()

        encoder = ZipStreamEncoder(ProgressWriter(output, totalSize))

        for entry in entries:
            ZipcastEvent.archiveEntryCreate.trigger(name=entry.name, index=entry.index, size=entry.declaredSize)

            with _openContent(fileSystem, entry) as content:
                encoder.addEntry(entry, content)

        written = encoder.finish()
        output.close()
        completed = True
    except BaseException as e:
        logger.debug(f"ZIP build aborted: {e!r}")
        output.abort()
        raise
    finally:
        if progress is not None:
            progress.stop(complete=completed)

    if totalSize is not None and written != totalSize:
        logger.warning(f"Archive is {written} bytes, {totalSize} were announced to {destination}")

    logger.debug(f"ZIP build END: {written} bytes, {time.time() - startTime:.3f}s")
    return written


def archive(
    source: Union[str, Iterable[Union[FileRecord, dict]]],
    destination: str = '-',
    options: ArchiveOptions = None,
    fileSystem=None,
    opener=openDestination,
) -> ArchiveResult:
    """
    Archive source into destination.

    Args:
        source: Source location (local path or rclone remote), a FileSystem, or an
                already listed sequence of FileRecord / lsjson objects
        destination: `-` for stdout, a local path, an rclone remote or an http(s) URL
        options: ArchiveOptions
        fileSystem: Backend used to read content; required when source is a listing
                    and this is not a dry run
        opener: Callable(location, sizeHint=, progress=) returning a Destination

    Returns:
        ArchiveResult: Computed before streaming; never returned for a failed archive

    Raises:
        ArchiveError: Any InvalidEntryError, ContentReadError, DestinationWriteError or
                      InvalidStateError aborts the whole operation
    """
    options = options or ArchiveOptions()

    records, fileSystem = _listRecords(source, fileSystem)
    entries = buildEntries(records, compress=options.compress)
    totalSize = computeSize(entries, options.compress)

    result = ArchiveResult(destinationPath=destination, destinationName=baseName(destination), totalSize=totalSize)

    if options.dryRun:
        logger.debug(f"Dry run: {result}")
        return result

    if fileSystem is None:
        raise ValueError("A fileSystem is required to read the content of a pre-listed source")

    streamEntries(entries, fileSystem, destination, totalSize, options, opener=opener)
    return result
