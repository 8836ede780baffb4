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
Source backends for the archiver.

Both backends answer the same two questions:
- list(): which files are there (recursive, files only), with sizes from metadata
- open(path): a read-once content stream for one listed path

A source location may name a directory or a single file. Listed paths are relative to
the directory, or are the bare file name for a single file, so content paths are always
contentRoot + listed path.
"""

import os
import stat as _stat

from typing import BinaryIO, List, Protocol

from zipcast.Entries import FileRecord
from zipcast.Errors import SourceNotFoundError
from zipcast.Kernel import getLogger
from zipcast.Rclone import RcloneRunner, isRemote

logger = getLogger(__name__)


class FileSystem(Protocol):
    """FileSystem protocol that all source implementations must follow"""

    location: str

    @property
    def rootIsDir(self) -> bool:
        ...

    @property
    def contentRoot(self) -> str:
        ... # Directory that listed paths are relative to

    def list(self) -> List[FileRecord]:
        ...

    def contentPath(self, path: str) -> str:
        ...

    def open(self, path: str) -> BinaryIO:
        ...


class LocalFileSystem:
    """
    Local filesystem backend.

    Lists in sorted path order, so repeated runs over an unchanged tree give the same archive.
    """

    def __init__(self, location: str):
        self.location = location
        self.root = os.path.abspath(location)

        if not os.path.exists(self.root):
            raise SourceNotFoundError(f"Source not found: {location}", location=location)

        logger.debug(f"LocalFileSystem initialized: {self.root}")

    @property
    def rootIsDir(self) -> bool:
        return os.path.isdir(self.root)

    @property
    def contentRoot(self) -> str:
        return self.root if self.rootIsDir else os.path.dirname(self.root)

    def _record(self, fullPath: str, relPath: str):
        st = os.stat(fullPath)
        if not _stat.S_ISREG(st.st_mode):
            logger.debug(f"Skipping non-regular file: {fullPath}")
            return None

        return FileRecord(path=relPath, size=int(st.st_size), modTime=float(st.st_mtime))

    def list(self) -> List[FileRecord]:
        if not self.rootIsDir:
            record = self._record(self.root, os.path.basename(self.root))
            return [record] if record else []

        records = []
        for dirPath, dirNames, fileNames in os.walk(self.root):
            dirNames.sort()
            for fileName in sorted(fileNames):
                fullPath = os.path.join(dirPath, fileName)
                relPath = os.path.relpath(fullPath, self.root).replace(os.sep, '/')

                record = self._record(fullPath, relPath)
                if record:
                    records.append(record)

        records.sort(key=lambda record: record.path)
        logger.debug(f"Listed {len(records)} files under {self.root}")
        return records

    def contentPath(self, path: str) -> str:
        return os.path.join(self.contentRoot, *path.split('/'))

    def open(self, path: str) -> BinaryIO:
        return open(self.contentPath(path), 'rb')


class RcloneFileSystem:
    """Any rclone remote (`remote:path`), listed with lsjson and read with cat"""

    def __init__(self, location: str, runner: RcloneRunner = None):
        self.location = location
        self.runner = runner or RcloneRunner()
        self._rootIsDir = None

    @property
    def rootIsDir(self) -> bool:
        if self._rootIsDir is None:
            item = self.runner.stat(self.location)
            if item is None:
                raise SourceNotFoundError(f"Source not found: {self.location}", location=self.location)

            self._rootIsDir = bool(item.get('IsDir', False))
        return self._rootIsDir

    @property
    def contentRoot(self) -> str:
        if self.rootIsDir:
            return self.location

        # Parent of `remote:dir/file` is `remote:dir`, parent of `remote:file` is `remote:`
        slash = self.location.rfind('/')
        if slash >= 0:
            return self.location[:slash]
        return self.location[:self.location.rfind(':') + 1]

    def list(self) -> List[FileRecord]:
        # Stat first so a missing source is reported as such, not as an empty listing
        _ = self.rootIsDir

        records = []
        for item in self.runner.lsjson(self.location):
            record = FileRecord.fromListing(item)
            if record:
                records.append(record)
        return records

    def contentPath(self, path: str) -> str:
        root = self.contentRoot
        if root.endswith((':', '/')):
            return f'{root}{path}'
        return f'{root}/{path}'

    def open(self, path: str) -> BinaryIO:
        return self.runner.cat(self.contentPath(path))


def build(location: str, runner: RcloneRunner = None) -> FileSystem:
    """Source backend for location: an rclone remote or a local path"""
    if isRemote(location):
        return RcloneFileSystem(location, runner=runner)
    return LocalFileSystem(location)
