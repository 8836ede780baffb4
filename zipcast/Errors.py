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


class ArchiveError(RuntimeError):
    """Base class for every failure that aborts an archive operation"""


class InvalidEntryError(ArchiveError):
    """Malformed file listing (empty, duplicated or unsafe path, negative size)"""

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class ContentReadError(ArchiveError):
    """A source content stream failed, or disagreed with its listed size, mid-body"""

    def __init__(self, message: str, path: str = None, bytesRead: int = 0):
        super().__init__(message)
        self.path = path
        self.bytesRead = bytesRead


class DestinationWriteError(ArchiveError):
    """The destination rejected the stream or failed mid-write"""

    def __init__(self, message: str, location: str = None):
        super().__init__(message)
        self.location = location


class InvalidStateError(ArchiveError):
    """Encoder misuse, e.g. adding an entry after finish(). Indicates a defect."""


class RcloneError(ArchiveError):
    """The rclone binary is missing or a listing command failed"""

    def __init__(self, message: str, returnCode: int = None, stderr: str = None):
        super().__init__(message)
        self.returnCode = returnCode
        self.stderr = stderr


class SourceNotFoundError(ArchiveError):
    """The source location does not exist"""

    def __init__(self, message: str, location: str = None):
        super().__init__(message)
        self.location = location
