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

import platform
import shutil

from zipcast.Kernel import Singleton, getLogger
from zipcast.Utils import getEnv

# Transfer chunk size (256 KiB) - source read size and encoder flush threshold
TRANSFER_CHUNK_SIZE = getEnv('ZIPCAST_TRANSFER_CHUNK_SIZE', 256 * 1024)

# zlib level for Deflated entries
DEFLATE_LEVEL = getEnv('ZIPCAST_DEFLATE_LEVEL', 6)

RCLONE_BINARY = getEnv('ZIPCAST_RCLONE_BINARY', 'rclone')

# Abort Stored archives whose content does not match the listed size
STRICT_SIZE = getEnv('ZIPCAST_STRICT_SIZE', True)

HTTP_TIMEOUT = getEnv('ZIPCAST_HTTP_TIMEOUT', 60)

SUPPORT_URL = 'https://github.com/zipcast/zipcast/issues'

logger = getLogger(__name__)


# Singleton
class SettingsGetter(Singleton):

    def initialize(
        self,
        platformName=None,
        chunkSize=None,
        deflateLevel=None,
        rcloneBinary=None,
        strictSize=None,
        httpTimeout=None,
    ):
        """Initialize the SettingsGetter; None means take the environment (or .env) value."""
        self._platform = platformName or platform.system()
        self._chunkSize = chunkSize or getEnv('ZIPCAST_TRANSFER_CHUNK_SIZE', TRANSFER_CHUNK_SIZE)
        self._deflateLevel = getEnv('ZIPCAST_DEFLATE_LEVEL', DEFLATE_LEVEL) if deflateLevel is None else deflateLevel
        self._rcloneBinary = rcloneBinary or getEnv('ZIPCAST_RCLONE_BINARY', RCLONE_BINARY)
        self._strictSize = getEnv('ZIPCAST_STRICT_SIZE', STRICT_SIZE) if strictSize is None else strictSize
        self._httpTimeout = httpTimeout or getEnv('ZIPCAST_HTTP_TIMEOUT', HTTP_TIMEOUT)

        if self._chunkSize <= 0:
            raise ValueError(f"Invalid transfer chunk size: {self._chunkSize}")

        if not -1 <= self._deflateLevel <= 9:
            raise ValueError(f"Invalid deflate level: {self._deflateLevel}")

        logger.debug(
            f"Settings: chunkSize={self._chunkSize}, deflateLevel={self._deflateLevel}, "
            f"rclone={self._rcloneBinary}, strictSize={self._strictSize}"
        )

    @property
    def chunkSize(self) -> int:
        return self._chunkSize

    @property
    def deflateLevel(self) -> int:
        return self._deflateLevel

    @property
    def rcloneBinary(self) -> str:
        return self._rcloneBinary

    @rcloneBinary.setter
    def rcloneBinary(self, binary):
        self._rcloneBinary = binary

    @property
    def strictSize(self) -> bool:
        return self._strictSize

    @property
    def httpTimeout(self) -> float:
        return self._httpTimeout

    def isWindows(self):
        return self._platform == "Windows"

    def which(self, binary):
        if not binary:
            return None

        if self.isWindows() and not binary.endswith('.exe'):
            return shutil.which(binary) or shutil.which(f'{binary}.exe')

        return shutil.which(binary)
