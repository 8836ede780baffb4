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

import sys
import time

from tqdm import tqdm

from zipcast.Kernel import ZipcastEvent, getLogger
from zipcast.Utils import errorPrint, formatSize

logger = getLogger(__name__)


class BitmathTqdm(tqdm):
    """tqdm with bitmath size formatting; always renders on stderr"""

    def __init__(self, *args, sizeFormatter=None, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize
        kwargs.setdefault('file', sys.stderr)
        super().__init__(*args, unit='B', unit_scale=False, **kwargs)

    def _formatSpeed(self, rateBytesPerSec):
        if rateBytesPerSec <= 0:
            return "0/sec"
        return f"{self.sizeFormatter(int(rateBytesPerSec))}/sec"

    @property
    def format_dict(self):
        d = super().format_dict

        d['rate_fmt'] = self._formatSpeed(d.get('rate', 0) or 0)
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'
        return d

    def __bool__(self):
        # tqdm raises on bool() when total is None
        return hasattr(self, 'n')


class ArchiveProgress:
    """
    Renders archive progress on the diagnostic channel.

    Subscribes to ZipcastEvent.archiveProgressUpdate (cumulative bytes) and
    ZipcastEvent.archiveEntryCreate (current entry name) while active. With a
    total of None, the bar shows bytes and speed without a percentage.
    """

    def __init__(self, totalSize=None, useBar=True, loggerCallback=errorPrint, logInterval=2.0):
        self.totalSize = totalSize
        self.useBar = useBar
        self.loggerCallback = loggerCallback
        self.logInterval = logInterval

        self.transferred = 0
        self.lastLogTime = time.monotonic()
        self.pbar = None

    def start(self):
        if self.useBar:
            if self.totalSize is None:
                barFormat = '{desc}: {n_fmt} [{elapsed}, {rate_fmt}]{postfix}'
            else:
                barFormat = '{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]{postfix}'

            self.pbar = BitmathTqdm(total=self.totalSize, desc='Archiving', leave=True, ncols=100, bar_format=barFormat)

        ZipcastEvent.archiveProgressUpdate.subscribe(self.onProgress)
        ZipcastEvent.archiveEntryCreate.subscribe(self.onEntry)
        return self

    def stop(self, complete=True):
        ZipcastEvent.archiveProgressUpdate.unsubscribe(self.onProgress)
        ZipcastEvent.archiveEntryCreate.unsubscribe(self.onEntry)

        if self.pbar is not None:
            try:
                if complete and self.pbar.total:
                    remaining = self.pbar.total - self.pbar.n
                    if remaining > 0:
                        self.pbar.update(remaining)
                self.pbar.refresh()
                self.pbar.close()
            except (ValueError, AttributeError) as e:
                logger.debug(f"Exception during progress bar cleanup: {e}")
            finally:
                self.pbar = None
        elif complete:
            self._log()

    def onProgress(self, bytesWritten=0, **kwargs):
        increment = bytesWritten - self.transferred
        self.transferred = bytesWritten

        if self.pbar is not None:
            if increment > 0:
                self.pbar.update(increment)
            return

        now = time.monotonic()
        if now - self.lastLogTime >= self.logInterval:
            self.lastLogTime = now
            self._log()

    def onEntry(self, name=None, **kwargs):
        if self.pbar is not None and name:
            self.pbar.set_postfix_str(f" {name[-40:]}")

    def _log(self):
        if self.totalSize:
            percentage = self.transferred * 100.0 / self.totalSize
            self.loggerCallback(
                f"Progress: {formatSize(self.transferred)}/{formatSize(self.totalSize)} ({percentage:.2f}%)"
            )
        else:
            self.loggerCallback(f"Progress: {formatSize(self.transferred)}")

    def __enter__(self):
        return self.start()

    def __exit__(self, excType, excVal, excTb):
        self.stop(complete=excType is None)
