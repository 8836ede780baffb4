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

import io
import unittest
from unittest.mock import patch

from tests.ZipcastTestBase import ZipcastTestBase
from zipcast.Kernel import ZipcastEvent
from zipcast.Progress import ArchiveProgress, BitmathTqdm


class ArchiveProgressTest(ZipcastTestBase):

    def setUp(self):
        super().setUp()
        self.messages = []

    def testLogsWithoutBar(self):
        progress = ArchiveProgress(1000, useBar=False, loggerCallback=self.messages.append, logInterval=0)

        with progress:
            ZipcastEvent.archiveProgressUpdate.trigger(bytesWritten=250, totalSize=1000)
            ZipcastEvent.archiveProgressUpdate.trigger(bytesWritten=500, totalSize=1000)

        self.assertEqual(progress.transferred, 500)
        self.assertEqual(len(self.messages), 3)
        self.assertIn('(25.00%)', self.messages[0])
        self.assertIn('(50.00%)', self.messages[-1])

    def testUnknownTotal(self):
        progress = ArchiveProgress(None, useBar=False, loggerCallback=self.messages.append, logInterval=0)

        with progress:
            ZipcastEvent.archiveProgressUpdate.trigger(bytesWritten=2000, totalSize=None)

        self.assertTrue(all('%' not in message for message in self.messages))

    def testThrottledLogging(self):
        progress = ArchiveProgress(1000, useBar=False, loggerCallback=self.messages.append, logInterval=3600)

        progress.start()
        for written in range(100, 1001, 100):
            ZipcastEvent.archiveProgressUpdate.trigger(bytesWritten=written, totalSize=1000)
        progress.stop(complete=False)

        self.assertEqual(self.messages, [])
        self.assertEqual(progress.transferred, 1000)

    def testStopUnsubscribes(self):
        progress = ArchiveProgress(1000, useBar=False, loggerCallback=self.messages.append, logInterval=0)

        progress.start()
        progress.stop(complete=False)
        ZipcastEvent.archiveProgressUpdate.trigger(bytesWritten=100, totalSize=1000)

        self.assertEqual(progress.transferred, 0)
        self.assertEqual(self.messages, [])

    @patch('sys.stderr', new_callable=io.StringIO)
    def testBarFollowsEvents(self, stderr):
        progress = ArchiveProgress(1000).start()
        bar = progress.pbar
        self.assertIsInstance(bar, BitmathTqdm)

        ZipcastEvent.archiveEntryCreate.trigger(name='docs/readme.md', index=0, size=400)
        ZipcastEvent.archiveProgressUpdate.trigger(bytesWritten=400, totalSize=1000)
        self.assertEqual(bar.n, 400)

        progress.stop(complete=True)

        self.assertEqual(bar.n, 1000)
        self.assertIsNone(progress.pbar)
        self.assertIn('Archiving', stderr.getvalue())

    @patch('sys.stderr', new_callable=io.StringIO)
    def testIncompleteBarIsNotFilled(self, stderr):
        progress = ArchiveProgress(1000).start()
        bar = progress.pbar

        ZipcastEvent.archiveProgressUpdate.trigger(bytesWritten=300, totalSize=1000)
        progress.stop(complete=False)

        self.assertEqual(bar.n, 300)


if __name__ == '__main__':
    unittest.main()
