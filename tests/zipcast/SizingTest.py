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

from tests.ZipcastTestBase import ZipcastTestBase
from zipcast.Encoder import EMPTY_ARCHIVE_SIZE, CountingSink, ZipStreamEncoder
from zipcast.Entries import FileRecord, buildEntries
from zipcast.Sizing import computeSize


class ComputeSizeTest(ZipcastTestBase):

    def _streamedSize(self, entries, contents):
        sink = CountingSink()
        encoder = ZipStreamEncoder(sink)
        for entry in entries:
            encoder.addEntry(entry, io.BytesIO(contents[entry.name]))
        total = encoder.finish()
        self.assertEqual(total, sink.bytesWritten)
        return total

    def testMatchesStreamedSize(self):
        cases = {
            'single file': [5],
            'zero byte files': [0, 0, 0],
            'mixed': [0, 1, 63, 64, 65, 1000, 4096],
            'many small': [3] * 50,
        }
        for description, sizes in cases.items():
            with self.subTest(description=description):
                contents = {f'dir{i % 3}/file{i}.dat': bytes([i % 256]) * size for i, size in enumerate(sizes)}
                entries = buildEntries([FileRecord(name, len(data)) for name, data in contents.items()])

                self.assertEqual(computeSize(entries, compress=False), self._streamedSize(entries, contents))

    def testUnicodeNames(self):
        contents = {'répertoire/naïve.txt': b'abc', '目錄/檔案.txt': b''}
        entries = buildEntries([FileRecord(name, len(data)) for name, data in contents.items()])

        self.assertEqual(computeSize(entries, compress=False), self._streamedSize(entries, contents))

    def testEmpty(self):
        self.assertEqual(computeSize([], compress=False), EMPTY_ARCHIVE_SIZE)

    def testCompressedIsIndeterminate(self):
        entries = buildEntries([FileRecord('a.txt', 10)], compress=True)
        self.assertIsNone(computeSize(entries, compress=True))

    def testEmptyCompressedIsKnown(self):
        self.assertEqual(computeSize(buildEntries([], compress=True), compress=True), EMPTY_ARCHIVE_SIZE)

    def testIndependentOfContentSize(self):
        # A terabyte listing is measured without reading or allocating anything
        terabyte = 1024 ** 4
        entries = buildEntries([FileRecord('a.img', terabyte), FileRecord('b.img', terabyte)])

        total = computeSize(entries, compress=False)
        self.assertGreater(total, 2 * terabyte)
        self.assertLess(total - 2 * terabyte, 1024)

    def testRepeatable(self):
        entries = buildEntries([FileRecord('a', 10), FileRecord('b', 20)])
        self.assertEqual(computeSize(entries, compress=False), computeSize(entries, compress=False))


if __name__ == '__main__':
    unittest.main()
