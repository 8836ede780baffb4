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

import os
import unittest
from unittest.mock import MagicMock

from tests.ZipcastTestBase import ZipcastTestBase
from zipcast import FileSystems
from zipcast.Entries import FileRecord
from zipcast.Errors import SourceNotFoundError
from zipcast.FileSystems import LocalFileSystem, RcloneFileSystem


class LocalFileSystemTest(ZipcastTestBase):

    def testListDirectory(self):
        root = self.writeFiles(
            {'b.txt': b'bb', 'a/2.txt': b'2', 'a/1.txt': b'1111', 'c/d/e.bin': b''},
            root=os.path.join(self.tempDir, 'src'),
        )
        fileSystem = LocalFileSystem(root)
        records = fileSystem.list()

        self.assertTrue(fileSystem.rootIsDir)
        self.assertEqual([record.path for record in records], ['a/1.txt', 'a/2.txt', 'b.txt', 'c/d/e.bin'])
        self.assertEqual([record.size for record in records], [4, 1, 2, 0])
        self.assertTrue(all(record.modTime for record in records))

    def testEmptyDirectoriesAreSkipped(self):
        root = os.path.join(self.tempDir, 'src')
        os.makedirs(os.path.join(root, 'empty', 'nested'))

        self.assertEqual(LocalFileSystem(root).list(), [])

    def testSingleFile(self):
        self.writeFiles({'dir/report.pdf': b'%PDF'})
        path = os.path.join(self.tempDir, 'dir', 'report.pdf')
        fileSystem = LocalFileSystem(path)

        self.assertFalse(fileSystem.rootIsDir)
        self.assertEqual(fileSystem.contentRoot, os.path.join(self.tempDir, 'dir'))

        records = fileSystem.list()
        self.assertEqual([(record.path, record.size) for record in records], [('report.pdf', 4)])

        with fileSystem.open(records[0].path) as f:
            self.assertEqual(f.read(), b'%PDF')

    def testOpenJoinsListedPath(self):
        root = self.writeFiles({'x/y/z.txt': b'deep'}, root=os.path.join(self.tempDir, 'src'))
        fileSystem = LocalFileSystem(root)

        self.assertEqual(fileSystem.contentPath('x/y/z.txt'), os.path.join(root, 'x', 'y', 'z.txt'))
        with fileSystem.open('x/y/z.txt') as f:
            self.assertEqual(f.read(), b'deep')

    def testMissing(self):
        with self.assertRaises(SourceNotFoundError) as cm:
            LocalFileSystem(os.path.join(self.tempDir, 'missing'))
        self.assertTrue(cm.exception.location.endswith('missing'))


class RcloneFileSystemTest(ZipcastTestBase):

    def makeRunner(self, stat, listing=None):
        runner = MagicMock()
        runner.stat.return_value = stat
        runner.lsjson.return_value = listing or []
        return runner

    def testListDirectory(self):
        listing = [
            {'Path': 'photos', 'Name': 'photos', 'Size': -1, 'IsDir': True},
            {'Path': 'photos/1.jpg', 'Name': '1.jpg', 'Size': 1234, 'ModTime': '2023-04-05T06:07:08.123456789Z', 'IsDir': False},
            {'Path': 'notes.txt', 'Name': 'notes.txt', 'Size': 10, 'ModTime': '2023-04-05T06:07:08Z', 'IsDir': False},
        ]
        runner = self.makeRunner({'Path': 'backup', 'IsDir': True}, listing)
        fileSystem = RcloneFileSystem('s3:bucket/backup', runner=runner)

        records = fileSystem.list()

        runner.lsjson.assert_called_once_with('s3:bucket/backup')
        self.assertEqual([record.path for record in records], ['photos/1.jpg', 'notes.txt'])
        self.assertEqual(records[0], FileRecord('photos/1.jpg', 1234, records[0].modTime))
        self.assertEqual(fileSystem.contentPath('photos/1.jpg'), 's3:bucket/backup/photos/1.jpg')

    def testContentPaths(self):
        cases = [
            ('s3:bucket/dir', True, 'a/b.txt', 's3:bucket/dir/a/b.txt'),
            ('s3:bucket/dir/', True, 'b.txt', 's3:bucket/dir/b.txt'),
            ('remote:', True, 'b.txt', 'remote:b.txt'),
            ('s3:bucket/dir/file.txt', False, 'file.txt', 's3:bucket/dir/file.txt'),
            ('remote:file.txt', False, 'file.txt', 'remote:file.txt'),
            (':local:/tmp/x.bin', False, 'x.bin', ':local:/tmp/x.bin'),
        ]
        for location, isDir, path, expected in cases:
            with self.subTest(location=location):
                fileSystem = RcloneFileSystem(location, runner=self.makeRunner({'IsDir': isDir}))
                self.assertEqual(fileSystem.contentPath(path), expected)

    def testOpenUsesCat(self):
        runner = self.makeRunner({'IsDir': True})
        fileSystem = RcloneFileSystem('gdrive:docs', runner=runner)

        stream = fileSystem.open('a.txt')

        runner.cat.assert_called_once_with('gdrive:docs/a.txt')
        self.assertIs(stream, runner.cat.return_value)

    def testMissing(self):
        fileSystem = RcloneFileSystem('s3:bucket/missing', runner=self.makeRunner(None))

        with self.assertRaises(SourceNotFoundError):
            fileSystem.list()


class BuildTest(ZipcastTestBase):

    def testBuild(self):
        runner = MagicMock()
        self.assertIsInstance(FileSystems.build('s3:bucket', runner=runner), RcloneFileSystem)
        self.assertIsInstance(FileSystems.build(self.tempDir), LocalFileSystem)


if __name__ == '__main__':
    unittest.main()
