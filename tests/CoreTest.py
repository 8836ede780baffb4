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
import json
import os
import unittest
import zipfile
from unittest.mock import patch

import Core

from tests.ZipcastTestBase import ZipcastTestBase
from zipcast.Entries import buildEntries
from zipcast.FileSystems import LocalFileSystem
from zipcast.Kernel import PUBLIC_VERSION
from zipcast.Settings import SettingsGetter
from zipcast.Sizing import computeSize


class CoreTest(ZipcastTestBase):

    def setUp(self):
        super().setUp()
        self.sourceDir = os.path.join(self.tempDir, 'site')
        self.writeFiles({
            'index.html': b'<html></html>\n',
            'css/style.css': b'body { margin: 0; }\n' * 20,
            'img/empty.png': b'',
        }, root=self.sourceDir)

        patcher = patch('Core.setupGracefulShutdown')
        patcher.start()
        self.addCleanup(patcher.stop)

        environ = patch.dict(os.environ, {'ZIPCAST_RAISE_EXCEPTION': 'False'})
        environ.start()
        self.addCleanup(environ.stop)

    def expectedSize(self):
        return computeSize(buildEntries(LocalFileSystem(self.sourceDir).list()), compress=False)

    def runMain(self, argv):
        with patch('sys.stdout', new_callable=io.StringIO) as stdout, \
                patch('sys.stderr', new_callable=io.StringIO) as stderr:
            code = Core.main(argv)
        return code, stdout.getvalue(), stderr.getvalue()

    def testVersion(self):
        code, stdout, _ = self.runMain(['--version'])

        self.assertEqual(code, Core.EXIT_SUCCESS)
        self.assertIn(PUBLIC_VERSION, stdout)

    def testNoSourcePrintsHelp(self):
        code, stdout, _ = self.runMain([])

        self.assertEqual(code, Core.EXIT_SUCCESS)
        self.assertIn('usage: zipcast', stdout)

    def testDryRun(self):
        outPath = os.path.join(self.tempDir, 'site.zip')

        code, stdout, _ = self.runMain([self.sourceDir, outPath, '--dry-run'])

        self.assertEqual(code, Core.EXIT_SUCCESS)
        self.assertEqual(json.loads(stdout), {'Path': outPath, 'Name': 'site.zip', 'Size': self.expectedSize()})
        self.assertFalse(os.path.exists(outPath))

    def testDryRunCompressed(self):
        code, stdout, _ = self.runMain([self.sourceDir, '--dry-run', '--compress'])

        self.assertEqual(code, Core.EXIT_SUCCESS)
        self.assertEqual(json.loads(stdout)['Size'], -1)

    def testArchiveToLocalFile(self):
        outPath = os.path.join(self.tempDir, 'site.zip')
        jsonPath = os.path.join(self.tempDir, 'result.json')

        code, stdout, _ = self.runMain([self.sourceDir, outPath, '--json', jsonPath])

        self.assertEqual(code, Core.EXIT_SUCCESS)
        result = json.loads(stdout)
        self.assertEqual(result['Size'], os.path.getsize(outPath))
        with open(jsonPath, encoding='utf-8') as f:
            self.assertEqual(json.load(f), result)

        with zipfile.ZipFile(outPath) as zf:
            self.assertEqual(zf.namelist(), ['css/style.css', 'img/empty.png', 'index.html'])
            self.assertEqual(zf.read('index.html'), b'<html></html>\n')

    def testArchiveToStdout(self):
        stdout = io.TextIOWrapper(io.BytesIO(), encoding='utf-8')

        with patch('sys.stdout', stdout), patch('sys.stderr', new_callable=io.StringIO):
            code = Core.main([self.sourceDir])

        self.assertEqual(code, Core.EXIT_SUCCESS)
        data = stdout.buffer.getvalue()
        self.assertEqual(len(data), self.expectedSize())
        self.assertEqual([name for name, _ in self.readZip(data)], ['css/style.css', 'img/empty.png', 'index.html'])

    def testMissingSource(self):
        code, stdout, stderr = self.runMain([os.path.join(self.tempDir, 'missing'), '--dry-run'])

        self.assertEqual(code, Core.EXIT_FAILURE)
        self.assertEqual(stdout, '')
        self.assertIn('Archive failed', stderr)

    def testUnexpectedError(self):
        with patch('Core.processArchive', side_effect=RuntimeError('boom')):
            code, _, stderr = self.runMain([self.sourceDir])

        self.assertEqual(code, Core.EXIT_FAILURE)
        self.assertIn('Unexpected error: boom', stderr)

    def testInterrupted(self):
        with patch('Core.processArchive', side_effect=KeyboardInterrupt()):
            code, _, stderr = self.runMain([self.sourceDir])

        self.assertEqual(code, Core.EXIT_INTERRUPTED)
        self.assertIn('Ctrl+C', stderr)

    def testArgumentError(self):
        with self.assertRaises(SystemExit) as cm:
            self.runMain([self.sourceDir, 'out.zip', 'extra'])
        self.assertEqual(cm.exception.code, 2)

    def testRcloneOverride(self):
        with patch('Core.processArchive', return_value=Core.EXIT_SUCCESS):
            code, _, _ = self.runMain([self.sourceDir, '--rclone', '/opt/rclone/rclone'])

        self.assertEqual(code, Core.EXIT_SUCCESS)
        self.assertEqual(SettingsGetter.getInstance().rcloneBinary, '/opt/rclone/rclone')


if __name__ == '__main__':
    unittest.main()
