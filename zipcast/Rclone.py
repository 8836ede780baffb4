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
Thin wrapper around the rclone binary.

Only the subcommands the archiver needs are exposed:
- lsjson: listing (recursive, files only) and single-path stat
- cat: content stream of one file
- rcat: upload of stdin to a remote path, optionally preallocated with --size
"""

import collections
import io
import json
import os
import re
import subprocess
import threading

from typing import List, Optional

from zipcast.Errors import RcloneError
from zipcast.Kernel import getLogger
from zipcast.Settings import SettingsGetter

logger = getLogger(__name__)

# `remote:path` or `:backend:path`
REMOTE_PATTERN = re.compile(r'^:?[\w][\w\-. +@]*:')

# Seconds to wait for a terminated rclone before killing it
TERMINATE_TIMEOUT = 5

# Lines of rclone stderr kept for error messages
STDERR_TAIL_LINES = 20


def isRemote(location: str) -> bool:
    """True for rclone remote specs such as `s3:bucket/dir` or `:local:/tmp`"""
    if not location or location == '-':
        return False

    if re.match(r'^[a-zA-Z]:[\\/]', location) or re.match(r'^[a-zA-Z]:$', location):
        return False

    if location.startswith(('http://', 'https://', '/', '.')):
        return False

    return bool(REMOTE_PATTERN.match(location))


def terminateProcess(process: subprocess.Popen):
    """Stop a child process, escalating to kill when it does not exit in time"""
    if process is None or process.poll() is not None:
        return

    try:
        process.terminate()
        process.wait(timeout=TERMINATE_TIMEOUT)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()
    except OSError as e:
        logger.error(f"Error terminating rclone process: {e}")


class RcloneReadStream(io.RawIOBase):
    """
    Content stream backed by the stdout of `rclone cat`.

    A non-zero exit status is reported as OSError when the stream reaches EOF, so a
    failed transfer never looks like a short file. stderr is drained while the body is
    read, so a verbose rclone cannot block on a full pipe.
    """

    def __init__(self, process: subprocess.Popen, path: str):
        super().__init__()
        self._process = process
        self._path = path
        self._finished = False
        self.stderrTail = collections.deque(maxlen=STDERR_TAIL_LINES)

        self._stderrThread = None
        if process.stderr is not None:
            self._stderrThread = threading.Thread(target=self._drainStderr, daemon=True)
            self._stderrThread.start()

    def _drainStderr(self):
        try:
            for line in iter(self._process.stderr.readline, b''):
                text = line.decode('utf-8', errors='replace').rstrip()
                if text:
                    logger.debug(f"rclone cat: {text}")
                    self.stderrTail.append(text)
        except (OSError, ValueError) as e:
            logger.debug(f"Stopped reading rclone cat stderr: {e}")

    def _joinStderr(self):
        if self._stderrThread is not None:
            self._stderrThread.join(timeout=TERMINATE_TIMEOUT)

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if self._finished:
            return 0

        n = self._process.stdout.readinto(b)
        if n:
            return n

        self._finished = True
        returnCode = self._process.wait()
        self._joinStderr()
        if returnCode != 0:
            raise OSError(f"rclone cat {self._path} exited with code {returnCode}: {'; '.join(self.stderrTail)}")

        return 0

    def close(self):
        if not self.closed:
            if not self._finished:
                terminateProcess(self._process)
            self._joinStderr()

            for pipe in (self._process.stdout, self._process.stderr):
                if pipe:
                    pipe.close()
        super().close()


class RcloneRunner:
    """Invokes rclone subcommands; the binary is resolved once through SettingsGetter.which"""

    def __init__(self, binary: str = None):
        settingsGetter = SettingsGetter.getInstance()

        self.binaryName = binary or settingsGetter.rcloneBinary
        self.binary = settingsGetter.which(self.binaryName)

        if not self.binary:
            raise RcloneError(
                f"rclone binary '{self.binaryName}' not found. Install rclone or set ZIPCAST_RCLONE_BINARY."
            )

        logger.debug(f"Using rclone: {self.binary}")

    def _buildCommand(self, *args) -> List[str]:
        return [self.binary, *[str(arg) for arg in args]]

    def _run(self, *args) -> str:
        """Run a short subcommand and return its stdout"""
        cmd = self._buildCommand(*args)
        logger.debug(f"Running: {cmd}")

        try:
            completed = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True,
                encoding='utf-8',
                env=os.environ.copy(),
            )
        except OSError as e:
            raise RcloneError(f"Failed to start rclone: {e}") from e

        if completed.returncode != 0:
            stderr = (completed.stderr or '').strip()
            logger.error(f"rclone {args[0]} failed ({completed.returncode}): {stderr}")
            raise RcloneError(
                f"rclone {args[0]} exited with code {completed.returncode}: {stderr}",
                returnCode=completed.returncode,
                stderr=stderr,
            )

        return completed.stdout

    def lsjson(self, location: str) -> List[dict]:
        """
        Recursive file listing of location (files only, no MIME type probing).

        Returns:
            list: rclone lsjson objects, paths relative to location
        """
        output = self._run('lsjson', '--recursive', '--files-only', '--no-mimetype', location)

        try:
            items = json.loads(output or '[]')
        except json.JSONDecodeError as e:
            raise RcloneError(f"Unreadable lsjson output for {location}: {e}") from e

        logger.debug(f"lsjson {location}: {len(items)} items")
        return items

    def stat(self, location: str) -> Optional[dict]:
        """Single lsjson object describing location itself, None when it does not exist"""
        try:
            output = self._run('lsjson', '--stat', '--no-mimetype', location)
        except RcloneError as e:
            # rclone reports a missing object as "directory not found" / "object not found"
            if e.stderr and 'not found' in e.stderr:
                return None
            raise

        try:
            return json.loads(output) if output and output.strip() else None
        except json.JSONDecodeError as e:
            raise RcloneError(f"Unreadable lsjson --stat output for {location}: {e}") from e

    def cat(self, path: str) -> RcloneReadStream:
        """Start `rclone cat path`; the caller reads (and closes) the returned stream"""
        cmd = self._buildCommand('cat', path)
        logger.debug(f"Running: {cmd}")

        try:
            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, env=os.environ.copy())
        except OSError as e:
            raise RcloneError(f"Failed to start rclone cat: {e}") from e

        return RcloneReadStream(process, path)

    def rcat(self, location: str, size: int = None, progress: bool = False) -> subprocess.Popen:
        """
        Start `rclone rcat location`, which uploads whatever is written to its stdin.

        Args:
            location: Destination remote path
            size: Exact upload size, lets the remote preallocate (omitted when unknown)
            progress: Ask rclone to print transfer progress; it is then readable from
                      the process stdout, which the caller must drain

        Returns:
            subprocess.Popen: stdin/stderr are pipes; stdout is a pipe only with progress
        """
        args = ['rcat']
        if size is not None:
            args += ['--size', size]
        if progress:
            args.append('--progress')
        args.append(location)

        cmd = self._buildCommand(*args)
        logger.debug(f"Running: {cmd}")

        try:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE if progress else subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=os.environ.copy(),
            )
        except OSError as e:
            raise RcloneError(f"Failed to start rclone rcat: {e}") from e
