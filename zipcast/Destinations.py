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
Destination writers.

Every writer is a blocking byte sink: write() returns only once the destination has
taken the chunk (or it is queued in a small bounded buffer), which is what throttles
source reads. close() completes the upload and raises if the destination rejected it;
abort() discards whatever was written. Failures surface as DestinationWriteError.
"""

import collections
import os
import posixpath
import queue
import sys
import threading

from urllib.parse import urlparse

import requests

from zipcast.Errors import DestinationWriteError
from zipcast.Kernel import getLogger
from zipcast.Rclone import STDERR_TAIL_LINES, RcloneRunner, isRemote, terminateProcess
from zipcast.Settings import SettingsGetter

logger = getLogger(__name__)

STDOUT_LOCATION = '-'
PARTIAL_SUFFIX = '.partial'

# Chunks buffered between the encoder and the HTTP upload thread
HTTP_QUEUE_SIZE = 4


def baseName(location: str) -> str:
    """Name part of a destination location (`-`, path, remote or URL)"""
    if location == STDOUT_LOCATION:
        return location

    if location.startswith(('http://', 'https://')):
        return posixpath.basename(urlparse(location).path.rstrip('/'))

    name = location.replace('\\', '/').rstrip('/').rsplit('/', 1)[-1]
    if isRemote(location) and '/' not in location.rstrip('/'):
        # `remote:archive.zip`
        name = name.rsplit(':', 1)[-1]
    return name


class Destination:
    """Base class for destination writers"""

    # Whether the pipeline should draw its own progress bar when progress is requested
    showsProgressBar = True

    def __init__(self, location: str, sizeHint: int = None):
        self.location = location
        self.sizeHint = sizeHint
        self.bytesWritten = 0
        self.closed = False

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def abort(self):
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        if excType is None:
            self.close()
        else:
            self.abort()
        return False


class StdoutDestination(Destination):
    """Standard output; no size hint semantics and no progress channel"""

    showsProgressBar = False

    def __init__(self, stream=None):
        super().__init__(STDOUT_LOCATION)
        self.stream = stream or sys.stdout.buffer

    def write(self, data: bytes) -> int:
        try:
            self.stream.write(data)
        except OSError as e:
            raise DestinationWriteError(f"Failed writing to stdout: {e}", location=self.location) from e

        self.bytesWritten += len(data)
        return len(data)

    def close(self):
        if self.closed:
            return

        try:
            self.stream.flush()
        except OSError as e:
            raise DestinationWriteError(f"Failed flushing stdout: {e}", location=self.location) from e
        finally:
            self.closed = True

    def abort(self):
        # Bytes already on stdout cannot be taken back; the non-zero exit tells the reader
        self.closed = True


class LocalFileDestination(Destination):
    """
    Local file, written as `<path>.partial` and renamed into place on success, so an
    aborted archive never appears under its final name.
    """

    def __init__(self, location: str, sizeHint: int = None):
        super().__init__(location, sizeHint)
        self.path = os.path.abspath(location)
        self.partialPath = self.path + PARTIAL_SUFFIX

        try:
            self.file = open(self.partialPath, 'wb')
        except OSError as e:
            raise DestinationWriteError(f"Cannot create {self.partialPath}: {e}", location=location) from e

        logger.debug(f"Writing {self.partialPath} (size hint: {sizeHint})")

    def write(self, data: bytes) -> int:
        try:
            self.file.write(data)
        except OSError as e:
            raise DestinationWriteError(f"Failed writing {self.partialPath}: {e}", location=self.location) from e

        self.bytesWritten += len(data)
        return len(data)

    def close(self):
        if self.closed:
            return
        self.closed = True

        try:
            self.file.close()
            os.replace(self.partialPath, self.path)
        except OSError as e:
            self._removePartial()
            raise DestinationWriteError(f"Failed finishing {self.path}: {e}", location=self.location) from e

        if self.sizeHint is not None and self.sizeHint != self.bytesWritten:
            logger.warning(f"{self.path}: wrote {self.bytesWritten} bytes, expected {self.sizeHint}")

    def abort(self):
        if self.closed:
            return
        self.closed = True

        try:
            self.file.close()
        except OSError as e:
            logger.debug(f"Error closing {self.partialPath}: {e}")
        self._removePartial()

    def _removePartial(self):
        try:
            os.remove(self.partialPath)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove {self.partialPath}: {e}")


class RcloneDestination(Destination):
    """
    Any rclone remote, through `rclone rcat`. With a size hint rclone can preallocate
    (or use a single-part upload) even on backends that cannot stream.

    rclone prints its progress on its stdout; with progress requested that output is
    copied to our stderr, never to our stdout.
    """

    showsProgressBar = False

    def __init__(self, location: str, sizeHint: int = None, progress: bool = False, runner: RcloneRunner = None,
                 progressStream=None):
        super().__init__(location, sizeHint)
        self.runner = runner or RcloneRunner()
        self.progressStream = progressStream or sys.stderr
        self.stderrTail = collections.deque(maxlen=STDERR_TAIL_LINES)

        self.process = self.runner.rcat(location, size=sizeHint, progress=progress)

        self.threads = [threading.Thread(target=self._drainStderr, daemon=True)]
        if progress:
            self.threads.append(threading.Thread(target=self._pumpProgress, daemon=True))
        for thread in self.threads:
            thread.start()

    def _drainStderr(self):
        for line in iter(self.process.stderr.readline, b''):
            text = line.decode('utf-8', errors='replace').rstrip()
            if text:
                logger.debug(f"rclone: {text}")
                self.stderrTail.append(text)

    def _pumpProgress(self):
        for chunk in iter(lambda: self.process.stdout.read1(4096), b''):
            self.progressStream.write(chunk.decode('utf-8', errors='replace'))
            self.progressStream.flush()

    def _joinThreads(self):
        for thread in self.threads:
            thread.join(timeout=5)

    def _failure(self, reason: str) -> DestinationWriteError:
        details = '; '.join(self.stderrTail)
        message = f"rclone rcat {self.location} {reason}"
        return DestinationWriteError(f"{message}: {details}" if details else message, location=self.location)

    def write(self, data: bytes) -> int:
        try:
            self.process.stdin.write(data)
        except OSError as e:
            # rclone exited early; its stderr says why
            self.process.wait()
            self._joinThreads()
            raise self._failure(f"stopped accepting data ({e})") from e

        self.bytesWritten += len(data)
        return len(data)

    def close(self):
        if self.closed:
            return
        self.closed = True

        try:
            self.process.stdin.close()
        except OSError as e:
            logger.debug(f"Error closing rclone stdin: {e}")

        returnCode = self.process.wait()
        self._joinThreads()

        if returnCode != 0:
            raise self._failure(f"exited with code {returnCode}")

    def abort(self):
        if self.closed:
            return
        self.closed = True

        terminateProcess(self.process)
        try:
            self.process.stdin.close()
        except OSError:
            pass
        self._joinThreads()


class _UploadAborted(Exception):
    pass


class _SizedBody:
    """Iterable request body with a length, so requests sends Content-Length instead of chunking"""

    def __init__(self, chunks, size: int):
        self.chunks = chunks
        self.size = size

    def __len__(self):
        return self.size

    def __iter__(self):
        return iter(self.chunks)


class HttpDestination(Destination):
    """
    HTTP(S) PUT upload. requests runs in a worker thread and pulls chunks from a small
    bounded queue, so write() blocks while the connection is slow.
    """

    _END = object()
    _ABORT = object()

    def __init__(self, location: str, sizeHint: int = None, timeout: float = None):
        super().__init__(location, sizeHint)
        self.timeout = timeout or SettingsGetter.getInstance().httpTimeout
        self.chunks = queue.Queue(maxsize=HTTP_QUEUE_SIZE)
        self.response = None
        self.error = None

        self.thread = threading.Thread(target=self._upload, daemon=True)
        self.thread.start()

    def _iterChunks(self):
        while True:
            chunk = self.chunks.get()
            if chunk is self._END:
                return
            if chunk is self._ABORT:
                raise _UploadAborted()
            yield chunk

    def _upload(self):
        body = self._iterChunks()
        headers = {'Content-Type': 'application/zip'}
        if self.sizeHint is not None:
            body = _SizedBody(body, self.sizeHint)

        try:
            self.response = requests.put(self.location, data=body, headers=headers, timeout=self.timeout)
        except _UploadAborted:
            logger.debug(f"Upload to {self.location} aborted")
        except (requests.RequestException, OSError) as e:
            self.error = e
            logger.debug(f"Upload to {self.location} failed: {e}")

    def _put(self, item):
        while True:
            if not self.thread.is_alive():
                raise DestinationWriteError(
                    f"Upload to {self.location} stopped: {self.error or self._statusText()}", location=self.location
                )
            try:
                self.chunks.put(item, timeout=0.5)
                return
            except queue.Full:
                continue

    def _statusText(self):
        if self.response is None:
            return 'connection closed'
        return f'HTTP {self.response.status_code}'

    def write(self, data: bytes) -> int:
        self._put(bytes(data))
        self.bytesWritten += len(data)
        return len(data)

    def close(self):
        if self.closed:
            return
        self.closed = True

        self._put(self._END)
        self.thread.join()

        if self.error is not None:
            raise DestinationWriteError(
                f"Upload to {self.location} failed: {self.error}", location=self.location
            ) from self.error

        if self.response is None or not self.response.ok:
            raise DestinationWriteError(f"Upload to {self.location} rejected: {self._statusText()}", location=self.location)

        logger.debug(f"Uploaded {self.bytesWritten} bytes to {self.location}: HTTP {self.response.status_code}")

    def abort(self):
        if self.closed:
            return
        self.closed = True

        if self.thread.is_alive():
            try:
                self.chunks.put(self._ABORT, timeout=1)
            except queue.Full:
                logger.debug(f"Upload queue for {self.location} full while aborting")
        self.thread.join(timeout=5)


def openDestination(location: str, sizeHint: int = None, progress: bool = False, runner: RcloneRunner = None) -> Destination:
    """
    Open the destination writer for location.

    Args:
        location: `-` (stdout), `http(s)://` URL, rclone remote, or local path
        sizeHint: Exact archive size when known; never a guess
        progress: Ask destinations that report their own progress to do so (on stderr)
    """
    if location == STDOUT_LOCATION:
        return StdoutDestination()

    if location.startswith(('http://', 'https://')):
        return HttpDestination(location, sizeHint=sizeHint)

    if isRemote(location):
        return RcloneDestination(location, sizeHint=sizeHint, progress=progress, runner=runner)

    return LocalFileDestination(location, sizeHint=sizeHint)
