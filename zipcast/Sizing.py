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

import time

from typing import Optional, Sequence

from zipcast.Encoder import CountingSink, NullContent, ZipStreamEncoder
from zipcast.Entries import ArchiveEntry
from zipcast.Kernel import getLogger

logger = getLogger(__name__)


def computeSize(entries: Sequence[ArchiveEntry], compress: bool) -> Optional[int]:
    """
    Exact archive length for entries, computed without reading any content.

    Runs a throwaway encoder over empty streams that trusts every entry's declared
    size, so the result is the length the streaming pass will produce for the same
    entries. Time depends on the number of entries only, never on file sizes.

    Args:
        entries: Entries exactly as they will be streamed
        compress: Deflate mode requested

    Returns:
        int: Total archive bytes, or None when compressed entries make the size indeterminate
    """
    # Without entries nothing is compressed, so the size is known in either mode
    if compress and entries:
        logger.debug("Calculate ZIP size skipped: compressed size is indeterminate")
        return None

    startTime = time.time()
    logger.debug(f"Calculate ZIP size START: {len(entries)} entries")

    sink = CountingSink()
    encoder = ZipStreamEncoder(sink, trustDeclaredSize=True)

    for entry in entries:
        encoder.addEntry(entry, NullContent(), compress=False)

    totalSize = encoder.finish()

    logger.debug(
        f"Calculate ZIP size END: {totalSize} bytes ({sink.bytesWritten} structural), "
        f"{time.time() - startTime:.3f}s"
    )
    return totalSize
