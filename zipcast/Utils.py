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
import sys

import bitmath

from zipcast.Kernel import getLogger

ONE_KB = bitmath.KiB(1).bytes
ONE_GB = bitmath.GiB(1).bytes
ONE_TB = bitmath.TiB(1).bytes

logger = getLogger(__name__)


def flushPrint(text, stream=None):
    """
    Print and flush immediately.

    Args:
        text: Text to print
        stream: Target stream, defaults to stdout
    """
    stream = stream or sys.stdout
    try:
        print(text, file=stream, flush=True)
    except UnicodeEncodeError as e:
        # Fallback for terminals that can't encode certain characters
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}")

        buf = getattr(stream, "buffer", None)
        if buf is not None:
            buf.write(text.encode("utf-8", errors="replace"))
            buf.write(b"\n")
            buf.flush()
            return

        safeText = ''.join(ch if ch.isprintable() else '?' for ch in text)
        print(safeText, file=stream, flush=True)


def errorPrint(text):
    """Print to the diagnostic channel (stderr). Stdout may carry archive bytes."""
    flushPrint(text, stream=sys.stderr)


def formatSize(size, decimal=None, plural=None):
    if decimal is None:
        if size < ONE_GB: # Less than 1GB
            decimal = 0
        elif size < ONE_TB: # Between 1GB and 1TB
            decimal = 1
        else: # Greater than 1TB
            decimal = 2

    if plural is None:
        plural = False if size > ONE_KB else True

    sizeStr = bitmath.Byte(size).best_prefix(system=bitmath.SI).format(
        "{value:.%df}{%s}" % (decimal, 'unit_plural' if plural else 'unit')
    )

    if not sizeStr.endswith('Byte') and not sizeStr.endswith('Bytes') and not sizeStr.endswith('Bits'):
        return sizeStr.replace('B', '').upper()
    else:
        return sizeStr.replace('Byte', ' Byte').replace('Bit', ' Byte')


def sendException(logger, e, action=None, errorPrefix="Archive failed"):
    """
    Report an error to the user on stderr and to the logger.

    Re-raises when ZIPCAST_RAISE_EXCEPTION=True, to get a traceback while debugging.
    """
    from zipcast.Settings import SUPPORT_URL

    if e and errorPrefix:
        errorPrint(f'{errorPrefix}: {e}')
    elif e:
        errorPrint(f'{e}')
    else: # only errorPrefix without e?
        logger.error(f'Incorrect argument: {errorPrefix=} {e=}')

    if action:
        errorPrint(action)

    errorPrint(f'If the problem persists, please report it at {SUPPORT_URL}.')

    if isinstance(e, BaseException):
        logger.debug('Exception details', exc_info=e)

    if getEnv('ZIPCAST_RAISE_EXCEPTION', False) and isinstance(e, BaseException):
        raise e


# Helper functions for environment variable configuration
def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            # Automatically detect type based on default value
            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            elif isinstance(default, str):
                return str(value)
            else:
                # For other types, try to convert to same type as default
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        return default
