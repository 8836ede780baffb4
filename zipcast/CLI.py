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

import argparse
import json
import os
import logging
import logging.config
import platform

from zipcast.Kernel import LOG_LEVEL_MAPPING, PUBLIC_VERSION, configureGlobalLogLevel, getLogger
from zipcast.Settings import SUPPORT_URL
from zipcast.Utils import errorPrint, flushPrint, getEnv

logger = getLogger(__name__)

DESCRIPTION = """\
Stream a file or directory from any local path or rclone remote into a ZIP archive.

Without --compress the exact archive size is computed before any content is read,
so destinations can preallocate. The archive goes to stdout unless DESTINATION is
given; diagnostics and progress always go to stderr.
"""

EPILOG = """\
examples:
  zipcast ./photos photos.zip
  zipcast s3:bucket/reports gdrive:backup/reports.zip --progress
  zipcast --dry-run --compress remote:dir
  zipcast ./logs - | ssh host 'cat > logs.zip'
  zipcast ./site https://example.com/upload/site.zip
"""


def loadEnvFile(envFilePath=None):
    """
    Load environment variables from a .env file in the working directory.
    Only sets variables that are not already defined in os.environ.
    """
    envFilePath = envFilePath or os.path.join(os.getcwd(), '.env')

    if not os.path.isfile(envFilePath):
        return 0

    loadedCount = 0
    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    errorPrint(f'Warning: .env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    errorPrint(f'Warning: .env line {lineNum}: Empty key')
                    continue

                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                # Environment takes precedence
                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')
    except OSError as e:
        errorPrint(f'Error: Cannot read .env file {envFilePath}: {e}')
        return loadedCount

    logger.debug(f'Loaded {loadedCount} environment variables from {envFilePath}')
    return loadedCount


def configureLogging(logLevel):
    """
    Configure logging from --log-level, falling back to ZIPCAST_LOGGING_LEVEL.

    The value is either a level name (DEBUG, INFO, WARNING, ERROR) or a path to a
    JSON logging.config.dictConfig file.
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('ZIPCAST_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, ValueError, KeyError) as e:
            errorPrint(f"Failed to load logging config from {logLevel}: {e}")
            errorPrint("Falling back to default logging level configuration")
            logLevel = 'WARNING'

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()
    return logLevel


def showVersion(stream=None):
    """Print version information to stream (stdout by default)"""
    flushPrint(f"zipcast v{PUBLIC_VERSION}", stream=stream)
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}", stream=stream)
    flushPrint(f"Support: {SUPPORT_URL}", stream=stream)


def configureCLIParser():
    """Build the argument parser"""
    parser = argparse.ArgumentParser(
        prog='zipcast',
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument('source', nargs='?', help='Local file/directory or rclone remote (remote:path) to archive')
    parser.add_argument(
        'destination',
        nargs='?',
        default='-',
        help='Where to write the archive: - (stdout, default), local path, rclone remote or http(s):// URL',
    )

    parser.add_argument(
        '--compress',
        action='store_true',
        help='Deflate entries. The archive size is then unknown until it is written.',
    )
    parser.add_argument(
        '--dry-run',
        dest='dryRun',
        action='store_true',
        help='Only list the source and compute the archive size; write nothing',
    )
    parser.add_argument('--progress', action='store_true', help='Show transfer progress on stderr')
    parser.add_argument(
        '--json',
        metavar='FILE',
        help='Also write the result ({"Path", "Name", "Size"}) to FILE',
    )
    parser.add_argument(
        '--log-level',
        dest='logLevel',
        metavar='LEVEL_OR_FILE',
        help='Logging level (DEBUG, INFO, WARNING, ERROR) or a JSON logging config file',
    )
    parser.add_argument('--rclone', metavar='PATH', help='rclone executable (default: ZIPCAST_RCLONE_BINARY or rclone)')
    parser.add_argument('--version', action='store_true', help='Show version information and exit')

    return parser


def writeResultJSON(result, path=None, echo=True, stream=None):
    """
    Print the result object as JSON to stream (stdout by default) when echo is set,
    and write it to path when given.
    """
    text = json.dumps(result.toDict(), ensure_ascii=False)

    if echo:
        flushPrint(text, stream=stream)

    if path:
        with open(path, 'w', encoding='utf-8') as f:
            f.write(text + '\n')
        logger.debug(f"Result written to {path}")

    return text
