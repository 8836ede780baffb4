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
import platform
import signal
import sys
import threading

from zipcast.CLI import configureCLIParser, configureLogging, loadEnvFile, showVersion, writeResultJSON
from zipcast.Destinations import STDOUT_LOCATION
from zipcast.Errors import ArchiveError
from zipcast.Kernel import getLogger
from zipcast.Pipeline import ArchiveOptions, archive
from zipcast.Settings import SettingsGetter
from zipcast.Utils import errorPrint, sendException

logger = getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    if threading.current_thread() is not threading.main_thread():
        return

    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit without cleanup
            os._exit(EXIT_INTERRUPTED)
        else:
            # First Ctrl+C - raise KeyboardInterrupt so the destination gets aborted
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def setupSettings():
    # Load .env file early, before settings read the environment
    loadEnvFile()

    return SettingsGetter(platformName=platform.system())


def processArchive(args):
    """
    Run the archive described by the parsed arguments.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    options = ArchiveOptions(compress=args.compress, dryRun=args.dryRun, progress=args.progress)

    try:
        result = archive(args.source, args.destination, options)
    except ArchiveError as e:
        sendException(logger, e)
        return EXIT_FAILURE

    # Stdout already carries the archive unless this was a dry run
    echo = args.dryRun or args.destination != STDOUT_LOCATION
    writeResultJSON(result, path=args.json, echo=echo)
    return EXIT_SUCCESS


def runCLIMain(argv=None):
    """Parse arguments and dispatch; argparse exits with 2 on argument errors and 0 on --help"""
    parser = configureCLIParser()
    args = parser.parse_args(argv)

    configureLogging(args.logLevel)

    if args.version:
        showVersion()
        return EXIT_SUCCESS

    if not args.source:
        parser.print_help()
        return EXIT_SUCCESS

    settingsGetter = setupSettings()
    if args.rclone:
        settingsGetter.rcloneBinary = args.rclone

    return processArchive(args)


def main(argv=None):
    """The main entry point"""
    setupGracefulShutdown()

    try:
        return runCLIMain(argv)
    except KeyboardInterrupt:
        errorPrint('\nExiting on user request (Ctrl+C)...')
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.error(f'Unexpected error: {e}', exc_info=True)
        sendException(logger, e, errorPrefix='Unexpected error')
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main() or EXIT_SUCCESS)
