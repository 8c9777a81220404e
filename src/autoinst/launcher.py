# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Command line launcher: ``autoinst -c vars.json [-w workdir]``."""

import sys, getopt, logging, os, tempfile
from pathlib import Path

from autoinst.configuration.job_context import EXIT_FAILURE, JobContext
from autoinst.main.runner import run_job
from autoinst.util.logging_util import configure_logging, is_file_logging_enabled


def print_usage(errcode=None):
    print("Usage: autoinst -c <vars.json> [-w <workdir>]")
    sys.exit(errcode)


def load_context(vars_file: str, workdir: str = "") -> JobContext:
    """Build the job context from ``vars_file``; the workdir defaults to its folder."""
    vars_path = Path(vars_file).expanduser().resolve()
    context = JobContext(workdir or vars_path.parent)
    if vars_path != context.vars_path:
        context.workdir.mkdir(parents=True, exist_ok=True)
        context.vars_path.write_bytes(vars_path.read_bytes())
    context.load()
    return context


def main(argv):
    vars_file = ""
    workdir = ""
    opts = []
    try:
        opts, args = getopt.getopt(argv, "hc:w:", ["help", "config=", "workdir="])
    except getopt.GetoptError:
        logging.fatal("Error in parsing argument list")
        print_usage(1)

    for opt, arg in opts:
        if opt in ("-h", "--help"):
            print_usage()
        elif opt in ("-c", "--config"):
            vars_file = arg
        elif opt in ("-w", "--workdir"):
            workdir = arg

    if not vars_file:
        logging.fatal("No job variables file provided")
        print_usage(1)

    # Keep multiprocessing temp files off /dev/shm on constrained workers.
    os.environ.setdefault("TMPDIR", "/tmp")
    tempfile.tempdir = os.environ["TMPDIR"]

    exit_code = EXIT_FAILURE
    try:
        context = load_context(vars_file, workdir)
        settings = context.logging_settings
        configure_logging(
            settings,
            base_path=context.log_root / "main" if is_file_logging_enabled(settings) else None,
        )
        exit_code = run_job(context)
    except (OSError, ValueError) as e:
        logging.fatal(f"Failed to load job variables: {e}")
    finally:
        sys.exit(exit_code)


def run():
    main(sys.argv[1:])


if __name__ == "__main__":
    run()
