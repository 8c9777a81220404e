# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Process entrypoints for supervisor-managed subprocesses."""
from __future__ import annotations

import signal


# Handlers installed by the orchestrator survive the fork; children must not
# feed signals into the parent's event loop.
_RESET_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)


def _run_supervised_child(entry_point, conn, role, log_specs, inherited, args):
    from autoinst.messaging.channel import Channel
    from autoinst.util.logging_util import get_logger, initialize_process_logging, shutdown_logging

    for signum in _RESET_SIGNALS:
        signal.signal(signum, signal.SIG_DFL)
    for foreign in inherited:
        try:
            foreign.close()
        except OSError:
            pass

    initialize_process_logging(log_specs, role)
    logger = get_logger(role)
    channel = Channel(conn, label=role)
    try:
        entry_point(channel, *args)
    except Exception:
        logger.exception("%s process died", role)
        raise SystemExit(1)
    finally:
        channel.close()
        shutdown_logging()
