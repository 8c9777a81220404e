# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Collection of disk images and firmware variables generated by a job."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from autoinst.configuration.job_context import EXIT_FAILURE, EXIT_SUCCESS, JobVars
from autoinst.main.command_handler import BackendError, CommandHandler
from autoinst.messaging.channel import ChannelError
from autoinst.util.logging_util import get_logger

logger = get_logger("assets")

PRIVATE_ASSETS_DIR = "assets_private"
PUBLIC_ASSETS_DIR = "assets_public"
EXTRACT_TIMEOUT = 600.0


def _asset_format(name: str) -> Optional[str]:
    match = re.search(r"\.([A-Za-z0-9]+)$", name)
    return match.group(1) if match else None


def collect_generated_assets(job_vars: JobVars) -> List[Dict[str, Any]]:
    """Return the asset descriptors requested through ``STORE_HDD_*``/``PUBLISH_*`` vars."""
    try:
        num_disks = int(job_vars.get("NUMDISKS", 1) or 1)
    except (TypeError, ValueError):
        raise ValueError(f"Job variable 'NUMDISKS' must be an integer, got {job_vars.get('NUMDISKS')!r}")
    assets = []
    for hdd_num in range(1, num_disks + 1):
        directory = PRIVATE_ASSETS_DIR
        name = job_vars.get(f"STORE_HDD_{hdd_num}")
        if not name:
            name = job_vars.get(f"PUBLISH_HDD_{hdd_num}")
            directory = PUBLIC_ASSETS_DIR
        if not name:
            continue
        assets.append({"hdd_num": hdd_num, "name": name, "dir": directory, "format": _asset_format(name)})
    pflash = job_vars.get("PUBLISH_PFLASH_VARS")
    if job_vars.get("UEFI") and pflash:
        assets.append({"pflash_vars": True, "name": pflash, "dir": PUBLIC_ASSETS_DIR, "format": "qcow2"})
    return assets


def handle_generated_assets(command_handler: CommandHandler, clean_shutdown: Optional[bool]) -> int:
    """
    Ask the backend to extract the assets of a completed test run.

    Returns the final exit code: ``1`` when assets are pending on a machine
    that did not shut down cleanly or when an extraction fails.
    """
    if not command_handler.test_completed:
        return EXIT_SUCCESS
    context = command_handler.context
    assets = collect_generated_assets(context.vars)
    if assets and not clean_shutdown:
        context.serialize_state(
            component="isotovideo",
            msg="unable to handle generated assets: machine not shut down when uploading disks",
            error=True,
        )
        return EXIT_FAILURE
    return_code = EXIT_SUCCESS
    for asset in assets:
        target_dir = context.workdir / asset["dir"]
        target_dir.mkdir(parents=True, exist_ok=True)
        request = {**asset, "dir": str(target_dir)}
        logger.info("extracting asset %s into %s", asset["name"], target_dir)
        try:
            command_handler.backend_request("extract_asset", request, timeout=EXTRACT_TIMEOUT)
        except (ChannelError, BackendError) as exc:
            logger.error("unable to extract asset %s: %s", asset["name"], exc)
            return_code = EXIT_FAILURE
    return return_code
