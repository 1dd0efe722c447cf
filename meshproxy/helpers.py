"""Small helpers shared by integration scenarios."""

from __future__ import annotations

import functools
import ipaddress
import logging
import subprocess
import time

from meshproxy import telemetry

logger = logging.getLogger(__name__)


@functools.cache
def initialize_telemetry() -> None:
    """Set up logging exactly once per process."""
    telemetry.setup_logging()


def with_ip(addr: tuple, ip) -> tuple[str, int]:
    """The socket address ``addr`` with its IP replaced by ``ip``."""
    return (str(ipaddress.ip_address(ip)), addr[1])


def run_command(cmd: str) -> None:
    """Run ``cmd`` through ``sh -c``; raise CalledProcessError if it fails."""
    started = time.monotonic()
    logger.debug("running command %s", cmd)
    result = subprocess.run(["sh", "-c", cmd], capture_output=True, check=False)
    stdout = result.stdout.decode("utf-8")
    stderr = result.stderr.decode("utf-8")
    logger.debug(
        "command complete in %.3fs; code=%s, stdout=%s, stderr=%s",
        time.monotonic() - started,
        result.returncode,
        stdout,
        stderr,
    )
    if result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, cmd[:50], stdout, stderr)