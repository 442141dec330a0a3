import os
from pathlib import Path

import pytest

SYSCTL_ICMP_IGNORE_PATH = Path("/proc/sys/net/ipv4/icmp_echo_ignore_all")


def _read_icmp_echo_ignore_all() -> int | None:
    try:
        return int(SYSCTL_ICMP_IGNORE_PATH.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


@pytest.fixture
def require_root() -> None:
    if not hasattr(os, "geteuid"):
        pytest.skip("requires POSIX geteuid support")
    if os.geteuid() != 0:
        pytest.skip("requires root privileges for raw ICMP sockets")


@pytest.fixture
def require_icmp_echo_answered() -> None:
    value = _read_icmp_echo_ignore_all()
    if value == 1:
        pytest.skip(
            "requires net.ipv4.icmp_echo_ignore_all=0; "
            "run: sudo sysctl -w net.ipv4.icmp_echo_ignore_all=0"
        )
