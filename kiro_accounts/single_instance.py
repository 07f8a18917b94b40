"""Cross-process relaunch: hand a second instance's argv to the running one.

The OS runs the registered URL-scheme handler (``"<exe>" open-url --
"%1"``) in a new process. If a primary instance is serving the command
surface, it has written ``<data_dir>/instance.json``::

    {"pid": 4242, "port": 8765, "started_at": 1718000000}

and the new process POSTs its argv to ``/api/instance/relaunch`` there.
Without a primary instance the caller handles the URL itself.
"""

import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

import httpx

from kiro_accounts.config import Settings
from kiro_accounts.file_helpers import read_json, safe_remove, write_json_atomic

logger = logging.getLogger(__name__)

RELAUNCH_PATH = "/api/instance/relaunch"


def write_instance_file(path: Path, port: int) -> None:
    write_json_atomic(
        path,
        {"pid": os.getpid(), "port": port, "started_at": int(time.time())},
        prefix=".instance_tmp_",
    )


def remove_instance_file(path: Path) -> None:
    """Remove the instance file if it belongs to this process."""
    data = read_json(path)
    if data and data.get("pid") == os.getpid():
        safe_remove(path)


def _pid_alive(pid: int) -> bool:
    if sys.platform == "win32":
        # No cheap liveness probe; the relaunch POST will fail if it is gone
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_instance(path: Path) -> Optional[dict]:
    """The running primary instance, or None. Stale files are removed."""
    data = read_json(path)
    if not data:
        return None
    pid, port = data.get("pid"), data.get("port")
    if not isinstance(pid, int) or not isinstance(port, int):
        logger.warning("Instance file %s is malformed, removing", path)
        safe_remove(path)
        return None
    if pid == os.getpid():
        return None
    if not _pid_alive(pid):
        logger.info("Instance file points at dead pid %d, removing", pid)
        safe_remove(path)
        return None
    return data


def forward_to_running_instance(
    argv: Sequence[str],
    settings: Settings,
    *,
    transport: Optional[httpx.BaseTransport] = None,
    timeout: float = 10.0,
) -> bool:
    """POST argv to the primary instance. False if there is none to take it."""
    instance = read_instance(settings.instance_file)
    if instance is None:
        return False
    url = f"http://127.0.0.1:{instance['port']}{RELAUNCH_PATH}"
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            resp = client.post(url, json={"argv": list(argv)})
    except httpx.TransportError as exc:
        logger.warning("Primary instance at %s unreachable: %s", url, exc)
        safe_remove(settings.instance_file)
        return False
    if resp.status_code >= 400:
        # The primary took the delivery; its error is reported there
        logger.warning("Primary instance rejected relaunch: HTTP %d %s",
                       resp.status_code, resp.text[:200])
    return True


def build_handler_command(exe: str) -> str:
    """Command line the OS runs for ``kiro://`` links.

    >>> build_handler_command("C:\\\\Tools\\\\kiro-accounts.exe")
    '"C:\\\\Tools\\\\kiro-accounts.exe" open-url -- "%1"'
    """
    return f'"{exe}" open-url -- "%1"'


def register_url_scheme(exe: str, scheme: str = "kiro") -> bool:
    """Register the URL-scheme handler for the current user (Windows only)."""
    if sys.platform != "win32":
        logger.info("URL-scheme registration is only automated on Windows")
        return False

    import winreg

    base = rf"Software\Classes\{scheme}"
    try:
        with winreg.CreateKey(winreg.HKEY_CURRENT_USER, base) as key:
            winreg.SetValueEx(key, "", 0, winreg.REG_SZ, f"URL:{scheme} Protocol")
            winreg.SetValueEx(key, "URL Protocol", 0, winreg.REG_SZ, "")
        with winreg.CreateKey(winreg.HKEY_CURRENT_USER, base + r"\shell\open\command") as key:
            winreg.SetValueEx(key, "", 0, winreg.REG_SZ, build_handler_command(exe))
    except OSError as exc:
        logger.error("Failed to register %s:// handler: %s", scheme, exc)
        return False
    logger.info("Registered %s:// handler -> %s", scheme, exe)
    return True
