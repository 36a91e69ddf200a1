import datetime
import os
import socket

import psutil


def get_machine_hostname() -> str:
    """
    Retrieves the hostname of the current machine.
    """
    return socket.gethostname()


def get_current_timestamp() -> str:
    """
    Generates a UTC timestamp string for the current date and time.
    """
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def directory_size(path: str) -> int:
    """
    Total size in bytes of every regular file below path.
    """
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except FileNotFoundError:
                # yt-dlp renames fragments while we walk.
                continue
    return total


def disk_usage_percent(path: str) -> float:
    """
    Percentage of the filesystem holding path that is in use.
    """
    return psutil.disk_usage(path).percent
