"""Output file naming: ``<label>_<Mon><Day>-<Year>-<h><mm><am|pm>.gif``."""

import re
from datetime import datetime
from pathlib import Path
from urllib.parse import urlparse

FALLBACK_LABEL = "recording"
MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def site_label(identity, fallback=FALLBACK_LABEL):
    """Sanitized host name when ``identity`` is a web URL, else ``fallback``."""
    if not identity or "://" not in identity:
        return fallback
    parsed = urlparse(identity)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return fallback
    host = parsed.hostname
    if host.startswith("www."):
        host = host[4:]
    label = re.sub(r"[^A-Za-z0-9]+", "-", host).strip("-").lower()
    return label or fallback


def stamp(now: datetime) -> str:
    hour = now.hour % 12 or 12
    ampm = "pm" if now.hour >= 12 else "am"
    return f"{MONTHS[now.month - 1]}{now.day}-{now.year}-{hour}{now.minute:02d}{ampm}"


def artifact_name(label=None, now=None) -> str:
    return f"{label or FALLBACK_LABEL}_{stamp(now or datetime.now())}.gif"


def unique_path(directory, name) -> Path:
    """``directory/name``, suffixed ``-2``, ``-3``... if already taken."""
    directory = Path(directory)
    path = directory / name
    n = 2
    while path.exists():
        path = directory / f"{Path(name).stem}-{n}{Path(name).suffix}"
        n += 1
    return path


def save_artifact(data: bytes, directory, label=None, now=None) -> Path:
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = unique_path(directory, artifact_name(label, now))
    path.write_bytes(data)
    return path
