"""Fetch credential bundle handling.

The fetcher accepts a Netscape ``cookies.txt`` file. Deployments either pass
its contents through ``COOKIES_FILE`` (written out at startup) or convert a
browser JSON export with ``autodj-cookies``.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from autodj.schemas import CookieStatus

logger = logging.getLogger(__name__)

COOKIE_DOMAINS = (".youtube.com", ".music.youtube.com")
NETSCAPE_HEADER = "# Netscape HTTP Cookie File"


def materialize_cookies(content: Optional[str], path: Path) -> bool:
    """Write ``content`` to ``path`` readable by the owner only.

    Returns ``False`` without touching the filesystem when there is nothing
    to write.
    """

    if not content or not content.strip():
        logger.info("No cookie content configured", extra={"path": str(path)})
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content if content.endswith("\n") else f"{content}\n")
    os.chmod(path, 0o600)
    logger.info("Cookies written", extra={"path": str(path)})
    return True


def cookie_status(path: Path) -> CookieStatus:
    """Report presence, size and line count of the bundle, never its contents."""

    if not path.is_file():
        return CookieStatus(path=str(path), exists=False)
    try:
        raw = path.read_bytes()
    except OSError as exc:
        logger.warning("Cookies unreadable", extra={"path": str(path), "error": str(exc)})
        return CookieStatus(path=str(path), exists=True)
    lines = [line for line in raw.decode("utf-8", "ignore").splitlines() if line.strip()]
    return CookieStatus(path=str(path), exists=True, size_bytes=len(raw), lines=len(lines))


def _cookie_line(domain: str, cookie: dict[str, Any], default_expiry: int) -> str:
    expires = cookie.get("expires") or cookie.get("expirationDate")
    expiry = int(expires) if expires else default_expiry
    fields = [
        domain,
        "TRUE",
        cookie.get("path") or "/",
        "TRUE" if cookie.get("secure") else "FALSE",
        str(expiry),
        str(cookie.get("name") or ""),
        str(cookie.get("value") or ""),
    ]
    return "\t".join(fields)


def netscape_lines(cookies: Iterable[dict[str, Any]], *, expiry_days: int = 365, now: Optional[float] = None) -> list[str]:
    """Render every cookie once per domain in :data:`COOKIE_DOMAINS`."""

    default_expiry = int(now if now is not None else time.time()) + expiry_days * 24 * 60 * 60
    lines: list[str] = []
    for cookie in cookies:
        for domain in COOKIE_DOMAINS:
            lines.append(_cookie_line(domain, cookie, default_expiry))
    return lines


def convert_cookies(json_path: Path, out_path: Path, expiry_days: int = 365) -> int:
    """Convert a JSON cookie export to ``cookies.txt``; return the line count."""

    data = json.loads(json_path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("cookies", [])
    if not isinstance(data, list):
        raise ValueError(f"{json_path} does not contain a list of cookies")

    lines = netscape_lines(data, expiry_days=expiry_days)
    materialize_cookies("\n".join([NETSCAPE_HEADER, *lines]), out_path)
    logger.info("Converted cookies", extra={"source": str(json_path), "entries": len(lines)})
    return len(lines)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="autodj-cookies",
        description="Convert a JSON cookie export into a Netscape cookies.txt file.",
    )
    parser.add_argument("source", nargs="?", default="cookies.json", type=Path)
    parser.add_argument("output", nargs="?", default="cookies.txt", type=Path)
    parser.add_argument("expiry_days", nargs="?", default=365, type=int)
    args = parser.parse_args(argv)

    try:
        count = convert_cookies(args.source, args.output, args.expiry_days)
    except (OSError, ValueError) as exc:
        print(f"Conversion failed: {exc}", file=sys.stderr)
        return 1
    print(f"Written {args.output} with {count} entries (including duplicates).")
    print("Keep this file secret; do not commit it.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
