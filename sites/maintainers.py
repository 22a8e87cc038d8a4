"""
sites/maintainers.py -- Match an authenticated user against a site's maintainers.

Maintainer records are entered by hand and come in two shapes: a bare
username ("alice") or a LINUX DO profile URL
("https://linux.do/u/alice/summary"). Both the username and profile_url
columns are normalized to a bare username before comparing, case-insensitively.
"""

from __future__ import annotations

import re

from sites.models import Maintainer

_PROFILE_RE = re.compile(r"linux\.do/u/([^/]+)/summary", re.IGNORECASE)


def parse_maintainer_id(value: str | None) -> str:
    """Return the bare username in value, or "" for an empty value."""
    if not value:
        return ""
    match = _PROFILE_RE.search(value)
    return match.group(1) if match else value


def is_maintainer(username: str, maintainers: list[Maintainer]) -> bool:
    actor = username.lower()
    if not actor:
        return False
    for m in maintainers:
        if parse_maintainer_id(m.username).lower() == actor:
            return True
        if parse_maintainer_id(m.profile_url).lower() == actor:
            return True
    return False
