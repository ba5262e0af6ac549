"""ISO-8601 duration parsing.

Accepts the forms used for time windows on the command line, such as
``PT2H``, ``PT30M``, ``P1D`` or ``P1DT12H``. Fractional seconds are allowed;
years and months are not, since they have no fixed length.
"""

from __future__ import annotations

import re
from datetime import timedelta

_DURATION_RE = re.compile(
    r"^(?P<sign>[-+]?)P"
    r"(?:(?P<weeks>\d+)W)?"
    r"(?:(?P<days>\d+)D)?"
    r"(?:T"
    r"(?:(?P<hours>\d+)H)?"
    r"(?:(?P<minutes>\d+)M)?"
    r"(?:(?P<seconds>\d+(?:[.,]\d+)?)S)?"
    r")?$",
    re.IGNORECASE,
)


def parse_duration(text: str) -> timedelta:
    """Parse an ISO-8601 duration.

    Args:
        text: The duration, e.g. "PT2H".

    Returns:
        The equivalent timedelta.

    Raises:
        ValueError: If the text is not a supported ISO-8601 duration.
    """
    value = text.strip()
    match = _DURATION_RE.match(value)
    if not match or value.upper().endswith(("P", "T")):
        raise ValueError(f"Invalid ISO-8601 duration: '{text}'")

    parts = match.groupdict()
    duration = timedelta(
        weeks=int(parts["weeks"] or 0),
        days=int(parts["days"] or 0),
        hours=int(parts["hours"] or 0),
        minutes=int(parts["minutes"] or 0),
        seconds=float((parts["seconds"] or "0").replace(",", ".")),
    )
    return -duration if parts["sign"] == "-" else duration
