import re

_SEGMENT_PATTERN = re.compile(r"(-?(?:\d+\.?\d*|\d*\.?\d+))\s*([^\s\d.-]*)")

_UNIT_SECONDS: dict[str, int] = {}
for _names, _factor in (
    (("s", "second", "seconds"), 1),
    (("m", "minute", "minutes"), 60),
    (("h", "hour", "hours"), 60 * 60),
    (("d", "day", "days"), 24 * 60 * 60),
    (("w", "week", "weeks"), 7 * 24 * 60 * 60),
):
    for _name in _names:
        _UNIT_SECONDS[_name] = _factor


def to_seconds(value: str | int | float | None) -> float | None:
    """Convert ``"1h 30m"``-style durations to seconds.

    Plain numbers (or numeric strings) are taken as seconds. ``None`` and the
    empty string yield ``None``.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Duration must be a number or string, got {value!r}")
    if isinstance(value, (int, float)):
        return value

    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass

    total = 0.0
    end = 0
    for match in _SEGMENT_PATTERN.finditer(text):
        if text[end:match.start()].strip():
            break
        number, unit = match.groups()
        if not unit:
            raise ValueError(f"Time unit missing in value: {value!r}")
        factor = _UNIT_SECONDS.get(unit) or _UNIT_SECONDS.get(unit.lower())
        if not factor:
            raise ValueError(f"Time unit not valid in value: {value!r}")
        total += float(number) * factor
        end = match.end()

    if end == 0 or text[end:].strip():
        raise ValueError(f"Time value contains invalid characters: {value!r}")

    return int(total) if total.is_integer() else total
