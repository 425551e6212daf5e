"""Human-readable duration formatting for task metadata."""

from typing import Optional


def format_duration(seconds: Optional[float]) -> str:
    """Format a duration like "45 seconds", "3 minutes 20s" or "2 hours 5 min"."""
    if seconds is None:
        return "unknown"

    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds} seconds"

    if seconds < 3600:
        minutes, rest = divmod(seconds, 60)
        text = f"{minutes} minute{'s' if minutes != 1 else ''}"
        return f"{text} {rest}s" if rest else text

    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    text = f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{text} {minutes} min" if minutes else text
