"""
Human-readable renderings of byte counts, durations and resource URLs.
"""

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_size(bytes_size: float) -> str:
    """Renders a byte count with a binary unit, e.g. '3.2 MB'."""
    if bytes_size < 1:
        return "0 B"
    exponent = min((int(bytes_size).bit_length() - 1) // 10, len(_SIZE_UNITS) - 1)
    return f"{bytes_size / 1024**exponent:.1f} {_SIZE_UNITS[exponent]}"


def format_duration(seconds: float) -> str:
    """Renders elapsed time as '1h 2m 5s', or in milliseconds below one second."""
    if 0 < seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    parts = [f"{value}{unit}" for value, unit in ((hours, "h"), (minutes, "m")) if value]
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def short_name(url_or_path: str) -> str:
    """Last path segment of a URL or path, used to keep log lines readable."""
    trimmed = url_or_path.split("?", 1)[0].rstrip("/")
    return trimmed.rsplit("/", 1)[-1] or url_or_path
