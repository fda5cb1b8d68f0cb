"""Human readable sizes, durations and log metadata."""

from typing import Any

SIZE_UNITS = ['B', 'KB', 'MB', 'GB', 'TB']


def format_size(num_bytes: float) -> str:
    """
    Format a byte count using binary units.

    Args:
        num_bytes: Size in bytes

    Returns:
        String such as '1.50 MB'
    """
    size = float(num_bytes)
    unit_index = 0

    while size >= 1024 and unit_index < len(SIZE_UNITS) - 1:
        size /= 1024
        unit_index += 1

    return f"{size:.2f} {SIZE_UNITS[unit_index]}"


def format_duration(seconds: float) -> str:
    """Format seconds as '42s', '3m 5s' or '2h 10m'."""
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {round(seconds % 60)}s"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours}h {minutes}m"


def calculate_speed(num_bytes: int, duration_seconds: float) -> str:
    """Throughput as a formatted '<size>/s' string."""
    if duration_seconds <= 0:
        return 'N/A'
    return f"{format_size(num_bytes / duration_seconds)}/s"


def with_fields(message: str, **fields: Any) -> str:
    """
    Append structured metadata to a log message.

    with_fields('Upload complete', file='a.enc', size='1.00 MB')
    -> 'Upload complete (file=a.enc, size=1.00 MB)'
    """
    rendered = ', '.join(f"{key}={value}" for key, value in fields.items() if value is not None)
    return f"{message} ({rendered})" if rendered else message
