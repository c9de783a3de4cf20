# Deletion monitor package

import re

INVALID_CHARS = '<>:"/\\|?*'


def sanitize_filename(filename: str, max_length: int = 100) -> str:
    """Make a name safe to use as a single path component, keeping its extension."""
    if not filename:
        return "unknown"

    filename = "".join("_" if c in INVALID_CHARS or ord(c) < 32 else c for c in filename)
    filename = filename.replace(" ", "_")
    filename = re.sub(r'_{2,}', '_', filename)
    filename = filename.strip('_.')

    if not filename:
        return "unnamed"

    if len(filename) > max_length:
        stem, dot, ext = filename.rpartition('.')
        if dot and stem and len(ext) <= 10:
            filename = stem[:max_length - len(ext) - 1] + '.' + ext
        else:
            filename = filename[:max_length]

    return filename
