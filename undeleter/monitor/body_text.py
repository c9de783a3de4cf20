"""Decode message body and edit state from the store's BLOB columns."""

import logging
import plistlib
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# attributedBody typedstream data wraps the body text between these markers
START_PATTERN = b"\x01\x2b"
END_PATTERN = b"\x86\x84"


def parse_streamtyped(blob: Optional[bytes]) -> Optional[str]:
    """
    Extract the body text from legacy `streamtyped` attributedBody data.

    The text follows the first SOH+ marker and one length prefix character
    (three replacement characters when the bytes are not valid UTF-8) and
    ends at the first 0x86 0x84 marker.
    """
    if not blob:
        return None

    data = bytes(blob)
    start = data.find(START_PATTERN)
    if start == -1:
        return None
    data = data[start + len(START_PATTERN):]

    end = data.find(END_PATTERN, 1)
    if end == -1:
        return None
    data = data[:end]

    try:
        decoded = data.decode("utf-8")
        prefix = 1
    except UnicodeDecodeError:
        decoded = data.decode("utf-8", errors="replace")
        prefix = 3

    if len(decoded) <= prefix:
        return None
    return decoded[prefix:]


def resolve_body_text(text: Optional[str], attributed_body: Optional[bytes]) -> Optional[str]:
    """Prefer the plain text column, falling back to the attributedBody blob."""
    if text:
        return text
    return parse_streamtyped(attributed_body)


class SummaryInfo(BaseModel):
    """The parts of message_summary_info that describe unsent content."""

    otr: Dict[int, Any] = {}  # Body part index -> part metadata
    rp: List[int] = []  # Indexes of parts that were unsent


def is_fully_unsent(date_edited: Optional[int], summary_info: Optional[bytes]) -> bool:
    """
    True when every part of an edited message was unsent.

    message_summary_info is a plist: `otr` maps each body part index to
    metadata and `rp` lists the indexes that were unsent.
    """
    if not date_edited or not summary_info:
        return False

    try:
        root = plistlib.loads(bytes(summary_info))
        info = SummaryInfo.model_validate(root)
    except Exception as e:
        logger.debug(f"Unreadable message_summary_info: {e}")
        return False

    if not info.otr:
        return False
    return set(info.otr).issubset(info.rp)
