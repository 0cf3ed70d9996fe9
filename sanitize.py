import re
from typing import Optional

SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
JAVASCRIPT_SCHEME = re.compile(r"javascript:", re.IGNORECASE)
# Word boundary keeps text such as "phone=" intact
EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)


def strip_unsafe(text: Optional[str]) -> Optional[str]:
    """Remove script blocks, javascript: schemes and inline event handlers, then trim."""
    if text is None:
        return None
    text = SCRIPT_TAG.sub("", text)
    text = JAVASCRIPT_SCHEME.sub("", text)
    text = EVENT_HANDLER.sub("", text)
    return text.strip()
