from urllib.parse import parse_qs, quote, urlsplit

ATTEND_PATH = "/attend"


def build_attend_url(session_id: str, base_url: str) -> str:
    """URL encoded into the session's QR code."""
    return f"{base_url.rstrip('/')}{ATTEND_PATH}?sessionId={quote(session_id, safe='')}"


def parse_attend_url(text: str | None) -> str | None:
    """
    Return the session id carried by a scanned attendance link, or None when
    the text is not one.
    """
    if not text:
        return None
    parts = urlsplit(text.strip())
    if parts.path.rstrip("/") != ATTEND_PATH:
        return None
    values = parse_qs(parts.query).get("sessionId")
    if not values or not values[0].strip():
        return None
    return values[0].strip()
