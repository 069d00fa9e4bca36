from typing import Optional

MAX_LOGGED_URL = 200


def shorten_url(url: Optional[str], limit: int = MAX_LOGGED_URL) -> str:
    """Trim long upstream URLs (signed media links, encoded state) for logs."""
    if not url:
        return "<empty>"
    if len(url) <= limit:
        return url
    return f"{url[:limit]}...(+{len(url) - limit} chars)"
