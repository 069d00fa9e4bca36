import re

from app.rewrite.url_classifier import UrlClassifier

CSS_URL_RE = re.compile(r"""url\((['"]?)(https://[^)'" ]+)\1\)""")


def is_stylesheet(content_type: str, url: str = "") -> bool:
    return "text/css" in (content_type or "").lower() or bool(
        re.search(r"\.css(\?|$)", url or "", re.IGNORECASE)
    )


def rewrite_stylesheet(css: str, classifier: UrlClassifier) -> str:
    """Point ``url(...)`` references on static CDN hosts at the asset relay."""

    def _replace(match: re.Match) -> str:
        quote_char, absolute = match.group(1), match.group(2)
        if not classifier.static_hosts_re.match(absolute):
            return match.group(0)
        return f"url({quote_char}{classifier.asset_relay_url(absolute)}{quote_char})"

    return CSS_URL_RE.sub(_replace, css)
