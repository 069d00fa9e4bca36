"""
Page markup rewriting.

``MarkupRewriter.rewrite`` runs a fixed sequence of passes over an HTML
document returned by the upstream origin:

1. upstream origin occurrences become the public host/origin;
2. ``src``/``href`` attributes pointing at allowlisted hosts are classified
   and relayed, plus the worker bootstrap URL in inline JSON;
3. permissions/feature policy meta tags are dropped;
4. embedded state blobs are deep rewritten;
5. the interception script is placed first in ``<head>``;
6. SEO tags are replaced with the public site's own;
7. the behaviour script is appended to ``<head>``.

The passes are regex based; the markup is never parsed into a tree.
"""

import html as html_lib
import logging
import re
from typing import Optional

from app.config import SiteConfig
from app.errors import ParseFailure
from app.rewrite.client_scripts import behaviour_script, boot_script
from app.rewrite.state_blob import VIEWER_MODEL, WARMUP, StateBlobRewriter
from app.rewrite.url_classifier import UrlClassifier

logger = logging.getLogger("uvicorn.error")

STATE_BLOCKS = (
    ("wix-viewer-model", VIEWER_MODEL),
    ("wix-viewer-model-serialized", VIEWER_MODEL),
    ("wix-warmup-data", WARMUP),
)

HEAD_OPEN_RE = re.compile(r"<head\b[^>]*>", re.IGNORECASE)
HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
POLICY_META_RE = re.compile(
    r"""<meta[^>]+http-equiv=["']?(?:permissions-policy|feature-policy)["']?[^>]*>""",
    re.IGNORECASE,
)
WORKER_URL_TEXT_RE = re.compile(r'("clientWorkerUrl"\s*:\s*")(https?://[^"]+)(")')
TITLE_RE = re.compile(r"<title\b[^>]*>.*?</title\s*>", re.IGNORECASE | re.DOTALL)
SEO_META_RE = re.compile(
    r"""<meta\b[^>]*\b(?:name|property)\s*=\s*["'](?:description|og:[^"']*|twitter:[^"']*)["'][^>]*>""",
    re.IGNORECASE,
)
ICON_LINK_RE = re.compile(
    r"""<link\b[^>]*\brel\s*=\s*["'][^"']*\bicon\b[^"']*["'][^>]*>""", re.IGNORECASE
)
CANONICAL_RE = re.compile(r"""rel\s*=\s*["']canonical["']""", re.IGNORECASE)
BODY_OPEN_RE = re.compile(r"<body\b", re.IGNORECASE)


class MarkupRewriter:
    def __init__(
        self,
        config: SiteConfig,
        classifier: UrlClassifier,
        state_rewriter: Optional[StateBlobRewriter] = None,
    ):
        self.config = config
        self.classifier = classifier
        self.state_rewriter = state_rewriter or StateBlobRewriter(classifier)
        hosts = "|".join(re.escape(h) for h in sorted(classifier.allowed_hosts))
        self.attribute_re = re.compile(
            r"""(\b(?:src|href))=(["'])(https?://(?:""" + hosts + r""")(?=[/?#"'])[^"']*)\2""",
            re.IGNORECASE,
        )

    def rewrite(self, html: str, request_path: str = "/", query: str = "") -> str:
        html = self.classifier.substitute_origin(html)
        html = self.rewrite_attributes(html)
        html = POLICY_META_RE.sub("", html)
        html = self.rewrite_state_blocks(html)
        html = self.inject_boot_script(html)
        html = self.rewrite_seo(html, request_path, query)
        html = self.inject_behaviour_script(html)
        return html

    # -- pass 2 ---------------------------------------------------------------

    def rewrite_attributes(self, html: str) -> str:
        def _attribute(match: re.Match) -> str:
            attr, url = match.group(1), match.group(3)
            result = self.classifier.classify(html_lib.unescape(url), attr=attr)
            if not result.replaces:
                return match.group(0)
            return f'{attr}="{html_lib.escape(result.rewritten)}"'

        def _worker(match: re.Match) -> str:
            return (
                match.group(1)
                + self.classifier.worker_relay_url(match.group(2))
                + match.group(3)
            )

        html = self.attribute_re.sub(_attribute, html)
        return WORKER_URL_TEXT_RE.sub(_worker, html)

    # -- pass 4 ---------------------------------------------------------------

    def rewrite_state_blocks(self, html: str) -> str:
        for block_id, profile in STATE_BLOCKS:
            pattern = re.compile(
                r"<script\b[^>]*\bid=[\"']" + re.escape(block_id) + r"[\"'][^>]*>(.*?)</script>",
                re.IGNORECASE | re.DOTALL,
            )
            html = pattern.sub(
                lambda m, block_id=block_id, profile=profile: self._state_block(
                    m, block_id, profile
                ),
                html,
                count=1,
            )
        return html

    def _state_block(self, match: re.Match, block_id: str, profile: str) -> str:
        try:
            body = self.state_rewriter.rewrite_embedded_block(match.group(1), profile)
        except ParseFailure as e:
            logger.warning(f"[Markup] Leaving {block_id} untouched: {e}")
            return match.group(0)
        return f'<script id="{block_id}" type="application/json">{body}</script>'

    # -- passes 5-7 -----------------------------------------------------------

    def inject_boot_script(self, html: str) -> str:
        script = boot_script(self.classifier)
        return HEAD_OPEN_RE.sub(lambda m: m.group(0) + script, html, count=1)

    def seo_tags(self, request_path: str, query: str) -> str:
        escape = html_lib.escape
        title = escape(self.config.site_title)
        description = escape(self.config.site_description)
        page_url = escape(self.page_url(request_path, query))
        return (
            f"\n<title>{title}</title>"
            f'\n<link rel="icon" href="{escape(self.config.favicon_url)}" type="image/png">'
            f'\n<meta name="description" content="{description}">'
            f'\n<meta property="og:title" content="{title}">'
            f'\n<meta property="og:description" content="{description}">'
            f'\n<meta property="og:image" content="{escape(self.config.og_image_url)}">'
            '\n<meta property="og:type" content="website">'
            f'\n<meta property="og:url" content="{page_url}">'
            '\n<meta name="twitter:card" content="summary_large_image">\n'
        )

    def page_url(self, request_path: str, query: str) -> str:
        return self.config.public_host + request_path + (f"?{query}" if query else "")

    def rewrite_seo(self, html: str, request_path: str, query: str) -> str:
        # Head only: body <title> elements label inline SVG.
        end = _head_end(html)
        head = TITLE_RE.sub("", html[:end])
        head = SEO_META_RE.sub("", head)
        head = ICON_LINK_RE.sub("", head)
        html = head + html[end:]
        tags = self.seo_tags(request_path, query)
        if not CANONICAL_RE.search(head):
            canonical = html_lib.escape(self.page_url(request_path, query))
            tags = f'\n<link rel="canonical" href="{canonical}">' + tags
        return self._before_head_close(html, tags)

    def inject_behaviour_script(self, html: str) -> str:
        return self._before_head_close(html, behaviour_script(self.config))

    @staticmethod
    def _before_head_close(html: str, fragment: str) -> str:
        if HEAD_CLOSE_RE.search(html):
            return HEAD_CLOSE_RE.sub(lambda m: fragment + m.group(0), html, count=1)
        logger.debug("[Markup] Document has no </head>; appending fragment after <head>")
        return HEAD_OPEN_RE.sub(lambda m: m.group(0) + fragment, html, count=1)


def _head_end(html: str) -> int:
    """Offset where the document head ends: ``</head>``, else ``<body``, else the end."""
    for pattern in (HEAD_CLOSE_RE, BODY_OPEN_RE):
        match = pattern.search(html)
        if match:
            return match.start()
    return len(html)
