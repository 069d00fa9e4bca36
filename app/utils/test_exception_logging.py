import logging
from unittest.mock import Mock

import httpx

from app.errors import UpstreamUnreachable
from app.utils import shorten_url
from app.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)


class BrokenStrException(Exception):
    """An exception that breaks when __str__ is called."""

    def __str__(self):
        raise RuntimeError("Cannot convert to string!")

    def __repr__(self):
        return "BrokenStrException(cannot convert to string)"


class BrokenReprException(Exception):
    def __str__(self):
        raise RuntimeError("Cannot convert to string!")

    def __repr__(self):
        raise RuntimeError("Cannot convert to repr!")


class TestLogExceptionWithDetails:
    def setup_method(self):
        self.logger = Mock(spec=logging.Logger)

    def test_normal_exception_logging(self):
        exc = ValueError("bad value")
        log_exception_with_details(self.logger, "[Forward]", exc)

        self.logger.log.assert_called_once()
        level, message = self.logger.log.call_args.args
        assert level == logging.ERROR
        assert message == "[Forward] ValueError: bad value"
        assert self.logger.log.call_args.kwargs["exc_info"] is exc

    def test_custom_level(self):
        log_exception_with_details(self.logger, "[Forward]", ValueError("x"), logging.WARNING)
        assert self.logger.log.call_args.args[0] == logging.WARNING

    def test_upstream_details_are_included(self):
        cause = httpx.ConnectError("refused")
        exc = UpstreamUnreachable("https://example.wixsite.com/mysite/", cause)
        log_exception_with_details(self.logger, "[Forward]", exc)

        message = self.logger.log.call_args.args[1]
        assert "UpstreamUnreachable" in message
        assert "url=https://example.wixsite.com/mysite/" in message
        assert "cause=ConnectError: refused" in message

    def test_broken_str_exception(self):
        log_exception_with_details(self.logger, "[Forward]", BrokenStrException())
        message = self.logger.log.call_args.args[1]
        assert "BrokenStrException(cannot convert to string)" in message

    def test_broken_repr_exception(self):
        log_exception_with_details(self.logger, "[Forward]", BrokenReprException())
        message = self.logger.log.call_args.args[1]
        assert "string conversion failed" in message

    def test_logger_failure_resilience(self):
        self.logger.log.side_effect = RuntimeError("logger down")
        log_exception_with_details(self.logger, "[Forward]", ValueError("x"))

    def test_none_prefix(self):
        log_exception_with_details(self.logger, None, ValueError("x"))
        assert self.logger.log.call_args.args[1] == " ValueError: x"

    def test_real_logger(self, caplog):
        logger = logging.getLogger("uvicorn.error")
        with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
            log_exception_with_details(logger, "[AssetRelay]", RuntimeError("boom"))
        assert "[AssetRelay] RuntimeError: boom" in caplog.text


class TestFormatExceptionMessage:
    def test_normal_exception_formatting(self):
        assert format_exception_message(ValueError("bad")) == "ValueError: bad"

    def test_upstream_details_are_formatted(self):
        exc = UpstreamUnreachable("https://a.b/", httpx.ReadTimeout("slow"))
        assert format_exception_message(exc) == (
            "UpstreamUnreachable: Upstream unreachable: https://a.b/ (ReadTimeout('slow'))"
            " (url=https://a.b/, cause=ReadTimeout: slow)"
        )

    def test_broken_str_exception_formatting(self):
        assert format_exception_message(BrokenStrException()) == (
            "BrokenStrException: BrokenStrException(cannot convert to string)"
        )

    def test_none_exception_formatting(self):
        assert format_exception_message(None) == "None"


class TestShortenUrl:
    def test_short_url_is_unchanged(self):
        assert shorten_url("https://a.b/c") == "https://a.b/c"

    def test_long_url_is_trimmed(self):
        url = "https://static.wixstatic.com/media/" + "x" * 300
        result = shorten_url(url, limit=50)
        assert result.startswith(url[:50])
        assert result.endswith(f"...(+{len(url) - 50} chars)")

    def test_empty(self):
        assert shorten_url("") == "<empty>"
        assert shorten_url(None) == "<empty>"
