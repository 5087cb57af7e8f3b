"""Error taxonomy shared by the extraction, token and streaming layers."""

from __future__ import annotations

ERROR_AUTH_REQUIRED = "auth_required"
ERROR_VIDEO_UNAVAILABLE = "video_unavailable"
ERROR_PRIVATE_VIDEO = "private_video"
ERROR_RATE_LIMITED = "rate_limited"
ERROR_NETWORK = "network_error"
ERROR_TIMEOUT = "timeout"
ERROR_UNKNOWN = "unknown"

_EXTRACTION_MESSAGES = {
    "en": {
        ERROR_AUTH_REQUIRED: "The source requires sign-in to access this video. Please try another video.",
        ERROR_VIDEO_UNAVAILABLE: "The video is unavailable or has been removed.",
        ERROR_PRIVATE_VIDEO: "This video is private.",
        ERROR_RATE_LIMITED: "The source is rate limiting requests. Please try again later.",
        ERROR_NETWORK: "Network error while contacting the source. Please try again later.",
        ERROR_TIMEOUT: "The source took too long to respond. Please try again later.",
        ERROR_UNKNOWN: "Video extraction failed.",
    },
    "vi": {
        ERROR_AUTH_REQUIRED: "Nguồn video yêu cầu xác thực. Video có thể bị hạn chế hoặc cần đăng nhập. Vui lòng thử video khác.",
        ERROR_VIDEO_UNAVAILABLE: "Video không khả dụng hoặc đã bị xóa.",
        ERROR_PRIVATE_VIDEO: "Video này ở chế độ riêng tư.",
        ERROR_RATE_LIMITED: "Nguồn video đang giới hạn yêu cầu. Vui lòng thử lại sau.",
        ERROR_NETWORK: "Lỗi kết nối mạng. Vui lòng thử lại sau.",
        ERROR_TIMEOUT: "Hết thời gian chờ phản hồi từ nguồn video. Vui lòng thử lại sau.",
        ERROR_UNKNOWN: "Không thể trích xuất video.",
    },
}


def extraction_message(kind, locale="en"):
    table = _EXTRACTION_MESSAGES.get(locale) or _EXTRACTION_MESSAGES["en"]
    return table.get(kind) or table[ERROR_UNKNOWN]


class StreamgateError(Exception):
    code = "internal_error"
    http_status = 500

    def __init__(self, message=None, *, code=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code

    def to_payload(self):
        return {"error": self.message, "code": self.code}


class ValidationError(StreamgateError):
    """Malformed input. Never retried."""

    code = "validation_failed"
    http_status = 400


class NotFoundError(StreamgateError):
    code = "not_found"
    http_status = 404


class AuthorizationError(StreamgateError):
    """Invalid, expired, revoked or already used token, or a foreign owner."""

    code = "token_invalid"
    http_status = 401

    def __init__(self, message=None, *, code=None, http_status=None):
        super().__init__(message, code=code)
        if http_status:
            self.http_status = http_status


class RateLimited(StreamgateError):
    """Too many requests. The client may retry after ``retry_after`` seconds."""

    code = "rate_limited"
    http_status = 429

    def __init__(self, message=None, *, retry_after=None, code=None, limit=None, remaining=0):
        super().__init__(message or "Rate limit exceeded", code=code)
        self.retry_after = retry_after
        self.limit = limit
        self.remaining = remaining

    def to_payload(self):
        payload = super().to_payload()
        if self.retry_after is not None:
            payload["retryAfter"] = int(self.retry_after)
        return payload


class TokenQuotaExceeded(RateLimited):
    code = "token_quota_exceeded"


class QueueFullError(StreamgateError):
    code = "queue_full"
    http_status = 503


class ExtractionFailed(StreamgateError):
    """The extractor failed with a classified ``kind``."""

    code = "extraction_failed"

    _STATUS_BY_KIND = {
        ERROR_TIMEOUT: 504,
        ERROR_NETWORK: 503,
        ERROR_RATE_LIMITED: 503,
    }

    def __init__(self, kind, detail=None, *, locale="en", attempts=None):
        self.kind = kind if kind else ERROR_UNKNOWN
        self.detail = detail or ""
        self.attempts = list(attempts or [])
        super().__init__(extraction_message(self.kind, locale))
        self.http_status = self._STATUS_BY_KIND.get(self.kind, 422)

    def with_attempts(self, attempts, *, locale=None):
        err = ExtractionFailed(self.kind, self.detail, locale=locale or "en", attempts=attempts)
        if locale is None:
            err.message = self.message
            err.args = (self.message,)
        return err

    def to_payload(self):
        payload = super().to_payload()
        payload["kind"] = self.kind
        return payload


class UpstreamInterrupted(StreamgateError):
    """A stream started and then failed or was cut off mid-transfer."""

    code = "upstream_interrupted"
    http_status = 502

    def __init__(self, message=None, *, bytes_sent=0):
        super().__init__(message or "Stream interrupted")
        self.bytes_sent = bytes_sent


class InternalError(StreamgateError):
    code = "internal_error"
    http_status = 500
