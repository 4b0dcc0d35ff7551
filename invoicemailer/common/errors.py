"""Exception hierarchy shared by the Xero client, mailer and processor."""


class InvoiceMailerError(Exception):
    """Base class for errors raised by this package."""


class ConfigurationError(InvoiceMailerError):
    """A required setting or secret is missing."""


class CredentialsMissingError(ConfigurationError):
    """No persisted Xero token lease exists yet."""


class UpstreamError(InvoiceMailerError):
    """An upstream HTTP call returned a non-success status."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamRateLimitedError(UpstreamError):
    """Upstream answered 429 Too Many Requests."""


class UpstreamUnauthorizedError(UpstreamError):
    """Upstream rejected the access token."""


class TokenRefreshError(UpstreamError):
    """The OAuth token exchange did not succeed."""


def raise_for_upstream(response, what: str) -> None:
    """Translate an httpx response into the matching UpstreamError subclass."""

    if response.is_success:
        return
    status = response.status_code
    body = response.text
    message = f"{what} failed: status={status} body={body}"
    if status == 429:
        raise UpstreamRateLimitedError(f"TooManyRequests: {message}", status, body)
    if status == 401:
        raise UpstreamUnauthorizedError(message, status, body)
    raise UpstreamError(message, status, body)
