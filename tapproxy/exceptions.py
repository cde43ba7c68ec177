"""
We use builtin exceptions where they fit and specialize where necessary.

Every exception that might be externally visible to users is a subclass
of TapproxyException. Content decoding errors are plain ValueErrors.
"""


class TapproxyException(Exception):
    """
    Base class for all exceptions thrown by tapproxy.
    """

    def __init__(self, message=None):
        super().__init__(message)


class OptionsError(TapproxyException):
    pass


class RuleError(TapproxyException):
    """
    Raised when a rule module cannot be loaded.
    """


class CertificateIssueError(TapproxyException):
    """
    Raised when no leaf certificate can be issued for a host.
    """


class ListenerError(TapproxyException):
    """
    Raised when a listening socket cannot be bound.
    """


class UpstreamError(TapproxyException):
    """
    Raised when the upstream server cannot be reached or misbehaves.

    `code` carries a machine-readable reason, e.g. UNABLE_TO_GET_ISSUER_CERT_LOCALLY
    for upstream certificates that do not verify.
    """

    def __init__(self, message=None, code: str | None = None):
        super().__init__(message)
        self.code = code


class ProxyStateError(TapproxyException):
    """
    Raised when the proxy lifecycle is driven out of order.
    """
