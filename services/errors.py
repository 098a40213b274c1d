from __future__ import annotations


class BurrowError(RuntimeError):
    pass


class DownloadAborted(BurrowError):
    """The user cancelled the download; not a failure to report."""


class ModelDownloadError(BurrowError):
    pass


class IncompleteDownloadError(BurrowError):
    def __init__(self, received: int, expected: int) -> None:
        super().__init__(f"Incomplete download: received {received} bytes, expected {expected} bytes")
        self.received = received
        self.expected = expected


class TooManyRedirects(BurrowError):
    pass


class UnpackError(BurrowError):
    pass


class InstallError(BurrowError):
    pass


class TunnelError(BurrowError):
    pass


class TunnelRateLimited(TunnelError):
    pass
