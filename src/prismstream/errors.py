class PrismStreamError(RuntimeError):
    pass


class NotLoggedInError(PrismStreamError):
    pass


class StreamUrlError(PrismStreamError):
    """Raised when no request URL can be built for an item/profile pair."""


class NoPlayableRepresentationError(PrismStreamError):
    """Every profile in the fallback chain failed for the current item."""


class DownloadCancelled(PrismStreamError):
    pass
