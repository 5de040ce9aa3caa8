class TokenpoolError(Exception):
    """
    base class for every error raised by tokenpool.
    """


class StoreError(TokenpoolError):
    """
    raised when the remote store is unreachable, answers with an
    error status, or returns rows that cannot be parsed.
    """


class WindowLoadError(TokenpoolError):
    """
    raised when local activity cannot be read or turned into windows.
    """


class PricingError(TokenpoolError):
    """
    raised when the price table cannot be fetched or holds no usable
    price for the reference model.
    """
