"""Exceptions raised by grid detection."""


class GridDetectionError(Exception):
    """Base class for every detection failure."""


class ImageDecodeError(GridDetectionError):
    """The image source could not be opened or decoded."""


class InsufficientSignalError(GridDetectionError):
    """No periodic grid was found and no usable manual points were given.

    Also raised for degenerate input such as an empty image or manual
    points that do not span any distance.  Callers should offer a manual
    or gridless path instead of treating this as fatal.
    """

    def __init__(self, message: str = "Grid detection failed; insufficient periodic signal."):
        super().__init__(message)
