"""Exception hierarchy shared by the filer, dumper, decoder, and config loader."""


class SlurpError(Exception):
    """Base class for all rtl-slurp errors."""


class ConfigError(SlurpError):
    """Configuration could not be loaded or holds an invalid value."""


class MetadataStoreError(SlurpError):
    """The metadata directory could not be read. Fatal at filer startup."""


class WatchDirectoryError(SlurpError):
    """The watched directory could not be listed. The next scan retries."""


class SinkError(SlurpError):
    """The metric sink rejected a request or could not be reached."""


class DecodeError(SlurpError):
    """A record line could not be turned into a reading."""


class UnknownModelError(DecodeError):
    """A record declared a model with no registered reading type."""

    def __init__(self, model: str):
        super().__init__(f"unknown model: {model!r}")
        self.model = model
