class FormParseError(Exception):
    """The request body could not be read as a form."""


class UploadTooLarge(FormParseError):
    """An uploaded file went over the size limit."""

    def __init__(self, filename: str, limit: int):
        super().__init__(f"File {filename!r} exceeds the {limit} byte limit")
        self.filename = filename
        self.limit = limit


class DatabaseUnavailable(RuntimeError):
    """DATABASE_URL is not set, so there is no database to talk to."""
