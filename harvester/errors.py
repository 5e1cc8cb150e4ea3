class HarvestError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NetworkFailure(HarvestError):
    """A page load timed out, errored, or returned a non-success status."""

    def __init__(self, message: str, url: str, status_code: int | None = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class ExtractionError(HarvestError):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class SchemaViolation(ExtractionError):
    """The generation service returned output that does not fit the schema."""

    def __init__(self, message: str, schema_name: str):
        self.schema_name = schema_name
        super().__init__(message)


class WriteFailure(HarvestError):
    def __init__(self, message: str, slug: str):
        self.slug = slug
        super().__init__(message)


class MergeFailure(HarvestError):
    def __init__(self, message: str, keep: str, drop: str):
        self.keep = keep
        self.drop = drop
        super().__init__(message)


class FatalStartupError(HarvestError):
    pass
