class PnlError(Exception):
    pass


class MalformedFileError(PnlError):
    """Raised when a spreadsheet has no recognizable header row or lacks required columns."""

    def __init__(self, file_name, message, preview=None):
        self.file_name = file_name
        self.preview = list(preview or [])
        super().__init__(f"Lỗi xử lý file {file_name}: {message}")


class MissingPrerequisiteError(PnlError):
    pass


class StorageQuotaExceeded(PnlError):
    pass
