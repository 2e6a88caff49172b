from __future__ import annotations


class TreeError(RuntimeError):
    pass


class FormatError(TreeError):
    def __init__(self, message: str, line_number: int | None = None, line: str | None = None):
        if line_number is not None:
            message = f"Line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number
        self.line = line


class ValidationError(TreeError):
    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = list(problems or [])


class BuildError(ValidationError):
    pass


class CycleError(ValidationError):
    pass


class GedcomTooLargeError(ValidationError):
    def __init__(self, size_bytes: int, max_bytes: int):
        super().__init__(f"GEDCOM is too large ({size_bytes} bytes, max {max_bytes}).")
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


class TransportError(TreeError):
    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class ReadOnlyError(TreeError):
    pass
