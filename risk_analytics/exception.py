import sys


def error_message_detail(error, error_detail):
    exc_info = error_detail.exc_info() if error_detail is not None else sys.exc_info()
    exc_tb = exc_info[2]
    if exc_tb is None:
        return f"Error message [{error}]"

    while exc_tb.tb_next is not None:
        exc_tb = exc_tb.tb_next
    file_name = exc_tb.tb_frame.f_code.co_filename
    return "Error occurred in python script name [{0}] line number [{1}] error message [{2}]".format(
        file_name, exc_tb.tb_lineno, str(error)
    )


class CustomException(Exception):
    def __init__(self, error_message, error_detail):
        super().__init__(error_message)
        self.error_message = error_message_detail(error_message, error_detail=error_detail)

    def __str__(self):
        return self.error_message


class RecordValidationError(ValueError):
    """An input entity or event row failed validation."""

    def __init__(self, message, *, row_index=None, record_id=None, field=None):
        super().__init__(message)
        self.row_index = row_index
        self.record_id = record_id
        self.field = field

    def to_dict(self):
        item = {
            "row_index": self.row_index,
            "id": self.record_id,
            "message": str(self),
        }
        if self.field is not None:
            item["field"] = self.field
        return item


class FeatureValidationError(ValueError):
    """A feature vector is malformed (negative counts, NaN, rate out of range)."""


class RulesetConfigError(ValueError):
    """A ruleset definition cannot be used; raised before any entity is scored."""
