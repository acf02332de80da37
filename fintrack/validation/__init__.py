"""Import validation package."""

from fintrack.validation.importer import (
    DataImporter,
    ImportValidationError,
    parse_csv_import,
    parse_json_import,
)

__all__ = [
    "DataImporter",
    "ImportValidationError",
    "parse_csv_import",
    "parse_json_import",
]
