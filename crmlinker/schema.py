from typing import Any, Dict, List

from .records import FIELD_MAP, LEGACY_ID_FIELDS

OPTIONAL_STR_FIELDS = list(FIELD_MAP)
OPTIONAL_ID_FIELDS = list(LEGACY_ID_FIELDS)


def validate_record(data: Any) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    Only checks the fields the reconciler reads; everything else is ignored.
    """
    if not isinstance(data, dict):
        return [f"Record must be an object, got {type(data).__name__}"]

    errors: List[str] = []

    for f in OPTIONAL_STR_FIELDS:
        if data.get(f) is not None and not isinstance(data[f], str):
            errors.append(f"Field '{f}' must be a string if provided")

    # Legacy ids come back as numbers for some rows
    for f in OPTIONAL_ID_FIELDS:
        v = data.get(f)
        if v is not None and (isinstance(v, bool) or not isinstance(v, (str, int))):
            errors.append(f"Field '{f}' must be a string or integer if provided")

    return errors
