"""Icon tags attached to measurements.

Icon ids are stored as a comma-joined string whose order is the order the
user selected them in. At most ``MAX_SELECTED_ICONS`` may be selected; picking
one more evicts the oldest.
"""
from app.utils.exceptions import ValidationError

MAX_SELECTED_ICONS = 3

ICON_OPTIONS: dict[int, str] = {
    1: "Sunny",
    2: "Cloudy",
    3: "Rainy",
    4: "Exercise",
    5: "Windy",
    6: "Good",
    7: "Bad",
    8: "Walk",
    9: "Medication",
    10: "Food",
}


def toggle_icon(selected: list[int], icon_id: int) -> list[int]:
    """Return the selection after the user taps ``icon_id``."""
    if icon_id in selected:
        return [i for i in selected if i != icon_id]
    if len(selected) < MAX_SELECTED_ICONS:
        return [*selected, icon_id]
    return [*selected[1:], icon_id]


def serialize_icon_ids(icon_ids: list[int]) -> str | None:
    if not icon_ids:
        return None
    return ",".join(str(i) for i in icon_ids)


def parse_icon_ids(value: str | None) -> list[int]:
    if not value:
        return []
    return [int(part) for part in value.split(",") if part.strip()]


def normalize_icon_ids(value: str | list[int] | None) -> list[int]:
    """Validate icon ids coming from a request body.

    Accepts the comma-joined wire form or a list. An empty string or list
    means "no icons".
    """
    if value is None:
        return []
    if isinstance(value, str):
        try:
            icon_ids = parse_icon_ids(value)
        except ValueError:
            raise ValidationError(f"Invalid icon ids: {value!r}")
    else:
        icon_ids = list(value)

    if len(icon_ids) > MAX_SELECTED_ICONS:
        raise ValidationError(f"At most {MAX_SELECTED_ICONS} icons can be selected")
    if len(set(icon_ids)) != len(icon_ids):
        raise ValidationError("Icon ids must be distinct")
    unknown = [i for i in icon_ids if i not in ICON_OPTIONS]
    if unknown:
        raise ValidationError(f"Unknown icon ids: {unknown}")
    return icon_ids
