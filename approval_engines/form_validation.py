"""
approval_engines.form_validation -- Submission form-data validation.

Responsibility:
    Check submitted ``form_data`` against every field of a form schema:
    required fields are present, values have the declared type, choices
    are among the declared options, and table rows match their columns.

Architecture position:
    Engines -- pure, zero I/O.  Called by the instance compiler.

Invariants enforced:
    - All errors are collected before returning; a caller never sees a
      partial result.
    - Keys not declared in the schema are rejected.
    - Description fields never carry input.

Failure modes:
    - Never raises.  Returns a field-keyed error map (``"amount"``,
      ``"items[2].qty"``); empty means valid.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from approval_kernel.domain.definition import (
    AttachmentField,
    DateField,
    DateRangeField,
    DescriptionField,
    FieldType,
    FormField,
    MoneyField,
    MultiSelectField,
    NumberField,
    SelectField,
    TableColumn,
    TableField,
    TextField,
    UserField,
)
from approval_engines.tracer import traced_engine


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return isinstance(value, (list, tuple, dict)) and len(value) == 0


def _as_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        parsed = Decimal(str(value))
    elif isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None
    # NaN and infinities are not numbers a form can carry
    return parsed if parsed.is_finite() else None


def _as_date(value: Any) -> date | None:
    """A calendar date or a full ISO timestamp; nothing may trail it."""
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        return None


def _check_number(
    value: Any,
    low: Decimal | None,
    high: Decimal | None,
) -> str | None:
    number = _as_decimal(value)
    if number is None:
        return "must be a number"
    if low is not None and number < low:
        return f"must be at least {low}"
    if high is not None and number > high:
        return f"must be at most {high}"
    return None


def _check_money(form_field: MoneyField, value: Any) -> str | None:
    amount = value
    if isinstance(value, Mapping):
        currency = value.get("currency", form_field.currency)
        if currency != form_field.currency:
            return f"currency must be {form_field.currency}"
        amount = value.get("amount")
    return _check_number(amount, form_field.min_value, form_field.max_value)


def _check_choice(value: Any, options: tuple[str, ...]) -> str | None:
    if not isinstance(value, str):
        return "must be a string"
    if value not in options:
        return f"'{value}' is not one of the options"
    return None


def _check_multi_choice(value: Any, options: tuple[str, ...]) -> str | None:
    if not isinstance(value, (list, tuple)):
        return "must be a list"
    if len(set(map(str, value))) != len(value):
        return "choices must be unique"
    for choice in value:
        if choice not in options:
            return f"'{choice}' is not one of the options"
    return None


def _check_date_range(value: Any) -> str | None:
    if isinstance(value, Mapping):
        start, end = value.get("start"), value.get("end")
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        start, end = value
    else:
        return "must be a [start, end] pair"
    start_date, end_date = _as_date(start), _as_date(end)
    if start_date is None or end_date is None:
        return "start and end must be ISO dates"
    if start_date > end_date:
        return "start must not be after end"
    return None


def _check_user(form_field: UserField, value: Any) -> str | None:
    if form_field.multiple:
        if not isinstance(value, (list, tuple)) or not all(
            isinstance(u, str) and u for u in value
        ):
            return "must be a list of user ids"
        if len(set(value)) != len(value):
            return "users must be unique"
        return None
    if not isinstance(value, str) or not value:
        return "must be a user id"
    return None


def _check_attachments(form_field: AttachmentField, value: Any) -> str | None:
    if not isinstance(value, (list, tuple)):
        return "must be a list of attachments"
    for item in value:
        if not isinstance(item, (str, Mapping)):
            return "each attachment must be a reference or an object"
    if form_field.max_files is not None and len(value) > form_field.max_files:
        return f"at most {form_field.max_files} files are allowed"
    return None


def _check_cell(column: TableColumn, value: Any) -> str | None:
    column_type = column.column_type
    if column_type in (FieldType.NUMBER, FieldType.MONEY):
        return _check_number(value, None, None)
    if column_type == FieldType.DATE:
        return None if _as_date(value) is not None else "must be an ISO date"
    if column_type == FieldType.SELECT:
        return _check_choice(value, column.options)
    if not isinstance(value, str):
        return "must be a string"
    return None


def _check_table(
    form_field: TableField, value: Any, errors: dict[str, str]
) -> None:
    key = form_field.key
    if not isinstance(value, (list, tuple)):
        errors[key] = "must be a list of rows"
        return
    min_rows = max(form_field.min_rows, 1 if form_field.required else 0)
    if len(value) < min_rows:
        errors[key] = f"at least {min_rows} row(s) required"
    declared = {c.key for c in form_field.columns}
    for i, row in enumerate(value):
        path = f"{key}[{i}]"
        if not isinstance(row, Mapping):
            errors[path] = "row must be an object"
            continue
        for extra in sorted(set(row) - declared):
            errors[f"{path}.{extra}"] = "unknown column"
        for column in form_field.columns:
            cell = row.get(column.key)
            if _is_empty(cell):
                if column.required:
                    errors[f"{path}.{column.key}"] = "is required"
                continue
            message = _check_cell(column, cell)
            if message:
                errors[f"{path}.{column.key}"] = message


def _check_value(form_field: FormField, value: Any) -> str | None:
    if isinstance(form_field, TextField):
        if not isinstance(value, str):
            return "must be a string"
        if form_field.max_length is not None and len(value) > form_field.max_length:
            return f"must be at most {form_field.max_length} characters"
        return None
    if isinstance(form_field, NumberField):
        return _check_number(value, form_field.min_value, form_field.max_value)
    if isinstance(form_field, MoneyField):
        return _check_money(form_field, value)
    if isinstance(form_field, SelectField):
        return _check_choice(value, form_field.options)
    if isinstance(form_field, MultiSelectField):
        return _check_multi_choice(value, form_field.options)
    if isinstance(form_field, DateField):
        return None if _as_date(value) is not None else "must be an ISO date"
    if isinstance(form_field, DateRangeField):
        return _check_date_range(value)
    if isinstance(form_field, UserField):
        return _check_user(form_field, value)
    if isinstance(form_field, AttachmentField):
        return _check_attachments(form_field, value)
    return None


@traced_engine("form_validation", "1.0")
def validate_form_data(
    form_schema: tuple[FormField, ...],
    form_data: Mapping[str, Any] | None,
) -> dict[str, str]:
    """
    Validate ``form_data`` against ``form_schema``.

    Returns:
        Field-keyed error map.  Empty when the data is acceptable.
    """
    if form_data is None:
        form_data = {}
    if not isinstance(form_data, Mapping):
        return {"form_data": "must be an object"}

    errors: dict[str, str] = {}
    fields = {f.key: f for f in form_schema}
    for key in sorted(set(form_data) - set(fields)):
        errors[str(key)] = "unknown field"

    for form_field in form_schema:
        value = form_data.get(form_field.key)
        if isinstance(form_field, DescriptionField):
            if not _is_empty(value):
                errors[form_field.key] = "is not an input field"
            continue
        if _is_empty(value):
            if form_field.required:
                errors[form_field.key] = "is required"
            continue
        if isinstance(form_field, TableField):
            _check_table(form_field, value, errors)
            continue
        message = _check_value(form_field, value)
        if message:
            errors[form_field.key] = message
    return errors
