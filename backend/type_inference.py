import re
from datetime import datetime

INTEGER = 'integer'
FLOAT = 'float'
DATE = 'date'
BOOLEAN = 'boolean'
STRING = 'string'

# Closed set, compared case-insensitively.
BOOLEAN_TOKENS = frozenset({'true', 'false', 'yes', 'no', '1', '0'})

INTEGER_PATTERN = re.compile(r'^-?\d+$')
DECIMAL_PATTERN = re.compile(r'^-?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$')
DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def _is_integer(value):
    return bool(INTEGER_PATTERN.match(value))


def _is_decimal(value):
    return bool(DECIMAL_PATTERN.match(value))


def _has_fraction_or_exponent(value):
    return '.' in value or 'e' in value or 'E' in value


def _is_date(value):
    if not DATE_PATTERN.match(value):
        return False
    try:
        datetime.strptime(value, '%Y-%m-%d')
    except ValueError:
        return False
    return True


def _is_boolean(value):
    return value.lower() in BOOLEAN_TOKENS


def non_empty_samples(samples):
    """Drop absent and empty values, returning the rest as stripped text."""
    values = []
    for sample in samples:
        if sample is None:
            continue
        text = sample if isinstance(sample, str) else str(sample)
        text = text.strip()
        if text:
            values.append(text)
    return values


def detect_column_type(samples):
    """Return the column type tag for a sequence of string-or-None samples."""
    values = non_empty_samples(samples)
    if not values:
        return STRING

    # Every non-empty sample must match; otherwise the column is a string
    if all(_is_integer(v) for v in values):
        return INTEGER
    if all(_is_decimal(v) for v in values) and any(_has_fraction_or_exponent(v) for v in values):
        return FLOAT
    if all(_is_date(v) for v in values):
        return DATE
    if all(_is_boolean(v) for v in values):
        return BOOLEAN
    return STRING
