"""
Bank and tax details on payout settings are free-shape data entered by staff.

They are stored as one of two tagged shapes:

    {'kind': 'structured', 'fields': {'account_number': '...', 'ifsc': '...'}}
    {'kind': 'freeform', 'text': 'Pay to HDFC a/c ending 4411'}

Anything that parses as a JSON object is structured; any other text is kept
verbatim as freeform.
"""
import json

from django.core.exceptions import ValidationError

STRUCTURED = 'structured'
FREEFORM = 'freeform'


def normalise_details(raw):
    """Returns the tagged form of `raw`, or None when nothing was entered."""
    if raw is None:
        return None

    if isinstance(raw, dict):
        if not raw:
            return None
        kind = raw.get('kind')
        if kind == STRUCTURED and isinstance(raw.get('fields'), dict) and set(raw) == {'kind', 'fields'}:
            return raw
        if kind == FREEFORM and isinstance(raw.get('text'), str) and set(raw) == {'kind', 'text'}:
            return raw
        return {'kind': STRUCTURED, 'fields': raw}

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            parsed = json.loads(text)
        except ValueError:
            return {'kind': FREEFORM, 'text': text}
        if isinstance(parsed, dict):
            return normalise_details(parsed)
        return {'kind': FREEFORM, 'text': text}

    raise ValidationError("Bank and tax details must be a mapping or plain text.")


def display_details(value):
    """Renders stored details back into the text an operator would type."""
    if not value:
        return ''
    if isinstance(value, str):
        return value
    if value.get('kind') == FREEFORM:
        return value.get('text', '')
    if value.get('kind') == STRUCTURED:
        return json.dumps(value.get('fields', {}), indent=2, sort_keys=True)
    return json.dumps(value, indent=2, sort_keys=True)


def detail_fields(value):
    """The structured fields of stored details, or an empty dict for freeform."""
    if value and value.get('kind') == STRUCTURED:
        return dict(value.get('fields', {}))
    return {}
